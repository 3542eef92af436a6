"""Principal-facing policy management: issue, amend, provision wallets, read logs."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Iterable

from core.models import ActionLogEntry, InvalidRequest, Policy, to_usd
from core.store import Clock, LedgerStore, utc_now
from policies.default_policies import DEFAULT_EXPIRY_HOURS
from tools.wallet_provisioner import TokenBalance, WalletProvisioner, WalletProvisioningError

logger = logging.getLogger(__name__)


class PolicyNotFound(LookupError):
    """No policy with that id is visible to the requesting principal."""


@dataclass(frozen=True)
class WalletReport:
    shared_wallets: dict[str, list[str]]  # wallet id -> policy ids using it
    policies_without_wallet: list[str]


def _allow_list(values: Iterable[str] | None, name: str) -> frozenset[str]:
    if values is None or isinstance(values, str):
        raise InvalidRequest(f"{name} must be a list of strings")
    items = frozenset(values)
    if not all(isinstance(v, str) and v for v in items):
        raise InvalidRequest(f"{name} must contain only non-empty strings")
    return items


def _budget(value: Any) -> Decimal:
    budget = to_usd(value, "dailyBudgetUsd")
    if budget < 0:
        raise InvalidRequest(f"dailyBudgetUsd must be >= 0, got {budget}")
    return budget


def _expiry_hours(value: Any) -> int:
    try:
        hours = int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidRequest(f"expiryHours must be an integer, got {value!r}") from exc
    if hours <= 0:
        raise InvalidRequest(f"expiryHours must be positive, got {hours}")
    return hours


class PolicyService:
    def __init__(
        self,
        store: LedgerStore,
        provisioner: WalletProvisioner,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.provisioner = provisioner
        self._clock = clock

    # ── issue / amend ─────────────────────────────────────────────

    def create_policy(
        self,
        owner_id: str,
        agent_id: str,
        daily_budget_usd: Any,
        allowed_tokens: Iterable[str],
        allowed_protocols: Iterable[str],
        allowed_actions: Iterable[str],
        expiry_hours: Any = DEFAULT_EXPIRY_HOURS,
    ) -> Policy:
        """Store a new policy, then try to give it a wallet.

        A provisioning failure is logged and leaves the policy without a
        wallet; requests under it are blocked until ``ensure_wallet`` succeeds.
        """
        if not owner_id or not agent_id:
            raise InvalidRequest("ownerId and agentId are required")
        now = self._clock()
        policy = Policy(
            id=uuid.uuid4().hex,
            owner_id=owner_id,
            agent_id=agent_id,
            daily_budget_usd=_budget(daily_budget_usd),
            allowed_tokens=_allow_list(allowed_tokens, "allowedTokens"),
            allowed_protocols=_allow_list(allowed_protocols, "allowedProtocols"),
            allowed_actions=_allow_list(allowed_actions, "allowedActions"),
            expires_at=now + timedelta(hours=_expiry_hours(expiry_hours)),
            created_at=now,
        )
        self.store.save_policy(policy)
        logger.info("created policy %s for agent %s (owner %s)", policy.id, agent_id, owner_id)
        try:
            return self._provision(policy)
        except WalletProvisioningError as exc:
            logger.error("policy %s created but wallet provisioning failed: %s", policy.id, exc)
            return policy

    def update_rules(
        self,
        owner_id: str,
        policy_id: str,
        *,
        daily_budget_usd: Any = None,
        allowed_tokens: Iterable[str] | None = None,
        allowed_protocols: Iterable[str] | None = None,
        allowed_actions: Iterable[str] | None = None,
        expires_at: datetime | None = None,
    ) -> Policy:
        """Replace the given rule fields; identity, agent and wallet never change here."""
        policy = self.get_policy(owner_id, policy_id)
        changes: dict[str, Any] = {}
        if daily_budget_usd is not None:
            changes["daily_budget_usd"] = _budget(daily_budget_usd)
        if allowed_tokens is not None:
            changes["allowed_tokens"] = _allow_list(allowed_tokens, "allowedTokens")
        if allowed_protocols is not None:
            changes["allowed_protocols"] = _allow_list(allowed_protocols, "allowedProtocols")
        if allowed_actions is not None:
            changes["allowed_actions"] = _allow_list(allowed_actions, "allowedActions")
        if expires_at is not None:
            changes["expires_at"] = expires_at
        if not changes:
            return policy
        updated = replace(policy, **changes)
        self.store.save_policy(updated)
        logger.info("updated policy %s: %s", policy_id, ", ".join(sorted(changes)))
        return updated

    # ── wallets ───────────────────────────────────────────────────

    def ensure_wallet(self, owner_id: str, policy_id: str) -> tuple[Policy, bool]:
        """Return the policy with a wallet and whether one was created just now."""
        policy = self.get_policy(owner_id, policy_id)
        if policy.agent_wallet_id:
            return policy, False
        return self._provision(policy), True

    def _provision(self, policy: Policy) -> Policy:
        wallet = self.provisioner.create_wallet(f"agent-{policy.agent_id}-{policy.id}")
        # Re-read so a concurrent rule update is not overwritten.
        latest = self.store.get_policy(policy.id) or policy
        updated = replace(latest, agent_wallet_id=wallet.id)
        self.store.save_policy(updated)
        logger.info("policy %s assigned wallet %s", policy.id, wallet.id)
        return updated

    def wallet_balances(self, owner_id: str, policy_id: str) -> tuple[str, list[TokenBalance]]:
        """The policy's wallet address and the token balances it holds."""
        policy = self.get_policy(owner_id, policy_id)
        if not policy.agent_wallet_id:
            raise InvalidRequest(f"policy {policy_id} has no agent wallet yet")
        return policy.agent_wallet_id, self.provisioner.list_balances(policy.agent_wallet_id)

    def wallet_report(self) -> WalletReport:
        by_wallet: dict[str, list[str]] = {}
        missing: list[str] = []
        for policy in self.store.list_policies():
            if policy.agent_wallet_id:
                by_wallet.setdefault(policy.agent_wallet_id, []).append(policy.id)
            else:
                missing.append(policy.id)
        shared = {wallet: ids for wallet, ids in by_wallet.items() if len(ids) > 1}
        return WalletReport(shared_wallets=shared, policies_without_wallet=missing)

    # ── reads ─────────────────────────────────────────────────────

    def get_policy(self, owner_id: str, policy_id: str) -> Policy:
        policy = self.store.get_policy(policy_id)
        if policy is None or policy.owner_id != owner_id:
            raise PolicyNotFound(f"policy {policy_id} not found")
        return policy

    def list_policies(self, owner_id: str) -> list[Policy]:
        return self.store.list_policies(owner_id)

    def list_logs(self, owner_id: str, policy_id: str) -> list[ActionLogEntry]:
        self.get_policy(owner_id, policy_id)
        return self.store.list_logs(policy_id)
