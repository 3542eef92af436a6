"""Enforcement orchestrator: evaluate → execute → log, exactly one log entry per request."""

from __future__ import annotations

import logging

from core.aggregator import SpendAggregator
from core.config import PENDING_TX_ID
from core.models import (
    ActionRequest,
    ActionStatus,
    EnforcementResult,
    LogDraft,
    Outcome,
    format_usd,
)
from core.policy_engine import evaluate
from core.store import Clock, LedgerSession, LedgerStore, utc_now
from tools.trade_executor import TradeExecutor

logger = logging.getLogger(__name__)

POLICY_NOT_FOUND = "policy not found"
WALLET_NOT_CONFIGURED = "agent wallet not configured"
ALL_CHECKS_PASSED = "all validation checks passed"


class Enforcer:
    """Decides agent requests under their policy and records every decision.

    The whole sequence for one request runs inside ``store.session(policy_id)``,
    the store's per-policy serialization boundary.  The trade call is inside
    it too: the ALLOWED entry that accounts for a swap must be written before
    the next request for the same policy reads today's spend.
    """

    def __init__(
        self,
        store: LedgerStore,
        executor: TradeExecutor,
        *,
        clock: Clock = utc_now,
        pending_tx_id: str = PENDING_TX_ID,
    ):
        self.store = store
        self.executor = executor
        self._clock = clock
        self._pending_tx_id = pending_tx_id

    def execute(self, request: ActionRequest) -> EnforcementResult:
        with self.store.session(request.policy_id) as ledger:
            return self._execute_locked(ledger, request)

    # ── sequence ──────────────────────────────────────────────────

    def _execute_locked(self, ledger: LedgerSession, request: ActionRequest) -> EnforcementResult:
        log = _Logger(ledger, request)

        # ── 1. Load policy ────────────────────────────────────────
        policy = ledger.get_policy(request.policy_id)
        if policy is None:
            entry_id = log.blocked(
                f"Action blocked: {POLICY_NOT_FOUND}",
                f"{POLICY_NOT_FOUND}: policy {request.policy_id} does not exist",
            )
            logger.warning("blocked: policy %s not found (log=%s)", request.policy_id, entry_id)
            return EnforcementResult(
                outcome=Outcome.PRECONDITION_FAILED, log_id=entry_id, reason=POLICY_NOT_FOUND
            )

        # ── 2. Spend so far today ─────────────────────────────────
        now = self._clock()
        spent = SpendAggregator(ledger).spend_today(policy.id, now)

        # ── 3. Policy rules ───────────────────────────────────────
        decision = evaluate(policy, spent, request, now)
        if not decision.allowed:
            reason = "; ".join(decision.reasons)
            entry_id = log.blocked(f"Action blocked: {decision.reasons[0]}", reason)
            logger.warning(
                "blocked: policy=%s agent=%s %d rule(s) failed: %s (log=%s)",
                policy.id,
                request.agent_id,
                len(decision.reasons),
                reason,
                entry_id,
            )
            return EnforcementResult(
                outcome=Outcome.POLICY_VIOLATION, log_id=entry_id, reason=reason
            )

        # ── 4. Executability ──────────────────────────────────────
        if not policy.agent_wallet_id:
            entry_id = log.blocked(
                f"Action blocked: {WALLET_NOT_CONFIGURED}",
                f"{WALLET_NOT_CONFIGURED}: policy does not have an associated agent wallet",
            )
            logger.warning("blocked: policy %s has no agent wallet (log=%s)", policy.id, entry_id)
            return EnforcementResult(
                outcome=Outcome.PRECONDITION_FAILED, log_id=entry_id, reason=WALLET_NOT_CONFIGURED
            )

        # ── 5. Execute ────────────────────────────────────────────
        logger.info(
            "approved: policy=%s %s USD %s -> %s via %s (spent today %s of %s)",
            policy.id,
            format_usd(request.amount_usd),
            request.token_in,
            request.token_out,
            request.protocol,
            spent,
            policy.daily_budget_usd,
        )
        try:
            receipt = self.executor.execute_swap(
                policy.agent_wallet_id,
                request.token_in,
                request.token_out,
                request.amount_usd,
            )
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            entry_id = log.blocked(
                "Action blocked: trade execution failed",
                f"trade execution failed: {message}",
            )
            logger.warning(
                "execution failed: policy=%s error=%s (log=%s)", policy.id, message, entry_id
            )
            return EnforcementResult(
                outcome=Outcome.EXECUTION_FAILED,
                log_id=entry_id,
                reason=f"trade execution failed: {message}",
            )

        tx_id = receipt.tx_id or self._pending_tx_id
        entry_id = log.allowed(
            f"Swap executed: {format_usd(request.amount_usd)} USD "
            f"{request.token_in} → {request.token_out}",
            ALL_CHECKS_PASSED,
        )
        logger.info("executed: policy=%s tx=%s (log=%s)", policy.id, tx_id, entry_id)
        return EnforcementResult(outcome=Outcome.APPROVED, log_id=entry_id, tx_id=tx_id)


class _Logger:
    """Writes the single action log entry for one request."""

    def __init__(self, ledger: LedgerSession, request: ActionRequest):
        self._ledger = ledger
        self._request = request
        self._written = False

    def _write(self, status: ActionStatus, summary: str, reason: str) -> str:
        if self._written:
            raise RuntimeError("action log entry already written for this request")
        entry = self._ledger.append_log(
            LogDraft(
                policy_id=self._request.policy_id,
                agent_id=self._request.agent_id,
                status=status,
                summary=summary,
                reason=reason,
                raw_request=self._request.to_json(),
                source=self._request.source,
            )
        )
        self._written = True
        return entry.id

    def allowed(self, summary: str, reason: str) -> str:
        return self._write(ActionStatus.ALLOWED, summary, reason)

    def blocked(self, summary: str, reason: str) -> str:
        return self._write(ActionStatus.BLOCKED, summary, reason)


def enforce_payload(
    enforcer: Enforcer,
    payload: dict,
    *,
    default_source: str,
) -> EnforcementResult:
    """Parse a wire request and enforce it.  Raises InvalidRequest on bad input."""
    request = ActionRequest.from_payload(payload, default_source=default_source)
    return enforcer.execute(request)
