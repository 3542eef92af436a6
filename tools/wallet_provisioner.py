"""Custody wallet provisioning for agent policies.  Policy-unaware — caller decides when."""

from __future__ import annotations

import hashlib
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict

import httpx

logger = logging.getLogger(__name__)

_MIN_NAME = 2
_MAX_NAME = 36


class WalletProvisioningError(Exception):
    """A custody API call (account creation or balance listing) failed."""


@dataclass(frozen=True)
class AgentWallet:
    id: str
    address: str


@dataclass(frozen=True)
class TokenBalance:
    contract_address: str
    symbol: str
    name: str
    amount: str  # human-readable, trailing zeros trimmed
    raw_amount: str
    decimals: int
    network: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "contractAddress": self.contract_address,
            "symbol": self.symbol,
            "name": self.name,
            "amount": self.amount,
            "rawAmount": self.raw_amount,
            "decimals": self.decimals,
            "network": self.network,
        }


def sanitize_account_name(name: str) -> str:
    """Coerce *name* into a custody account name: 2-36 chars of ``[A-Za-z0-9-]``."""
    sanitized = re.sub(r"[^a-zA-Z0-9-]", "-", name)
    sanitized = re.sub(r"-+", "-", sanitized)
    sanitized = sanitized.strip("-")
    if len(sanitized) > _MAX_NAME:
        sanitized = sanitized[:_MAX_NAME].rstrip("-")
    if len(sanitized) < _MIN_NAME:
        sanitized = f"agent-{sanitized or 'wallet'}"
    return sanitized


def format_units(raw: int, decimals: int) -> str:
    """Render integer base units as a decimal string (1500000, 6 → '1.5')."""
    whole, frac = divmod(raw, 10**decimals) if decimals else (raw, 0)
    if not frac:
        return str(whole)
    return f"{whole}.{str(frac).zfill(decimals).rstrip('0')}"


class WalletProvisioner(ABC):
    @abstractmethod
    def create_wallet(self, label: str) -> AgentWallet:
        """Create a fresh custody account labelled after *label*."""
        raise NotImplementedError

    @abstractmethod
    def list_balances(self, address: str) -> list[TokenBalance]:
        """Token balances held by the custody account at *address*."""
        raise NotImplementedError

    def close(self) -> None:
        """Release transport resources; nothing to do by default."""


class HttpWalletProvisioner(WalletProvisioner):
    """Creates and inspects server-side EVM accounts through a custody API."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        *,
        network: str = "base-sepolia",
        timeout_s: float = 20.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._network = network
        headers = {"x-api-key": api_key} if api_key else {}
        self._client = client or httpx.Client(headers=headers, timeout=timeout_s)

    def close(self) -> None:
        self._client.close()

    def create_wallet(self, label: str) -> AgentWallet:
        # The custody API may hand back an existing account for a reused
        # name, so every request carries a millisecond timestamp.
        unique = f"{label}-{int(time.time() * 1000)}"
        name = sanitize_account_name(unique)
        logger.info("creating custody account %s (label=%s)", name, label)
        try:
            resp = self._client.post(f"{self._base_url}/accounts", json={"name": name})
        except httpx.HTTPError as exc:
            raise WalletProvisioningError(f"Failed to create account: {exc}") from exc
        if resp.status_code not in (200, 201):
            raise WalletProvisioningError(
                f"Failed to create account: {resp.status_code} {resp.text}"
            )
        try:
            body = resp.json()
        except ValueError as exc:
            raise WalletProvisioningError(
                f"Failed to create account: malformed response: {exc}"
            ) from exc
        address = body.get("address") if isinstance(body, dict) else None
        if not address:
            raise WalletProvisioningError("Failed to create account: response missing address")
        logger.info("created custody account %s with name %s", address, name)
        return AgentWallet(id=address, address=address)

    def list_balances(self, address: str) -> list[TokenBalance]:
        try:
            resp = self._client.get(
                f"{self._base_url}/accounts/{address}/balances",
                params={"network": self._network},
            )
        except httpx.HTTPError as exc:
            raise WalletProvisioningError(f"Failed to fetch balances: {exc}") from exc
        if resp.status_code != 200:
            raise WalletProvisioningError(
                f"Failed to fetch balances: {resp.status_code} {resp.text}"
            )
        try:
            rows = resp.json()["balances"]
            balances = [self._parse_balance(row) for row in rows]
        except (ValueError, KeyError, TypeError) as exc:
            raise WalletProvisioningError(
                f"Failed to fetch balances: malformed response: {exc}"
            ) from exc
        logger.info("custody account %s holds %d token balance(s)", address, len(balances))
        return balances

    def _parse_balance(self, row: Dict[str, Any]) -> TokenBalance:
        token = row["token"]
        raw = int(row["amount"]["amount"])
        decimals = int(row["amount"]["decimals"])
        return TokenBalance(
            contract_address=token["contractAddress"],
            symbol=token.get("symbol") or "UNKNOWN",
            name=token.get("name") or "Unknown Token",
            amount=format_units(raw, decimals),
            raw_amount=str(raw),
            decimals=decimals,
            network=token.get("network") or self._network,
        )


class MockWalletProvisioner(WalletProvisioner):
    """Deterministic fake addresses derived from the label."""

    def __init__(self) -> None:
        self.created: list[str] = []
        self.balances: dict[str, list[TokenBalance]] = {}

    def create_wallet(self, label: str) -> AgentWallet:
        name = sanitize_account_name(label)
        self.created.append(name)
        address = "0x" + hashlib.sha256(name.encode()).hexdigest()[:40]
        logger.info("MockWalletProvisioner: %s -> %s", name, address)
        return AgentWallet(id=address, address=address)

    def list_balances(self, address: str) -> list[TokenBalance]:
        return list(self.balances.get(address, []))
