"""Policy, action request and action log records shared by the enforcement core."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Context, Decimal, InvalidOperation, localcontext
from enum import Enum
from typing import Any, Iterable

from core.config import DEFAULT_SOURCE
from core.network_config import USD_DECIMALS


class InvalidRequest(ValueError):
    """Raised when a request or policy payload is missing fields or malformed."""


class ActionStatus(Enum):
    ALLOWED = "ALLOWED"
    BLOCKED = "BLOCKED"


class Outcome(Enum):
    APPROVED = "approved"
    POLICY_VIOLATION = "policy_violation"
    PRECONDITION_FAILED = "precondition_failed"
    EXECUTION_FAILED = "execution_failed"


# Status classes the HTTP layer answers with, per outcome.
_HTTP_STATUS = {
    Outcome.APPROVED: 200,
    Outcome.POLICY_VIOLATION: 403,
    Outcome.PRECONDITION_FAILED: 403,
    Outcome.EXECUTION_FAILED: 502,
}


def to_decimal(value: Any, name: str) -> Decimal:
    """Coerce a JSON number / string into Decimal without float artefacts."""
    if isinstance(value, bool) or value is None:
        raise InvalidRequest(f"{name} must be a number, got {value!r}")
    if isinstance(value, float):
        value = repr(value)
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise InvalidRequest(f"{name} must be a number, got {value!r}") from exc
    if not amount.is_finite():
        raise InvalidRequest(f"{name} must be finite, got {value!r}")
    return amount


# Money amounts are whole base units (USD_DECIMALS places) below MAX_USD, so
# every sum and difference the ledger takes is exact inside MONEY_CONTEXT.
MAX_USD = Decimal(10) ** 15
MONEY_CONTEXT = Context(prec=60)
_USD_QUANTUM = Decimal(1).scaleb(-USD_DECIMALS)


def to_usd(value: Any, name: str) -> Decimal:
    """``to_decimal`` restricted to amounts the ledger can add up exactly."""
    amount = to_decimal(value, name)
    with localcontext(MONEY_CONTEXT):
        if abs(amount) >= MAX_USD:
            raise InvalidRequest(f"{name} must be below {MAX_USD:f} USD, got {value!r}")
        if amount.quantize(_USD_QUANTUM) != amount:
            raise InvalidRequest(
                f"{name} must have at most {USD_DECIMALS} decimal places, got {value!r}"
            )
    return amount


def as_utc(moment: datetime) -> datetime:
    """Naive datetimes are taken to already be UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def format_usd(amount: Decimal) -> str:
    """Render an amount without exponent or trailing zeros (60.0 → '60')."""
    return format(amount.normalize(), "f")


@dataclass(frozen=True)
class Policy:
    """Delegated authority granted by ``owner_id`` to exactly one agent."""

    id: str
    owner_id: str
    agent_id: str
    daily_budget_usd: Decimal
    allowed_tokens: frozenset[str]
    allowed_protocols: frozenset[str]
    allowed_actions: frozenset[str]
    expires_at: datetime
    created_at: datetime
    agent_wallet_id: str | None = None

    def __post_init__(self) -> None:
        for name in ("allowed_tokens", "allowed_protocols", "allowed_actions"):
            value = getattr(self, name)
            if value is None:
                raise ValueError(f"{name} must not be None (use an empty set)")
            object.__setattr__(self, name, frozenset(value))
        budget = to_usd(self.daily_budget_usd, "daily_budget_usd")
        if budget < 0:
            raise ValueError(f"daily_budget_usd must be >= 0, got {budget}")
        object.__setattr__(self, "daily_budget_usd", budget)
        object.__setattr__(self, "expires_at", as_utc(self.expires_at))
        object.__setattr__(self, "created_at", as_utc(self.created_at))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "agentId": self.agent_id,
            "dailyBudgetUsd": str(self.daily_budget_usd),
            "allowedTokens": sorted(self.allowed_tokens),
            "allowedProtocols": sorted(self.allowed_protocols),
            "allowedActions": sorted(self.allowed_actions),
            "agentWalletId": self.agent_wallet_id,
            "expiresAt": self.expires_at.isoformat(),
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Policy:
        return cls(
            id=data["id"],
            owner_id=data["ownerId"],
            agent_id=data["agentId"],
            daily_budget_usd=to_decimal(data["dailyBudgetUsd"], "dailyBudgetUsd"),
            allowed_tokens=frozenset(data["allowedTokens"]),
            allowed_protocols=frozenset(data["allowedProtocols"]),
            allowed_actions=frozenset(data["allowedActions"]),
            agent_wallet_id=data.get("agentWalletId"),
            expires_at=datetime.fromisoformat(data["expiresAt"]),
            created_at=datetime.fromisoformat(data["createdAt"]),
        )


_REQUEST_FIELDS = ("policyId", "agentId", "action", "protocol", "tokenIn", "tokenOut")


@dataclass(frozen=True)
class ActionRequest:
    """An agent's request to perform one action. Never persisted as such."""

    policy_id: str
    agent_id: str
    action: str
    protocol: str
    token_in: str
    token_out: str
    amount_usd: Decimal
    source: str = DEFAULT_SOURCE

    def __post_init__(self) -> None:
        amount = to_usd(self.amount_usd, "amountUsd")
        if amount <= 0:
            raise InvalidRequest(f"amountUsd must be positive, got {amount}")
        object.__setattr__(self, "amount_usd", amount)
        if not self.source:
            object.__setattr__(self, "source", DEFAULT_SOURCE)

    def to_payload(self) -> dict[str, Any]:
        return {
            "policyId": self.policy_id,
            "agentId": self.agent_id,
            "source": self.source,
            "action": self.action,
            "amountUsd": str(self.amount_usd),
            "protocol": self.protocol,
            "tokenIn": self.token_in,
            "tokenOut": self.token_out,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), sort_keys=True)

    @classmethod
    def from_payload(
        cls, payload: dict[str, Any], *, default_source: str = DEFAULT_SOURCE
    ) -> ActionRequest:
        if not isinstance(payload, dict):
            raise InvalidRequest(f"request must be a JSON object, got {type(payload).__name__}")
        missing = [name for name in _REQUEST_FIELDS if not isinstance(payload.get(name), str)]
        if "amountUsd" not in payload:
            missing.append("amountUsd")
        if missing:
            raise InvalidRequest(f"missing or invalid fields: {', '.join(missing)}")
        return cls(
            policy_id=payload["policyId"],
            agent_id=payload["agentId"],
            action=payload["action"],
            protocol=payload["protocol"],
            token_in=payload["tokenIn"],
            token_out=payload["tokenOut"],
            amount_usd=to_decimal(payload["amountUsd"], "amountUsd"),
            source=payload.get("source") or default_source,
        )

    @classmethod
    def from_json(cls, raw: str) -> ActionRequest:
        try:
            payload = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as exc:
            raise InvalidRequest(f"request is not valid JSON: {exc}") from exc
        return cls.from_payload(payload)


@dataclass(frozen=True)
class LogDraft:
    """An action log entry before the store assigns ``id`` and ``created_at``."""

    policy_id: str
    agent_id: str
    status: ActionStatus
    summary: str
    reason: str
    raw_request: str
    source: str


@dataclass(frozen=True)
class ActionLogEntry:
    id: str
    policy_id: str
    agent_id: str
    status: ActionStatus
    summary: str
    reason: str
    raw_request: str
    source: str
    created_at: datetime

    @classmethod
    def from_draft(cls, draft: LogDraft, entry_id: str, created_at: datetime) -> ActionLogEntry:
        return cls(
            id=entry_id,
            policy_id=draft.policy_id,
            agent_id=draft.agent_id,
            status=draft.status,
            summary=draft.summary,
            reason=draft.reason,
            raw_request=draft.raw_request,
            source=draft.source,
            created_at=as_utc(created_at),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "policyId": self.policy_id,
            "agentId": self.agent_id,
            "status": self.status.value,
            "summary": self.summary,
            "reason": self.reason,
            "rawRequest": self.raw_request,
            "source": self.source,
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ActionLogEntry:
        return cls(
            id=data["id"],
            policy_id=data["policyId"],
            agent_id=data["agentId"],
            status=ActionStatus(data["status"]),
            summary=data["summary"],
            reason=data["reason"],
            raw_request=data["rawRequest"],
            source=data["source"],
            created_at=as_utc(datetime.fromisoformat(data["createdAt"])),
        )


@dataclass(frozen=True)
class Decision:
    reasons: tuple[str, ...] = field(default_factory=tuple)

    @property
    def allowed(self) -> bool:
        return not self.reasons

    @classmethod
    def from_reasons(cls, reasons: Iterable[str]) -> Decision:
        return cls(reasons=tuple(reasons))


@dataclass(frozen=True)
class EnforcementResult:
    """What the orchestrator hands back to the caller for one request."""

    outcome: Outcome
    log_id: str
    tx_id: str | None = None
    reason: str | None = None

    @property
    def allowed(self) -> bool:
        return self.outcome is Outcome.APPROVED

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self.outcome]

    def to_response(self) -> dict[str, Any]:
        if self.allowed:
            return {"allowed": True, "txId": self.tx_id, "logId": self.log_id}
        return {"allowed": False, "reason": self.reason, "logId": self.log_id}
