"""Pure policy evaluation.  Every agent action request passes through here.

Rules are independent checks run in a fixed order.  Each one appends the
reasons it fails for, and nothing short-circuits, so a rejected request
reports every rule it breaks at once.
"""

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, localcontext
from typing import Callable, Iterable

from core.models import MONEY_CONTEXT, ActionRequest, Decision, Policy, as_utc, format_usd

_CENTS = Decimal("0.01")


class PolicyViolation(Exception):
    """Raised by ``PolicyEngine.check`` when a request breaks one or more rules."""

    def __init__(self, reasons: Iterable[str]):
        self.reasons = tuple(reasons)
        super().__init__("; ".join(self.reasons))


def _render_allowed(values: frozenset[str]) -> str:
    return ", ".join(sorted(values)) if values else "(none)"


# ── rules ─────────────────────────────────────────────────────────────────────
#
# Each rule receives (policy, spent_today_usd, request, now) and returns the
# reasons it fails for; an empty list means the rule passes.

Rule = Callable[[Policy, Decimal, ActionRequest, datetime], list[str]]


def check_agent(policy: Policy, spent: Decimal, request: ActionRequest, now: datetime) -> list[str]:
    if request.agent_id != policy.agent_id:
        return [f"agent ID mismatch: expected {policy.agent_id}, got {request.agent_id}"]
    return []


def check_expiry(policy: Policy, spent: Decimal, request: ActionRequest, now: datetime) -> list[str]:
    if as_utc(now) >= policy.expires_at:
        return [f"policy expired at {policy.expires_at.isoformat()}"]
    return []


def check_budget(policy: Policy, spent: Decimal, request: ActionRequest, now: datetime) -> list[str]:
    # Remaining may already be negative; it is reported as is.
    with localcontext(MONEY_CONTEXT):
        remaining = policy.daily_budget_usd - spent
        if request.amount_usd <= remaining:
            return []
        shown = remaining.quantize(_CENTS, rounding=ROUND_HALF_UP)
    return [
        f"insufficient daily budget: requested {format_usd(request.amount_usd)}, "
        f"remaining {shown}"
    ]


def check_protocol(policy: Policy, spent: Decimal, request: ActionRequest, now: datetime) -> list[str]:
    if request.protocol not in policy.allowed_protocols:
        return [
            f"protocol not allowed: {request.protocol}. "
            f"Allowed: {_render_allowed(policy.allowed_protocols)}"
        ]
    return []


def check_action(policy: Policy, spent: Decimal, request: ActionRequest, now: datetime) -> list[str]:
    if request.action not in policy.allowed_actions:
        return [
            f"action not allowed: {request.action}. "
            f"Allowed: {_render_allowed(policy.allowed_actions)}"
        ]
    return []


def check_tokens(policy: Policy, spent: Decimal, request: ActionRequest, now: datetime) -> list[str]:
    reasons = []
    for side, token in (("tokenIn", request.token_in), ("tokenOut", request.token_out)):
        if token not in policy.allowed_tokens:
            reasons.append(
                f"token not allowed: {token} ({side}). "
                f"Allowed: {_render_allowed(policy.allowed_tokens)}"
            )
    return reasons


RULES: tuple[Rule, ...] = (
    check_agent,
    check_expiry,
    check_budget,
    check_protocol,
    check_action,
    check_tokens,
)


def evaluate(
    policy: Policy,
    spent_today_usd: Decimal,
    request: ActionRequest,
    now: datetime,
    rules: tuple[Rule, ...] = RULES,
) -> Decision:
    """Decide *request* against *policy*.  No I/O, no clock, no mutation."""
    reasons: list[str] = []
    for rule in rules:
        reasons.extend(rule(policy, spent_today_usd, request, now))
    return Decision.from_reasons(reasons)


class PolicyEngine:
    """Exception-style wrapper around ``evaluate`` for callers that prefer raising."""

    def __init__(self, rules: tuple[Rule, ...] = RULES):
        self.rules = rules

    def evaluate(
        self,
        policy: Policy,
        spent_today_usd: Decimal,
        request: ActionRequest,
        now: datetime,
    ) -> Decision:
        return evaluate(policy, spent_today_usd, request, now, rules=self.rules)

    def check(
        self,
        policy: Policy,
        spent_today_usd: Decimal,
        request: ActionRequest,
        now: datetime,
    ) -> None:
        """Raise PolicyViolation listing every broken rule; return if permitted."""
        decision = self.evaluate(policy, spent_today_usd, request, now)
        if not decision.allowed:
            raise PolicyViolation(decision.reasons)
