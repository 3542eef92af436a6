"""Today's approved spend, derived from the action log.

There is no stored running total. Spend is recomputed from ALLOWED log entries
every time, so the log stays the only ledger and can never drift from a
counter.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, time, timedelta
from decimal import Decimal, localcontext
from typing import Iterable

from core.models import MAX_USD, MONEY_CONTEXT, ActionLogEntry, ActionStatus, as_utc, to_decimal
from core.store import LedgerSession

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


def utc_day_bounds(as_of: datetime) -> tuple[datetime, datetime]:
    """First and last microsecond of *as_of*'s UTC calendar day."""
    moment = as_utc(as_of)
    start = datetime.combine(moment.date(), time.min, tzinfo=moment.tzinfo)
    end = start + timedelta(days=1) - timedelta(microseconds=1)
    return start, end


def entry_amount(entry: ActionLogEntry) -> Decimal:
    """``amountUsd`` recorded in *entry*'s raw request; 0 when absent or unusable.

    Amounts at or above ``MAX_USD`` count as ``MAX_USD``.

    Only the amount is read, so rows written by older clients that lack other
    request fields still count toward spend.
    """
    try:
        payload = json.loads(entry.raw_request)
        amount = to_decimal(payload["amountUsd"], "amountUsd")
    except (ValueError, KeyError, TypeError) as exc:
        logger.debug("skipping unreadable raw request in log %s: %s", entry.id, exc)
        return _ZERO
    if amount <= 0:
        logger.debug("skipping non-positive amount %s in log %s", amount, entry.id)
        return _ZERO
    if amount >= MAX_USD:
        # Larger than any budget, so the cap blocks the rest of the day just the same.
        logger.warning(
            "log %s records out-of-range amount %s; counting %s", entry.id, amount, MAX_USD
        )
        return MAX_USD
    return amount


def sum_spend(entries: Iterable[ActionLogEntry], as_of: datetime) -> Decimal:
    """Sum ALLOWED spend over the UTC day containing *as_of*.

    Entries outside the window or with another status are ignored, so the
    result does not depend on how the caller pre-filtered or ordered them.
    """
    start, end = utc_day_bounds(as_of)
    total = _ZERO
    with localcontext(MONEY_CONTEXT):
        for entry in entries:
            if entry.status is not ActionStatus.ALLOWED:
                continue
            if not start <= entry.created_at <= end:
                continue
            total += entry_amount(entry)
    return total


class SpendAggregator:
    """Reads a ledger session and reports spend for one policy and day."""

    def __init__(self, ledger: LedgerSession):
        self.ledger = ledger

    def spend_today(self, policy_id: str, as_of: datetime) -> Decimal:
        start, end = utc_day_bounds(as_of)
        entries = self.ledger.query_logs(policy_id, ActionStatus.ALLOWED, start, end)
        total = sum_spend(entries, as_of)
        logger.debug(
            "policy %s spent %s USD across %d allowed entries on %s",
            policy_id,
            total,
            len(entries),
            start.date().isoformat(),
        )
        return total
