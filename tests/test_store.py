"""Tests for core/store.py — every backend appends, queries and serializes per policy."""

from __future__ import annotations

import threading
import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from core.models import ActionLogEntry, ActionStatus, LogDraft, Policy
from core.store import (
    InMemoryStore,
    JsonFileStore,
    LedgerStore,
    PolicyLocks,
    SqliteStore,
    StoreError,
    make_store,
)

_T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class _Clock:
    """Settable clock for deterministic created_at stamps."""

    def __init__(self, now: datetime = _T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _policy(policy_id: str = "p1", owner: str = "owner", created_at: datetime = _T0) -> Policy:
    return Policy(
        id=policy_id,
        owner_id=owner,
        agent_id="agent-1",
        daily_budget_usd=Decimal("100"),
        allowed_tokens={"USDC", "WETH"},
        allowed_protocols={"uniswap_v3"},
        allowed_actions={"swap"},
        expires_at=created_at + timedelta(days=1),
        created_at=created_at,
    )


def _draft(policy_id: str = "p1", status: ActionStatus = ActionStatus.ALLOWED) -> LogDraft:
    return LogDraft(
        policy_id=policy_id,
        agent_id="agent-1",
        status=status,
        summary="s",
        reason="r",
        raw_request='{"amountUsd": "1"}',
        source="test",
    )


@pytest.fixture(params=["memory", "json", "sqlite"])
def clock_and_store(request, tmp_path: Path) -> tuple[_Clock, LedgerStore]:
    clock = _Clock()
    if request.param == "memory":
        return clock, InMemoryStore(clock=clock)
    if request.param == "json":
        return clock, JsonFileStore(tmp_path / "ledger.json", clock=clock)
    return clock, SqliteStore(tmp_path / "ledger.db", clock=clock)


class TestPolicies:
    def test_missing_policy_is_none(self, clock_and_store) -> None:
        _, store = clock_and_store
        assert store.get_policy("nope") is None

    def test_save_then_get(self, clock_and_store) -> None:
        _, store = clock_and_store
        store.save_policy(_policy())
        assert store.get_policy("p1") == _policy()

    def test_save_overwrites(self, clock_and_store) -> None:
        _, store = clock_and_store
        store.save_policy(_policy())
        store.save_policy(replace(_policy(), agent_wallet_id="0xwallet"))
        assert store.get_policy("p1").agent_wallet_id == "0xwallet"

    def test_list_by_owner_newest_first(self, clock_and_store) -> None:
        _, store = clock_and_store
        store.save_policy(_policy("old", created_at=_T0))
        store.save_policy(_policy("new", created_at=_T0 + timedelta(hours=1)))
        store.save_policy(_policy("other", owner="someone-else"))
        assert [p.id for p in store.list_policies("owner")] == ["new", "old"]
        assert len(store.list_policies()) == 3


class TestActionLog:
    def test_append_assigns_id_and_timestamp(self, clock_and_store) -> None:
        _, store = clock_and_store
        entry = store.append_log(_draft())
        assert isinstance(entry, ActionLogEntry)
        assert entry.id
        assert entry.created_at == _T0

    def test_created_at_never_goes_backwards(self, clock_and_store) -> None:
        clock, store = clock_and_store
        first = store.append_log(_draft())
        clock.now = _T0 - timedelta(minutes=5)
        second = store.append_log(_draft())
        assert second.created_at >= first.created_at

    def test_query_filters_policy_status_and_window(self, clock_and_store) -> None:
        clock, store = clock_and_store
        inside = store.append_log(_draft())
        store.append_log(_draft(status=ActionStatus.BLOCKED))
        store.append_log(_draft(policy_id="p2"))
        clock.now = _T0 + timedelta(days=1)
        store.append_log(_draft())

        found = store.query_logs("p1", ActionStatus.ALLOWED, _T0, _T0 + timedelta(hours=1))
        assert [e.id for e in found] == [inside.id]

    def test_query_bounds_are_inclusive(self, clock_and_store) -> None:
        _, store = clock_and_store
        entry = store.append_log(_draft())
        assert store.query_logs("p1", ActionStatus.ALLOWED, _T0, _T0) == [entry]

    def test_list_logs_newest_first(self, clock_and_store) -> None:
        clock, store = clock_and_store
        a = store.append_log(_draft())
        clock.now = _T0 + timedelta(seconds=1)
        b = store.append_log(_draft())
        assert [e.id for e in store.list_logs("p1")] == [b.id, a.id]

    def test_session_exposes_reads_and_writes(self, clock_and_store) -> None:
        _, store = clock_and_store
        store.save_policy(_policy())
        with store.session("p1") as ledger:
            assert ledger.get_policy("p1") is not None
            entry = ledger.append_log(_draft())
            assert ledger.query_logs("p1", ActionStatus.ALLOWED, _T0, _T0) == [entry]
        assert store.list_logs("p1") == [entry]


class TestPolicyLocks:
    def test_lock_released_and_forgotten(self) -> None:
        locks = PolicyLocks()
        with locks.hold("p1"):
            assert len(locks) == 1
        assert len(locks) == 0

    def test_same_policy_is_mutually_exclusive(self) -> None:
        locks = PolicyLocks()
        inside = 0
        peak = 0
        guard = threading.Lock()

        def worker() -> None:
            nonlocal inside, peak
            with locks.hold("p1"):
                with guard:
                    inside += 1
                    peak = max(peak, inside)
                time.sleep(0.01)
                with guard:
                    inside -= 1

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert peak == 1
        assert len(locks) == 0

    def test_different_policies_do_not_block_each_other(self) -> None:
        locks = PolicyLocks()
        entered = threading.Event()

        def other() -> None:
            with locks.hold("p2"):
                entered.set()

        with locks.hold("p1"):
            t = threading.Thread(target=other)
            t.start()
            assert entered.wait(timeout=2.0)
            t.join()


class TestJsonFileStore:
    def test_reload_from_disk(self, tmp_path: Path) -> None:
        path = tmp_path / "ledger.json"
        store = JsonFileStore(path, clock=_Clock())
        store.save_policy(_policy())
        entry = store.append_log(_draft())

        reopened = JsonFileStore(path, clock=_Clock(_T0 - timedelta(days=1)))
        assert reopened.get_policy("p1") == _policy()
        assert reopened.list_logs("p1") == [entry]
        # Monotonic stamps survive a restart with a lagging clock.
        assert reopened.append_log(_draft()).created_at >= entry.created_at

    def test_corrupt_file_raises_store_error(self, tmp_path: Path) -> None:
        path = tmp_path / "ledger.json"
        path.write_text("{broken")
        with pytest.raises(StoreError, match="cannot read ledger"):
            JsonFileStore(path)


class TestSqliteStore:
    def test_data_visible_to_second_instance(self, tmp_path: Path) -> None:
        path = tmp_path / "ledger.db"
        first = SqliteStore(path, clock=_Clock())
        first.save_policy(_policy())
        entry = first.append_log(_draft())

        second = SqliteStore(path, clock=_Clock())
        assert second.get_policy("p1") == _policy()
        assert second.list_logs("p1") == [entry]

    def test_failed_session_rolls_back(self, tmp_path: Path) -> None:
        store = SqliteStore(tmp_path / "ledger.db", clock=_Clock())
        with pytest.raises(RuntimeError):
            with store.session("p1") as ledger:
                ledger.append_log(_draft())
                raise RuntimeError("abort")
        assert store.list_logs("p1") == []


class TestMakeStore:
    def test_memory_needs_no_path(self) -> None:
        assert isinstance(make_store("memory"), InMemoryStore)

    def test_file_backends_need_path(self) -> None:
        with pytest.raises(ValueError, match="needs a path"):
            make_store("sqlite")

    def test_unknown_backend(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="unknown store backend"):
            make_store("redis", tmp_path / "x")

    def test_builds_sqlite(self, tmp_path: Path) -> None:
        assert isinstance(make_store("sqlite", tmp_path / "l.db"), SqliteStore)
