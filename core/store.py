"""Policy and action-log persistence with a per-policy serialization boundary.

Three backends share one interface:

- ``InMemoryStore``: process-local, per-policy locks with a reference-counted
  lifecycle.
- ``JsonFileStore``: ``InMemoryStore`` plus an atomically rewritten JSON
  snapshot; single process only.
- ``SqliteStore``: ``BEGIN IMMEDIATE`` transactions, safe across processes
  sharing one database file.

``session(policy_id)`` is the boundary the enforcer runs its
aggregate → decide → execute → log sequence in. At most one session per
policy is open at a time, so two requests can never both spend the same
remaining budget.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import tempfile
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator

from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from core.models import ActionLogEntry, ActionStatus, LogDraft, Policy, as_utc

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class StoreError(Exception):
    """Raised when the ledger cannot be read or written."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ── interfaces ────────────────────────────────────────────────────────────────


class LedgerSession(ABC):
    """Reads and writes available inside a per-policy session."""

    @abstractmethod
    def get_policy(self, policy_id: str) -> Policy | None:
        raise NotImplementedError

    @abstractmethod
    def query_logs(
        self,
        policy_id: str,
        status: ActionStatus,
        start: datetime,
        end: datetime,
    ) -> list[ActionLogEntry]:
        """Entries for *policy_id* with *status* and ``start <= created_at <= end``."""
        raise NotImplementedError

    @abstractmethod
    def append_log(self, draft: LogDraft) -> ActionLogEntry:
        """Persist *draft*, assigning ``id`` and a monotonic ``created_at``."""
        raise NotImplementedError


class LedgerStore(LedgerSession):
    @abstractmethod
    def save_policy(self, policy: Policy) -> Policy:
        raise NotImplementedError

    @abstractmethod
    def list_policies(self, owner_id: str | None = None) -> list[Policy]:
        """Policies newest first, optionally restricted to one owner."""
        raise NotImplementedError

    @abstractmethod
    def list_logs(self, policy_id: str) -> list[ActionLogEntry]:
        """All entries for *policy_id*, newest first."""
        raise NotImplementedError

    @abstractmethod
    def session(self, policy_id: str) -> Any:
        """Context manager yielding a ``LedgerSession`` exclusive to *policy_id*."""
        raise NotImplementedError


# ── in-process backends ───────────────────────────────────────────────────────


class PolicyLocks:
    """Per-policy mutexes that exist only while someone holds or awaits them."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._slots: dict[str, list[Any]] = {}  # policy_id -> [lock, holders]

    @contextmanager
    def hold(self, policy_id: str) -> Iterator[None]:
        with self._guard:
            slot = self._slots.setdefault(policy_id, [threading.Lock(), 0])
            slot[1] += 1
        slot[0].acquire()
        try:
            yield
        finally:
            slot[0].release()
            with self._guard:
                slot[1] -= 1
                if slot[1] == 0:
                    del self._slots[policy_id]

    def __len__(self) -> int:
        with self._guard:
            return len(self._slots)


class InMemoryStore(LedgerStore):
    """Dict-backed store. All reads return copies of immutable records."""

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._data_lock = threading.RLock()
        self._policies: dict[str, Policy] = {}
        self._logs: list[ActionLogEntry] = []
        self._last_stamp: datetime | None = None
        self.locks = PolicyLocks()

    # ── policies ──────────────────────────────────────────────────

    def get_policy(self, policy_id: str) -> Policy | None:
        with self._data_lock:
            return self._policies.get(policy_id)

    def save_policy(self, policy: Policy) -> Policy:
        with self._data_lock:
            self._policies[policy.id] = policy
            self._persist()
        return policy

    def list_policies(self, owner_id: str | None = None) -> list[Policy]:
        with self._data_lock:
            found = [
                p for p in self._policies.values() if owner_id is None or p.owner_id == owner_id
            ]
        return sorted(found, key=lambda p: p.created_at, reverse=True)

    # ── action log ────────────────────────────────────────────────

    def _stamp(self) -> datetime:
        now = as_utc(self._clock())
        if self._last_stamp is not None and now < self._last_stamp:
            now = self._last_stamp
        self._last_stamp = now
        return now

    def append_log(self, draft: LogDraft) -> ActionLogEntry:
        with self._data_lock:
            entry = ActionLogEntry.from_draft(draft, _new_id(), self._stamp())
            self._logs.append(entry)
            self._persist()
        return entry

    def query_logs(
        self,
        policy_id: str,
        status: ActionStatus,
        start: datetime,
        end: datetime,
    ) -> list[ActionLogEntry]:
        start, end = as_utc(start), as_utc(end)
        with self._data_lock:
            return [
                e
                for e in self._logs
                if e.policy_id == policy_id and e.status is status and start <= e.created_at <= end
            ]

    def list_logs(self, policy_id: str) -> list[ActionLogEntry]:
        with self._data_lock:
            found = [e for e in self._logs if e.policy_id == policy_id]
        return list(reversed(found))

    @contextmanager
    def session(self, policy_id: str) -> Iterator[LedgerSession]:
        with self.locks.hold(policy_id):
            yield self

    def _persist(self) -> None:
        """Hook for durable subclasses; called with the data lock held."""


class JsonFileStore(InMemoryStore):
    """In-memory store mirrored to a JSON file with atomic writes.

    Every write rewrites the whole snapshot via a temp file + ``os.replace``
    so a crash never leaves a half-written ledger behind.
    """

    def __init__(self, path: Path | str, clock: Clock = utc_now) -> None:
        super().__init__(clock=clock)
        self.path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            with open(self.path) as fh:
                state = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            raise StoreError(f"cannot read ledger {self.path}: {exc}") from exc
        for raw in state.get("policies", []):
            policy = Policy.from_dict(raw)
            self._policies[policy.id] = policy
        self._logs = [ActionLogEntry.from_dict(raw) for raw in state.get("logs", [])]
        if self._logs:
            self._last_stamp = max(e.created_at for e in self._logs)
        logger.info(
            "loaded ledger %s: %d policies, %d log entries",
            self.path,
            len(self._policies),
            len(self._logs),
        )

    def _persist(self) -> None:
        state = {
            "policies": [p.to_dict() for p in self._policies.values()],
            "logs": [e.to_dict() for e in self._logs],
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as fh:
                json.dump(state, fh, indent=2)
            os.replace(tmp, self.path)
        except Exception:
            os.unlink(tmp)
            raise


# ── sqlite ────────────────────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS policies (
  id          TEXT PRIMARY KEY,
  owner_id    TEXT NOT NULL,
  created_at  TEXT NOT NULL,
  body        TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_policies_owner ON policies(owner_id, created_at);
CREATE TABLE IF NOT EXISTS action_logs (
  id           TEXT PRIMARY KEY,
  policy_id    TEXT NOT NULL,
  agent_id     TEXT NOT NULL,
  status       TEXT NOT NULL,
  summary      TEXT NOT NULL,
  reason       TEXT NOT NULL,
  raw_request  TEXT NOT NULL,
  source       TEXT NOT NULL,
  created_at   TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_logs_window ON action_logs(policy_id, status, created_at);
"""

# Fixed-width so lexical order in SQL equals chronological order.
_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"

_LOG_COLUMNS = "id, policy_id, agent_id, status, summary, reason, raw_request, source, created_at"


def _ts(moment: datetime) -> str:
    return as_utc(moment).strftime(_TS_FORMAT)


def _parse_ts(raw: str) -> datetime:
    return datetime.strptime(raw, _TS_FORMAT).replace(tzinfo=timezone.utc)


def _row_to_entry(row: sqlite3.Row) -> ActionLogEntry:
    return ActionLogEntry(
        id=row["id"],
        policy_id=row["policy_id"],
        agent_id=row["agent_id"],
        status=ActionStatus(row["status"]),
        summary=row["summary"],
        reason=row["reason"],
        raw_request=row["raw_request"],
        source=row["source"],
        created_at=_parse_ts(row["created_at"]),
    )


def _is_busy(exc: BaseException) -> bool:
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    text = str(exc).lower()
    return "locked" in text or "busy" in text


class _SqliteSession(LedgerSession):
    """Reads and writes bound to one open write transaction."""

    def __init__(self, conn: sqlite3.Connection, clock: Clock) -> None:
        self._conn = conn
        self._clock = clock

    def get_policy(self, policy_id: str) -> Policy | None:
        row = self._conn.execute("SELECT body FROM policies WHERE id = ?", (policy_id,)).fetchone()
        return Policy.from_dict(json.loads(row["body"])) if row else None

    def query_logs(
        self,
        policy_id: str,
        status: ActionStatus,
        start: datetime,
        end: datetime,
    ) -> list[ActionLogEntry]:
        rows = self._conn.execute(
            f"SELECT {_LOG_COLUMNS} FROM action_logs "
            "WHERE policy_id = ? AND status = ? AND created_at >= ? AND created_at <= ? "
            "ORDER BY created_at",
            (policy_id, status.value, _ts(start), _ts(end)),
        ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def append_log(self, draft: LogDraft) -> ActionLogEntry:
        now = as_utc(self._clock())
        row = self._conn.execute("SELECT MAX(created_at) AS last FROM action_logs").fetchone()
        if row["last"] is not None:
            last = _parse_ts(row["last"])
            if now < last:
                now = last
        entry = ActionLogEntry.from_draft(draft, _new_id(), now)
        self._conn.execute(
            f"INSERT INTO action_logs ({_LOG_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                entry.id,
                entry.policy_id,
                entry.agent_id,
                entry.status.value,
                entry.summary,
                entry.reason,
                entry.raw_request,
                entry.source,
                _ts(entry.created_at),
            ),
        )
        return entry


class SqliteStore(LedgerStore):
    """SQLite-backed ledger.

    Each operation opens its own connection. Writes and sessions run inside
    ``BEGIN IMMEDIATE`` so the aggregation read and the log insert of one
    session form a single serialized transaction across every process using
    the same file. Lock contention when opening a transaction is retried with
    backoff; the work done inside a session is never retried.
    """

    def __init__(
        self,
        path: Path | str,
        clock: Clock = utc_now,
        busy_timeout_s: float = 30.0,
    ) -> None:
        self.path = Path(path)
        self._clock = clock
        self._busy_timeout_s = busy_timeout_s
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            conn.executescript(_SCHEMA)
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.path),
            timeout=self._busy_timeout_s,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        return conn

    @retry(
        retry=retry_if_exception(_is_busy),
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=1.0),
        reraise=True,
    )
    def _begin(self) -> sqlite3.Connection:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error:
            conn.close()
            raise
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._begin()
        except sqlite3.Error as exc:
            raise StoreError(f"cannot open ledger transaction on {self.path}: {exc}") from exc
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def session(self, policy_id: str) -> Iterator[LedgerSession]:
        with self._transaction() as conn:
            logger.debug("ledger session opened for policy %s", policy_id)
            yield _SqliteSession(conn, self._clock)

    # ── policies ──────────────────────────────────────────────────

    def get_policy(self, policy_id: str) -> Policy | None:
        with self._reader() as conn:
            return _SqliteSession(conn, self._clock).get_policy(policy_id)

    def save_policy(self, policy: Policy) -> Policy:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO policies (id, owner_id, created_at, body) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET owner_id = excluded.owner_id, body = excluded.body",
                (policy.id, policy.owner_id, _ts(policy.created_at), json.dumps(policy.to_dict())),
            )
        return policy

    def list_policies(self, owner_id: str | None = None) -> list[Policy]:
        with self._reader() as conn:
            if owner_id is None:
                rows = conn.execute(
                    "SELECT body FROM policies ORDER BY created_at DESC"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT body FROM policies WHERE owner_id = ? ORDER BY created_at DESC",
                    (owner_id,),
                ).fetchall()
        return [Policy.from_dict(json.loads(r["body"])) for r in rows]

    # ── action log ────────────────────────────────────────────────

    def append_log(self, draft: LogDraft) -> ActionLogEntry:
        with self._transaction() as conn:
            return _SqliteSession(conn, self._clock).append_log(draft)

    def query_logs(
        self,
        policy_id: str,
        status: ActionStatus,
        start: datetime,
        end: datetime,
    ) -> list[ActionLogEntry]:
        with self._reader() as conn:
            return _SqliteSession(conn, self._clock).query_logs(policy_id, status, start, end)

    def list_logs(self, policy_id: str) -> list[ActionLogEntry]:
        with self._reader() as conn:
            rows = conn.execute(
                f"SELECT {_LOG_COLUMNS} FROM action_logs WHERE policy_id = ? "
                "ORDER BY created_at DESC, rowid DESC",
                (policy_id,),
            ).fetchall()
        return [_row_to_entry(r) for r in rows]


def make_store(backend: str, path: Path | str | None = None, clock: Clock = utc_now) -> LedgerStore:
    """Build the configured backend (``memory`` | ``json`` | ``sqlite``)."""
    if backend == "memory":
        return InMemoryStore(clock=clock)
    if path is None:
        raise ValueError(f"store backend {backend!r} needs a path")
    if backend == "json":
        return JsonFileStore(path, clock=clock)
    if backend == "sqlite":
        return SqliteStore(path, clock=clock)
    raise ValueError(f"unknown store backend: {backend!r}")
