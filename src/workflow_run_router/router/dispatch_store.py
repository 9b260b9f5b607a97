"""Persisted dispatch records.

One record per (run_id, action_id) drives idempotency: a dispatch must claim
the key before executing an action, and only the claim owner may move the
record forward. Claims are taken inside `BEGIN IMMEDIATE` transactions, so two
threads or two processes sharing the database file cannot both win.

Every attempt is also appended to `dispatch_attempts`, so failures never
disappear from history even after a later success.

Schema:
  dispatch_records   - current state per (run_id, action_id)
  dispatch_attempts  - append-only attempt log
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable, Iterator
from contextlib import closing, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel

from workflow_run_router.router.errors import IdempotencyConflictError

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS dispatch_records (
    run_id            INTEGER NOT NULL,
    action_id         TEXT NOT NULL,
    subscription_id   TEXT NOT NULL,
    action_name       TEXT NOT NULL,
    workflow_name     TEXT NOT NULL,
    status            TEXT NOT NULL,
    attempts          INTEGER NOT NULL DEFAULT 0,
    last_error        TEXT,
    owner             TEXT,
    lease_expires_at  REAL,
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL,
    PRIMARY KEY (run_id, action_id)
);
CREATE TABLE IF NOT EXISTS dispatch_attempts (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id       INTEGER NOT NULL,
    action_id    TEXT NOT NULL,
    attempt      INTEGER NOT NULL,
    status       TEXT NOT NULL,
    error        TEXT,
    owner        TEXT,
    recorded_at  TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_attempts_run ON dispatch_attempts (run_id, action_id);
"""


class DispatchStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"
    UNKNOWN = "unknown"


_LIVE_STATUSES = {DispatchStatus.IN_PROGRESS.value, DispatchStatus.RETRYING.value}


class DispatchRecord(BaseModel):
    run_id: int
    action_id: str
    subscription_id: str
    action_name: str
    workflow_name: str
    status: DispatchStatus
    attempts: int = 0
    last_error: str | None = None
    owner: str | None = None
    created_at: str
    updated_at: str


class DispatchAttempt(BaseModel):
    run_id: int
    action_id: str
    attempt: int
    status: DispatchStatus
    error: str | None = None
    owner: str | None = None
    recorded_at: str


@dataclass(frozen=True, slots=True)
class ClaimResult:
    """Outcome of a claim.

    `claimed` is False only when the action already succeeded for this run.
    """

    claimed: bool
    record: DispatchRecord


def _utc_iso_now() -> str:
    return datetime.now(tz=UTC).isoformat()


def _record(row: sqlite3.Row) -> DispatchRecord:
    return DispatchRecord(
        run_id=row["run_id"],
        action_id=row["action_id"],
        subscription_id=row["subscription_id"],
        action_name=row["action_name"],
        workflow_name=row["workflow_name"],
        status=DispatchStatus(row["status"]),
        attempts=row["attempts"],
        last_error=row["last_error"],
        owner=row["owner"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class DispatchStore:
    """Stores dispatch records in a local SQLite database file."""

    def __init__(
        self,
        path: Path,
        *,
        lease_seconds: float = 600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._path = path
        self._lease_seconds = lease_seconds
        self._clock = clock
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with closing(self._connect()) as conn:
            conn.executescript(_SCHEMA)

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with closing(self._connect()) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    @staticmethod
    def _select(conn: sqlite3.Connection, run_id: int, action_id: str) -> sqlite3.Row | None:
        row: sqlite3.Row | None = conn.execute(
            "SELECT * FROM dispatch_records WHERE run_id = ? AND action_id = ?",
            (run_id, action_id),
        ).fetchone()
        return row

    def claim(
        self,
        *,
        run_id: int,
        action_id: str,
        owner: str,
        subscription_id: str,
        action_name: str,
        workflow_name: str,
    ) -> ClaimResult:
        """Atomically take ownership of (run_id, action_id).

        Raises:
            IdempotencyConflictError: another owner holds a live claim.
        """

        now = _utc_iso_now()
        expires = self._clock() + self._lease_seconds
        with self._transaction() as conn:
            row = self._select(conn, run_id, action_id)
            if row is None:
                conn.execute(
                    """
                    INSERT INTO dispatch_records
                      (run_id, action_id, subscription_id, action_name, workflow_name,
                       status, attempts, last_error, owner, lease_expires_at,
                       created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, 0, NULL, ?, ?, ?, ?)
                    """,
                    (
                        run_id,
                        action_id,
                        subscription_id,
                        action_name,
                        workflow_name,
                        DispatchStatus.IN_PROGRESS.value,
                        owner,
                        expires,
                        now,
                        now,
                    ),
                )
            elif row["status"] == DispatchStatus.SUCCESS.value:
                return ClaimResult(claimed=False, record=_record(row))
            elif (
                row["status"] in _LIVE_STATUSES
                and row["owner"] != owner
                and (row["lease_expires_at"] or 0.0) > self._clock()
            ):
                raise IdempotencyConflictError(
                    run_id=run_id, action_id=action_id, owner=row["owner"]
                )
            else:
                # Failed, unknown, or an abandoned claim whose lease expired.
                conn.execute(
                    """
                    UPDATE dispatch_records
                       SET status = ?, attempts = 0, last_error = NULL, owner = ?, lease_expires_at = ?,
                           subscription_id = ?, action_name = ?, updated_at = ?
                     WHERE run_id = ? AND action_id = ?
                    """,
                    (
                        DispatchStatus.IN_PROGRESS.value,
                        owner,
                        expires,
                        subscription_id,
                        action_name,
                        now,
                        run_id,
                        action_id,
                    ),
                )
            claimed = self._select(conn, run_id, action_id)
            assert claimed is not None

        logger.debug(
            "Dispatch claimed", extra={"run_id": run_id, "action_id": action_id, "owner": owner}
        )
        return ClaimResult(claimed=True, record=_record(claimed))

    def record_attempt(
        self,
        *,
        run_id: int,
        action_id: str,
        owner: str,
        attempt: int,
        status: DispatchStatus,
        error: str | None = None,
    ) -> DispatchRecord:
        """Log one attempt and move the record to `status`.

        Only the claim owner may update the record.
        """

        now = _utc_iso_now()
        with self._transaction() as conn:
            updated = conn.execute(
                """
                UPDATE dispatch_records
                   SET status = ?, attempts = ?, last_error = COALESCE(?, last_error),
                       lease_expires_at = ?, updated_at = ?
                 WHERE run_id = ? AND action_id = ? AND owner = ?
                """,
                (
                    status.value,
                    attempt,
                    error,
                    self._clock() + self._lease_seconds,
                    now,
                    run_id,
                    action_id,
                    owner,
                ),
            ).rowcount
            if updated == 0:
                row = self._select(conn, run_id, action_id)
                raise IdempotencyConflictError(
                    run_id=run_id, action_id=action_id, owner=row["owner"] if row else None
                )
            conn.execute(
                """
                INSERT INTO dispatch_attempts
                  (run_id, action_id, attempt, status, error, owner, recorded_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (run_id, action_id, attempt, status.value, error, owner, now),
            )
            row = self._select(conn, run_id, action_id)
            assert row is not None
            return _record(row)

    def release(
        self,
        *,
        run_id: int,
        action_id: str,
        owner: str,
        status: DispatchStatus = DispatchStatus.UNKNOWN,
    ) -> DispatchRecord | None:
        """Give up a claim without confirming success (e.g. on cancellation)."""

        if status is DispatchStatus.SUCCESS:
            raise ValueError("A claim cannot be released as success")
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE dispatch_records
                   SET status = ?, lease_expires_at = NULL, updated_at = ?
                 WHERE run_id = ? AND action_id = ? AND owner = ?
                """,
                (status.value, _utc_iso_now(), run_id, action_id, owner),
            )
            row = self._select(conn, run_id, action_id)
            return _record(row) if row is not None else None

    def get(self, run_id: int, action_id: str) -> DispatchRecord | None:
        with closing(self._connect()) as conn:
            row = self._select(conn, run_id, action_id)
            return _record(row) if row is not None else None

    def history(self, run_id: int) -> list[DispatchRecord]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT * FROM dispatch_records WHERE run_id = ? ORDER BY created_at, action_id",
                (run_id,),
            ).fetchall()
        return [_record(row) for row in rows]

    def attempts(self, run_id: int, action_id: str | None = None) -> list[DispatchAttempt]:
        query = "SELECT * FROM dispatch_attempts WHERE run_id = ?"
        params: tuple[object, ...] = (run_id,)
        if action_id is not None:
            query += " AND action_id = ?"
            params = (run_id, action_id)
        with closing(self._connect()) as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
        return [
            DispatchAttempt(
                run_id=row["run_id"],
                action_id=row["action_id"],
                attempt=row["attempt"],
                status=DispatchStatus(row["status"]),
                error=row["error"],
                owner=row["owner"],
                recorded_at=row["recorded_at"],
            )
            for row in rows
        ]
