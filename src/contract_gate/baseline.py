from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from contract_gate.models import AuditEntry, BaselineEntry, Status

logger = logging.getLogger(__name__)

_LOCKS: dict[str, threading.Lock] = {}
_LOCKS_GUARD = threading.Lock()


class StoreError(RuntimeError):
    pass


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _lock_for(path: Path) -> threading.Lock:
    key = str(path.resolve())
    with _LOCKS_GUARD:
        lock = _LOCKS.get(key)
        if lock is None:
            lock = _LOCKS[key] = threading.Lock()
        return lock


class BaselineTransaction:
    """Pending changes for one exclusive read-modify-write cycle.

    ``entries`` is the baseline as read under the lock. Nothing reaches the
    database until the owning ``BaselineStore.transaction()`` block exits
    cleanly.
    """

    def __init__(self, entries: dict[str, BaselineEntry]):
        self.entries = entries
        self.updates: dict[str, tuple[Status, str]] = {}
        self.audit: list[tuple[int | None, AuditEntry]] = []
        self.run_finish: dict | None = None

    def update(self, test_id: str, status: Status, run_ref: str) -> None:
        self.updates[test_id] = (Status(status), run_ref)

    def append_audit(self, entries: Iterable[AuditEntry], run_id: int | None = None) -> None:
        self.audit.extend((run_id, entry) for entry in entries)

    def finish_run(self, run_id: int, *, status: str, exit_code: int, counts: dict[str, int]) -> None:
        self.run_finish = {
            "run_id": int(run_id),
            "status": status,
            "exit_code": int(exit_code),
            "violations_count": int(counts.get("violations", 0)),
            "suppressed_count": int(counts.get("suppressed", 0)),
            "warnings_count": int(counts.get("warnings", 0)),
            "regressions_count": int(counts.get("regressions", 0)),
        }


class BaselineStore:
    def __init__(self, db_path: str | Path, *, timeout: float = 30.0):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._read_failed = False
        try:
            self.conn = sqlite3.connect(self.db_path, timeout=timeout, isolation_level=None)
        except sqlite3.Error as exc:
            raise StoreError(f"Cannot open baseline store {self.db_path}: {exc}") from exc
        self.conn.row_factory = sqlite3.Row

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> BaselineStore:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def init_schema(self) -> None:
        try:
            self.conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS baseline (
                    test_id TEXT PRIMARY KEY,
                    last_status TEXT NOT NULL CHECK (last_status IN ('PASS', 'FAIL')),
                    last_updated TEXT NOT NULL,
                    last_run_ref TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS gate_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    started_at TEXT NOT NULL,
                    finished_at TEXT,
                    run_ref TEXT NOT NULL,
                    commit_sha TEXT,
                    wave TEXT,
                    status TEXT NOT NULL,
                    exit_code INTEGER,
                    violations_count INTEGER NOT NULL DEFAULT 0,
                    suppressed_count INTEGER NOT NULL DEFAULT 0,
                    warnings_count INTEGER NOT NULL DEFAULT 0,
                    regressions_count INTEGER NOT NULL DEFAULT 0,
                    notes TEXT
                );

                CREATE TABLE IF NOT EXISTS override_audit (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id INTEGER,
                    rule_id TEXT NOT NULL,
                    justification TEXT NOT NULL,
                    requested_by TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY(run_id) REFERENCES gate_runs(id)
                );

                CREATE TRIGGER IF NOT EXISTS override_audit_no_update
                BEFORE UPDATE ON override_audit
                BEGIN
                    SELECT RAISE(ABORT, 'override_audit is append-only');
                END;

                CREATE TRIGGER IF NOT EXISTS override_audit_no_delete
                BEFORE DELETE ON override_audit
                BEGIN
                    SELECT RAISE(ABORT, 'override_audit is append-only');
                END;

                CREATE INDEX IF NOT EXISTS idx_override_audit_rule_id ON override_audit(rule_id);
                """
            )
        except sqlite3.DatabaseError as exc:
            self._read_failed = True
            raise StoreError(f"Baseline store {self.db_path} is unusable: {exc}") from exc

    def load(self) -> dict[str, BaselineEntry]:
        """Read every baseline entry.

        A failed read marks the store as unwritable for the rest of its life so
        a damaged database is never overwritten with a partial picture.
        """
        try:
            return self._read_entries()
        except (sqlite3.DatabaseError, ValueError) as exc:
            self._read_failed = True
            raise StoreError(f"Cannot read baseline store {self.db_path}: {exc}") from exc

    @contextmanager
    def transaction(self) -> Iterator[BaselineTransaction]:
        with _lock_for(self.db_path):
            if self._read_failed:
                raise StoreError(f"Refusing to write {self.db_path} after a failed read")
            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.DatabaseError as exc:
                raise StoreError(f"Cannot lock baseline store {self.db_path}: {exc}") from exc

            try:
                try:
                    entries = self._read_entries()
                except (sqlite3.DatabaseError, ValueError) as exc:
                    self._read_failed = True
                    raise StoreError(f"Cannot read baseline store {self.db_path}: {exc}") from exc

                txn = BaselineTransaction(entries)
                yield txn
                self._flush(txn)
                self.conn.execute("COMMIT")
            except sqlite3.DatabaseError as exc:
                self._rollback()
                raise StoreError(f"Baseline update on {self.db_path} failed: {exc}") from exc
            except BaseException:
                self._rollback()
                raise
            logger.debug(
                "Committed %d baseline update(s) and %d audit entry(ies) to %s",
                len(txn.updates),
                len(txn.audit),
                self.db_path,
            )

    def start_run(self, run_ref: str, *, commit_sha: str | None = None, wave: str | None = None) -> int:
        try:
            cursor = self.conn.execute(
                """
                INSERT INTO gate_runs (started_at, run_ref, commit_sha, wave, status)
                VALUES (?, ?, ?, ?, 'RUNNING')
                """,
                (utc_now(), run_ref, commit_sha, wave),
            )
        except sqlite3.DatabaseError as exc:
            self._read_failed = True
            raise StoreError(f"Cannot record run in {self.db_path}: {exc}") from exc
        return int(cursor.lastrowid)

    def fail_run(self, run_id: int, notes: str) -> None:
        if self._read_failed:
            return
        try:
            self.conn.execute(
                """
                UPDATE gate_runs
                SET finished_at = ?, status = 'FAILED', notes = ?
                WHERE id = ?
                """,
                (utc_now(), notes[:2000], int(run_id)),
            )
        except sqlite3.DatabaseError as exc:
            logger.error("Could not mark run %s as failed: %s", run_id, exc)

    def prune(self, test_ids: Iterable[str]) -> int:
        targets = sorted(set(test_ids))
        with self.transaction() as txn:
            present = [test_id for test_id in targets if test_id in txn.entries]
            self.conn.executemany(
                "DELETE FROM baseline WHERE test_id = ?",
                [(test_id,) for test_id in present],
            )
        return len(present)

    def latest_run(self) -> dict | None:
        row = self.conn.execute(
            "SELECT * FROM gate_runs WHERE finished_at IS NOT NULL ORDER BY id DESC LIMIT 1"
        ).fetchone()
        return dict(row) if row else None

    def audit_entries(self, rule_id: str | None = None) -> list[AuditEntry]:
        sql = "SELECT rule_id, justification, requested_by, created_at FROM override_audit"
        params: tuple = ()
        if rule_id:
            sql += " WHERE rule_id = ?"
            params = (rule_id,)
        rows = self.conn.execute(sql + " ORDER BY id ASC", params).fetchall()
        return [
            AuditEntry(
                rule_id=row["rule_id"],
                justification=row["justification"],
                requested_by=row["requested_by"],
                timestamp=row["created_at"],
            )
            for row in rows
        ]

    def _rollback(self) -> None:
        if not self.conn.in_transaction:
            return
        try:
            self.conn.execute("ROLLBACK")
        except sqlite3.Error as exc:
            logger.error("Rollback on %s failed: %s", self.db_path, exc)
        else:
            logger.debug("Rolled back baseline transaction on %s", self.db_path)

    def _read_entries(self) -> dict[str, BaselineEntry]:
        rows = self.conn.execute(
            "SELECT test_id, last_status, last_updated, last_run_ref FROM baseline ORDER BY test_id"
        ).fetchall()
        return {
            row["test_id"]: BaselineEntry(
                test_id=row["test_id"],
                last_status=Status(row["last_status"]),
                last_updated=row["last_updated"],
                last_run_ref=row["last_run_ref"],
            )
            for row in rows
        }

    def _flush(self, txn: BaselineTransaction) -> None:
        now = utc_now()
        if txn.updates:
            self.conn.executemany(
                """
                INSERT INTO baseline (test_id, last_status, last_updated, last_run_ref)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(test_id) DO UPDATE SET
                    last_status = excluded.last_status,
                    last_updated = excluded.last_updated,
                    last_run_ref = excluded.last_run_ref
                """,
                [
                    (test_id, status.value, now, run_ref)
                    for test_id, (status, run_ref) in sorted(txn.updates.items())
                ],
            )
        if txn.audit:
            self.conn.executemany(
                """
                INSERT INTO override_audit (run_id, rule_id, justification, requested_by, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (run_id, entry.rule_id, entry.justification, entry.requested_by, entry.timestamp)
                    for run_id, entry in txn.audit
                ],
            )
        if txn.run_finish:
            finish = txn.run_finish
            self.conn.execute(
                """
                UPDATE gate_runs
                SET finished_at = ?,
                    status = ?,
                    exit_code = ?,
                    violations_count = ?,
                    suppressed_count = ?,
                    warnings_count = ?,
                    regressions_count = ?
                WHERE id = ?
                """,
                (
                    now,
                    finish["status"],
                    finish["exit_code"],
                    finish["violations_count"],
                    finish["suppressed_count"],
                    finish["warnings_count"],
                    finish["regressions_count"],
                    finish["run_id"],
                ),
            )
