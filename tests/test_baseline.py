import sqlite3
import threading
from pathlib import Path

import pytest

from contract_gate.baseline import BaselineStore, StoreError
from contract_gate.models import AuditEntry, Status


def _store(tmp_path: Path) -> BaselineStore:
    store = BaselineStore(tmp_path / "gate" / "baseline.db")
    store.init_schema()
    return store


def test_transaction_commits_updates(tmp_path: Path):
    with _store(tmp_path) as store:
        with store.transaction() as txn:
            assert txn.entries == {}
            txn.update("T1", Status.PASS, "wave-1")
            txn.update("T2", Status.FAIL, "wave-1")

        entries = store.load()

    assert {key: entry.last_status for key, entry in entries.items()} == {
        "T1": Status.PASS,
        "T2": Status.FAIL,
    }
    assert entries["T1"].last_run_ref == "wave-1"
    assert entries["T1"].last_updated


def test_failed_transaction_leaves_baseline_untouched(tmp_path: Path):
    with _store(tmp_path) as store:
        with store.transaction() as txn:
            txn.update("T1", Status.PASS, "wave-1")

        with pytest.raises(RuntimeError, match="boom"):
            with store.transaction() as txn:
                txn.update("T1", Status.FAIL, "wave-2")
                txn.update("T2", Status.FAIL, "wave-2")
                raise RuntimeError("boom")

        entries = store.load()

    assert list(entries) == ["T1"]
    assert entries["T1"].last_status is Status.PASS
    assert entries["T1"].last_run_ref == "wave-1"


def test_corrupt_database_is_reported_and_left_alone(tmp_path: Path):
    db_path = tmp_path / "baseline.db"
    garbage = b"this is not a sqlite database" * 64
    db_path.write_bytes(garbage)

    store = BaselineStore(db_path)
    try:
        with pytest.raises(StoreError):
            store.init_schema()
        with pytest.raises(StoreError, match="failed read"):
            with store.transaction() as txn:
                txn.update("T1", Status.PASS, "wave-1")
    finally:
        store.close()

    assert db_path.read_bytes() == garbage


def test_invalid_stored_status_refuses_later_writes(tmp_path: Path):
    with _store(tmp_path) as store:
        store.conn.execute("DROP TABLE baseline")
        store.conn.execute(
            "CREATE TABLE baseline (test_id TEXT, last_status TEXT, last_updated TEXT, last_run_ref TEXT)"
        )
        store.conn.execute("INSERT INTO baseline VALUES ('T1', 'MAYBE', 'now', 'wave-1')")

        with pytest.raises(StoreError):
            store.load()
        with pytest.raises(StoreError, match="failed read"):
            with store.transaction():
                pass


def test_override_audit_is_append_only(tmp_path: Path):
    entry = AuditEntry("AUTH-001", "migration tracked in #42", "dana", "2026-01-01T00:00:00+00:00")
    with _store(tmp_path) as store:
        with store.transaction() as txn:
            txn.append_audit([entry])

        with pytest.raises(sqlite3.DatabaseError, match="append-only"):
            store.conn.execute("UPDATE override_audit SET justification = 'nothing to see'")
        with pytest.raises(sqlite3.DatabaseError, match="append-only"):
            store.conn.execute("DELETE FROM override_audit")

        assert store.audit_entries() == [entry]
        assert store.audit_entries("SEC-002") == []


def test_concurrent_transactions_are_serialized(tmp_path: Path):
    db_path = tmp_path / "baseline.db"
    with BaselineStore(db_path) as store:
        store.init_schema()

    errors = []

    def worker():
        try:
            with BaselineStore(db_path) as own:
                with own.transaction() as txn:
                    txn.update(f"T{len(txn.entries)}", Status.PASS, "wave-1")
        except Exception as exc:  # pragma: no cover
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    with BaselineStore(db_path) as store:
        assert sorted(store.load()) == sorted(f"T{index}" for index in range(8))


def test_run_bookkeeping_and_prune(tmp_path: Path):
    with _store(tmp_path) as store:
        run_id = store.start_run("abc123", commit_sha="abc123", wave="3")
        assert store.latest_run() is None

        with store.transaction() as txn:
            txn.update("T1", Status.PASS, "abc123")
            txn.update("T2", Status.FAIL, "abc123")
            txn.finish_run(run_id, status="FAIL", exit_code=1, counts={"regressions": 1})

        latest = store.latest_run()
        assert latest["status"] == "FAIL"
        assert latest["wave"] == "3"
        assert latest["regressions_count"] == 1

        assert store.prune(["T2", "T9"]) == 1
        assert list(store.load()) == ["T1"]


def test_fail_run_records_notes(tmp_path: Path):
    with _store(tmp_path) as store:
        run_id = store.start_run("local-1")
        store.fail_run(run_id, "scan blew up")

        latest = store.latest_run()

    assert latest["status"] == "FAILED"
    assert latest["notes"] == "scan blew up"
