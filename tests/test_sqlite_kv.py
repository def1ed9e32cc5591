"""
Tests for the SQLite substrate: persistence, schema versioning, and
several processes sharing one database file.

Uses multiprocessing (not threading) to simulate separate ut processes.
"""

import multiprocessing
import sqlite3

import pytest

from utask.errors import SubstrateUnavailableError
from utask.sqlite_kv import SCHEMA_VERSION, SqliteSubstrate
from utask.store import TaskStore
from utask.types import TaskInput


# Worker functions must be top-level for multiprocessing spawn compatibility


def _worker_create_shared_tag(db_path: str, worker_id: int, count: int):
    """Worker that creates distinct tasks all carrying the same tag."""
    from utask.sqlite_kv import SqliteSubstrate
    from utask.store import TaskStore
    from utask.types import TaskInput

    with SqliteSubstrate(db_path) as sub:
        store = TaskStore(sub, max_retries=100, retry_backoff=0.002)
        for i in range(count):
            store.create(TaskInput(f"worker {worker_id} task {i}", ["shared"]))


def _worker_toggle(db_path: str, task_id: str, count: int):
    """Worker that closes and reopens the same task repeatedly."""
    from utask.sqlite_kv import SqliteSubstrate
    from utask.store import TaskStore

    with SqliteSubstrate(db_path) as sub:
        store = TaskStore(sub, max_retries=100, retry_backoff=0.002)
        for _ in range(count):
            store.close_task(task_id)
            store.reopen(task_id)


class TestSqliteSubstrate:

    def test_data_survives_reopen(self, tmp_path):
        db = tmp_path / "kv.db"
        with SqliteSubstrate(db) as sub:
            rev = sub.bucket("b").create("k", b"v")
        with SqliteSubstrate(db) as sub:
            entry = sub.bucket("b").get("k")
        assert entry.value == b"v"
        assert entry.revision == rev

    def test_creates_parent_directory(self, tmp_path):
        db = tmp_path / "nested" / "dir" / "kv.db"
        with SqliteSubstrate(db) as sub:
            assert sub.path == db
        assert db.exists()

    def test_wal_mode(self, tmp_path):
        db = tmp_path / "kv.db"
        with SqliteSubstrate(db) as sub:
            mode = sub._conn.execute("PRAGMA journal_mode").fetchone()[0]
        assert mode.lower() == "wal"

    def test_schema_version_recorded(self, tmp_path):
        db = tmp_path / "kv.db"
        SqliteSubstrate(db).close()
        conn = sqlite3.connect(db)
        assert conn.execute("PRAGMA user_version").fetchone()[0] == SCHEMA_VERSION
        conn.close()

    def test_newer_schema_rejected(self, tmp_path):
        db = tmp_path / "kv.db"
        SqliteSubstrate(db).close()
        conn = sqlite3.connect(db)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION + 1}")
        conn.close()
        with pytest.raises(SubstrateUnavailableError, match="newer"):
            SqliteSubstrate(db)

    def test_not_a_database(self, tmp_path):
        db = tmp_path / "kv.db"
        db.write_bytes(b"this is not sqlite" * 100)
        with pytest.raises(SubstrateUnavailableError):
            SqliteSubstrate(db)

    def test_use_after_close(self, tmp_path):
        sub = SqliteSubstrate(tmp_path / "kv.db")
        bucket = sub.bucket("b")
        sub.close()
        with pytest.raises(SubstrateUnavailableError, match="closed"):
            bucket.get("k")

    def test_bucket_names(self, tmp_path):
        with SqliteSubstrate(tmp_path / "kv.db") as sub:
            sub.bucket("utask_tasks_default")
            sub.bucket("utask_tags_default")
            assert sub.bucket_names() == ["utask_tags_default", "utask_tasks_default"]

    def test_two_connections_see_each_others_writes(self, tmp_path):
        db = tmp_path / "kv.db"
        with SqliteSubstrate(db) as a, SqliteSubstrate(db) as b:
            rev = a.bucket("x").create("k", b"1")
            b.bucket("x").update("k", b"2", rev)
            assert a.bucket("x").get("k").value == b"2"


class TestCrossProcess:
    """Several processes sharing one database through TaskStore."""

    def test_parallel_creates_keep_full_index(self, tmp_path):
        """Workers append to one tag entry concurrently; no id is lost."""
        db_path = str(tmp_path / "shared.db")
        num_workers = 4
        per_worker = 8

        # Pre-create the schema so workers don't race on it
        SqliteSubstrate(db_path).close()

        ctx = multiprocessing.get_context("spawn")
        processes = [
            ctx.Process(target=_worker_create_shared_tag, args=(db_path, w, per_worker))
            for w in range(num_workers)
        ]
        for p in processes:
            p.start()
        for p in processes:
            p.join(timeout=60)

        for p in processes:
            assert p.exitcode == 0, f"Worker exited with code {p.exitcode}"

        with SqliteSubstrate(db_path) as sub:
            store = TaskStore(sub)
            assert len(store.list()) == num_workers * per_worker
            assert store.list_tags() == {"shared": num_workers * per_worker}
            assert len(store.list(tag="shared")) == num_workers * per_worker

    def test_parallel_toggles_leave_consistent_task(self, tmp_path):
        db_path = str(tmp_path / "shared.db")
        with SqliteSubstrate(db_path) as sub:
            task, _ = TaskStore(sub).create(TaskInput("contended", ["a"]))

        ctx = multiprocessing.get_context("spawn")
        processes = [
            ctx.Process(target=_worker_toggle, args=(db_path, task.id, 5))
            for _ in range(3)
        ]
        for p in processes:
            p.start()
        for p in processes:
            p.join(timeout=60)
        for p in processes:
            assert p.exitcode == 0, f"Worker exited with code {p.exitcode}"

        with SqliteSubstrate(db_path) as sub:
            store = TaskStore(sub)
            stored, _ = store.get(task.id)
            assert stored.text == "contended"
            assert stored.tags == ["a"]
