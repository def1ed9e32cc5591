"""
Key-value substrate on a shared SQLite database file.

Any number of local processes can open the same file; SQLite's write lock
makes each conditional write linearizable. Revisions come from one
database-wide sequence, so a key's revision strictly increases across
delete and re-create.
"""

import contextlib
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Iterator, Optional

from .errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    SubstrateUnavailableError,
)
from .protocol import Entry

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class SqliteBucket:
    """One bucket inside a SqliteSubstrate."""

    def __init__(self, substrate: "SqliteSubstrate", name: str):
        self._sub = substrate
        self.name = name

    def get(self, key: str) -> Entry:
        row = self._sub._read_one(
            "SELECT value, revision FROM kv WHERE bucket = ? AND key = ?",
            (self.name, key),
        )
        if row is None:
            raise NotFoundError(f"{self.name}: key not found: {key}")
        return Entry(key, bytes(row[0]), int(row[1]))

    def create(self, key: str, value: bytes) -> int:
        with self._sub._write() as conn:
            exists = conn.execute(
                "SELECT 1 FROM kv WHERE bucket = ? AND key = ?",
                (self.name, key),
            ).fetchone()
            if exists:
                raise AlreadyExistsError(f"{self.name}: key exists: {key}")
            rev = self._sub._next_revision(conn)
            conn.execute(
                "INSERT INTO kv (bucket, key, value, revision) VALUES (?, ?, ?, ?)",
                (self.name, key, bytes(value), rev),
            )
            return rev

    def update(self, key: str, value: bytes, revision: int) -> int:
        with self._sub._write() as conn:
            row = conn.execute(
                "SELECT revision FROM kv WHERE bucket = ? AND key = ?",
                (self.name, key),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"{self.name}: key not found: {key}")
            if int(row[0]) != revision:
                raise ConflictError(
                    f"{self.name}: wrong revision for {key}: "
                    f"expected {revision}, current {row[0]}"
                )
            rev = self._sub._next_revision(conn)
            conn.execute(
                "UPDATE kv SET value = ?, revision = ? WHERE bucket = ? AND key = ?",
                (bytes(value), rev, self.name, key),
            )
            return rev

    def put(self, key: str, value: bytes) -> int:
        with self._sub._write() as conn:
            rev = self._sub._next_revision(conn)
            conn.execute(
                """
                INSERT INTO kv (bucket, key, value, revision) VALUES (?, ?, ?, ?)
                ON CONFLICT (bucket, key)
                DO UPDATE SET value = excluded.value, revision = excluded.revision
                """,
                (self.name, key, bytes(value), rev),
            )
            return rev

    def delete(self, key: str) -> None:
        with self._sub._write() as conn:
            conn.execute(
                "DELETE FROM kv WHERE bucket = ? AND key = ?", (self.name, key)
            )

    def keys(self) -> list[str]:
        rows = self._sub._read_all(
            "SELECT key FROM kv WHERE bucket = ? ORDER BY key", (self.name,)
        )
        return [r[0] for r in rows]


class SqliteSubstrate:
    """
    SQLite-backed substrate.

    One connection per substrate, serialized by a lock for use from several
    threads. Writes run in ``BEGIN IMMEDIATE`` transactions so concurrent
    processes queue on SQLite's write lock instead of interleaving.
    """

    def __init__(self, db_path: Path | str, *, busy_timeout_ms: int = 5000):
        """
        Args:
            db_path: Path to SQLite database file (created if missing)
            busy_timeout_ms: How long to wait for another writer's lock
        """
        self._db_path = Path(db_path)
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None
        self._busy_timeout_ms = busy_timeout_ms
        self._init_db()

    @property
    def path(self) -> Path:
        return self._db_path

    def _init_db(self) -> None:
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            # isolation_level=None gives us manual transaction control
            self._conn = sqlite3.connect(
                str(self._db_path), check_same_thread=False,
                isolation_level=None,
            )
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")

            self._conn.execute("BEGIN IMMEDIATE")
            try:
                self._conn.execute("""
                    CREATE TABLE IF NOT EXISTS kv (
                        bucket TEXT NOT NULL,
                        key TEXT NOT NULL,
                        value BLOB NOT NULL,
                        revision INTEGER NOT NULL,
                        PRIMARY KEY (bucket, key)
                    )
                """)
                self._conn.execute("""
                    CREATE TABLE IF NOT EXISTS kv_sequence (
                        id INTEGER PRIMARY KEY CHECK (id = 1),
                        revision INTEGER NOT NULL
                    )
                """)
                self._conn.execute("""
                    CREATE TABLE IF NOT EXISTS buckets (
                        name TEXT PRIMARY KEY
                    )
                """)
                self._conn.execute(
                    "INSERT OR IGNORE INTO kv_sequence (id, revision) VALUES (1, 0)"
                )
                version = self._conn.execute("PRAGMA user_version").fetchone()[0]
                if version > SCHEMA_VERSION:
                    raise SubstrateUnavailableError(
                        f"{self._db_path}: schema version {version} is newer "
                        f"than supported ({SCHEMA_VERSION})"
                    )
                if version < SCHEMA_VERSION:
                    self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
                self._conn.execute("COMMIT")
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
        except sqlite3.Error as e:
            raise SubstrateUnavailableError(f"open {self._db_path}: {e}") from e
        logger.debug("SqliteSubstrate ready db=%s", self._db_path)

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise SubstrateUnavailableError(f"{self._db_path}: substrate is closed")
        return self._conn

    @contextlib.contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        """Run a block in an IMMEDIATE transaction; commit on success."""
        with self._lock:
            conn = self._require_conn()
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise SubstrateUnavailableError(f"{self._db_path}: {e}") from e
            try:
                yield conn
            except sqlite3.Error as e:
                conn.execute("ROLLBACK")
                raise SubstrateUnavailableError(f"{self._db_path}: {e}") from e
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            try:
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                raise SubstrateUnavailableError(f"{self._db_path}: {e}") from e

    @staticmethod
    def _next_revision(conn: sqlite3.Connection) -> int:
        conn.execute("UPDATE kv_sequence SET revision = revision + 1 WHERE id = 1")
        (rev,) = conn.execute(
            "SELECT revision FROM kv_sequence WHERE id = 1"
        ).fetchone()
        return int(rev)

    def _read_one(self, sql: str, params: tuple) -> Optional[tuple]:
        with self._lock:
            conn = self._require_conn()
            try:
                return conn.execute(sql, params).fetchone()
            except sqlite3.Error as e:
                raise SubstrateUnavailableError(f"{self._db_path}: {e}") from e

    def _read_all(self, sql: str, params: tuple) -> list[tuple]:
        with self._lock:
            conn = self._require_conn()
            try:
                return conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise SubstrateUnavailableError(f"{self._db_path}: {e}") from e

    def bucket(self, name: str) -> SqliteBucket:
        with self._write() as conn:
            conn.execute("INSERT OR IGNORE INTO buckets (name) VALUES (?)", (name,))
        return SqliteBucket(self, name)

    def bucket_names(self) -> list[str]:
        rows = self._read_all("SELECT name FROM buckets ORDER BY name", ())
        return [r[0] for r in rows]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
