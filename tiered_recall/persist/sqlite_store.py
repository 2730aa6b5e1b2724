"""
SQLite-backed persistence for conversation memory.

Tables:
- sessions: one row per conversation session
- turns: one row per user/assistant exchange, with tier and criticality
- tier_transitions: append-only log of every tier change

Writes are serialized through a single lock and run in IMMEDIATE
transactions, so a tier mutation and its log entry commit together.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, List, Optional, Sequence, Union

from tiered_recall.errors import StorageUnavailable


logger = logging.getLogger(__name__)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        started_at REAL NOT NULL,
        ended_at REAL,
        turn_count INTEGER NOT NULL DEFAULT 0,
        total_tokens INTEGER NOT NULL DEFAULT 0,
        last_turn_at REAL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id, started_at)",
    """
    CREATE TABLE IF NOT EXISTS turns (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL REFERENCES sessions(id),
        user_id TEXT NOT NULL,
        sequence_number INTEGER NOT NULL,
        user_text TEXT NOT NULL,
        assistant_text TEXT,
        created_at REAL NOT NULL,
        completed_at REAL,
        token_count_user INTEGER NOT NULL DEFAULT 0,
        token_count_assistant INTEGER NOT NULL DEFAULT 0,
        tier TEXT NOT NULL DEFAULT 'hot',
        tier_changed_at REAL,
        criticality INTEGER NOT NULL DEFAULT 0,
        UNIQUE (session_id, sequence_number)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_turns_session ON turns(session_id, sequence_number)",
    "CREATE INDEX IF NOT EXISTS idx_turns_user ON turns(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_turns_tier ON turns(tier)",
    """
    CREATE TABLE IF NOT EXISTS tier_transitions (
        id TEXT PRIMARY KEY,
        turn_id TEXT NOT NULL REFERENCES turns(id),
        from_tier TEXT NOT NULL,
        to_tier TEXT NOT NULL,
        transitioned_at REAL NOT NULL,
        reason TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_transitions_turn ON tier_transitions(turn_id)",
]


class TurnDatabase:
    """
    File-backed SQLite database for turns, sessions and the transition log.

    Thread-safe with WAL mode, a process-level write lock and IMMEDIATE
    transactions. Reads use one connection per thread and never take the
    write lock, so a write in one session does not block reads in another.
    Any sqlite3 failure is surfaced as StorageUnavailable.
    """

    def __init__(self, db_path: Union[str, Path]):
        """
        Open (and create if needed) the database at the given path.

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._closed = False
        self._local = threading.local()
        self._readers: List[sqlite3.Connection] = []

        try:
            self._conn = sqlite3.connect(
                self.db_path,
                check_same_thread=False,  # Allow multi-threaded access
                timeout=10.0,
                isolation_level=None,  # Explicit transaction control
            )
            self._conn.row_factory = sqlite3.Row

            # Enable WAL mode for better concurrency
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute("PRAGMA foreign_keys=ON")

            for statement in SCHEMA:
                self._conn.execute(statement)
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Cannot open turn database at {self.db_path}: {e}", e) from e

    def _check_open(self) -> None:
        if self._closed:
            raise StorageUnavailable(f"Turn database {self.db_path} is closed")

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block inside one IMMEDIATE transaction.

        Commits on success, rolls back on any exception. sqlite3 errors are
        re-raised as StorageUnavailable.
        """
        with self._lock:
            self._check_open()
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageUnavailable(f"Cannot begin transaction: {e}", e) from e

            try:
                yield self._conn
            except sqlite3.Error as e:
                self._conn.execute("ROLLBACK")
                raise StorageUnavailable(f"Write failed: {e}", e) from e
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                try:
                    self._conn.execute("COMMIT")
                except sqlite3.Error as e:
                    self._conn.execute("ROLLBACK")
                    raise StorageUnavailable(f"Commit failed: {e}", e) from e

    def _reader(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                self.db_path, check_same_thread=False, timeout=10.0, isolation_level=None,
            )
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._lock:
                self._readers.append(conn)
        return conn

    def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        """Run a read query and return all rows."""
        self._check_open()
        if self.db_path == ":memory:":
            # An in-memory database lives on the writer connection only
            with self._lock:
                try:
                    return self._conn.execute(sql, params).fetchall()
                except sqlite3.Error as e:
                    raise StorageUnavailable(f"Read failed: {e}", e) from e
        try:
            return self._reader().execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Read failed: {e}", e) from e

    def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        """Run a read query and return the first row, if any."""
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    def stats(self) -> dict:
        """
        Get row counts per table.

        Returns:
            Dict with sessions, turns, transitions counts
        """
        return {
            "sessions": self.fetch_one("SELECT COUNT(*) FROM sessions")[0],
            "turns": self.fetch_one("SELECT COUNT(*) FROM turns")[0],
            "transitions": self.fetch_one("SELECT COUNT(*) FROM tier_transitions")[0],
        }

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if not self._closed:
                self._closed = True
                for reader in self._readers:
                    reader.close()
                self._readers.clear()
                self._conn.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
