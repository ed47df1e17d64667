"""
Database Connection Layer

SQLite storage for the ledger with automatic schema creation. File databases
get one connection per thread in WAL mode; `sqlite:///:memory:` shares a
single connection so every thread sees the same data.
"""

import os
import sqlite3
from contextlib import contextmanager
from typing import Optional, Generator, Any, Dict, List
from datetime import datetime, timezone
import threading
import structlog

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Provider records (deleted on removal)
CREATE TABLE IF NOT EXISTS providers (
    provider_id INTEGER PRIMARY KEY,
    owner TEXT NOT NULL,
    fee INTEGER NOT NULL,
    last_settled INTEGER NOT NULL,
    subscriber_count INTEGER NOT NULL DEFAULT 0 CHECK (subscriber_count >= 0),
    balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0)
);

-- Subscriber records
CREATE TABLE IF NOT EXISTS subscribers (
    subscriber_id INTEGER PRIMARY KEY,
    owner TEXT NOT NULL,
    plan TEXT NOT NULL,
    created_date INTEGER NOT NULL,
    paused_date INTEGER NOT NULL DEFAULT 0,
    balance INTEGER NOT NULL DEFAULT 0,
    provider_ids TEXT NOT NULL  -- JSON array, non-owning references
);

-- Active set (independent of provider existence)
CREATE TABLE IF NOT EXISTS active_providers (
    provider_id INTEGER PRIMARY KEY
);

-- One-time registration keys, never reclaimed
CREATE TABLE IF NOT EXISTS registration_keys (
    key_hash TEXT PRIMARY KEY,
    provider_id INTEGER,
    used_at TEXT NOT NULL
);

-- Handle sequences
CREATE TABLE IF NOT EXISTS sequences (
    name TEXT PRIMARY KEY,
    next_value INTEGER NOT NULL
);

-- Committed ledger events
CREATE TABLE IF NOT EXISTS ledger_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event TEXT NOT NULL,
    ledger_time INTEGER NOT NULL,
    payload TEXT NOT NULL,  -- JSON object
    recorded_at TEXT NOT NULL
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_providers_owner ON providers(owner);
CREATE INDEX IF NOT EXISTS idx_subscribers_owner ON subscribers(owner);
CREATE INDEX IF NOT EXISTS idx_events_event ON ledger_events(event);
"""


class Database:
    """
    Database connection manager.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to a local file
        with db.connection() as conn:
            conn.execute("SELECT * FROM providers")

    Everything executed on one `connection()` block commits or rolls back
    together.
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///accrual_ledger.db"
        )
        if not self.database_url.startswith("sqlite:///"):
            raise ValueError(f"Unsupported database URL: {self.database_url!r} (expected sqlite:///...)")
        self.is_memory = self._get_sqlite_path() == ":memory:"
        self._local = threading.local()
        self._shared_conn: Optional[sqlite3.Connection] = None
        self._shared_lock = threading.RLock()
        self._initialized = False

    @classmethod
    def get_instance(cls, database_url: Optional[str] = None) -> "Database":
        """Get singleton database instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(database_url)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton (tests, reconfiguration)."""
        with cls._lock:
            if cls._instance is not None:
                cls._instance.close()
            cls._instance = None

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        return self.database_url[len("sqlite:///"):] or "accrual_ledger.db"

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self._get_sqlite_path(),
            check_same_thread=False,
            timeout=30.0,
        )
        conn.row_factory = sqlite3.Row
        if not self.is_memory:
            # Enable WAL mode for better concurrency
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a connection; commit on success, roll back on error."""
        if self.is_memory:
            with self._shared_lock:
                if self._shared_conn is None:
                    self._shared_conn = self._open()
                yield from self._transaction(self._shared_conn)
            return

        if not hasattr(self._local, 'conn') or self._local.conn is None:
            self._local.conn = self._open()
        yield from self._transaction(self._local.conn)

    @staticmethod
    def _transaction(conn: sqlite3.Connection) -> Generator[sqlite3.Connection, None, None]:
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            with self.connection() as conn:
                conn.executescript(SCHEMA_SQL)

                # Record schema version
                now = datetime.now(timezone.utc).isoformat()
                conn.execute(
                    "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, now)
                )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:30], in_memory=self.is_memory)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        with self.connection() as conn:
            cursor = conn.execute(query, params)
            if cursor.description:
                return [dict(row) for row in cursor.fetchall()]
            return []

    def execute_many(self, query: str, params_list: List[tuple]) -> int:
        """Execute a query with multiple parameter sets."""
        with self.connection() as conn:
            cursor = conn.executemany(query, params_list)
            return cursor.rowcount

    def close(self) -> None:
        """Close database connections."""
        if hasattr(self._local, 'conn') and self._local.conn:
            self._local.conn.close()
            self._local.conn = None
        if self._shared_conn is not None:
            self._shared_conn.close()
            self._shared_conn = None


def get_database(database_url: Optional[str] = None) -> Database:
    """Get the database singleton instance."""
    db = Database.get_instance(database_url)
    db.initialize()
    return db
