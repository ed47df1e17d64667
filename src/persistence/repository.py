"""
Repository Layer for the Accrual Ledger

CRUD operations for every persisted ledger entity. Write methods accept an
optional open connection so that a caller can group several writes into one
database transaction.
"""

from typing import Any, Dict, Iterable, List, Optional
from datetime import datetime, timezone
import sqlite3
import structlog

from accrual.providers import Provider
from accrual.subscribers import Subscriber

from .database import Database, get_database
from .models import EventRecord, ProviderRow, SubscriberRow

logger = structlog.get_logger()


class _Repository:
    """Shared plumbing: run on a given connection, or on a fresh one."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def _write(self, query: str, params: tuple, conn: Optional[sqlite3.Connection]) -> None:
        if conn is not None:
            conn.execute(query, params)
        else:
            self.db.execute(query, params)


class ProviderRepository(_Repository):
    """Repository for provider records."""

    def upsert(self, provider: Provider, conn: Optional[sqlite3.Connection] = None) -> None:
        self._write(
            """INSERT OR REPLACE INTO providers
               (provider_id, owner, fee, last_settled, subscriber_count, balance)
               VALUES (?, ?, ?, ?, ?, ?)""",
            ProviderRow.to_db_tuple(provider),
            conn,
        )

    def delete(self, provider_id: int, conn: Optional[sqlite3.Connection] = None) -> None:
        self._write("DELETE FROM providers WHERE provider_id = ?", (provider_id,), conn)

    def get(self, provider_id: int) -> Optional[Provider]:
        results = self.db.execute(
            "SELECT * FROM providers WHERE provider_id = ?",
            (provider_id,)
        )
        return ProviderRow.from_row(results[0]) if results else None

    def list_all(self) -> List[Provider]:
        results = self.db.execute("SELECT * FROM providers ORDER BY provider_id ASC")
        return [ProviderRow.from_row(r) for r in results]

    def count(self) -> int:
        results = self.db.execute("SELECT COUNT(*) as cnt FROM providers")
        return results[0]["cnt"] if results else 0


class SubscriberRepository(_Repository):
    """Repository for subscriber records."""

    def upsert(self, subscriber: Subscriber, conn: Optional[sqlite3.Connection] = None) -> None:
        self._write(
            """INSERT OR REPLACE INTO subscribers
               (subscriber_id, owner, plan, created_date, paused_date, balance, provider_ids)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            SubscriberRow.to_db_tuple(subscriber),
            conn,
        )

    def delete(self, subscriber_id: int, conn: Optional[sqlite3.Connection] = None) -> None:
        self._write("DELETE FROM subscribers WHERE subscriber_id = ?", (subscriber_id,), conn)

    def get(self, subscriber_id: int) -> Optional[Subscriber]:
        results = self.db.execute(
            "SELECT * FROM subscribers WHERE subscriber_id = ?",
            (subscriber_id,)
        )
        return SubscriberRow.from_row(results[0]) if results else None

    def get_by_owner(self, owner: str) -> List[Subscriber]:
        results = self.db.execute(
            "SELECT * FROM subscribers WHERE owner = ? ORDER BY subscriber_id ASC",
            (owner,)
        )
        return [SubscriberRow.from_row(r) for r in results]

    def list_all(self) -> List[Subscriber]:
        results = self.db.execute("SELECT * FROM subscribers ORDER BY subscriber_id ASC")
        return [SubscriberRow.from_row(r) for r in results]


class ActiveProviderRepository(_Repository):
    """Repository for the active set. A row means the bit is set."""

    def set_active(self, provider_id: int, active: bool, conn: Optional[sqlite3.Connection] = None) -> None:
        if active:
            self._write("INSERT OR IGNORE INTO active_providers (provider_id) VALUES (?)", (provider_id,), conn)
        else:
            self._write("DELETE FROM active_providers WHERE provider_id = ?", (provider_id,), conn)

    def list_active(self) -> List[int]:
        results = self.db.execute("SELECT provider_id FROM active_providers ORDER BY provider_id ASC")
        return [r["provider_id"] for r in results]


class RegistrationKeyRepository(_Repository):
    """Repository for consumed registration key digests."""

    def add(self, key_hash: str, provider_id: Optional[int], conn: Optional[sqlite3.Connection] = None) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self._write(
            "INSERT INTO registration_keys (key_hash, provider_id, used_at) VALUES (?, ?, ?)",
            (key_hash, provider_id, now),
            conn,
        )

    def exists(self, key_hash: str) -> bool:
        return bool(self.db.execute("SELECT 1 FROM registration_keys WHERE key_hash = ?", (key_hash,)))

    def load_all(self) -> Dict[str, Optional[int]]:
        results = self.db.execute("SELECT key_hash, provider_id FROM registration_keys")
        return {r["key_hash"]: r["provider_id"] for r in results}


class SequenceRepository(_Repository):
    """Repository for handle sequences."""

    def save(self, name: str, next_value: int, conn: Optional[sqlite3.Connection] = None) -> None:
        # Never rewind a stored sequence
        self._write(
            """INSERT INTO sequences (name, next_value) VALUES (?, ?)
               ON CONFLICT(name) DO UPDATE SET next_value = MAX(next_value, excluded.next_value)""",
            (name, next_value),
            conn,
        )

    def get(self, name: str) -> Optional[int]:
        results = self.db.execute("SELECT next_value FROM sequences WHERE name = ?", (name,))
        return results[0]["next_value"] if results else None


class EventRepository(_Repository):
    """Repository for the committed event log."""

    def append_many(self, events: Iterable[EventRecord], conn: Optional[sqlite3.Connection] = None) -> int:
        count = 0
        for record in events:
            self._write(
                "INSERT INTO ledger_events (event, ledger_time, payload, recorded_at) VALUES (?, ?, ?, ?)",
                record.to_db_tuple(),
                conn,
            )
            count += 1
        return count

    def list_recent(self, limit: int = 100, event: Optional[str] = None) -> List[EventRecord]:
        if event:
            results = self.db.execute(
                "SELECT * FROM ledger_events WHERE event = ? ORDER BY id DESC LIMIT ?",
                (event, limit)
            )
        else:
            results = self.db.execute(
                "SELECT * FROM ledger_events ORDER BY id DESC LIMIT ?",
                (limit,)
            )
        return [EventRecord.from_row(r) for r in results]

    def count(self) -> int:
        results = self.db.execute("SELECT COUNT(*) as cnt FROM ledger_events")
        return results[0]["cnt"] if results else 0

    def summary(self) -> Dict[str, Any]:
        results = self.db.execute("SELECT event, COUNT(*) as cnt FROM ledger_events GROUP BY event")
        return {r["event"]: r["cnt"] for r in results}
