"""
Write-Through Ledger Store

Keeps a SQLite copy of the ledger in step with memory. The in-memory ledger
stays authoritative while the process runs; the store exists so that state,
and above all the set of consumed registration keys, survives restarts.

At commit time the transaction journal says exactly which providers,
subscribers, active bits and keys changed. Those rows, the handle sequences
and the buffered events are written in a single database transaction. If
that write fails the ledger rolls its memory back as well.
"""

from typing import TYPE_CHECKING, Callable, Optional
import structlog

from accrual.journal import Journal

from .database import Database, get_database
from .models import EventRecord
from .repository import (
    ActiveProviderRepository,
    EventRepository,
    ProviderRepository,
    RegistrationKeyRepository,
    SequenceRepository,
    SubscriberRepository,
)

if TYPE_CHECKING:
    from accrual.ledger import AccrualLedger

logger = structlog.get_logger()


class LedgerStore:
    """Persists an AccrualLedger through the repository layer."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()
        self.db.initialize()
        self.providers = ProviderRepository(self.db)
        self.subscribers = SubscriberRepository(self.db)
        self.active = ActiveProviderRepository(self.db)
        self.keys = RegistrationKeyRepository(self.db)
        self.sequences = SequenceRepository(self.db)
        self.events = EventRepository(self.db)

    @classmethod
    def from_url(cls, database_url: str) -> "LedgerStore":
        db = Database(database_url)
        db.initialize()
        return cls(db)

    def load_into(self, ledger: "AccrualLedger") -> None:
        """Replace the ledger's in-memory state with the persisted one."""
        providers = self.providers.list_all()
        subscribers = self.subscribers.list_all()

        ledger.providers.load(providers)
        ledger.subscribers.load(subscribers)
        for provider_id in self.active.list_active():
            ledger.active_set.set_active(provider_id, True)
        ledger.keys.load(self.keys.load_all())

        highest_provider = max((p.provider_id for p in providers), default=0)
        highest_subscriber = max((s.subscriber_id for s in subscribers), default=0)
        ledger.provider_sequence.restore(
            max(self.sequences.get("provider") or 1, highest_provider + 1)
        )
        ledger.subscriber_sequence.restore(
            max(self.sequences.get("subscriber") or 1, highest_subscriber + 1)
        )

        logger.info(
            "ledger_state_restored",
            providers=len(providers),
            subscribers=len(subscribers),
            next_provider_id=ledger.provider_sequence.next_value,
            next_subscriber_id=ledger.subscriber_sequence.next_value,
        )

    def flush(
        self,
        journal: Journal,
        ledger: "AccrualLedger",
        before_commit: Optional[Callable[[], None]] = None,
    ) -> None:
        """
        Write everything the journal touched in one database transaction.

        `before_commit` runs after the rows are written and before the
        transaction commits; if it raises, nothing is committed.
        """
        with self.db.connection() as conn:
            for provider_id in journal.touched("providers"):
                provider = ledger.providers.peek(provider_id)
                if provider is None:
                    self.providers.delete(provider_id, conn)
                else:
                    self.providers.upsert(provider, conn)

            for subscriber_id in journal.touched("subscribers"):
                subscriber = ledger.subscribers.peek(subscriber_id)
                if subscriber is None:
                    self.subscribers.delete(subscriber_id, conn)
                else:
                    self.subscribers.upsert(subscriber, conn)

            for provider_id in journal.touched("active"):
                self.active.set_active(provider_id, ledger.active_set.is_active(provider_id), conn)

            for key_hash in journal.touched("keys"):
                self.keys.add(key_hash, ledger.keys.provider_for(key_hash), conn)

            self._save_sequences(ledger, conn)
            written = self.events.append_many((EventRecord.from_event(e) for e in journal.events), conn)

            if before_commit is not None:
                before_commit()

        logger.debug("ledger_flushed", operation=journal.operation, events=written)

    def save_sequences(self, ledger: "AccrualLedger") -> None:
        """Persist handle sequences on their own, after a rolled-back operation."""
        with self.db.connection() as conn:
            self._save_sequences(ledger, conn)

    def _save_sequences(self, ledger: "AccrualLedger", conn) -> None:
        self.sequences.save("provider", ledger.provider_sequence.next_value, conn)
        self.sequences.save("subscriber", ledger.subscriber_sequence.next_value, conn)
