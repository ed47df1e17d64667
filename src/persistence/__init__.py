"""
Persistence Layer for the Accrual Ledger

SQLite write-through storage for providers, subscribers, the active set,
consumed registration keys, handle sequences and the event log.
"""

from .database import Database, get_database
from .models import EventRecord, ProviderRow, SubscriberRow
from .repository import (
    ActiveProviderRepository,
    EventRepository,
    ProviderRepository,
    RegistrationKeyRepository,
    SequenceRepository,
    SubscriberRepository,
)
from .store import LedgerStore

__all__ = [
    "Database",
    "get_database",
    "EventRecord",
    "ProviderRow",
    "SubscriberRow",
    "ActiveProviderRepository",
    "EventRepository",
    "ProviderRepository",
    "RegistrationKeyRepository",
    "SequenceRepository",
    "SubscriberRepository",
    "LedgerStore",
]
