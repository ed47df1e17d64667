"""
Ledger Events

Every committed state transition emits one event. Events raised inside a
transaction are buffered and only published once the transaction commits,
so subscribers never observe a change that was later rolled back.
"""

from dataclasses import asdict, dataclass, field
from threading import Lock
from typing import Any, Callable, Dict, List, Tuple
import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class LedgerEvent:
    """Base event. `timestamp` is ledger time in seconds."""
    timestamp: int

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["event_type"] = self.name
        return data


@dataclass(frozen=True)
class ProviderRegistered(LedgerEvent):
    provider_id: int
    owner: str
    fee: int


@dataclass(frozen=True)
class ProviderRemoved(LedgerEvent):
    provider_id: int
    owner: str
    payout: int


@dataclass(frozen=True)
class ProviderEarningsWithdrawn(LedgerEvent):
    provider_id: int
    owner: str
    amount: int


@dataclass(frozen=True)
class ProviderFeeUpdated(LedgerEvent):
    provider_id: int
    old_fee: int
    new_fee: int


@dataclass(frozen=True)
class ProvidersStatusChanged(LedgerEvent):
    provider_ids: Tuple[int, ...]
    active: bool


@dataclass(frozen=True)
class SubscriberRegistered(LedgerEvent):
    subscriber_id: int
    owner: str
    plan: str
    deposit: int
    provider_ids: Tuple[int, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class SubscriptionPaused(LedgerEvent):
    subscriber_id: int
    released_provider_ids: Tuple[int, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class SubscriptionDeposited(LedgerEvent):
    subscriber_id: int
    amount: int


class EventBus:
    """
    Fan-out of committed events to registered callbacks.

    Callback failures are logged and never propagate into the ledger: the
    state change they describe has already committed.
    """

    def __init__(self, history_limit: int = 10_000):
        self._callbacks: List[Callable[[LedgerEvent], None]] = []
        self._history: List[LedgerEvent] = []
        self._history_limit = history_limit
        self._lock = Lock()

    def subscribe(self, callback: Callable[[LedgerEvent], None]) -> None:
        """Register a callback for committed events."""
        self._callbacks.append(callback)

    def publish(self, event: LedgerEvent) -> None:
        with self._lock:
            self._history.append(event)
            if len(self._history) > self._history_limit:
                del self._history[: len(self._history) - self._history_limit]

        logger.info("ledger_event", **event.to_dict())

        for callback in self._callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.error("ledger_event_callback_error", event_type=event.name, error=str(e))

    def publish_all(self, events: List[LedgerEvent]) -> None:
        for event in events:
            self.publish(event)

    def get_history(self) -> List[LedgerEvent]:
        """Get committed event history (oldest first)."""
        return self._history.copy()
