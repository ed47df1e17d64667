"""
Data Models for Persistence Layer

Row conversions between the ledger's domain records and their database
tuples. The domain dataclasses stay free of storage concerns.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import json

from accrual.events import LedgerEvent
from accrual.providers import Provider
from accrual.subscribers import Subscriber, SubscriptionPlan


class ProviderRow:
    """Mapping for the `providers` table."""

    COLUMNS = ("provider_id", "owner", "fee", "last_settled", "subscriber_count", "balance")

    @staticmethod
    def to_db_tuple(provider: Provider) -> tuple:
        return (
            provider.provider_id,
            provider.owner,
            provider.fee,
            provider.last_settled,
            provider.subscriber_count,
            provider.balance,
        )

    @staticmethod
    def from_row(row: Dict[str, Any]) -> Provider:
        return Provider(
            provider_id=row["provider_id"],
            owner=row["owner"],
            fee=row["fee"],
            last_settled=row["last_settled"],
            subscriber_count=row.get("subscriber_count", 0),
            balance=row.get("balance", 0),
        )


class SubscriberRow:
    """Mapping for the `subscribers` table."""

    COLUMNS = ("subscriber_id", "owner", "plan", "created_date", "paused_date", "balance", "provider_ids")

    @staticmethod
    def to_db_tuple(subscriber: Subscriber) -> tuple:
        return (
            subscriber.subscriber_id,
            subscriber.owner,
            subscriber.plan.value,
            subscriber.created_date,
            subscriber.paused_date,
            subscriber.balance,
            json.dumps(list(subscriber.provider_ids)),
        )

    @staticmethod
    def from_row(row: Dict[str, Any]) -> Subscriber:
        provider_ids = row["provider_ids"]
        if isinstance(provider_ids, str):
            provider_ids = json.loads(provider_ids)

        return Subscriber(
            subscriber_id=row["subscriber_id"],
            owner=row["owner"],
            plan=SubscriptionPlan.parse(row["plan"]),
            created_date=row["created_date"],
            paused_date=row.get("paused_date", 0) or 0,
            balance=row.get("balance", 0),
            provider_ids=tuple(provider_ids),
        )


@dataclass
class EventRecord:
    """Persisted ledger event."""
    event: str
    ledger_time: int
    payload: Dict[str, Any]
    recorded_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    id: Optional[int] = None

    @classmethod
    def from_event(cls, event: LedgerEvent) -> "EventRecord":
        return cls(event=event.name, ledger_time=event.timestamp, payload=event.to_dict())

    def to_db_tuple(self) -> tuple:
        return (self.event, self.ledger_time, json.dumps(self.payload, sort_keys=True), self.recorded_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event": self.event,
            "ledger_time": self.ledger_time,
            "payload": self.payload,
            "recorded_at": self.recorded_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "EventRecord":
        payload = row["payload"]
        if isinstance(payload, str):
            payload = json.loads(payload)
        return cls(
            id=row.get("id"),
            event=row["event"],
            ledger_time=row["ledger_time"],
            payload=payload,
            recorded_at=row["recorded_at"],
        )
