"""
Subscriber Ledger

Subscribers prepay a deposit that is never debited directly. What they have
consumed is inferred on demand from the fees of the providers they are still
attached to, which makes the live balance an estimate:

    end      = paused_date or now
    consumed = (end - created_date) * sum(active provider fees) // period
    live     = max(0, balance - consumed)

Current fees are applied across the whole subscription lifetime, and
providers that have since been deactivated or removed drop out of the sum
even though the deposit paid them while they were active. Integrations rely
on this figure as computed, so it is reproduced as-is.
"""

from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import structlog

from .clock import Clock
from .config import LedgerConfig
from .errors import (
    AlreadyPaused,
    DuplicateProvider,
    InvalidAmount,
    InvalidProviderCount,
    NotOwner,
    SubscriberNotFound,
)
from .events import SubscriptionDeposited
from .handles import HandleSequence
from .journal import MISSING, TransactionScope
from .providers import ProviderLedger

logger = structlog.get_logger()


class SubscriptionPlan(Enum):
    """Plan tiers. Cosmetic: fees come from the providers, not the plan."""
    BASIC = "BASIC"
    PREMIUM = "PREMIUM"
    VIP = "VIP"

    @classmethod
    def parse(cls, value: Any) -> "SubscriptionPlan":
        if isinstance(value, cls):
            return value
        try:
            return cls[str(value).upper()]
        except KeyError:
            raise ValueError(f"Unknown subscription plan: {value!r}")


@dataclass
class Subscriber:
    """A subscriber record. `provider_ids` are non-owning references."""
    subscriber_id: int
    owner: str
    plan: SubscriptionPlan
    created_date: int
    balance: int
    provider_ids: Tuple[int, ...] = field(default_factory=tuple)
    paused_date: int = 0

    @property
    def is_paused(self) -> bool:
        return self.paused_date != 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["plan"] = self.plan.value
        data["provider_ids"] = list(self.provider_ids)
        data["is_paused"] = self.is_paused
        return data


class SubscriberLedger:
    """
    Owns subscriber records and the live-balance estimate.

    Multi-provider steps (attaching on registration, releasing on pause) are
    driven by the MembershipCoordinator; this ledger only touches subscriber
    records and reads provider fees.
    """

    def __init__(
        self,
        config: LedgerConfig,
        clock: Clock,
        providers: ProviderLedger,
        scope: Optional[TransactionScope] = None,
        sequence: Optional[HandleSequence] = None,
    ):
        self.config = config
        self.clock = clock
        self.providers = providers
        self.scope = scope or TransactionScope()
        self.sequence = sequence or HandleSequence("subscriber")
        self._subscribers: Dict[int, Subscriber] = {}

    def _get(self, subscriber_id: int) -> Subscriber:
        subscriber = self._subscribers.get(subscriber_id)
        if subscriber is None:
            raise SubscriberNotFound(f"Subscriber {subscriber_id} not found", subscriber_id=subscriber_id)
        return subscriber

    def _touch(self, subscriber_id: int) -> None:
        current = self._subscribers.get(subscriber_id)
        prior = replace(current) if current is not None else MISSING
        self.scope.remember("subscribers", subscriber_id, prior, lambda value: self._restore(subscriber_id, value))

    def _restore(self, subscriber_id: int, value: Any) -> None:
        if value is MISSING:
            self._subscribers.pop(subscriber_id, None)
        else:
            self._subscribers[subscriber_id] = value

    def __len__(self) -> int:
        return len(self._subscribers)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_provider_ids(self, provider_ids: Sequence[int]) -> Tuple[int, ...]:
        """Check the list length and uniqueness. Returns an immutable snapshot."""
        snapshot = tuple(provider_ids)
        low = self.config.min_providers_per_subscriber
        high = self.config.max_providers_per_subscriber
        if not low <= len(snapshot) <= high:
            raise InvalidProviderCount(
                f"Subscriber needs between {low} and {high} providers, got {len(snapshot)}",
                count=len(snapshot),
                minimum=low,
                maximum=high,
            )
        if len(set(snapshot)) != len(snapshot):
            raise DuplicateProvider("Provider list contains duplicates", provider_ids=list(snapshot))
        return snapshot

    def authorize(self, subscriber_id: int, caller: str) -> Subscriber:
        subscriber = self._get(subscriber_id)
        if subscriber.owner != caller:
            raise NotOwner(f"Caller does not own subscriber {subscriber_id}", subscriber_id=subscriber_id)
        return subscriber

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def register(
        self,
        owner: str,
        plan: SubscriptionPlan,
        deposit: int,
        provider_ids: Sequence[int],
    ) -> int:
        """
        Create the subscriber record.

        Provider-side attachment and the solvency gate are enforced by the
        MembershipCoordinator before this is called.
        """
        if deposit < 0:
            raise InvalidAmount("Deposit must be non-negative", deposit=deposit)
        snapshot = self.validate_provider_ids(provider_ids)

        subscriber_id = self.sequence.allocate()
        self._touch(subscriber_id)
        self._subscribers[subscriber_id] = Subscriber(
            subscriber_id=subscriber_id,
            owner=owner,
            plan=SubscriptionPlan.parse(plan),
            created_date=self.clock.now(),
            balance=deposit,
            provider_ids=snapshot,
        )
        logger.info(
            "subscriber_created",
            subscriber_id=subscriber_id,
            owner=owner,
            deposit=deposit,
            providers=len(snapshot),
        )
        return subscriber_id

    def pause(self, subscriber_id: int) -> Tuple[int, ...]:
        """
        Stamp `paused_date`. There is no way back.

        Returns the referenced provider ids; releasing them is up to the
        coordinator.
        """
        subscriber = self._get(subscriber_id)
        if subscriber.is_paused:
            raise AlreadyPaused(f"Subscriber {subscriber_id} is already paused", subscriber_id=subscriber_id)

        self._touch(subscriber_id)
        # Time 0 is the "not paused" sentinel, so a pause at 0 is stored as 1.
        subscriber.paused_date = max(self.clock.now(), 1)
        logger.info("subscription_paused", subscriber_id=subscriber_id, paused_date=subscriber.paused_date)
        return subscriber.provider_ids

    def deposit(self, subscriber_id: int, caller: str, amount: int) -> int:
        """Credit a top-up. Returns the new stored balance."""
        subscriber = self.authorize(subscriber_id, caller)
        if amount < 0:
            raise InvalidAmount("Deposit amount must be non-negative", amount=amount)

        self._touch(subscriber_id)
        subscriber.balance += amount

        self.scope.emit(SubscriptionDeposited(timestamp=self.clock.now(), subscriber_id=subscriber_id, amount=amount))
        logger.info("subscription_deposit", subscriber_id=subscriber_id, amount=amount, balance=subscriber.balance)
        return subscriber.balance

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_state(self, subscriber_id: int) -> Subscriber:
        return replace(self._get(subscriber_id))

    def fees_per_period(self, subscriber: Subscriber) -> int:
        """Sum of current fees across still-active referenced providers."""
        total = 0
        for provider_id in subscriber.provider_ids:
            if self.providers.is_active(provider_id):
                total += self.providers.fee_of(provider_id)
        return total

    def get_consumed(self, subscriber_id: int) -> int:
        subscriber = self._get(subscriber_id)
        end_date = subscriber.paused_date if subscriber.is_paused else self.clock.now()
        elapsed = max(0, end_date - subscriber.created_date)
        return elapsed * self.fees_per_period(subscriber) // self.config.billing_period_seconds

    def get_live_balance(self, subscriber_id: int) -> int:
        subscriber = self._get(subscriber_id)
        return max(0, subscriber.balance - self.get_consumed(subscriber_id))

    def list_subscribers(self) -> List[Subscriber]:
        return [replace(s) for _, s in sorted(self._subscribers.items())]

    # ------------------------------------------------------------------
    # Persistence hooks
    # ------------------------------------------------------------------

    def peek(self, subscriber_id: int) -> Optional[Subscriber]:
        return self._subscribers.get(subscriber_id)

    def load(self, subscribers: Iterable[Subscriber]) -> None:
        self._subscribers = {s.subscriber_id: s for s in subscribers}
        logger.info("subscribers_loaded", count=len(self._subscribers))
