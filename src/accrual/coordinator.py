"""
Membership Coordinator

Keeps the ProviderLedger and SubscriberLedger consistent across operations
that touch a whole provider list. Each operation runs in two passes:

1. Validate: every check that can fail on input (list shape, provider
   activity, solvency) runs before anything is mutated.
2. Commit: settle and adjust each provider, then write the subscriber.

A failure that can only surface during commit (a count that would go
negative) is undone by the enclosing transaction journal.
"""

from dataclasses import dataclass
from typing import List, Sequence, Tuple
import structlog

from .errors import InsufficientDeposit, InvalidAmount, ProviderInactive
from .events import SubscriberRegistered, SubscriptionPaused
from .providers import ProviderLedger
from .subscribers import SubscriberLedger, SubscriptionPlan

logger = structlog.get_logger()


@dataclass(frozen=True)
class RegistrationPlan:
    """Outcome of the validation pass for a subscriber registration."""
    provider_ids: Tuple[int, ...]
    total_fees: int
    required_deposit: int


class MembershipCoordinator:
    """Sequences multi-provider registration and pause. Holds no state."""

    def __init__(self, providers: ProviderLedger, subscribers: SubscriberLedger):
        self.providers = providers
        self.subscribers = subscribers

    @property
    def config(self):
        return self.providers.config

    def plan_registration(self, deposit: int, provider_ids: Sequence[int]) -> RegistrationPlan:
        """Validation pass. Raises on the first failing check, mutates nothing."""
        if deposit < 0:
            raise InvalidAmount("Deposit must be non-negative", deposit=deposit)

        snapshot = self.subscribers.validate_provider_ids(provider_ids)

        total_fees = 0
        for provider_id in snapshot:
            if not self.providers.exists(provider_id) or not self.providers.is_active(provider_id):
                raise ProviderInactive(f"Provider {provider_id} is not active", provider_id=provider_id)
            total_fees += self.providers.fee_of(provider_id)

        required = total_fees * self.config.solvency_periods
        if deposit < required:
            raise InsufficientDeposit(
                f"Deposit {deposit} below required {required}",
                deposit=deposit,
                required=required,
                total_fees=total_fees,
            )

        return RegistrationPlan(provider_ids=snapshot, total_fees=total_fees, required_deposit=required)

    def register_subscriber(
        self,
        owner: str,
        plan: SubscriptionPlan,
        deposit: int,
        provider_ids: Sequence[int],
    ) -> int:
        """Attach a new subscriber to every listed provider."""
        registration = self.plan_registration(deposit, provider_ids)
        subscription_plan = SubscriptionPlan.parse(plan)

        for provider_id in registration.provider_ids:
            self.providers.adjust_subscriber_count(provider_id, +1)

        subscriber_id = self.subscribers.register(owner, subscription_plan, deposit, registration.provider_ids)

        self.providers.scope.emit(
            SubscriberRegistered(
                timestamp=self.providers.clock.now(),
                subscriber_id=subscriber_id,
                owner=owner,
                plan=subscription_plan.value,
                deposit=deposit,
                provider_ids=registration.provider_ids,
            )
        )
        logger.info(
            "subscriber_registered",
            subscriber_id=subscriber_id,
            providers=list(registration.provider_ids),
            total_fees=registration.total_fees,
            deposit=deposit,
        )
        return subscriber_id

    def pause_subscription(self, subscriber_id: int, caller: str) -> Tuple[int, ...]:
        """
        Pause a subscription and detach it from its still-active providers.

        Inactive or removed providers are skipped: their count is no longer
        charged against this subscriber. Returns the providers released.
        """
        self.subscribers.authorize(subscriber_id, caller)
        provider_ids = self.subscribers.pause(subscriber_id)

        released: List[int] = []
        for provider_id in provider_ids:
            if not self.providers.exists(provider_id) or not self.providers.is_active(provider_id):
                continue
            self.providers.adjust_subscriber_count(provider_id, -1)
            released.append(provider_id)

        self.providers.scope.emit(
            SubscriptionPaused(
                timestamp=self.providers.clock.now(),
                subscriber_id=subscriber_id,
                released_provider_ids=tuple(released),
            )
        )
        logger.info(
            "subscription_released",
            subscriber_id=subscriber_id,
            released=released,
            skipped=len(provider_ids) - len(released),
        )
        return tuple(released)
