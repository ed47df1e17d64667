"""
Provider Ledger and Settlement Engine

A provider earns `fee` units per attached subscriber per billing period,
accrued per second. The ledger never stores a running per-second figure.
It keeps the settled `balance` up to `last_settled` and turns elapsed time
into balance on demand:

    earnings = subscriber_count * (now - last_settled) * fee // billing_period

Every mutation of `subscriber_count` or `fee` settles first, so each
interval between two settlements has a constant count and fee and the
running balance is an exact sum. Skipping that settlement is the one bug
class this module exists to rule out.
"""

from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, Iterable, List, Optional, Set
import hashlib
import structlog

from .active_set import ActiveSet
from .clock import Clock
from .config import LedgerConfig
from .errors import (
    CapacityExceeded,
    FeeTooLow,
    InvalidAmount,
    InvalidState,
    KeyAlreadyUsed,
    NotOwner,
    ProviderNotFound,
)
from .events import ProviderFeeUpdated, ProviderRegistered
from .handles import HandleSequence
from .journal import MISSING, TransactionScope

logger = structlog.get_logger()


@dataclass
class Provider:
    """A provider record. Owned exclusively by its ProviderLedger."""
    provider_id: int
    owner: str
    fee: int
    last_settled: int
    subscriber_count: int = 0
    balance: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def accrued_earnings(provider: Provider, now: int, billing_period_seconds: int) -> int:
    """Earnings for the interval since `last_settled`, floored."""
    elapsed = now - provider.last_settled
    if elapsed <= 0 or provider.subscriber_count == 0:
        return 0
    return provider.subscriber_count * elapsed * provider.fee // billing_period_seconds


class ProviderLedger:
    """
    Owns provider records and the accrual algorithm.

    Activity is tracked in the shared ActiveSet. Registration marks a
    provider active and removal clears the bit; deactivation in between is
    the coordinator's business and leaves the record untouched.
    """

    def __init__(
        self,
        config: LedgerConfig,
        clock: Clock,
        active_set: ActiveSet,
        scope: Optional[TransactionScope] = None,
        sequence: Optional[HandleSequence] = None,
    ):
        self.config = config
        self.clock = clock
        self.active_set = active_set
        self.scope = scope or TransactionScope()
        self.sequence = sequence or HandleSequence("provider")
        self._providers: Dict[int, Provider] = {}

    # ------------------------------------------------------------------
    # Record access
    # ------------------------------------------------------------------

    def _get(self, provider_id: int) -> Provider:
        provider = self._providers.get(provider_id)
        if provider is None:
            raise ProviderNotFound(f"Provider {provider_id} not found", provider_id=provider_id)
        return provider

    def _touch(self, provider_id: int) -> None:
        """Journal the current record before the first mutation in a transaction."""
        current = self._providers.get(provider_id)
        prior = replace(current) if current is not None else MISSING
        self.scope.remember("providers", provider_id, prior, lambda value: self._restore(provider_id, value))

    def _restore(self, provider_id: int, value: Any) -> None:
        if value is MISSING:
            self._providers.pop(provider_id, None)
        else:
            self._providers[provider_id] = value

    def authorize(self, provider_id: int, caller: str) -> Provider:
        """Return the record if `caller` owns it, else raise NotOwner."""
        provider = self._get(provider_id)
        if provider.owner != caller:
            raise NotOwner(f"Caller does not own provider {provider_id}", provider_id=provider_id)
        return provider

    def exists(self, provider_id: int) -> bool:
        return provider_id in self._providers

    def is_active(self, provider_id: int) -> bool:
        return self.active_set.is_active(provider_id)

    def __len__(self) -> int:
        return len(self._providers)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def register(self, owner: str, fee: int) -> int:
        """
        Create a provider and mark it active.

        The handle is allocated before the capacity check, so a
        CapacityExceeded failure still consumes a handle.
        """
        if fee < self.config.min_fee:
            raise FeeTooLow(
                f"Fee {fee} below minimum {self.config.min_fee}",
                fee=fee,
                min_fee=self.config.min_fee,
            )

        provider_id = self.sequence.allocate()
        if len(self._providers) + 1 > self.config.max_providers:
            logger.warning(
                "provider_capacity_exceeded",
                provider_id=provider_id,
                max_providers=self.config.max_providers,
            )
            raise CapacityExceeded(
                f"Provider limit {self.config.max_providers} reached",
                max_providers=self.config.max_providers,
            )

        now = self.clock.now()
        self._touch(provider_id)
        self._providers[provider_id] = Provider(
            provider_id=provider_id,
            owner=owner,
            fee=fee,
            last_settled=now,
        )
        self.active_set.set_active(provider_id, True)

        self.scope.emit(ProviderRegistered(timestamp=now, provider_id=provider_id, owner=owner, fee=fee))
        logger.info("provider_registered", provider_id=provider_id, owner=owner, fee=fee)
        return provider_id

    def settle(self, provider_id: int) -> int:
        """
        Move accrued earnings into the balance and advance `last_settled`.

        Returns the earnings added. Calling twice at the same instant adds
        zero the second time.
        """
        provider = self._get(provider_id)
        now = self.clock.now()
        earnings = accrued_earnings(provider, now, self.config.billing_period_seconds)

        if earnings == 0 and provider.last_settled >= now:
            return 0

        self._touch(provider_id)
        provider.balance += earnings
        provider.last_settled = max(provider.last_settled, now)

        logger.debug(
            "provider_settled",
            provider_id=provider_id,
            earnings=earnings,
            balance=provider.balance,
            subscriber_count=provider.subscriber_count,
        )
        return earnings

    def adjust_subscriber_count(self, provider_id: int, delta: int) -> int:
        """Settle, then apply `delta` to the subscriber count."""
        provider = self._get(provider_id)
        if provider.subscriber_count + delta < 0:
            raise InvalidState(
                f"Provider {provider_id} subscriber count cannot go below zero",
                provider_id=provider_id,
                subscriber_count=provider.subscriber_count,
                delta=delta,
            )

        self.settle(provider_id)
        if delta:
            self._touch(provider_id)
            provider.subscriber_count += delta
        return provider.subscriber_count

    def update_fee(self, provider_id: int, new_fee: int) -> None:
        """
        Settle at the old fee, then switch to `new_fee`.

        Unlike registration, the minimum fee is not enforced here.
        """
        if new_fee < 0:
            raise InvalidAmount("Fee must be non-negative", fee=new_fee)
        provider = self._get(provider_id)
        self.settle(provider_id)

        old_fee = provider.fee
        self._touch(provider_id)
        provider.fee = new_fee

        self.scope.emit(
            ProviderFeeUpdated(
                timestamp=self.clock.now(),
                provider_id=provider_id,
                old_fee=old_fee,
                new_fee=new_fee,
            )
        )
        logger.info("provider_fee_updated", provider_id=provider_id, old_fee=old_fee, new_fee=new_fee)

    def withdraw(self, provider_id: int, caller: str) -> int:
        """Settle and zero the balance. Returns the amount to disburse."""
        provider = self.authorize(provider_id, caller)
        self.settle(provider_id)
        amount = provider.balance
        if amount:
            self._touch(provider_id)
            provider.balance = 0

        logger.info("provider_withdrawal", provider_id=provider_id, amount=amount)
        return amount

    def remove(self, provider_id: int, caller: str) -> int:
        """
        Final settlement, clear the active bit, delete the record.

        Returns the payout. The handle is never reused.
        """
        provider = self.authorize(provider_id, caller)
        self.settle(provider_id)
        payout = provider.balance

        self.active_set.set_active(provider_id, False)
        self._touch(provider_id)
        del self._providers[provider_id]

        logger.info(
            "provider_removed",
            provider_id=provider_id,
            payout=payout,
            orphaned_subscribers=provider.subscriber_count,
        )
        return payout

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_state(self, provider_id: int) -> Provider:
        """Snapshot copy of the provider record."""
        return replace(self._get(provider_id))

    def get_earnings_since_last_settlement(self, provider_id: int) -> int:
        provider = self._get(provider_id)
        return accrued_earnings(provider, self.clock.now(), self.config.billing_period_seconds)

    def get_live_balance(self, provider_id: int) -> int:
        """Settled balance plus earnings pending since the last settlement."""
        provider = self._get(provider_id)
        return provider.balance + accrued_earnings(provider, self.clock.now(), self.config.billing_period_seconds)

    def list_providers(self) -> List[Provider]:
        return [replace(p) for _, p in sorted(self._providers.items())]

    def fee_of(self, provider_id: int) -> int:
        return self._get(provider_id).fee

    # ------------------------------------------------------------------
    # Persistence hooks
    # ------------------------------------------------------------------

    def peek(self, provider_id: int) -> Optional[Provider]:
        """Live record or None, without raising. For the store's flush."""
        return self._providers.get(provider_id)

    def load(self, providers: Iterable[Provider]) -> None:
        """Replace the in-memory records with previously persisted ones."""
        self._providers = {p.provider_id: p for p in providers}
        logger.info("providers_loaded", count=len(self._providers))


class RegistrationKeys:
    """
    One-time registration tokens.

    Only a SHA-256 digest of each key is retained. A consumed key stays
    consumed forever, including after its provider is removed.
    """

    def __init__(self, scope: Optional[TransactionScope] = None):
        self.scope = scope or TransactionScope()
        self._used: Dict[str, Optional[int]] = {}

    @staticmethod
    def digest(key: str) -> str:
        return hashlib.sha256(key.encode("utf-8")).hexdigest()

    def is_used(self, key: str) -> bool:
        return self.digest(key) in self._used

    def ensure_unused(self, key: str) -> None:
        if self.is_used(key):
            raise KeyAlreadyUsed("Registration key already used")

    def consume(self, key: str, provider_id: Optional[int] = None) -> str:
        """Mark `key` used. Returns its digest."""
        self.ensure_unused(key)
        key_hash = self.digest(key)
        self.scope.remember("keys", key_hash, MISSING, lambda _: self._used.pop(key_hash, None))
        self._used[key_hash] = provider_id
        return key_hash

    def provider_for(self, key_hash: str) -> Optional[int]:
        return self._used.get(key_hash)

    def used_digests(self) -> Set[str]:
        return set(self._used)

    def load(self, used: Dict[str, Optional[int]]) -> None:
        self._used = dict(used)
