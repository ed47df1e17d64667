"""
Accrual Ledger

The public operation surface. Every operation, reads included, runs under a
single ledger-wide lock, so settlement always sees a consistent
(subscriber_count, fee, last_settled) triple. Every mutating operation also
runs inside a journaled transaction: input failures, count conflicts,
asset-transfer failures and storage failures all roll the in-memory state
back to where it was before the call.

Order inside a mutating operation:

1. authorization and validation
2. settlement and record mutation
3. transfers are queued, nothing moves yet
4. store rows are written but not committed, if a store is configured
5. queued transfers run against the collaborator
6. store commit
7. publish buffered events
"""

from contextlib import contextmanager
from dataclasses import dataclass
from threading import RLock
from typing import TYPE_CHECKING, Callable, Generator, Iterable, List, Optional, Sequence, Tuple
import structlog

from custody.transfer import AssetTransfer, InMemoryTreasury, TransferDirection, TransferError

from .active_set import ActiveSet
from .clock import Clock, SystemClock
from .config import LedgerConfig
from .coordinator import MembershipCoordinator
from .errors import TransferFailed, UnknownProviderId
from .events import (
    EventBus,
    LedgerEvent,
    ProviderEarningsWithdrawn,
    ProviderRemoved,
    ProvidersStatusChanged,
)
from .handles import HandleSequence
from .journal import Journal, TransactionScope
from .providers import Provider, ProviderLedger, RegistrationKeys
from .subscribers import Subscriber, SubscriberLedger, SubscriptionPlan

if TYPE_CHECKING:
    from persistence.store import LedgerStore

logger = structlog.get_logger()


@dataclass(frozen=True)
class PendingTransfer:
    """A value movement queued until the operation commits."""
    direction: TransferDirection
    account: str
    amount: int


class AccrualLedger:
    """
    Multi-tenant accrual billing ledger.

    Usage:
        ledger = AccrualLedger(config=LedgerConfig(), transfer=treasury)
        p = ledger.register_provider("alice", "key-1", fee=100)
        s = ledger.register_subscriber("bob", deposit=600, plan="BASIC", provider_ids=[p, ...])
    """

    def __init__(
        self,
        config: Optional[LedgerConfig] = None,
        clock: Optional[Clock] = None,
        transfer: Optional[AssetTransfer] = None,
        store: Optional["LedgerStore"] = None,
        bus: Optional[EventBus] = None,
    ):
        self.config = (config or LedgerConfig()).validate()
        self.clock = clock or SystemClock()
        self.transfer = transfer or InMemoryTreasury(unlimited_wallets=True)
        self.store = store

        self._lock = RLock()
        self._pending: List[PendingTransfer] = []
        self.scope = TransactionScope(bus)
        self.provider_sequence = HandleSequence("provider")
        self.subscriber_sequence = HandleSequence("subscriber")

        self.active_set = ActiveSet(self.scope, capacity_hint=self.config.max_providers + 1)
        self.keys = RegistrationKeys(self.scope)
        self.providers = ProviderLedger(
            self.config, self.clock, self.active_set, self.scope, self.provider_sequence
        )
        self.subscribers = SubscriberLedger(
            self.config, self.clock, self.providers, self.scope, self.subscriber_sequence
        )
        self.coordinator = MembershipCoordinator(self.providers, self.subscribers)

        if self.store is not None:
            self.store.load_into(self)

        logger.info("accrual_ledger_initialized", persistent=self.store is not None, **self.config.to_dict())

    # ------------------------------------------------------------------
    # Transaction plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def _operation(self, name: str) -> Generator[Journal, None, None]:
        with self._lock:
            self._pending = []
            with self.scope.transaction(name, on_commit=self._commit, on_abort=self._abort) as journal:
                yield journal

    def _commit(self, journal: Journal) -> None:
        """
        Write the touched rows, run queued transfers, then commit the rows.

        A transfer failure rolls the database write back. A database commit
        failure after transfers went through reverses those transfers.
        """
        transfers, self._pending = self._pending, []
        executed: List[PendingTransfer] = []

        if self.store is None:
            self._run_transfers(transfers, executed)
            return

        try:
            self.store.flush(journal, self, before_commit=lambda: self._run_transfers(transfers, executed))
        except Exception:
            self._reverse_transfers(executed, journal.operation)
            raise

    def _abort(self, journal: Journal) -> None:
        self._pending = []
        # Handles allocated by the failed operation stay consumed.
        if self.store is not None:
            self.store.save_sequences(self)

    def _collect(self, payer: str, amount: int) -> None:
        if amount > 0:
            self._pending.append(PendingTransfer(TransferDirection.COLLECT, payer, amount))

    def _disburse(self, payee: str, amount: int) -> None:
        if amount > 0:
            self._pending.append(PendingTransfer(TransferDirection.DISBURSE, payee, amount))

    def _run_transfers(self, transfers: List[PendingTransfer], executed: List[PendingTransfer]) -> None:
        for transfer in transfers:
            try:
                if transfer.direction is TransferDirection.COLLECT:
                    self.transfer.collect(transfer.account, transfer.amount)
                else:
                    self.transfer.disburse(transfer.account, transfer.amount)
            except TransferError as e:
                raise TransferFailed(
                    f"Could not {transfer.direction.value.lower()} {transfer.amount} for {transfer.account}: {e}",
                    account=transfer.account,
                    amount=transfer.amount,
                    direction=transfer.direction.value,
                ) from e
            executed.append(transfer)

    def _reverse_transfers(self, executed: List[PendingTransfer], operation: str) -> None:
        for transfer in reversed(executed):
            try:
                if transfer.direction is TransferDirection.COLLECT:
                    self.transfer.disburse(transfer.account, transfer.amount)
                else:
                    self.transfer.collect(transfer.account, transfer.amount)
            except TransferError as e:
                logger.error(
                    "transfer_reversal_failed",
                    operation=operation,
                    account=transfer.account,
                    amount=transfer.amount,
                    direction=transfer.direction.value,
                    error=str(e),
                )
            else:
                logger.warning(
                    "transfer_reversed",
                    operation=operation,
                    account=transfer.account,
                    amount=transfer.amount,
                    direction=transfer.direction.value,
                )

    # ------------------------------------------------------------------
    # Provider operations
    # ------------------------------------------------------------------

    def register_provider(self, owner: str, registration_key: str, fee: int) -> int:
        """
        Register a provider with a one-time registration key.

        Raises KeyAlreadyUsed, FeeTooLow or CapacityExceeded.
        """
        with self._operation("register_provider"):
            self.keys.ensure_unused(registration_key)
            provider_id = self.providers.register(owner, fee)
            self.keys.consume(registration_key, provider_id)
            return provider_id

    def remove_provider(self, provider_id: int, caller: str) -> int:
        """Settle, pay out and delete a provider. Returns the payout."""
        with self._operation("remove_provider"):
            payout = self.providers.remove(provider_id, caller)
            self._disburse(caller, payout)
            self.scope.emit(
                ProviderRemoved(timestamp=self.clock.now(), provider_id=provider_id, owner=caller, payout=payout)
            )
            return payout

    def withdraw_provider_earnings(self, provider_id: int, caller: str) -> int:
        """Settle and pay out the provider's balance. Returns the amount."""
        with self._operation("withdraw_provider_earnings"):
            amount = self.providers.withdraw(provider_id, caller)
            self._disburse(caller, amount)
            self.scope.emit(
                ProviderEarningsWithdrawn(
                    timestamp=self.clock.now(), provider_id=provider_id, owner=caller, amount=amount
                )
            )
            return amount

    def set_providers_active(self, provider_ids: Iterable[int], active: bool) -> None:
        """
        Toggle the active flag of several providers.

        Every id must name a live provider; otherwise nothing is changed.
        Deactivation does not touch counts or balances: attached subscribers
        keep accruing to the provider.
        """
        ids: Tuple[int, ...] = tuple(provider_ids)
        with self._operation("set_providers_active"):
            for provider_id in ids:
                if not self.providers.exists(provider_id):
                    raise UnknownProviderId(f"Unknown provider {provider_id}", provider_id=provider_id)
            for provider_id in ids:
                self.active_set.set_active(provider_id, active)
            self.scope.emit(ProvidersStatusChanged(timestamp=self.clock.now(), provider_ids=ids, active=active))
            logger.info("providers_status_changed", provider_ids=list(ids), active=active)

    def update_provider_fee(self, provider_id: int, caller: str, new_fee: int) -> None:
        with self._operation("update_provider_fee"):
            self.providers.authorize(provider_id, caller)
            self.providers.update_fee(provider_id, new_fee)

    # ------------------------------------------------------------------
    # Subscriber operations
    # ------------------------------------------------------------------

    def register_subscriber(
        self,
        caller: str,
        deposit: int,
        plan: SubscriptionPlan,
        provider_ids: Sequence[int],
    ) -> int:
        """
        Register a subscriber against 3 to 14 active providers.

        The deposit must cover two billing periods of the providers' combined
        fees and is collected from the caller.
        """
        with self._operation("register_subscriber"):
            subscriber_id = self.coordinator.register_subscriber(caller, plan, deposit, provider_ids)
            self._collect(caller, deposit)
            return subscriber_id

    def pause_subscription(self, subscriber_id: int, caller: str) -> None:
        with self._operation("pause_subscription"):
            self.coordinator.pause_subscription(subscriber_id, caller)

    def deposit_to_subscription(self, subscriber_id: int, caller: str, amount: int) -> None:
        with self._operation("deposit_to_subscription"):
            self.subscribers.deposit(subscriber_id, caller, amount)
            self._collect(caller, amount)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_provider_state(self, provider_id: int) -> Provider:
        with self._lock:
            return self.providers.get_state(provider_id)

    def get_provider_earnings(self, provider_id: int) -> int:
        """Earnings accrued since the provider's last settlement."""
        with self._lock:
            return self.providers.get_earnings_since_last_settlement(provider_id)

    def get_provider_live_balance(self, provider_id: int) -> int:
        with self._lock:
            return self.providers.get_live_balance(provider_id)

    def is_provider_active(self, provider_id: int) -> bool:
        with self._lock:
            return self.active_set.is_active(provider_id)

    def get_subscriber_state(self, subscriber_id: int) -> Subscriber:
        with self._lock:
            return self.subscribers.get_state(subscriber_id)

    def get_subscriber_live_balance(self, subscriber_id: int) -> int:
        with self._lock:
            return self.subscribers.get_live_balance(subscriber_id)

    def list_providers(self) -> List[Provider]:
        with self._lock:
            return self.providers.list_providers()

    def list_subscribers(self) -> List[Subscriber]:
        with self._lock:
            return self.subscribers.list_subscribers()

    def events(self) -> List[LedgerEvent]:
        return self.scope.bus.get_history()

    def on_event(self, callback: Callable[[LedgerEvent], None]) -> None:
        self.scope.bus.subscribe(callback)
