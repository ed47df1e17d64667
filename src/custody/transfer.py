"""
Asset-Transfer Collaborator

The ledger never holds funds. It tells a collaborator to pull deposits from
subscribers and to push earnings out to providers, and treats every call as
all-or-nothing: a collaborator that cannot complete a movement raises
TransferError and the ledger rolls the whole operation back.

InMemoryTreasury is the reference collaborator. It keeps wallet balances
per account and the pooled custody balance, which makes it suitable for the
HTTP service in single-process deployments and for tests.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Any, Dict, List, Optional
import structlog

logger = structlog.get_logger()


class TransferError(Exception):
    """Raised when a collaborator cannot complete a movement."""
    pass


class TransferDirection(Enum):
    COLLECT = "COLLECT"
    DISBURSE = "DISBURSE"


@dataclass
class TransferRecord:
    """One completed movement."""
    transfer_id: str
    direction: TransferDirection
    account: str
    amount: int
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transfer_id": self.transfer_id,
            "direction": self.direction.value,
            "account": self.account,
            "amount": self.amount,
            "timestamp": self.timestamp,
        }


class AssetTransfer(ABC):
    """Interface the ledger uses to move value in and out of custody."""

    @abstractmethod
    def collect(self, payer: str, amount: int) -> None:
        """Pull `amount` from `payer` into custody."""

    @abstractmethod
    def disburse(self, payee: str, amount: int) -> None:
        """Push `amount` from custody to `payee`."""


class InMemoryTreasury(AssetTransfer):
    """
    Wallet-backed collaborator.

    With `unlimited_wallets` set, every account can pay any amount, and
    wallets and custody may run negative, so no movement ever fails. The
    standalone service runs this way. Otherwise accounts must be funded first, an
    underfunded collect raises TransferError, and a disbursement larger than
    custody raises TransferError.
    """

    def __init__(self, unlimited_wallets: bool = False):
        self.unlimited_wallets = unlimited_wallets
        self._wallets: Dict[str, int] = {}
        self._custody = 0
        self._transfers: List[TransferRecord] = []
        self._counter = 0
        self._lock = Lock()

    @property
    def custody_balance(self) -> int:
        return self._custody

    def fund(self, account: str, amount: int) -> int:
        """Credit an external wallet. Returns its new balance."""
        if amount < 0:
            raise ValueError("amount must be non-negative")
        with self._lock:
            self._wallets[account] = self._wallets.get(account, 0) + amount
            return self._wallets[account]

    def wallet_balance(self, account: str) -> int:
        return self._wallets.get(account, 0)

    def collect(self, payer: str, amount: int) -> None:
        self._check_amount(amount)
        with self._lock:
            available = self._wallets.get(payer, 0)
            if not self.unlimited_wallets and available < amount:
                logger.warning("treasury_collect_rejected", payer=payer, amount=amount, available=available)
                raise TransferError(f"Account {payer} cannot cover {amount} (has {available})")
            self._wallets[payer] = available - amount
            self._custody += amount
            record = self._record(TransferDirection.COLLECT, payer, amount)

        logger.info("treasury_collected", transfer_id=record.transfer_id, payer=payer, amount=amount)

    def disburse(self, payee: str, amount: int) -> None:
        self._check_amount(amount)
        with self._lock:
            if not self.unlimited_wallets and self._custody < amount:
                logger.error("treasury_custody_shortfall", payee=payee, amount=amount, custody=self._custody)
                raise TransferError(f"Custody holds {self._custody}, cannot disburse {amount}")
            self._custody -= amount
            self._wallets[payee] = self._wallets.get(payee, 0) + amount
            record = self._record(TransferDirection.DISBURSE, payee, amount)

        logger.info("treasury_disbursed", transfer_id=record.transfer_id, payee=payee, amount=amount)

    def get_transfers(self, account: Optional[str] = None) -> List[TransferRecord]:
        if account is None:
            return self._transfers.copy()
        return [t for t in self._transfers if t.account == account]

    @staticmethod
    def _check_amount(amount: int) -> None:
        if amount <= 0:
            raise TransferError(f"Transfer amount must be positive, got {amount}")

    def _record(self, direction: TransferDirection, account: str, amount: int) -> TransferRecord:
        self._counter += 1
        record = TransferRecord(
            transfer_id=f"TRF-{self._counter:012d}",
            direction=direction,
            account=account,
            amount=amount,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        self._transfers.append(record)
        return record
