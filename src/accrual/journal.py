"""
Undo Journal and Transaction Scope

Operations that walk several providers cannot be fully validated up front in
every case, and the asset-transfer step runs after the in-memory state has
already reached its final form. Both need all-or-nothing semantics, which the
journal provides: before a record, bit or key is mutated for the first time
inside a transaction, its prior value is remembered together with a restore
function. Rolling back replays those restores newest first.

Handle sequences are deliberately outside the journal. Handle allocation is
irreversible.
"""

from contextlib import contextmanager
from typing import Any, Callable, Generator, List, Optional, Set, Tuple
import structlog

from .events import EventBus, LedgerEvent

logger = structlog.get_logger()

# Marker for "no value existed before this transaction"
MISSING: Any = object()


class Journal:
    """Undo log for one transaction."""

    def __init__(self, operation: str):
        self.operation = operation
        self._entries: List[Tuple[str, Any, Any, Callable[[Any], None]]] = []
        self._seen: Set[Tuple[str, Any]] = set()
        self.events: List[LedgerEvent] = []

    def remember(self, table: str, key: Any, prior: Any, restore: Callable[[Any], None]) -> None:
        """Record the prior value of (table, key) unless already recorded."""
        marker = (table, key)
        if marker in self._seen:
            return
        self._seen.add(marker)
        self._entries.append((table, key, prior, restore))

    def touched(self, table: str) -> List[Any]:
        """Keys of `table` mutated in this transaction, in first-touch order."""
        return [key for (t, key, _, _) in self._entries if t == table]

    def rollback(self) -> int:
        """Restore every remembered value. Returns the number of restores."""
        for _, _, prior, restore in reversed(self._entries):
            restore(prior)
        count = len(self._entries)
        self._entries.clear()
        self._seen.clear()
        self.events.clear()
        return count


class TransactionScope:
    """
    Holds the journal of the transaction in progress, if any.

    Components call `remember` and `emit` unconditionally. Outside a
    transaction `remember` is a no-op and events publish immediately, which
    keeps the ledgers usable on their own.
    """

    def __init__(self, bus: Optional[EventBus] = None):
        self.bus = bus or EventBus()
        self._journal: Optional[Journal] = None

    @property
    def active(self) -> bool:
        return self._journal is not None

    def remember(self, table: str, key: Any, prior: Any, restore: Callable[[Any], None]) -> None:
        if self._journal is not None:
            self._journal.remember(table, key, prior, restore)

    def emit(self, event: LedgerEvent) -> None:
        if self._journal is not None:
            self._journal.events.append(event)
        else:
            self.bus.publish(event)

    @contextmanager
    def transaction(
        self,
        operation: str,
        on_commit: Optional[Callable[[Journal], None]] = None,
        on_abort: Optional[Callable[[Journal], None]] = None,
    ) -> Generator[Journal, None, None]:
        """
        Run a block atomically.

        `on_commit` runs after the block succeeds and before events publish;
        if it raises, the transaction rolls back. `on_abort` runs after a
        rollback. Nested calls join the outer transaction.
        """
        if self._journal is not None:
            yield self._journal
            return

        journal = Journal(operation)
        self._journal = journal
        try:
            yield journal
            if on_commit is not None:
                on_commit(journal)
        except Exception as e:
            restored = journal.rollback()
            logger.warning(
                "ledger_transaction_rolled_back",
                operation=operation,
                error=type(e).__name__,
                detail=str(e),
                restored=restored,
            )
            if on_abort is not None:
                try:
                    on_abort(journal)
                except Exception as abort_error:
                    logger.error("ledger_abort_hook_error", operation=operation, error=str(abort_error))
            raise
        finally:
            self._journal = None

        self.bus.publish_all(journal.events)
