"""
Handle Allocation

Provider and subscriber handles are allocated from monotonic sequences owned
by their ledger. A handle, once handed out, is never issued again, even when
the operation that allocated it fails afterwards.
"""

from threading import Lock


class HandleSequence:
    """Monotonic integer sequence. The first handle issued is `start`."""

    def __init__(self, name: str, start: int = 1):
        self.name = name
        self._start = start
        self._next = start
        self._lock = Lock()

    def allocate(self) -> int:
        with self._lock:
            handle = self._next
            self._next += 1
            return handle

    @property
    def next_value(self) -> int:
        return self._next

    def issued(self, handle: int) -> bool:
        """Whether `handle` has been allocated at some point."""
        return self._start <= handle < self._next

    def restore(self, next_value: int) -> None:
        """Fast-forward after loading persisted state. Never rewinds."""
        with self._lock:
            if next_value > self._next:
                self._next = next_value
