"""
Active Provider Set

Packed bit vector keyed by provider handle. Bit `i` lives in byte `i // 8`.
The set knows nothing about provider records: a handle that was never
registered reads as inactive, exactly like a deactivated one. Callers that
need to tell the two apart ask the ProviderLedger.
"""

from typing import Iterator, Optional

from .journal import TransactionScope


class ActiveSet:
    """Space-efficient membership set of active provider handles."""

    def __init__(self, scope: Optional[TransactionScope] = None, capacity_hint: int = 256):
        self._scope = scope or TransactionScope()
        self._bits = bytearray((capacity_hint + 7) // 8)

    def is_active(self, provider_id: int) -> bool:
        if provider_id < 0:
            return False
        index = provider_id >> 3
        if index >= len(self._bits):
            return False
        return bool(self._bits[index] & (1 << (provider_id & 7)))

    def set_active(self, provider_id: int, active: bool) -> None:
        """Set or clear the bit for `provider_id`. Idempotent."""
        if provider_id < 0:
            raise ValueError("provider_id must be non-negative")
        current = self.is_active(provider_id)
        if current == active:
            return
        self._scope.remember("active", provider_id, current, lambda prior: self._write(provider_id, prior))
        self._write(provider_id, active)

    def _write(self, provider_id: int, active: bool) -> None:
        index = provider_id >> 3
        if index >= len(self._bits):
            self._bits.extend(bytes(index + 1 - len(self._bits)))
        mask = 1 << (provider_id & 7)
        if active:
            self._bits[index] |= mask
        else:
            self._bits[index] &= ~mask & 0xFF

    def __iter__(self) -> Iterator[int]:
        for index, byte in enumerate(self._bits):
            if not byte:
                continue
            for bit in range(8):
                if byte & (1 << bit):
                    yield (index << 3) | bit

    def __len__(self) -> int:
        return sum(bin(byte).count("1") for byte in self._bits)

    def __contains__(self, provider_id: object) -> bool:
        return isinstance(provider_id, int) and self.is_active(provider_id)
