"""
Custody Module

Asset-transfer collaborators that move value in and out of the ledger.
The ledger itself never holds funds.
"""

from .transfer import (
    AssetTransfer,
    InMemoryTreasury,
    TransferDirection,
    TransferError,
    TransferRecord,
)

__all__ = [
    "AssetTransfer",
    "InMemoryTreasury",
    "TransferDirection",
    "TransferError",
    "TransferRecord",
]
