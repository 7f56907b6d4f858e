"""
Christmas magic ledgers

This module provides:
- Wallet ledger per parent: top-ups, refunds, adjustments, derived balance
- Neighbor ledger per child: public donations and donor totals
- Daily vote limiter converting wallet funds into a child's magic score
- Settlement of pending entries from external payment confirmations
"""

from .models import (
    EntryStatus,
    WalletEntryType,
    NeighborEntryType,
    WalletLedgerEntry,
    NeighborLedgerEntry,
    Parent,
    Child,
)
from .errors import (
    LedgerServiceError,
    AlreadyVotedError,
    InsufficientBalanceError,
    NotFoundError,
    PersistenceError,
)
from .service import MagicLedgerService

__all__ = [
    "EntryStatus",
    "WalletEntryType",
    "NeighborEntryType",
    "WalletLedgerEntry",
    "NeighborLedgerEntry",
    "Parent",
    "Child",
    "LedgerServiceError",
    "AlreadyVotedError",
    "InsufficientBalanceError",
    "NotFoundError",
    "PersistenceError",
    "MagicLedgerService",
]
