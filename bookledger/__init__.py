"""
Bookkeeping Ledger

Double-entry bookkeeping with balanced, append-only journals, exact
fixed-precision amounts, hierarchical accounts and reversal-based voids.
"""

from .accounts import AccountPath
from .amounts import Precision
from .book import Book
from .entry import Entry
from .exceptions import (
    LedgerError, InvalidJournalError, InvalidInputError,
    JournalNotFoundError, AlreadyVoidedError, StoreUnavailableError
)
from .journal import Journal, JournalState, Transaction
from .queries import BalanceResult, LedgerPage

__version__ = "1.0.0"

__all__ = [
    "AccountPath",
    "AlreadyVoidedError",
    "BalanceResult",
    "Book",
    "Entry",
    "InvalidInputError",
    "InvalidJournalError",
    "Journal",
    "JournalNotFoundError",
    "JournalState",
    "LedgerError",
    "LedgerPage",
    "Precision",
    "StoreUnavailableError",
    "Transaction",
]
