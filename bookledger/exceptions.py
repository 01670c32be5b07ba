"""
Ledger Exceptions

Typed errors raised by the bookkeeping engine. Every error carries a
machine-readable ``code`` and a human-readable ``message``; ``str(error)``
renders as ``"<CODE>: <message>"``.
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger errors"""

    code = "LEDGER_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(f"{self.code}: {message}")


class InvalidJournalError(LedgerError):
    """Raised when a journal's lines do not sum to zero"""

    code = "INVALID_JOURNAL"


class InvalidInputError(LedgerError, ValueError):
    """Raised for malformed arguments (negative amounts, empty paths, ...)"""

    code = "INVALID_INPUT"


class JournalNotFoundError(LedgerError):
    """Raised when a void/approve target does not exist"""

    code = "DOCUMENT_NOT_FOUND"

    def __init__(self, journal_id: str):
        self.journal_id = journal_id
        super().__init__(f"journal {journal_id} not found", {"journal_id": journal_id})


class AlreadyVoidedError(LedgerError):
    """Raised when voiding (or approving) a journal that is already voided"""

    code = "ALREADY_VOIDED"

    def __init__(self, journal_id: str):
        self.journal_id = journal_id
        super().__init__(f"journal {journal_id} already voided", {"journal_id": journal_id})


class StoreUnavailableError(LedgerError):
    """Raised when the storage backend is not initialized or already closed"""

    code = "STORE_UNAVAILABLE"
