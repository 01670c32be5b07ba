"""
Entry Builder

Accumulates the debit and credit lines of one business event and commits
them as a Journal. Commit refuses anything that does not net to exactly
zero in integer minor units, and writes the journal together with all of
its transactions in a single atomic insert.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple
import math
import uuid

from .accounts import AccountPath
from .amounts import coerce_decimal, sum_minor_units
from .exceptions import InvalidInputError, InvalidJournalError
from .journal import CREDIT, DEBIT, Journal, Transaction, normalize_datetime, utc_now
from .logging_config import get_logger, log_action
from .storage import FIELD_NAME_PATTERN

if TYPE_CHECKING:
    from .book import Book

logger = get_logger("bookledger.entry")


def new_id() -> str:
    return str(uuid.uuid4())


def validate_meta(meta: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Copy and validate caller meta: identifier-like keys, scalar values

    Raises:
        InvalidInputError: On non-mapping meta, bad keys or non-scalar values
    """
    if meta is None:
        return {}
    if not isinstance(meta, Mapping):
        raise InvalidInputError(f"meta must be a mapping, got {type(meta).__name__}")
    clean = {}
    for key, value in meta.items():
        if not isinstance(key, str) or not FIELD_NAME_PATTERN.match(key):
            raise InvalidInputError(f"invalid meta key: {key!r}")
        if value is not None and not isinstance(value, (str, int, float, bool)):
            raise InvalidInputError(f"meta value for {key!r} must be a scalar")
        if isinstance(value, float) and not math.isfinite(value):
            raise InvalidInputError(f"meta value for {key!r} must be finite")
        clean[key] = value
    return clean


class Entry:
    """
    Builder for one journal. Mutators return the entry itself so calls chain:

        journal = await (book.entry("Rent for March")
                         .debit("Assets:Receivable", 500, {"clientId": "12345"})
                         .credit("Income:Rent", 500)
                         .commit())
    """

    def __init__(self, book: "Book", memo: str, datetime: Optional[datetime] = None,
                 reversal_of: Optional[str] = None):
        if not isinstance(memo, str):
            raise InvalidInputError("memo must be a string")
        now = utc_now()
        self.book = book
        self.journal = Journal(
            id=new_id(),
            book=book.name,
            memo=memo,
            datetime=normalize_datetime(datetime) if datetime is not None else now,
            created_at=now,
            reversal_of=reversal_of
        )
        self.transactions: List[Transaction] = []
        self._sides = set()
        self.committed = False

    def debit(self, account_path, amount, meta: Optional[Mapping[str, Any]] = None) -> "Entry":
        """
        Add a debit line (recorded as a negative amount)

        Meta keys are limited to letters, digits, "_" and "-" because they
        become field paths in storage queries; values must be scalars.
        """
        return self._add_line(DEBIT, account_path, amount, meta)

    def credit(self, account_path, amount, meta: Optional[Mapping[str, Any]] = None) -> "Entry":
        """Add a credit line (recorded as a positive amount)"""
        return self._add_line(CREDIT, account_path, amount, meta)

    def set_approved(self, approved: bool = True) -> "Entry":
        """Mark the journal as final (True) or as a pending draft (False)"""
        if not isinstance(approved, bool):
            raise InvalidInputError("approved must be a boolean")
        self.journal.approved = approved
        return self

    def mirror(self, transaction: Transaction, cancelling: bool = False) -> "Entry":
        """Add the opposite-side line of an existing transaction, keeping its meta"""
        side = DEBIT if transaction.is_credit else CREDIT
        amount = transaction.credit if transaction.is_credit else transaction.debit
        self._add_line(side, transaction.account_path, amount, transaction.meta)
        self.transactions[-1].cancelling = cancelling
        return self

    def _add_line(self, side: str, account_path, amount, meta) -> "Entry":
        if self.committed:
            raise InvalidInputError("entry already committed")

        path = AccountPath.parse(account_path, self.book.delimiter)
        raw = coerce_decimal(amount)
        if raw < 0:
            raise InvalidInputError(f"{side} amount must not be negative, got {amount!r}")
        value = self.book.precision.quantize(raw)

        self.transactions.append(Transaction(
            id=new_id(),
            journal_id=self.journal.id,
            book=self.book.name,
            account_path=str(path),
            accounts=list(path.segments),
            amount=value if side == CREDIT else -value,
            memo=self.journal.memo,
            datetime=self.journal.datetime,
            created_at=self.journal.created_at,
            meta=validate_meta(meta),
            reversal_of=self.journal.reversal_of,
            side=side
        ))
        self._sides.add(side)
        return self

    def net_total(self) -> int:
        """Signed sum of all lines in minor units"""
        precision = self.book.precision
        return sum_minor_units(precision.to_minor_units(t.amount) for t in self.transactions)

    def prepare(self) -> List[Tuple[str, str, Dict[str, Any]]]:
        """
        Validate the entry and build its storage records without writing them

        Raises:
            InvalidInputError: If the debit or the credit side is missing
            InvalidJournalError: If the lines do not sum to zero
        """
        if self.committed:
            raise InvalidInputError("entry already committed")
        if DEBIT not in self._sides or CREDIT not in self._sides:
            raise InvalidInputError("an entry needs at least one debit and one credit")

        net = self.net_total()
        if net != 0:
            raise InvalidJournalError(
                "can't commit non zero total",
                {"total": str(self.book.precision.to_decimal(net))}
            )

        for transaction in self.transactions:
            transaction.approved = self.journal.approved
        self.journal.transaction_ids = [t.id for t in self.transactions]
        self.journal.transactions = list(self.transactions)

        precision = self.book.precision
        records = [(self.book.journals_table, self.journal.id, self.journal.to_record())]
        records.extend(
            (self.book.transactions_table, t.id, t.to_record(precision))
            for t in self.transactions
        )
        return records

    async def commit(self) -> Journal:
        """
        Validate and persist the journal with all of its transactions

        Returns:
            The committed Journal

        Raises:
            InvalidInputError: If the debit or the credit side is missing
            InvalidJournalError: If the lines do not sum to zero
        """
        try:
            records = self.prepare()
        except (InvalidInputError, InvalidJournalError) as e:
            log_action(
                logger, "warning", f"Rejected entry: {e}",
                action="commit", resource=self.journal.id, book=self.book.name,
                extra={"memo": self.journal.memo, **e.details}
            )
            raise

        # Claim the entry before awaiting so a second commit cannot double-post
        self.committed = True
        try:
            await self.book.ensure_ready()
            await self.book.storage.insert_atomic(records)
        except Exception:
            self.committed = False
            raise

        log_action(
            logger, "info", "Journal committed",
            action="commit", resource=self.journal.id, book=self.book.name,
            extra={
                "memo": self.journal.memo,
                "lines": len(self.transactions),
                "approved": self.journal.approved,
                "reversal_of": self.journal.reversal_of
            }
        )
        return self.journal
