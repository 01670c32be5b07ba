"""
Journal and Transaction Records

A Journal is one balanced business event; it owns two or more
Transactions, each a signed movement against one account. Credits are
positive and debits negative, so a journal's amounts always sum to zero.

Records are append-only: once committed only the approved/voided flags
(and the void bookkeeping fields) ever change.
"""

from decimal import Decimal
from datetime import date, datetime, time, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
from enum import Enum

from .amounts import Precision
from .exceptions import InvalidInputError

DEBIT = "debit"
CREDIT = "credit"


class JournalState(Enum):
    """Lifecycle states of a journal"""
    DRAFT = "draft"     # Committed but awaiting approval, not counted
    POSTED = "posted"   # Approved and counted in balances
    VOIDED = "voided"   # Reversed by a later journal; terminal


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_datetime(value: Union[datetime, date, str]) -> datetime:
    """
    Coerce a caller-supplied effective date to an aware UTC datetime.

    Naive datetimes are taken as UTC; plain dates mean midnight UTC.
    """
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            raise InvalidInputError(f"invalid datetime: {value!r}")
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    raise InvalidInputError(f"invalid datetime: {value!r}")


def format_datetime(value: datetime) -> str:
    """Fixed-width UTC ISO-8601 so string order equals time order"""
    return normalize_datetime(value).isoformat(timespec="microseconds")


def parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value)


@dataclass
class Transaction:
    """
    One signed movement against one account within one journal.

    ``amount`` is positive for a credit and negative for a debit. ``side``
    keeps the posting side explicitly so zero-amount lines keep it too.
    ``cancelling`` marks reversal lines that offset a voided journal;
    live history leaves them out together with the voided lines.
    """
    id: str
    journal_id: str
    book: str
    account_path: str
    accounts: List[str]
    amount: Decimal
    memo: str
    datetime: datetime
    created_at: datetime
    meta: Dict[str, Any] = field(default_factory=dict)
    approved: bool = True
    voided: bool = False
    void_reason: Optional[str] = None
    reversal_of: Optional[str] = None
    side: Optional[str] = None
    cancelling: bool = False

    def __post_init__(self):
        if self.side is None:
            self.side = CREDIT if self.amount > 0 else DEBIT
        elif self.side not in (DEBIT, CREDIT):
            raise InvalidInputError(f"invalid side: {self.side!r}")

    @property
    def credit(self) -> Decimal:
        """Unsigned credit amount (zero for a debit line)"""
        return self.amount if self.amount > 0 else Decimal(0)

    @property
    def debit(self) -> Decimal:
        """Unsigned debit amount (zero for a credit line)"""
        return -self.amount if self.amount < 0 else Decimal(0)

    @property
    def is_credit(self) -> bool:
        return self.side == CREDIT

    @property
    def is_debit(self) -> bool:
        return self.side == DEBIT

    def to_record(self, precision: Precision) -> Dict[str, Any]:
        """Convert to a storage document; amounts become integer minor units"""
        return {
            'id': self.id,
            'journal_id': self.journal_id,
            'book': self.book,
            'account_path': self.account_path,
            'accounts': list(self.accounts),
            'amount': precision.to_minor_units(self.amount),
            'side': self.side,
            'memo': self.memo,
            'meta': dict(self.meta),
            'approved': self.approved,
            'voided': self.voided,
            'void_reason': self.void_reason,
            'reversal_of': self.reversal_of,
            'cancelling': self.cancelling,
            'datetime': format_datetime(self.datetime),
            'created_at': format_datetime(self.created_at)
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any], precision: Precision) -> "Transaction":
        """Rebuild a Transaction from a storage document"""
        return cls(
            id=data['id'],
            journal_id=data['journal_id'],
            book=data['book'],
            account_path=data['account_path'],
            accounts=list(data.get('accounts') or []),
            amount=precision.to_decimal(data['amount']),
            memo=data.get('memo', ''),
            datetime=parse_datetime(data['datetime']),
            created_at=parse_datetime(data['created_at']),
            meta=dict(data.get('meta') or {}),
            approved=bool(data.get('approved', True)),
            voided=bool(data.get('voided', False)),
            void_reason=data.get('void_reason'),
            reversal_of=data.get('reversal_of'),
            side=data.get('side'),
            cancelling=bool(data.get('cancelling', False))
        )


@dataclass
class Journal:
    """
    One logical business event owning a balanced set of transactions.

    ``transaction_ids`` keeps commit order; ``transactions`` holds the
    loaded Transaction objects in the same order.
    """
    id: str
    book: str
    memo: str
    datetime: datetime
    created_at: datetime
    transaction_ids: List[str] = field(default_factory=list)
    approved: bool = True
    voided: bool = False
    void_reason: Optional[str] = None
    reversal_of: Optional[str] = None
    voided_by: Optional[str] = None
    transactions: List[Transaction] = field(default_factory=list, compare=False, repr=False)

    @property
    def state(self) -> JournalState:
        if self.voided:
            return JournalState.VOIDED
        if self.approved:
            return JournalState.POSTED
        return JournalState.DRAFT

    def to_record(self) -> Dict[str, Any]:
        """Convert to a storage document"""
        return {
            'id': self.id,
            'book': self.book,
            'memo': self.memo,
            'transaction_ids': list(self.transaction_ids),
            'approved': self.approved,
            'voided': self.voided,
            'void_reason': self.void_reason,
            'reversal_of': self.reversal_of,
            'voided_by': self.voided_by,
            'datetime': format_datetime(self.datetime),
            'created_at': format_datetime(self.created_at)
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any],
                    transactions: Optional[List[Transaction]] = None) -> "Journal":
        """Rebuild a Journal from a storage document"""
        return cls(
            id=data['id'],
            book=data['book'],
            memo=data.get('memo', ''),
            datetime=parse_datetime(data['datetime']),
            created_at=parse_datetime(data['created_at']),
            transaction_ids=list(data.get('transaction_ids') or []),
            approved=bool(data.get('approved', True)),
            voided=bool(data.get('voided', False)),
            void_reason=data.get('void_reason'),
            reversal_of=data.get('reversal_of'),
            voided_by=data.get('voided_by'),
            transactions=list(transactions or [])
        )
