"""
Balance and Ledger Query Engine

Turns caller filters into storage queries. Both engines share the same
filter vocabulary: account subtrees, approval state, voided history, meta
equality, journal id, an inclusive date range and page/per_page paging.
Matches are always ordered by effective datetime, then commit order.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from .accounts import AccountPath
from .amounts import Precision
from .exceptions import InvalidInputError
from .journal import Transaction, format_datetime, normalize_datetime
from .storage import ASCENDING, Query, field_parts


@dataclass
class BalanceResult:
    """Signed balance of the matched transactions and how many matched"""
    balance: Decimal
    notes: int

    def to_dict(self) -> Dict[str, Any]:
        return {"balance": self.balance, "notes": self.notes}


@dataclass
class LedgerPage:
    """One page of results plus the total match count across all pages"""
    results: List[Any]
    total: int

    def to_dict(self) -> Dict[str, Any]:
        return {"results": list(self.results), "total": self.total}


def _page_number(name: str, value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError(f"{name} must be an integer")
    if value < 1:
        raise InvalidInputError(f"{name} must be at least 1")
    return value


def normalize_accounts(account, delimiter: str) -> List[str]:
    """A path, or a collection of paths, as a list of path strings"""
    if account is None:
        return []
    if isinstance(account, (str, AccountPath)):
        account = [account]
    elif not isinstance(account, (list, tuple, set, frozenset)):
        raise InvalidInputError(f"invalid account filter: {account!r}")
    return [str(AccountPath.parse(a, delimiter)) for a in account]


@dataclass
class LedgerFilter:
    """
    Normalized query filter for one book.

    ``approved=None`` counts drafts and approved alike. With
    ``include_voided=False`` both the voided transactions and the
    reversal lines that cancel them are left out. A reversal that undoes
    an earlier void reinstates the original effect and stays in.
    """
    book: str
    accounts: List[str] = field(default_factory=list)
    approved: Optional[bool] = True
    include_voided: bool = True
    meta: Dict[str, Any] = field(default_factory=dict)
    journal: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    page: Optional[int] = None
    per_page: Optional[int] = None
    delimiter: str = ":"

    @classmethod
    def build(cls, book: str, account=None, *, approved: Optional[bool] = True,
              include_voided: bool = True, meta: Optional[Mapping[str, Any]] = None,
              journal: Optional[str] = None,
              start_date: Union[datetime, str, None] = None,
              end_date: Union[datetime, str, None] = None,
              page: Optional[int] = None, per_page: Optional[int] = None,
              default_per_page: int = 25, delimiter: str = ":",
              **extra_meta) -> "LedgerFilter":
        """
        Build a filter from keyword arguments.

        Unrecognized keyword arguments are meta filters, so
        ``build("MyBook", "Assets", clientId="12345")`` matches the meta
        field ``clientId``.
        """
        if approved is not None and not isinstance(approved, bool):
            raise InvalidInputError("approved must be a boolean or None")

        meta_filters = dict(meta or {})
        meta_filters.update(extra_meta)
        for key in meta_filters:
            try:
                field_parts(("meta", key))
            except ValueError:
                raise InvalidInputError(f"invalid meta filter key: {key!r}")

        page = _page_number("page", page)
        per_page = _page_number("per_page", per_page)
        if page is not None and per_page is None:
            per_page = default_per_page
        elif per_page is not None and page is None:
            page = 1

        start = normalize_datetime(start_date) if start_date is not None else None
        end = normalize_datetime(end_date) if end_date is not None else None
        if start is not None and end is not None and start > end:
            raise InvalidInputError("start_date must not be after end_date")

        return cls(
            book=book,
            accounts=normalize_accounts(account, delimiter),
            approved=approved,
            include_voided=include_voided,
            meta=meta_filters,
            journal=journal,
            start_date=start,
            end_date=end,
            page=page,
            per_page=per_page,
            delimiter=delimiter
        )

    @property
    def paginated(self) -> bool:
        return self.page is not None

    def to_query(self) -> Query:
        """Compile to a storage query sorted by datetime, then commit order"""
        equals: Dict[Any, Any] = {"book": self.book}
        if self.approved is not None:
            equals["approved"] = self.approved
        if not self.include_voided:
            equals["voided"] = False
            equals["cancelling"] = False
        if self.journal is not None:
            equals["journal_id"] = self.journal
        for key, value in self.meta.items():
            equals[("meta", key)] = value

        prefixes = {"account_path": list(self.accounts)} if self.accounts else {}

        ranges = {}
        if self.start_date is not None or self.end_date is not None:
            ranges["datetime"] = (
                format_datetime(self.start_date) if self.start_date is not None else None,
                format_datetime(self.end_date) if self.end_date is not None else None
            )

        offset, limit = 0, None
        if self.paginated:
            offset = (self.page - 1) * self.per_page
            limit = self.per_page

        return Query(
            equals=equals,
            prefixes=prefixes,
            ranges=ranges,
            sort=[("datetime", ASCENDING)],
            offset=offset,
            limit=limit,
            delimiter=self.delimiter
        )


async def compute_balance(storage, table: str, flt: LedgerFilter,
                          precision: Precision) -> BalanceResult:
    """
    Signed sum and count of matching transactions.

    With paging the sum covers only the requested slice of the
    datetime-ordered matches.
    """
    total, count = await storage.aggregate(table, flt.to_query(), "amount")
    return BalanceResult(balance=precision.to_decimal(total), notes=count)


async def fetch_ledger(storage, table: str, flt: LedgerFilter,
                       precision: Precision) -> LedgerPage:
    """Matching transactions for the requested page plus the full match count"""
    records, total = await storage.find(table, flt.to_query())
    return LedgerPage(
        results=[Transaction.from_record(record, precision) for record in records],
        total=total
    )
