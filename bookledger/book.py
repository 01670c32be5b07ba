"""
Book

Entry point of the bookkeeping engine. A Book is a named partition of the
ledger: it starts entries, answers balance and ledger queries, and runs
the approval and void state machine. Queries never cross books.

Journals move draft -> posted -> voided. Voiding never deletes anything:
the original journal and its transactions are flagged voided and a
reversing journal with every amount's sign flipped is committed in the
same atomic unit.
"""

from datetime import datetime
from typing import Any, List, Mapping, Optional, Union
import asyncio

from .amounts import Precision
from .accounts import expand_with_ancestors
from .async_storage import AsyncStorageInterface, create_async_storage
from .config import LedgerConfig, get_config
from .entry import Entry
from .exceptions import AlreadyVoidedError, InvalidInputError, JournalNotFoundError
from .journal import Journal, Transaction
from .logging_config import get_logger, log_action
from .queries import BalanceResult, LedgerFilter, LedgerPage, compute_balance, fetch_ledger
from .storage import DESCENDING, Query

logger = get_logger("bookledger.book")

# Matches the balance/ledger filter shape
TRANSACTION_INDEX = ["book", "account_path", "approved", "voided", "datetime"]
JOURNAL_INDEX = ["book", "datetime"]


class Book:
    """
    A named ledger partition backed by an async storage.

        book = Book("MyBook")
        await book.entry("Rent").debit("Assets:Cash", 500).credit("Income:Rent", 500).commit()
        result = await book.balance("Assets")
    """

    def __init__(self, name: str, storage: Optional[AsyncStorageInterface] = None,
                 config: Optional[LedgerConfig] = None):
        if not isinstance(name, str) or not name.strip():
            raise InvalidInputError("book name must be a non-empty string")
        self.name = name
        self.config = config or get_config()
        self.storage = storage if storage is not None else create_async_storage(self.config)
        self.precision = Precision(self.config.decimal_places)
        self.delimiter = self.config.account_delimiter
        self.journals_table = self.config.journals_table
        self.transactions_table = self.config.transactions_table
        self._ready = False
        self._ready_lock = asyncio.Lock()

    async def ensure_ready(self) -> None:
        """Initialize the storage and its indexes once"""
        if self._ready:
            return
        async with self._ready_lock:
            if self._ready:
                return
            await self.storage.initialize()
            await self.storage.create_index(self.transactions_table, TRANSACTION_INDEX)
            await self.storage.create_index(self.transactions_table, ["journal_id"])
            await self.storage.create_index(self.journals_table, JOURNAL_INDEX)
            self._ready = True

    def entry(self, memo: str, datetime: Optional[datetime] = None) -> Entry:
        """
        Start a new uncommitted entry in this book

        Args:
            memo: Free-text description of the event
            datetime: Effective date; defaults to now
        """
        return Entry(self, memo, datetime)

    def _filter(self, account, **filters) -> LedgerFilter:
        return LedgerFilter.build(
            self.name, account,
            default_per_page=self.config.default_per_page,
            delimiter=self.delimiter,
            **filters
        )

    async def balance(self, account=None, *, approved: Optional[bool] = True,
                      include_voided: bool = True, meta: Optional[Mapping[str, Any]] = None,
                      journal: Optional[str] = None,
                      start_date: Union[datetime, str, None] = None,
                      end_date: Union[datetime, str, None] = None,
                      page: Optional[int] = None, per_page: Optional[int] = None,
                      **meta_filters) -> BalanceResult:
        """
        Signed balance (credits positive) and match count for an account subtree

        Args:
            account: Path or collection of paths; matches each path's whole subtree
            approved: Approval state to count; None counts drafts too
            include_voided: False leaves out voided transactions and their reversals
            meta: Exact-match meta filters; extra keyword arguments are meta filters too
            journal: Restrict to one journal id
            start_date: Inclusive lower bound on the effective datetime
            end_date: Inclusive upper bound on the effective datetime
            page: 1-based page of the datetime-ordered matches to aggregate
            per_page: Page size

        Returns:
            BalanceResult with ``balance`` and ``notes``
        """
        flt = self._filter(
            account, approved=approved, include_voided=include_voided, meta=meta,
            journal=journal, start_date=start_date, end_date=end_date,
            page=page, per_page=per_page, **meta_filters
        )
        await self.ensure_ready()
        return await compute_balance(self.storage, self.transactions_table, flt, self.precision)

    async def ledger(self, account=None, *, approved: Optional[bool] = True,
                     include_voided: bool = True, meta: Optional[Mapping[str, Any]] = None,
                     journal: Optional[str] = None,
                     start_date: Union[datetime, str, None] = None,
                     end_date: Union[datetime, str, None] = None,
                     page: Optional[int] = None, per_page: Optional[int] = None,
                     **meta_filters) -> LedgerPage:
        """
        Matching transactions, oldest first, with the total match count

        Takes the same filters as balance(). ``total`` ignores paging.
        """
        flt = self._filter(
            account, approved=approved, include_voided=include_voided, meta=meta,
            journal=journal, start_date=start_date, end_date=end_date,
            page=page, per_page=per_page, **meta_filters
        )
        await self.ensure_ready()
        return await fetch_ledger(self.storage, self.transactions_table, flt, self.precision)

    async def _load_transactions(self, journal_id: str) -> List[Transaction]:
        # No sort keys: insertion sequence is commit order
        records, _ = await self.storage.find(
            self.transactions_table,
            Query(equals={"book": self.name, "journal_id": journal_id})
        )
        return [Transaction.from_record(record, self.precision) for record in records]

    async def _load_journal_record(self, journal_id: str):
        data = await self.storage.load(self.journals_table, journal_id)
        if not data or data.get('book') != self.name:
            return None
        return data

    async def get_journal(self, journal_id: str) -> Optional[Journal]:
        """Load a journal with its transactions, or None if this book has no such journal"""
        await self.ensure_ready()
        data = await self._load_journal_record(journal_id)
        if data is None:
            return None
        return Journal.from_record(data, await self._load_transactions(journal_id))

    async def list_journals(self, *, approved: Optional[bool] = None,
                            voided: Optional[bool] = None,
                            start_date: Union[datetime, str, None] = None,
                            end_date: Union[datetime, str, None] = None,
                            page: Optional[int] = None, per_page: Optional[int] = None,
                            newest_first: bool = False) -> LedgerPage:
        """
        Journals of this book ordered by effective datetime

        Journals are returned without their transactions; use get_journal()
        for the lines.
        """
        # Reuse the filter normalization for paging and date bounds
        flt = self._filter(None, start_date=start_date, end_date=end_date,
                           page=page, per_page=per_page)
        equals = {"book": self.name}
        if approved is not None:
            equals["approved"] = approved
        if voided is not None:
            equals["voided"] = voided
        query = flt.to_query()
        query.equals = equals
        if newest_first:
            query.sort = [("datetime", DESCENDING)]

        await self.ensure_ready()
        records, total = await self.storage.find(self.journals_table, query)
        return LedgerPage(results=[Journal.from_record(r) for r in records], total=total)

    async def approve(self, journal_id: str) -> Journal:
        """
        Move a draft journal to posted, together with all of its transactions

        Raises:
            JournalNotFoundError: If the journal does not exist in this book
            AlreadyVoidedError: If the journal has been voided
        """
        await self.ensure_ready()
        async with self.storage.atomic():
            data = await self._load_journal_record(journal_id)
            if data is None:
                self._log_rejected("approve", journal_id, "not found")
                raise JournalNotFoundError(journal_id)
            if data.get('voided'):
                self._log_rejected("approve", journal_id, "already voided")
                raise AlreadyVoidedError(journal_id)

            if not data.get('approved'):
                if data.get('reversal_of'):
                    # The reversal of a draft cancels nothing that was ever counted
                    original = await self._load_journal_record(data['reversal_of'])
                    if original is not None and not original.get('approved'):
                        self._log_rejected("approve", journal_id, "reverses a draft")
                        raise InvalidInputError(f"journal {journal_id} reverses a draft and cannot be approved")
                updated = await self.storage.update_fields(
                    self.journals_table, journal_id, {"approved": True},
                    precondition={"voided": False}
                )
                if not updated:
                    raise AlreadyVoidedError(journal_id)
                await self.storage.update_where(
                    self.transactions_table,
                    Query(equals={"book": self.name, "journal_id": journal_id}),
                    {"approved": True}
                )
                log_action(logger, "info", "Journal approved",
                           action="approve", resource=journal_id, book=self.name)

        return await self.get_journal(journal_id)

    async def void(self, journal_id: str, reason: Optional[str] = None) -> Journal:
        """
        Reverse a journal without deleting it

        Flags the journal and its transactions voided and commits a
        reversing journal, all in one atomic unit.

        Args:
            journal_id: Journal to void
            reason: Why the journal is voided; becomes the reversal memo

        Returns:
            The reversing Journal

        Raises:
            JournalNotFoundError: If the journal does not exist in this book
            AlreadyVoidedError: If the journal has already been voided
        """
        if reason is not None and not isinstance(reason, str):
            raise InvalidInputError("void reason must be a string")

        await self.ensure_ready()
        async with self.storage.atomic():
            data = await self._load_journal_record(journal_id)
            if data is None:
                self._log_rejected("void", journal_id, "not found")
                raise JournalNotFoundError(journal_id)
            if data.get('voided'):
                self._log_rejected("void", journal_id, "already voided")
                raise AlreadyVoidedError(journal_id)

            original = Journal.from_record(data, await self._load_transactions(journal_id))
            memo = reason if reason else f"[VOID] {original.memo}"
            reversal = Entry(self, memo, original.datetime, reversal_of=original.id)
            reversal.set_approved(original.approved)
            for transaction in original.transactions:
                # Reversing a cancelling line reinstates what it cancelled
                reversal.mirror(transaction, cancelling=not transaction.cancelling)

            # The guard makes a concurrent second void fail here
            marked = await self.storage.update_fields(
                self.journals_table, journal_id,
                {"voided": True, "void_reason": reason, "voided_by": reversal.journal.id},
                precondition={"voided": False}
            )
            if not marked:
                self._log_rejected("void", journal_id, "already voided")
                raise AlreadyVoidedError(journal_id)
            await self.storage.update_where(
                self.transactions_table,
                Query(equals={"book": self.name, "journal_id": journal_id}),
                {"voided": True, "void_reason": reason}
            )
            reversing_journal = await reversal.commit()

        log_action(
            logger, "info", "Journal voided",
            action="void", resource=journal_id, book=self.name,
            extra={"reason": reason, "reversal_id": reversing_journal.id}
        )
        return reversing_journal

    async def list_accounts(self) -> List[str]:
        """Every account path used in this book plus all of their ancestors, sorted"""
        await self.ensure_ready()
        paths = await self.storage.distinct(
            self.transactions_table, "account_path", Query(equals={"book": self.name})
        )
        return expand_with_ancestors(paths, self.delimiter)

    async def close(self) -> None:
        """Close the underlying storage"""
        await self.storage.close()

    def _log_rejected(self, action: str, journal_id: str, why: str) -> None:
        log_action(logger, "warning", f"Rejected {action}: journal {why}",
                   action=action, resource=journal_id, book=self.name)
