"""
Tests for the approval and void state machine

Voiding keeps the original journal, flags it and its transactions, and
commits a reversing journal in the same atomic unit. A journal can only
be voided once, even under concurrent calls.
"""

import asyncio
import pytest
import pytest_asyncio
from decimal import Decimal
from datetime import datetime, timezone

from bookledger.exceptions import (
    AlreadyVoidedError, InvalidInputError, JournalNotFoundError, LedgerError
)
from bookledger.journal import JournalState

WHEN = datetime(2024, 6, 10, 9, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def posted(book):
    """A posted rent journal"""
    return await (book.entry("Test Entry", WHEN)
                  .debit("Assets:Receivable", 500, {"clientId": "12345"})
                  .credit("Income:Rent", 500)
                  .commit())


class TestVoid:
    """Test reversing posted journals"""

    @pytest.mark.asyncio
    async def test_reversal_mirrors_original(self, book, posted):
        reversal = await book.void(posted.id, "Messed up")

        assert reversal.id != posted.id
        assert reversal.memo == "Messed up"
        assert reversal.reversal_of == posted.id
        assert reversal.datetime == posted.datetime
        assert reversal.approved
        assert [t.account_path for t in reversal.transactions] == ["Assets:Receivable", "Income:Rent"]
        assert [t.amount for t in reversal.transactions] == [Decimal("500"), Decimal("-500")]
        assert reversal.transactions[0].meta == {"clientId": "12345"}

    @pytest.mark.asyncio
    async def test_original_kept_and_flagged(self, book, posted):
        reversal = await book.void(posted.id, "Messed up")

        original = await book.get_journal(posted.id)
        assert original is not None
        assert original.state == JournalState.VOIDED
        assert original.void_reason == "Messed up"
        assert original.voided_by == reversal.id
        assert all(t.voided for t in original.transactions)
        assert all(t.void_reason == "Messed up" for t in original.transactions)

        stored_reversal = await book.get_journal(reversal.id)
        assert stored_reversal.state == JournalState.POSTED
        assert len(stored_reversal.transactions) == 2

    @pytest.mark.asyncio
    async def test_default_memo(self, book, posted):
        reversal = await book.void(posted.id)
        assert reversal.memo == "[VOID] Test Entry"
        original = await book.get_journal(posted.id)
        assert original.void_reason is None

    @pytest.mark.asyncio
    async def test_void_restores_balances(self, book, posted):
        before = await book.balance("Income")
        await book.void(posted.id, "Messed up")
        after = await book.balance("Income")

        assert before.balance == Decimal("500")
        assert after.balance == 0
        assert after.notes == 2

    @pytest.mark.asyncio
    async def test_unknown_journal(self, book):
        with pytest.raises(JournalNotFoundError) as exc_info:
            await book.void("no-such-journal")
        assert exc_info.value.code == "DOCUMENT_NOT_FOUND"
        assert str(exc_info.value) == "DOCUMENT_NOT_FOUND: journal no-such-journal not found"

    @pytest.mark.asyncio
    async def test_journal_of_another_book(self, book, posted, storage, ledger_config):
        from bookledger.book import Book
        other = Book("OtherBook", storage=storage, config=ledger_config)
        with pytest.raises(JournalNotFoundError):
            await other.void(posted.id)
        assert await other.get_journal(posted.id) is None

    @pytest.mark.asyncio
    async def test_void_twice(self, book, posted):
        await book.void(posted.id, "Messed up")
        with pytest.raises(AlreadyVoidedError) as exc_info:
            await book.void(posted.id, "Again")
        assert exc_info.value.code == "ALREADY_VOIDED"

        original = await book.get_journal(posted.id)
        assert original.void_reason == "Messed up"
        assert (await book.list_journals()).total == 2

    @pytest.mark.asyncio
    async def test_concurrent_voids(self, book, posted):
        """Exactly one of several simultaneous voids wins"""
        outcomes = await asyncio.gather(
            *(book.void(posted.id, f"attempt {i}") for i in range(5)),
            return_exceptions=True
        )

        reversals = [o for o in outcomes if not isinstance(o, Exception)]
        failures = [o for o in outcomes if isinstance(o, Exception)]
        assert len(reversals) == 1
        assert len(failures) == 4
        assert all(isinstance(f, AlreadyVoidedError) for f in failures)

        assert (await book.balance("Assets")).balance == 0
        assert (await book.list_journals(voided=False)).total == 1

    @pytest.mark.asyncio
    async def test_reversal_can_be_voided(self, book, posted):
        reversal = await book.void(posted.id, "Messed up")
        await book.void(reversal.id, "Undo the undo")
        assert (await book.balance("Assets")).balance == Decimal("-500")

    @pytest.mark.asyncio
    async def test_invalid_reason(self, book, posted):
        with pytest.raises(InvalidInputError):
            await book.void(posted.id, 42)


class TestApprove:
    """Test moving drafts to posted"""

    @pytest_asyncio.fixture
    async def draft(self, book):
        return await (book.entry("Pending", WHEN)
                      .debit("Foo", 500)
                      .credit("Bar", 500)
                      .set_approved(False)
                      .commit())

    @pytest.mark.asyncio
    async def test_approve(self, book, draft):
        journal = await book.approve(draft.id)
        assert journal.state == JournalState.POSTED
        assert all(t.approved for t in journal.transactions)

    @pytest.mark.asyncio
    async def test_approve_is_idempotent(self, book, draft):
        await book.approve(draft.id)
        journal = await book.approve(draft.id)
        assert journal.approved
        assert (await book.balance("Bar")).notes == 1

    @pytest.mark.asyncio
    async def test_approve_unknown(self, book):
        with pytest.raises(JournalNotFoundError):
            await book.approve("missing")

    @pytest.mark.asyncio
    async def test_voided_cannot_be_approved(self, book, draft):
        reversal = await book.void(draft.id, "Never mind")
        with pytest.raises(AlreadyVoidedError):
            await book.approve(draft.id)

        # The reversal of a draft stays a draft and cannot be posted alone
        assert not reversal.approved
        with pytest.raises(InvalidInputError):
            await book.approve(reversal.id)

        result = await book.balance("Foo", approved=None)
        assert result.balance == 0
        assert (await book.balance("Foo")).notes == 0

    @pytest.mark.asyncio
    async def test_errors_share_base_class(self, book):
        with pytest.raises(LedgerError):
            await book.approve("missing")


class TestListJournals:
    """Test journal listings"""

    @pytest.mark.asyncio
    async def test_list_and_filter(self, book, posted):
        draft = await (book.entry("Pending", datetime(2024, 6, 11, tzinfo=timezone.utc))
                       .debit("Foo", 1).credit("Bar", 1).set_approved(False).commit())
        await book.void(posted.id, "Messed up")

        everything = await book.list_journals()
        assert everything.total == 3
        assert everything.results[-1].id == draft.id

        assert (await book.list_journals(approved=False)).results[0].id == draft.id
        voided = await book.list_journals(voided=True)
        assert [j.id for j in voided.results] == [posted.id]

        newest = await book.list_journals(newest_first=True, per_page=1)
        assert newest.total == 3
        assert [j.id for j in newest.results] == [draft.id]

    @pytest.mark.asyncio
    async def test_date_bounds(self, book, posted):
        later = await book.list_journals(start_date=datetime(2024, 6, 11, tzinfo=timezone.utc))
        assert later.total == 0
        around = await book.list_journals(start_date="2024-06-10", end_date="2024-06-11")
        assert [j.id for j in around.results] == [posted.id]


class TestVoidEdgeCases:
    """Test voids of unusual journals"""

    @pytest.mark.asyncio
    async def test_zero_amount_journal(self, book):
        journal = await book.entry("Zero").debit("A", 0).credit("B", 0).commit()
        reversal = await book.void(journal.id, "Nothing to see")

        assert [(t.account_path, t.side) for t in reversal.transactions] == [("A", "credit"), ("B", "debit")]
        assert (await book.get_journal(journal.id)).voided

    @pytest.mark.asyncio
    async def test_live_history_after_voiding_a_reversal(self, book, posted):
        """Voiding the reversal puts the original effect back into live history"""
        reversal = await book.void(posted.id, "Messed up")
        assert (await book.balance("Assets", include_voided=False)).notes == 0

        reinstated = await book.void(reversal.id, "Undo the undo")

        full = await book.balance("Assets")
        live = await book.balance("Assets", include_voided=False)
        assert (full.balance, full.notes) == (Decimal("-500"), 3)
        assert (live.balance, live.notes) == (Decimal("-500"), 1)

        page = await book.ledger("Assets", include_voided=False)
        assert [t.journal_id for t in page.results] == [reinstated.id]

        # Voiding once more cancels everything again
        await book.void(reinstated.id)
        live = await book.balance("Assets", include_voided=False)
        assert (live.balance, live.notes) == (Decimal("0"), 0)
        assert (await book.balance("Assets")).balance == 0
