"""
Test suite for the entry builder

Validates line validation, the zero-sum commit rule, exact rounding and
that a rejected commit persists nothing.
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timezone

from bookledger.exceptions import InvalidInputError, InvalidJournalError, LedgerError
from bookledger.journal import JournalState


class TestEntryBuilder:
    """Test building entries line by line"""

    @pytest.mark.asyncio
    async def test_methods_chain(self, book):
        entry = book.entry("Chained")
        assert entry.debit("Assets:Cash", 10) is entry
        assert entry.credit("Income", 10) is entry
        assert entry.set_approved(False) is entry

    @pytest.mark.asyncio
    async def test_lines_are_signed(self, book):
        entry = book.entry("Signs").debit("Assets:Cash", 10).credit("Income", 10)
        debit, credit = entry.transactions
        assert debit.amount == Decimal("-10")
        assert debit.debit == Decimal("10")
        assert debit.is_debit and not debit.is_credit
        assert credit.amount == Decimal("10")
        assert credit.credit == Decimal("10")
        assert credit.accounts == ["Income"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [-1, "-0.01", float("nan"), float("inf"), "abc", None, True])
    async def test_invalid_amounts(self, book, amount):
        with pytest.raises(InvalidInputError):
            book.entry("Bad").debit("Assets:Cash", amount)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["", "Assets::Cash", None])
    async def test_invalid_paths(self, book, path):
        with pytest.raises(InvalidInputError):
            book.entry("Bad").credit(path, 1)

    @pytest.mark.asyncio
    async def test_invalid_meta(self, book):
        with pytest.raises(InvalidInputError):
            book.entry("Bad").debit("Assets", 1, {"bad key": "x"})
        with pytest.raises(InvalidInputError):
            book.entry("Bad").debit("Assets", 1, {"nested": {"a": 1}})
        with pytest.raises(InvalidInputError):
            book.entry("Bad").debit("Assets", 1, ["not", "a", "mapping"])

    @pytest.mark.asyncio
    async def test_memo_must_be_text(self, book):
        with pytest.raises(InvalidInputError):
            book.entry(None)

    @pytest.mark.asyncio
    async def test_invalid_approved_flag(self, book):
        with pytest.raises(InvalidInputError):
            book.entry("Bad").set_approved("yes")


class TestCommit:
    """Test committing journals"""

    @pytest.mark.asyncio
    async def test_commit_balanced_entry(self, book):
        """A balanced entry becomes a posted journal"""
        journal = await (book.entry("Rent")
                         .debit("Assets:Receivable", 500, {"clientId": "12345"})
                         .credit("Income:Rent", 500)
                         .commit())

        assert journal.state == JournalState.POSTED
        assert len(journal.transaction_ids) == 2
        assert [t.id for t in journal.transactions] == journal.transaction_ids

        stored = await book.get_journal(journal.id)
        assert stored.memo == "Rent"
        assert [t.memo for t in stored.transactions] == ["Rent", "Rent"]
        assert stored.transactions[0].meta == {"clientId": "12345"}
        assert sum(t.amount for t in stored.transactions) == 0

    @pytest.mark.asyncio
    async def test_non_zero_total_rejected(self, book):
        """An unbalanced entry is rejected and nothing is written"""
        entry = book.entry("Unbalanced").debit("Assets", 100).credit("Income", 99.99)

        with pytest.raises(InvalidJournalError) as exc_info:
            await entry.commit()

        error = exc_info.value
        assert str(error) == "INVALID_JOURNAL: can't commit non zero total"
        assert error.code == "INVALID_JOURNAL"
        assert error.details == {"total": "-0.01000000"}
        assert isinstance(error, LedgerError)

        page = await book.ledger()
        assert page.total == 0
        assert (await book.list_journals()).total == 0

    @pytest.mark.asyncio
    async def test_one_sided_entry_rejected(self, book):
        with pytest.raises(InvalidInputError):
            await book.entry("Only debits").debit("Assets", 0).debit("Expenses", 0).commit()
        with pytest.raises(InvalidInputError):
            await book.entry("Empty").commit()

    @pytest.mark.asyncio
    async def test_double_commit_rejected(self, book):
        entry = book.entry("Once").debit("Assets", 1).credit("Income", 1)
        await entry.commit()

        with pytest.raises(InvalidInputError):
            await entry.commit()
        with pytest.raises(InvalidInputError):
            entry.debit("Assets", 1)
        assert (await book.ledger()).total == 2

    @pytest.mark.asyncio
    async def test_float_amounts_net_exactly(self, book):
        """Amounts that drift as floats still net to zero"""
        await (book.entry("Rounding Test")
               .credit("A:B", 1005)
               .debit("A:B", 994.95)
               .debit("A:B", 10.05)
               .commit())
        await (book.entry("Tenths")
               .credit("C", 0.3)
               .debit("C", 0.1)
               .debit("C", 0.2)
               .commit())

        result = await book.balance("A:B")
        assert result.balance == 0
        assert result.notes == 3
        assert (await book.balance("C")).balance == 0

    @pytest.mark.asyncio
    async def test_amounts_rounded_to_precision(self, book):
        await book.entry("Precise").credit("X", "0.123456789").debit("Y", "0.123456789").commit()
        assert (await book.balance("X")).balance == Decimal("0.12345679")
        assert (await book.balance("Y")).balance == Decimal("-0.12345679")

    @pytest.mark.asyncio
    async def test_effective_datetime(self, book):
        naive = datetime(2024, 3, 1, 12, 30)
        journal = await book.entry("Dated", naive).debit("A", 1).credit("B", 1).commit()
        assert journal.datetime == datetime(2024, 3, 1, 12, 30, tzinfo=timezone.utc)

        journal = await book.entry("Day", date(2024, 3, 2)).debit("A", 1).credit("B", 1).commit()
        stored = await book.get_journal(journal.id)
        assert stored.datetime == datetime(2024, 3, 2, tzinfo=timezone.utc)
        assert stored.transactions[0].datetime == stored.datetime

    @pytest.mark.asyncio
    async def test_invalid_datetime(self, book):
        with pytest.raises(InvalidInputError):
            book.entry("Bad", "not a date")

    @pytest.mark.asyncio
    async def test_draft_commit(self, book):
        journal = await (book.entry("Pending")
                         .debit("Foo", 500)
                         .credit("Bar", 500)
                         .set_approved(False)
                         .commit())
        assert journal.state == JournalState.DRAFT
        stored = await book.get_journal(journal.id)
        assert all(not t.approved for t in stored.transactions)

    @pytest.mark.asyncio
    async def test_large_amounts_stay_exact(self, book):
        """Minor units past 64 bits are summed without floats"""
        amount = Decimal("123456789012.12345678")
        await book.entry("Large").debit("A", amount).credit("B", amount).commit()
        await book.entry("Large again").debit("A", amount).credit("B", amount).commit()

        assert (await book.balance("B")).balance == amount * 2
        assert (await book.balance("A")).balance == -amount * 2
        assert (await book.balance()).balance == 0

    @pytest.mark.asyncio
    async def test_amount_beyond_precision_rejected(self, book):
        with pytest.raises(InvalidInputError):
            book.entry("Huge").debit("A", Decimal("1e50"))

    @pytest.mark.asyncio
    async def test_zero_lines_keep_their_side(self, book):
        journal = await book.entry("Zero").debit("A", 0).credit("B", 0).commit()
        stored = await book.get_journal(journal.id)
        assert [t.side for t in stored.transactions] == ["debit", "credit"]
        assert stored.transactions[0].is_debit
        assert stored.transactions[1].is_credit
