"""
Tests for BalanceLedger.

Unit tests run against a mocked session; integration tests use SQLite.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from commerce.config import settings
from commerce.db.models import Balance, BalanceTransaction
from commerce.exceptions import (
    BalanceCapExceededError,
    DailyLimitExceededError,
    DataIntegrityError,
    InsufficientBalanceError,
    ResourceNotFoundError,
    ValidationError,
)
from commerce.models.api import TransactionType
from commerce.observability.metrics import metrics
from commerce.services.ledger import BalanceLedger

from .conftest import create_mock_balance, make_result


def verifying_get(session: AsyncMock, balance: MagicMock):
    """session.get that returns the added transaction and the given balance."""

    async def _get(model, key):
        if model is BalanceTransaction:
            return session.add.call_args[0][0]
        if model is Balance:
            return balance
        return None

    return _get


class TestChargeValidation:
    """Amount validation happens before any database access."""

    @pytest.mark.parametrize("amount", [0, -1, True, 1.5])
    async def test_rejects_non_positive_or_non_integer(self, db_session: AsyncMock, amount) -> None:
        ledger = BalanceLedger(db_session)

        with pytest.raises(ValidationError) as exc_info:
            await ledger.charge(uuid4(), amount)

        assert exc_info.value.field == "amount"
        db_session.execute.assert_not_awaited()


class TestChargeUnit:
    """Charge limits against a locked balance row."""

    async def test_unknown_user(self, db_session: AsyncMock) -> None:
        """No balance row and no user raises NotFound."""
        ledger = BalanceLedger(db_session)

        with pytest.raises(ResourceNotFoundError):
            await ledger.charge(uuid4(), 1_000)

        db_session.rollback.assert_awaited()
        db_session.commit.assert_not_awaited()

    async def test_daily_limit_exceeded(self, db_session: AsyncMock) -> None:
        """Daily 800,000 plus 300,000 exceeds the 1,000,000 limit."""
        balance = create_mock_balance(current_balance=800_000, daily_charge_amount=800_000)
        db_session.execute = AsyncMock(return_value=make_result(scalar=balance))
        ledger = BalanceLedger(db_session)

        with pytest.raises(DailyLimitExceededError) as exc_info:
            await ledger.charge(balance.user_id, 300_000)

        assert exc_info.value.details == {
            "attempted_amount": 300_000,
            "charged_today": 800_000,
            "limit": settings.daily_charge_limit,
        }
        db_session.add.assert_not_called()
        db_session.commit.assert_not_awaited()
        db_session.rollback.assert_awaited()

    async def test_balance_cap_exceeded(self, db_session: AsyncMock) -> None:
        balance = create_mock_balance(current_balance=9_999_999)
        db_session.execute = AsyncMock(return_value=make_result(scalar=balance))
        ledger = BalanceLedger(db_session)

        with pytest.raises(BalanceCapExceededError) as exc_info:
            await ledger.charge(balance.user_id, 2)

        assert exc_info.value.balance == 9_999_999
        db_session.commit.assert_not_awaited()

    async def test_daily_counter_resets_after_boundary(self, db_session: AsyncMock) -> None:
        """A counter from a previous day does not count against today."""
        balance = create_mock_balance(
            current_balance=0,
            daily_charge_amount=1_000_000,
            daily_charge_reset_at=datetime.now(UTC) - timedelta(minutes=1),
        )
        db_session.execute = AsyncMock(return_value=make_result(scalar=balance))
        db_session.get = AsyncMock(side_effect=verifying_get(db_session, balance))
        ledger = BalanceLedger(db_session)

        result = await ledger.charge(balance.user_id, 500_000)

        assert result.new_balance == 500_000
        assert balance.daily_charge_amount == 500_000
        assert balance.daily_charge_reset_at > datetime.now(UTC)
        db_session.commit.assert_awaited_once()

    async def test_charge_appends_transaction(self, db_session: AsyncMock) -> None:
        balance = create_mock_balance(current_balance=10_000)
        db_session.execute = AsyncMock(return_value=make_result(scalar=balance))
        db_session.get = AsyncMock(side_effect=verifying_get(db_session, balance))
        ledger = BalanceLedger(db_session)

        result = await ledger.charge(balance.user_id, 5_000)

        transaction = db_session.add.call_args[0][0]
        assert isinstance(transaction, BalanceTransaction)
        assert transaction.transaction_type == TransactionType.CHARGE
        assert transaction.balance_before == 10_000
        assert transaction.balance_after == 15_000
        assert result.charged_amount == 5_000
        assert result.transaction.balance_after == 15_000

    async def test_write_verification_mismatch(self, db_session: AsyncMock) -> None:
        """A balance that reads back different from what was written is an integrity error."""
        balance = create_mock_balance(current_balance=10_000)
        stale = create_mock_balance(user_id=balance.user_id, current_balance=10_000)
        db_session.execute = AsyncMock(return_value=make_result(scalar=balance))
        db_session.get = AsyncMock(side_effect=verifying_get(db_session, stale))
        ledger = BalanceLedger(db_session)

        with pytest.raises(DataIntegrityError):
            await ledger.charge(balance.user_id, 5_000)

        db_session.commit.assert_not_awaited()


class TestDeductUnit:
    """Deduction against a locked balance row."""

    async def test_insufficient_balance(self, db_session: AsyncMock) -> None:
        balance = create_mock_balance(current_balance=100)
        db_session.execute = AsyncMock(return_value=make_result(scalar=balance))
        ledger = BalanceLedger(db_session)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await ledger.deduct(balance.user_id, 250)

        assert exc_info.value.details == {"current_balance": 100, "required_amount": 250}
        db_session.add.assert_not_called()

    async def test_missing_balance(self, db_session: AsyncMock) -> None:
        ledger = BalanceLedger(db_session)

        with pytest.raises(ResourceNotFoundError):
            await ledger.deduct(uuid4(), 100)

    async def test_deduct_appends_use(self, db_session: AsyncMock) -> None:
        balance = create_mock_balance(current_balance=1_000)
        db_session.execute = AsyncMock(return_value=make_result(scalar=balance))
        db_session.get = AsyncMock(side_effect=verifying_get(db_session, balance))
        ledger = BalanceLedger(db_session)

        entry = await ledger.deduct(balance.user_id, 400, "Payment for order 1")

        assert entry.transaction_type == TransactionType.USE
        assert entry.balance_before == 1_000
        assert entry.balance_after == 600
        assert entry.description == "Payment for order 1"
        assert balance.daily_charge_amount == 0


class TestRefundUnit:
    """Refunds against a locked balance row."""

    async def test_refund_above_cap_is_flagged(self, db_session: AsyncMock) -> None:
        """A refund may end above the cap; it completes and is counted."""
        balance = create_mock_balance(current_balance=settings.max_balance_limit - 100_000)
        db_session.execute = AsyncMock(return_value=make_result(scalar=balance))
        db_session.get = AsyncMock(side_effect=verifying_get(db_session, balance))
        ledger = BalanceLedger(db_session)

        with patch.object(metrics, "record_error") as record_error:
            entry = await ledger.refund(balance.user_id, 200_000, "Refund for order 1")

        assert entry.balance_after == settings.max_balance_limit + 100_000
        record_error.assert_called_once_with("BalanceCapExceeded", "refund")
        db_session.commit.assert_awaited_once()

    async def test_refund_within_cap_not_flagged(self, db_session: AsyncMock) -> None:
        balance = create_mock_balance(current_balance=1_000)
        db_session.execute = AsyncMock(return_value=make_result(scalar=balance))
        db_session.get = AsyncMock(side_effect=verifying_get(db_session, balance))
        ledger = BalanceLedger(db_session)

        with patch.object(metrics, "record_error") as record_error:
            await ledger.refund(balance.user_id, 500, "Refund for order 1")

        record_error.assert_not_called()


class TestDatabaseFailures:
    """Database errors roll the session back before propagating."""

    @pytest.mark.parametrize("operation", ["charge", "deduct", "refund"])
    async def test_flush_failure_rolls_back(self, db_session: AsyncMock, operation: str) -> None:
        balance = create_mock_balance(current_balance=10_000)
        db_session.execute = AsyncMock(return_value=make_result(scalar=balance))
        db_session.flush = AsyncMock(
            side_effect=OperationalError("UPDATE balances", {}, Exception("disk I/O error"))
        )
        ledger = BalanceLedger(db_session)

        with pytest.raises(OperationalError):
            if operation == "refund":
                await ledger.refund(balance.user_id, 1_000, "Refund for order 1")
            else:
                await getattr(ledger, operation)(balance.user_id, 1_000)

        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()


class TestLedgerIntegration:
    """Ledger against a real SQLite database."""

    async def test_charge_then_get_balance(self, session, seed) -> None:
        user_id = await seed.user()
        ledger = BalanceLedger(session)

        result = await ledger.charge(user_id, 30_000)
        balance = await ledger.get_balance(user_id)

        assert result.new_balance == 30_000
        assert balance.current_balance == 30_000
        assert balance.daily_charge_amount == 30_000
        assert balance.last_updated_at.tzinfo is not None

    async def test_get_balance_opens_zero_balance(self, session, seed) -> None:
        user_id = await seed.user()
        ledger = BalanceLedger(session)

        balance = await ledger.get_balance(user_id)

        assert balance.current_balance == 0
        assert balance.daily_charge_amount == 0

    async def test_get_balance_unknown_user(self, session) -> None:
        with pytest.raises(ResourceNotFoundError):
            await BalanceLedger(session).get_balance(uuid4())

    async def test_rejected_charge_leaves_state_unchanged(self, session, seed) -> None:
        """A charge over the daily limit changes neither the balance nor the log."""
        user_id = await seed.user()
        ledger = BalanceLedger(session)
        await ledger.charge(user_id, 600_000)

        with pytest.raises(DailyLimitExceededError):
            await ledger.charge(user_id, 500_000)

        balance = await ledger.get_balance(user_id)
        transactions = await ledger.get_transactions(user_id)
        assert balance.current_balance == 600_000
        assert balance.daily_charge_amount == 600_000
        assert transactions.pagination.total == 1

    async def test_daily_limit_resets_next_day(self, session, seed) -> None:
        user_id = await seed.user()
        ledger = BalanceLedger(session)
        await ledger.charge(user_id, 1_000_000)

        tomorrow = datetime.now(UTC) + timedelta(days=1, hours=1)
        with patch("commerce.services.ledger._utc_now", return_value=tomorrow):
            result = await ledger.charge(user_id, 500_000)

        assert result.new_balance == 1_500_000

    async def test_balance_cap(self, session, seed, monkeypatch) -> None:
        monkeypatch.setattr(settings, "daily_charge_limit", 20_000_000)
        user_id = await seed.user()
        ledger = BalanceLedger(session)
        await ledger.charge(user_id, 9_000_000)

        with pytest.raises(BalanceCapExceededError):
            await ledger.charge(user_id, 1_000_001)

        result = await ledger.charge(user_id, 1_000_000)
        assert result.new_balance == settings.max_balance_limit

    async def test_deduct_and_refund(self, session, seed) -> None:
        """Refunds append REFUND entries and skip the daily limit."""
        user_id = await seed.user()
        ledger = BalanceLedger(session)
        await ledger.charge(user_id, 1_000_000)
        await ledger.deduct(user_id, 400_000, "Payment for order A")

        refund = await ledger.refund(user_id, 400_000, "Refund for order A")

        assert refund.transaction_type == TransactionType.REFUND
        assert refund.balance_before == 600_000
        assert refund.balance_after == 1_000_000
        balance = await ledger.get_balance(user_id)
        assert balance.daily_charge_amount == 1_000_000

    async def test_deduct_insufficient_keeps_balance(self, session, seed) -> None:
        user_id = await seed.user()
        ledger = BalanceLedger(session)
        await ledger.charge(user_id, 1_000)

        with pytest.raises(InsufficientBalanceError):
            await ledger.deduct(user_id, 1_001)

        assert (await ledger.get_balance(user_id)).current_balance == 1_000

    async def test_transactions_newest_first(self, session, seed) -> None:
        user_id = await seed.user()
        ledger = BalanceLedger(session)
        for amount in (100, 200, 300):
            await ledger.charge(user_id, amount)

        first = await ledger.get_transactions(user_id, page=1, size=2)
        second = await ledger.get_transactions(user_id, page=2, size=2)

        assert [entry.amount for entry in first.items] == [300, 200]
        assert [entry.amount for entry in second.items] == [100]
        assert first.pagination.total == 3
        assert first.pagination.has_next is True
        assert second.pagination.has_previous is True

    async def test_transaction_log_matches_balance(self, session, seed) -> None:
        """Every entry chains from the previous balance."""
        user_id = await seed.user()
        ledger = BalanceLedger(session)
        await ledger.charge(user_id, 5_000)
        await ledger.deduct(user_id, 2_000)
        await ledger.refund(user_id, 500, "Refund")

        page = await ledger.get_transactions(user_id)
        entries = list(reversed(page.items))

        previous = 0
        for entry in entries:
            assert entry.balance_before == previous
            if entry.transaction_type == TransactionType.USE:
                assert entry.balance_after == entry.balance_before - entry.amount
            else:
                assert entry.balance_after == entry.balance_before + entry.amount
            previous = entry.balance_after
        assert previous == (await ledger.get_balance(user_id)).current_balance

    async def test_concurrent_charges_respect_daily_limit(self, session_factory, seed) -> None:
        """Twelve concurrent 100,000 charges: exactly ten fit under the daily limit."""
        user_id = await seed.user()

        async def charge_once() -> bool:
            async with session_factory() as db:
                try:
                    await BalanceLedger(db).charge(user_id, 100_000)
                    return True
                except DailyLimitExceededError:
                    return False

        results = await asyncio.gather(*(charge_once() for _ in range(12)))

        assert results.count(True) == 10
        async with session_factory() as db:
            balance = await BalanceLedger(db).get_balance(user_id)
        assert balance.current_balance == 1_000_000
        assert balance.daily_charge_amount == 1_000_000
