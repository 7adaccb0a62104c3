"""
Balance Ledger - Per-user monetary balance with an append-only transaction log.

NO DICTIONARIES - All operations use strongly typed domain models.
"""

from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from commerce.config import settings
from commerce.db.models import Balance, BalanceTransaction, User
from commerce.exceptions import (
    BalanceCapExceededError,
    CommerceError,
    DailyLimitExceededError,
    DataIntegrityError,
    InsufficientBalanceError,
    ResourceNotFoundError,
    ValidationError,
)
from commerce.models.api import PaginationInfo, TransactionType
from commerce.models.domain import BalanceData, ChargeResult, LedgerEntry, Page, PageRequest
from commerce.observability.metrics import metrics, track_operation
from commerce.services.locking import keyed_locks

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _get_next_reset_time() -> datetime:
    """Get the next daily reset time (midnight UTC)."""
    now = _utc_now()
    tomorrow = now.date() + timedelta(days=1)
    return datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=UTC)


def _should_reset_daily_charge(reset_at: datetime | None) -> bool:
    """Check if the daily charged amount should be reset."""
    if reset_at is None:
        return True
    return _utc_now() >= reset_at


def _validate_amount(amount: int) -> None:
    """Amounts are positive integers in the smallest currency unit."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("amount", f"amount must be a positive integer, got {amount!r}")


class BalanceLedger:
    """
    Balance ledger with write verification.

    All write operations follow the pattern:
    1. Serialize on the user's keyed lock and lock the balance row
    2. Validate limits against the locked row
    3. Append the transaction, update the balance, flush
    4. Read back and verify, then commit
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize ledger with database session."""
        self.session = session

    async def charge(self, user_id: UUID, amount: int) -> ChargeResult:
        """
        Add money to a user's balance.

        Raises:
            ValidationError: amount is not a positive integer
            ResourceNotFoundError: user doesn't exist
            DailyLimitExceededError: today's charges would exceed the daily limit
            BalanceCapExceededError: the balance would exceed the holding cap
        """
        _validate_amount(amount)

        with track_operation("balance_charge"):
            async with keyed_locks.hold(("balance", user_id)):
                try:
                    balance = await self._get_or_create_locked(user_id)

                    if _should_reset_daily_charge(balance.daily_charge_reset_at):
                        balance.daily_charge_amount = 0
                        balance.daily_charge_reset_at = _get_next_reset_time()

                    if balance.daily_charge_amount + amount > settings.daily_charge_limit:
                        raise DailyLimitExceededError(
                            amount, balance.daily_charge_amount, settings.daily_charge_limit
                        )

                    if balance.current_balance + amount > settings.max_balance_limit:
                        raise BalanceCapExceededError(
                            amount, balance.current_balance, settings.max_balance_limit
                        )

                    entry = await self._apply(
                        balance,
                        TransactionType.CHARGE,
                        amount,
                        f"Balance charge {amount}",
                        daily_charge_delta=amount,
                    )
                except CommerceError as exc:
                    await self.session.rollback()
                    metrics.record_balance_operation("charge", False, amount, exc.kind.value)
                    logger.info(
                        "balance_charge_rejected",
                        user_id=str(user_id),
                        amount=amount,
                        reason=exc.kind.value,
                    )
                    raise
                except Exception:
                    await self.session.rollback()
                    raise

        metrics.record_balance_operation("charge", True, amount)
        logger.info(
            "balance_charged",
            user_id=str(user_id),
            amount=amount,
            balance_after=entry.balance_after,
        )

        return ChargeResult(
            user_id=user_id,
            charged_amount=amount,
            new_balance=entry.balance_after,
            charged_at=entry.created_at,
            transaction=entry,
        )

    async def deduct(self, user_id: UUID, amount: int, description: str | None = None) -> LedgerEntry:
        """
        Take money out of a user's balance (payment).

        Raises:
            ValidationError: amount is not a positive integer
            ResourceNotFoundError: no balance record for the user
            InsufficientBalanceError: balance is lower than amount
        """
        _validate_amount(amount)

        with track_operation("balance_deduct"):
            async with keyed_locks.hold(("balance", user_id)):
                try:
                    balance = await self._lock_balance_for_update(user_id)
                    if balance is None:
                        raise ResourceNotFoundError("Balance", user_id)

                    if balance.current_balance < amount:
                        raise InsufficientBalanceError(balance.current_balance, amount)

                    entry = await self._apply(
                        balance,
                        TransactionType.USE,
                        amount,
                        description or f"Balance use {amount}",
                    )
                except CommerceError as exc:
                    await self.session.rollback()
                    metrics.record_balance_operation("deduct", False, amount, exc.kind.value)
                    raise
                except Exception:
                    await self.session.rollback()
                    raise

        metrics.record_balance_operation("deduct", True, amount)
        logger.info(
            "balance_deducted",
            user_id=str(user_id),
            amount=amount,
            balance_after=entry.balance_after,
        )
        return entry

    async def refund(self, user_id: UUID, amount: int, description: str) -> LedgerEntry:
        """
        Return money to a user's balance.

        Refunds restore an amount the user already held, so neither the
        daily charge limit nor the balance cap applies. A refund that leaves the
        balance above the cap is logged and counted.

        Raises:
            ValidationError: amount is not a positive integer
            ResourceNotFoundError: no balance record for the user
        """
        _validate_amount(amount)

        with track_operation("balance_refund"):
            async with keyed_locks.hold(("balance", user_id)):
                try:
                    balance = await self._lock_balance_for_update(user_id)
                    if balance is None:
                        raise ResourceNotFoundError("Balance", user_id)

                    entry = await self._apply(balance, TransactionType.REFUND, amount, description)
                except CommerceError as exc:
                    await self.session.rollback()
                    metrics.record_balance_operation("refund", False, amount, exc.kind.value)
                    raise
                except Exception:
                    await self.session.rollback()
                    raise

        metrics.record_balance_operation("refund", True, amount)
        if entry.balance_after > settings.max_balance_limit:
            metrics.record_error("BalanceCapExceeded", "refund")
            logger.warning(
                "refund_above_balance_cap",
                user_id=str(user_id),
                amount=amount,
                balance_after=entry.balance_after,
                limit=settings.max_balance_limit,
            )
        logger.info(
            "balance_refunded",
            user_id=str(user_id),
            amount=amount,
            balance_after=entry.balance_after,
        )
        return entry

    async def get_balance(self, user_id: UUID) -> BalanceData:
        """
        Get a user's balance, opening a zero balance on first access.

        Raises:
            ResourceNotFoundError: user doesn't exist
        """
        stmt = select(Balance).where(Balance.user_id == user_id)
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        balance = result.scalar_one_or_none()

        if balance is None:
            async with keyed_locks.hold(("balance", user_id)):
                balance = await self._get_or_create_locked(user_id)
                await self.session.commit()

        return self._balance_to_domain(balance)

    async def get_transactions(
        self, user_id: UUID, page: int = 1, size: int | None = None
    ) -> Page[LedgerEntry]:
        """
        Get a user's transaction log, newest first.

        Raises:
            ValidationError: invalid page or size
            ResourceNotFoundError: user doesn't exist
        """
        request = PageRequest(page=page, size=size or settings.default_page_size)

        if await self.session.get(User, user_id) is None:
            raise ResourceNotFoundError("User", user_id)

        total = await self.session.scalar(
            select(func.count())
            .select_from(BalanceTransaction)
            .where(BalanceTransaction.user_id == user_id)
        )

        stmt = (
            select(BalanceTransaction)
            .where(BalanceTransaction.user_id == user_id)
            .order_by(BalanceTransaction.created_at.desc(), BalanceTransaction.id.desc())
            .offset(request.offset)
            .limit(request.size)
        )
        result = await self.session.execute(stmt)

        return Page(
            items=tuple(self._transaction_to_domain(tx) for tx in result.scalars()),
            pagination=PaginationInfo.from_total(request.page, request.size, total or 0),
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _apply(
        self,
        balance: Balance,
        transaction_type: TransactionType,
        amount: int,
        description: str,
        daily_charge_delta: int = 0,
    ) -> LedgerEntry:
        """Append a transaction, move the balance and verify both writes."""
        now = _utc_now()
        balance_before = balance.current_balance
        if transaction_type == TransactionType.USE:
            balance_after = balance_before - amount
        else:
            balance_after = balance_before + amount
        daily_after = balance.daily_charge_amount + daily_charge_delta

        transaction = BalanceTransaction(
            user_id=balance.user_id,
            transaction_type=transaction_type,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            description=description,
            created_at=now,
        )
        self.session.add(transaction)

        balance.current_balance = balance_after
        balance.daily_charge_amount = daily_after
        balance.last_updated_at = now
        await self.session.flush()

        # Verify transaction was written
        verified_transaction = await self.session.get(BalanceTransaction, transaction.id)
        if verified_transaction is None:
            metrics.db_write_verifications_total.labels(success="False").inc()
            raise DataIntegrityError(f"Transaction {transaction.id} not found after insert")

        # Verify balance was updated
        verified_balance = await self.session.get(Balance, balance.id)
        if verified_balance is None:
            metrics.db_write_verifications_total.labels(success="False").inc()
            raise DataIntegrityError(f"Balance {balance.id} disappeared after update")

        if verified_balance.current_balance != balance_after:
            metrics.db_write_verifications_total.labels(success="False").inc()
            raise DataIntegrityError(
                f"Balance mismatch: expected {balance_after}, got {verified_balance.current_balance}"
            )

        if verified_balance.daily_charge_amount != daily_after:
            metrics.db_write_verifications_total.labels(success="False").inc()
            raise DataIntegrityError(
                f"Daily charge mismatch: expected {daily_after}, "
                f"got {verified_balance.daily_charge_amount}"
            )

        metrics.db_write_verifications_total.labels(success="True").inc()

        # Commit transaction
        await self.session.commit()

        return self._transaction_to_domain(verified_transaction)

    async def _lock_balance_for_update(self, user_id: UUID) -> Balance | None:
        """Lock balance row for update (SELECT FOR UPDATE)."""
        stmt = (
            select(Balance)
            .where(Balance.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _get_or_create_locked(self, user_id: UUID) -> Balance:
        """
        Lock the user's balance row, creating a zero balance if none exists.

        Raises:
            ResourceNotFoundError: user doesn't exist
        """
        balance = await self._lock_balance_for_update(user_id)
        if balance is not None:
            return balance

        if await self.session.get(User, user_id) is None:
            raise ResourceNotFoundError("User", user_id)

        now = _utc_now()
        new_balance = Balance(
            user_id=user_id,
            current_balance=0,
            daily_charge_amount=0,
            daily_charge_reset_at=_get_next_reset_time(),
            last_updated_at=now,
            created_at=now,
        )
        self.session.add(new_balance)

        try:
            await self.session.flush()
        except IntegrityError:
            # Race condition - balance opened by another process
            await self.session.rollback()
            balance = await self._lock_balance_for_update(user_id)
            if balance is None:
                raise DataIntegrityError("Balance creation failed due to race condition")
            return balance

        logger.info("balance_opened", user_id=str(user_id))
        return new_balance

    def _balance_to_domain(self, balance: Balance) -> BalanceData:
        """Convert ORM balance to domain model."""
        # A counter left over from a previous day reads as zero
        daily_charge_amount = balance.daily_charge_amount
        if _should_reset_daily_charge(balance.daily_charge_reset_at):
            daily_charge_amount = 0

        return BalanceData(
            user_id=balance.user_id,
            current_balance=balance.current_balance,
            daily_charge_amount=daily_charge_amount,
            last_updated_at=balance.last_updated_at,
        )

    def _transaction_to_domain(self, transaction: BalanceTransaction) -> LedgerEntry:
        """Convert ORM transaction to domain model."""
        return LedgerEntry(
            transaction_id=transaction.id,
            user_id=transaction.user_id,
            transaction_type=TransactionType(transaction.transaction_type),
            amount=transaction.amount,
            balance_before=transaction.balance_before,
            balance_after=transaction.balance_after,
            description=transaction.description,
            created_at=transaction.created_at,
        )
