"""
Order Orchestrator - Order creation and the payment saga.

Orders move PENDING -> COMPLETED or PENDING -> FAILED and never leave a
terminal state. Payment sequences stock, balance and coupon steps and
compensates the completed ones when a later step fails.
"""

import asyncio
from collections.abc import Sequence
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from commerce.config import settings
from commerce.db.models import Coupon, CouponEvent, Order, OrderLineItem, Payment, User
from commerce.exceptions import (
    AlreadyProcessedError,
    CommerceError,
    InsufficientBalanceError,
    OutOfStockError,
    OwnershipMismatchError,
    ResourceNotFoundError,
    ValidationError,
)
from commerce.models.api import (
    DiscountType,
    OrderSortField,
    OrderStatus,
    PaginationInfo,
    PaymentStatus,
    SortOrder,
)
from commerce.models.domain import (
    AppliedCoupon,
    OrderDetail,
    OrderItem,
    OrderLine,
    OrderReceipt,
    OrderSummary,
    Page,
    PageRequest,
    PaymentData,
)
from commerce.observability.logging import log_context
from commerce.observability.metrics import metrics, track_operation
from commerce.services.coupons import CouponAllocator
from commerce.services.inventory import InventoryManager
from commerce.services.ledger import BalanceLedger
from commerce.services.locking import keyed_locks
from commerce.services.saga import DecreaseStock, DeductBalance, RedeemCoupon, Saga, Step

logger = get_logger(__name__)

# Column length of payments.failure_reason
_FAILURE_REASON_LENGTH = 255


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _error_type(exc: BaseException) -> str:
    """Error kind of a payment failure for metrics."""
    return exc.kind.value if isinstance(exc, CommerceError) else "InternalError"


def _requested_quantities(items: Sequence[OrderItem]) -> dict[UUID, int]:
    """Total requested quantity per product, in first-seen order."""
    quantities: dict[UUID, int] = {}
    for item in items:
        quantities[item.product_id] = quantities.get(item.product_id, 0) + item.quantity
    return quantities


class OrderOrchestrator:
    """
    Composes the balance ledger, inventory manager and coupon allocator.

    All four services share one session, so the payment path never holds two
    write transactions at once.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize orchestrator and its collaborators with one database session."""
        self.session = session
        self.ledger = BalanceLedger(session)
        self.inventory = InventoryManager(session)
        self.coupons = CouponAllocator(session)

    async def create_order(
        self, user_id: UUID, items: Sequence[OrderItem], coupon_id: UUID | None = None
    ) -> OrderReceipt:
        """
        Create a PENDING order priced from current product prices.

        The order, its line items and its amounts are committed together.
        Stock is only checked, not reserved, and the coupon is not consumed.

        Raises:
            ValidationError: no items, or a quantity that is not a positive integer
            ResourceNotFoundError: user, product or coupon doesn't exist
            ProductUnavailableError: a product is not on sale
            OutOfStockError: a product does not have enough stock right now
            OwnershipMismatchError / CouponUnavailableError / CouponExpiredError /
            MinimumAmountNotMetError: the coupon cannot be applied
        """
        if not items:
            raise ValidationError("items", "an order needs at least one item")
        for item in items:
            if isinstance(item.quantity, bool) or not isinstance(item.quantity, int) or item.quantity <= 0:
                raise ValidationError(
                    "quantity", f"quantity must be a positive integer, got {item.quantity!r}"
                )

        with track_operation("create_order"):
            try:
                if await self.session.get(User, user_id) is None:
                    raise ResourceNotFoundError("User", user_id)

                requested = _requested_quantities(items)
                products = {
                    product.product_id: product
                    for product in await self.inventory.validate_products_for_order(list(requested))
                }

                # Advisory only; payment re-checks at decrement time
                for product_id, quantity in requested.items():
                    available = products[product_id].stock_quantity
                    if available < quantity:
                        raise OutOfStockError(product_id, quantity, available)

                now = _utc_now()
                order = Order(
                    user_id=user_id,
                    status=OrderStatus.PENDING,
                    total_amount=0,
                    discount_amount=0,
                    final_amount=0,
                    version=0,
                    created_at=now,
                    updated_at=now,
                )
                self.session.add(order)
                await self.session.flush()

                lines: list[OrderLine] = []
                for item in items:
                    product = products[item.product_id]
                    line = OrderLine(
                        product_id=product.product_id,
                        product_name=product.name,
                        unit_price=product.price,
                        quantity=item.quantity,
                        total_price=product.price * item.quantity,
                    )
                    self.session.add(
                        OrderLineItem(
                            order_id=order.id,
                            product_id=line.product_id,
                            product_name=line.product_name,
                            quantity=line.quantity,
                            unit_price=line.unit_price,
                            total_price=line.total_price,
                            created_at=now,
                        )
                    )
                    lines.append(line)

                total_amount = sum(line.total_price for line in lines)

                applied: AppliedCoupon | None = None
                if coupon_id is not None:
                    applied = await self.coupons.apply_to_order(coupon_id, total_amount, user_id)

                discount_amount = applied.discount_amount if applied else 0
                order.total_amount = total_amount
                order.discount_amount = discount_amount
                order.final_amount = total_amount - discount_amount
                order.coupon_id = coupon_id
                await self.session.flush()

                await self.session.commit()
            except Exception:
                await self.session.rollback()
                raise

        metrics.orders_created_total.labels(with_coupon=str(applied is not None)).inc()
        logger.info(
            "order_created",
            order_id=str(order.id),
            user_id=str(user_id),
            total_amount=total_amount,
            discount_amount=discount_amount,
            final_amount=order.final_amount,
            line_count=len(lines),
        )

        return OrderReceipt(
            order_id=order.id,
            user_id=user_id,
            status=OrderStatus.PENDING,
            total_amount=total_amount,
            discount_amount=discount_amount,
            final_amount=total_amount - discount_amount,
            items=tuple(lines),
            coupon=applied,
            created_at=now,
        )

    async def process_payment(self, order_id: UUID, user_id: UUID) -> PaymentData:
        """
        Pay a PENDING order from the user's balance.

        Once started, the payment runs to completion or full compensation
        even if the caller is cancelled.

        Raises:
            ResourceNotFoundError: order doesn't exist
            OwnershipMismatchError: order belongs to another user
            AlreadyProcessedError: order is not PENDING or already has a payment
            InsufficientBalanceError: balance does not cover the final amount
            OutOfStockError: a product ran out
            CouponUnavailableError: the coupon was used or expired meanwhile
            ConcurrentModificationError: stock updates kept conflicting
        """
        with track_operation("process_payment"):
            return await asyncio.shield(self._process_payment(order_id, user_id))

    async def get_order(self, order_id: UUID, user_id: UUID | None = None) -> OrderDetail:
        """
        Get an order with its line items, applied coupon and payment.

        Raises:
            ResourceNotFoundError: order doesn't exist
            OwnershipMismatchError: user_id given and the order belongs to someone else
        """
        order = await self._load_order(order_id)
        if user_id is not None and order.user_id != user_id:
            raise OwnershipMismatchError("Order", order_id, user_id)

        line_result = await self.session.execute(
            select(OrderLineItem)
            .where(OrderLineItem.order_id == order_id)
            .order_by(OrderLineItem.created_at, OrderLineItem.id)
        )
        lines = tuple(
            OrderLine(
                product_id=line.product_id,
                product_name=line.product_name,
                unit_price=line.unit_price,
                quantity=line.quantity,
                total_price=line.total_price,
            )
            for line in line_result.scalars()
        )

        applied: AppliedCoupon | None = None
        if order.coupon_id is not None:
            coupon_result = await self.session.execute(
                select(Coupon, CouponEvent)
                .join(CouponEvent, CouponEvent.id == Coupon.coupon_event_id)
                .where(Coupon.id == order.coupon_id)
            )
            row = coupon_result.one_or_none()
            if row is not None:
                coupon, event = row
                applied = AppliedCoupon(
                    coupon_id=coupon.id,
                    coupon_code=coupon.coupon_code,
                    discount_type=DiscountType(event.discount_type),
                    discount_value=event.discount_value,
                    discount_amount=order.discount_amount,
                )

        payment = await self._find_payment(order_id)

        return OrderDetail(
            order_id=order.id,
            user_id=order.user_id,
            status=OrderStatus(order.status),
            total_amount=order.total_amount,
            discount_amount=order.discount_amount,
            final_amount=order.final_amount,
            items=lines,
            coupon=applied,
            payment=self._payment_to_domain(payment) if payment else None,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )

    async def get_user_orders(
        self,
        user_id: UUID,
        status: OrderStatus | None = None,
        page: int = 1,
        size: int | None = None,
        sort_by: OrderSortField = OrderSortField.CREATED_AT,
        sort_order: SortOrder = SortOrder.DESC,
    ) -> Page[OrderSummary]:
        """
        List a user's orders with their line counts.

        Raises:
            ValidationError: invalid page, size, sort field or sort order
        """
        request = PageRequest(page=page, size=size or settings.default_page_size)
        try:
            sort_field = OrderSortField(sort_by)
            direction = SortOrder(sort_order)
        except ValueError as e:
            raise ValidationError("sort", str(e)) from e

        conditions = [Order.user_id == user_id]
        if status is not None:
            conditions.append(Order.status == status)

        total = await self.session.scalar(
            select(func.count()).select_from(Order).where(*conditions)
        )

        column = Order.created_at if sort_field == OrderSortField.CREATED_AT else Order.final_amount
        ordering = column.asc() if direction == SortOrder.ASC else column.desc()
        tiebreak = Order.id.asc() if direction == SortOrder.ASC else Order.id.desc()

        stmt = (
            select(Order, func.count(OrderLineItem.id))
            .outerjoin(OrderLineItem, OrderLineItem.order_id == Order.id)
            .where(*conditions)
            .group_by(Order.id)
            .order_by(ordering, tiebreak)
            .offset(request.offset)
            .limit(request.size)
        )
        result = await self.session.execute(stmt)

        items = tuple(
            OrderSummary(
                order_id=order.id,
                status=OrderStatus(order.status),
                total_amount=order.total_amount,
                discount_amount=order.discount_amount,
                final_amount=order.final_amount,
                item_count=item_count,
                created_at=order.created_at,
            )
            for order, item_count in result.all()
        )

        return Page(
            items=items,
            pagination=PaginationInfo.from_total(request.page, request.size, total or 0),
        )

    # ========================================================================
    # Payment Saga
    # ========================================================================

    async def _process_payment(self, order_id: UUID, user_id: UUID) -> PaymentData:
        """Validate, pre-flight and run the saga while holding the order lock."""
        with log_context(order_id=order_id, user_id=user_id):
            async with keyed_locks.hold(("order", order_id)):
                try:
                    order = await self._load_order(order_id)
                    if order.user_id != user_id:
                        raise OwnershipMismatchError("Order", order_id, user_id)
                    if order.status != OrderStatus.PENDING:
                        raise AlreadyProcessedError(order_id, OrderStatus(order.status).value)
                    if await self._find_payment(order_id) is not None:
                        raise AlreadyProcessedError(order_id, OrderStatus(order.status).value)

                    # Rollbacks expire ORM state, so keep plain values
                    final_amount = order.final_amount
                    coupon_id = order.coupon_id
                    version = order.version
                    line_result = await self.session.execute(
                        select(OrderLineItem.product_id, OrderLineItem.quantity)
                        .where(OrderLineItem.order_id == order_id)
                        .order_by(OrderLineItem.created_at, OrderLineItem.id)
                    )
                    lines = [(product_id, quantity) for product_id, quantity in line_result.all()]

                    balance = await self.ledger.get_balance(user_id)
                    if balance.current_balance < final_amount:
                        raise InsufficientBalanceError(balance.current_balance, final_amount)

                    for product_id, quantity in _requested_quantities(
                        [OrderItem(product_id, quantity) for product_id, quantity in lines]
                    ).items():
                        await self.inventory.check_availability(product_id, quantity)
                except CommerceError as exc:
                    await self.session.rollback()
                    metrics.record_payment("rejected", exc.kind.value)
                    logger.info("payment_rejected", reason=exc.kind.value)
                    raise
                except Exception:
                    await self.session.rollback()
                    raise

                steps: list[Step] = [
                    DecreaseStock(order_id, self.inventory, product_id, quantity)
                    for product_id, quantity in lines
                ]
                deduction: DeductBalance | None = None
                if final_amount > 0:
                    deduction = DeductBalance(order_id, self.ledger, user_id, final_amount)
                    steps.append(deduction)
                if coupon_id is not None:
                    steps.append(RedeemCoupon(order_id, self.coupons, coupon_id))

                saga = Saga(order_id, steps, self.session)
                try:
                    await saga.execute()
                except Exception as exc:
                    await self._record_failed_payment(
                        order_id,
                        version,
                        final_amount,
                        balance.current_balance,
                        exc,
                        saga.compensation_failures,
                    )
                    metrics.record_payment("failed", _error_type(exc))
                    raise

                balance_before = deduction.balance_before if deduction else balance.current_balance
                balance_after = deduction.balance_after if deduction else balance.current_balance
                try:
                    payment = await self._complete_order(
                        order_id, version, final_amount, balance_before, balance_after
                    )
                except AlreadyProcessedError:
                    # Finalized elsewhere; hand back everything this attempt took
                    await saga.compensate()
                    metrics.record_payment("failed", "AlreadyProcessed")
                    raise
                except Exception as exc:
                    await self.session.rollback()
                    logger.warning(
                        "payment_completion_failed",
                        error=str(exc),
                        error_type=exc.__class__.__name__,
                    )
                    await saga.compensate()
                    await self._record_failed_payment(
                        order_id,
                        version,
                        final_amount,
                        balance.current_balance,
                        exc,
                        saga.compensation_failures,
                    )
                    metrics.record_payment("failed", _error_type(exc))
                    raise

        metrics.record_payment("success")
        logger.info(
            "payment_completed",
            order_id=str(order_id),
            user_id=str(user_id),
            amount=final_amount,
            balance_after=balance_after,
        )
        return payment

    async def _complete_order(
        self,
        order_id: UUID,
        version: int,
        amount: int,
        balance_before: int,
        balance_after: int,
    ) -> PaymentData:
        """Write the SUCCESS payment and move the order to COMPLETED in one commit."""
        payment = Payment(
            order_id=order_id,
            status=PaymentStatus.SUCCESS,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            created_at=_utc_now(),
        )
        self.session.add(payment)

        try:
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            raise AlreadyProcessedError(order_id, "payment exists")

        if not await self._transition(order_id, version, OrderStatus.COMPLETED):
            await self.session.rollback()
            raise AlreadyProcessedError(order_id, "status changed")

        await self.session.commit()
        return self._payment_to_domain(payment)

    async def _record_failed_payment(
        self,
        order_id: UUID,
        version: int,
        amount: int,
        balance: int,
        error: Exception,
        compensation_failures: Sequence[str] = (),
    ) -> None:
        """
        Write the FAILED payment and move the order to FAILED.

        Runs after compensation. When a compensation failed, the payment row
        is still written, which blocks further payment attempts, but the order
        stays PENDING: a PENDING order with a FAILED payment needs manual
        reconciliation. Errors here are logged and never replace the failure
        that triggered them.
        """
        reason = str(error) or error.__class__.__name__
        if compensation_failures:
            reason = f"compensation incomplete ({', '.join(compensation_failures)}): {reason}"
        reason = reason[:_FAILURE_REASON_LENGTH]
        try:
            self.session.add(
                Payment(
                    order_id=order_id,
                    status=PaymentStatus.FAILED,
                    amount=amount,
                    balance_before=balance,
                    balance_after=balance,
                    failure_reason=reason,
                    created_at=_utc_now(),
                )
            )
            await self.session.flush()

            if compensation_failures:
                await self.session.commit()
                metrics.record_error("CompensationIncomplete", "process_payment")
                logger.error(
                    "payment_reconciliation_required",
                    failure_reason=reason,
                    failed_compensations=list(compensation_failures),
                )
                return

            if not await self._transition(order_id, version, OrderStatus.FAILED):
                await self.session.rollback()
                logger.warning("payment_failure_not_recorded", reason="order status changed")
                return

            await self.session.commit()
            logger.info("payment_failed", failure_reason=reason)
        except Exception:
            await self.session.rollback()
            metrics.record_error("PaymentFailureRecord", "process_payment")
            logger.error("payment_failure_record_failed", failure_reason=reason, exc_info=True)

    async def _transition(self, order_id: UUID, version: int, status: OrderStatus) -> bool:
        """Move a PENDING order at the given version to status."""
        result = await self.session.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.status == OrderStatus.PENDING,
                Order.version == version,
            )
            .values(status=status, version=Order.version + 1, updated_at=_utc_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _load_order(self, order_id: UUID) -> Order:
        """Read the current order row, bypassing stale identity-map state."""
        stmt = (
            select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        order = result.scalar_one_or_none()
        if order is None:
            raise ResourceNotFoundError("Order", order_id)
        return order

    async def _find_payment(self, order_id: UUID) -> Payment | None:
        """Find the payment row of an order, if any."""
        stmt = select(Payment).where(Payment.order_id == order_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    def _payment_to_domain(self, payment: Payment) -> PaymentData:
        """Convert ORM payment to domain model."""
        return PaymentData(
            payment_id=payment.id,
            order_id=payment.order_id,
            status=PaymentStatus(payment.status),
            amount=payment.amount,
            balance_before=payment.balance_before,
            balance_after=payment.balance_after,
            failure_reason=payment.failure_reason,
            created_at=payment.created_at,
        )
