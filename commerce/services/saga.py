"""
Payment Saga - Ordered steps with reverse-order compensation.

Each step commits on its own. When a step fails, the steps that already
completed are compensated newest first and the original error is re-raised.
"""

from abc import ABC, abstractmethod
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from commerce.observability.metrics import metrics
from commerce.services.coupons import CouponAllocator
from commerce.services.inventory import InventoryManager
from commerce.services.ledger import BalanceLedger

logger = get_logger(__name__)


class Step(ABC):
    """One forward action of the saga and the action that undoes it."""

    def __init__(self, order_id: UUID) -> None:
        self.order_id = order_id

    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    async def execute(self) -> None: ...

    @abstractmethod
    async def compensate(self) -> None: ...

    async def run(self) -> None:
        logger.debug("saga_step_started", order_id=str(self.order_id), step=self.name())
        await self.execute()
        logger.debug("saga_step_completed", order_id=str(self.order_id), step=self.name())

    async def run_compensation(self) -> None:
        logger.info("saga_step_compensating", order_id=str(self.order_id), step=self.name())
        await self.compensate()
        logger.info("saga_step_compensated", order_id=str(self.order_id), step=self.name())


class DecreaseStock(Step):
    def __init__(
        self, order_id: UUID, inventory: InventoryManager, product_id: UUID, quantity: int
    ) -> None:
        super().__init__(order_id)
        self.inventory = inventory
        self.product_id = product_id
        self.quantity = quantity

    def name(self) -> str:
        return "DecreaseStock"

    async def execute(self) -> None:
        await self.inventory.decrease_stock(self.product_id, self.quantity)

    async def compensate(self) -> None:
        await self.inventory.restore_stock(self.product_id, self.quantity)


class DeductBalance(Step):
    def __init__(self, order_id: UUID, ledger: BalanceLedger, user_id: UUID, amount: int) -> None:
        super().__init__(order_id)
        self.ledger = ledger
        self.user_id = user_id
        self.amount = amount
        self.balance_before: int | None = None
        self.balance_after: int | None = None

    def name(self) -> str:
        return "DeductBalance"

    async def execute(self) -> None:
        entry = await self.ledger.deduct(
            self.user_id, self.amount, f"Payment for order {self.order_id}"
        )
        self.balance_before = entry.balance_before
        self.balance_after = entry.balance_after

    async def compensate(self) -> None:
        await self.ledger.refund(self.user_id, self.amount, f"Refund for order {self.order_id}")


class RedeemCoupon(Step):
    def __init__(self, order_id: UUID, allocator: CouponAllocator, coupon_id: UUID) -> None:
        super().__init__(order_id)
        self.allocator = allocator
        self.coupon_id = coupon_id

    def name(self) -> str:
        return "RedeemCoupon"

    async def execute(self) -> None:
        await self.allocator.mark_used(self.coupon_id)

    async def compensate(self) -> None:
        await self.allocator.release(self.coupon_id)


class Saga:
    """
    Runs steps in order. On failure, rolls back the session's pending work,
    compensates completed steps in reverse and re-raises the failure.
    """

    def __init__(self, order_id: UUID, steps: list[Step], session: AsyncSession) -> None:
        self.order_id = order_id
        self.steps = steps
        self.session = session
        self.completed: list[Step] = []
        self.compensation_failures: list[str] = []

    async def execute(self) -> None:
        try:
            for step in self.steps:
                await step.run()
                self.completed.append(step)
        except Exception as exc:
            logger.warning(
                "saga_failed",
                order_id=str(self.order_id),
                error=str(exc),
                error_type=exc.__class__.__name__,
                completed_steps=[step.name() for step in self.completed],
            )
            await self.session.rollback()
            await self.compensate()
            raise

    async def compensate(self) -> None:
        """Undo completed steps newest first. A failing compensation does not stop the rest."""
        for step in reversed(self.completed):
            try:
                await step.run_compensation()
                metrics.record_compensation(step.name(), True)
            except Exception as comp_exc:
                metrics.record_compensation(step.name(), False)
                self.compensation_failures.append(step.name())
                logger.error(
                    "saga_compensation_failed",
                    order_id=str(self.order_id),
                    step=step.name(),
                    error=str(comp_exc),
                    exc_info=True,
                )
                await self.session.rollback()
        self.completed.clear()
