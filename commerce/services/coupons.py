"""
Coupon Allocator - First-come-first-served coupon issuance and redemption.

The issued count of an event only moves through one conditional UPDATE that
also re-checks the quantity and the issuance window, committed together with
the coupon row it pays for.
"""

import secrets
import string
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from commerce.config import settings
from commerce.db.models import Coupon, CouponEvent, User
from commerce.exceptions import (
    CommerceError,
    CouponExhaustedError,
    CouponExpiredError,
    CouponUnavailableError,
    DataIntegrityError,
    DuplicateIssuanceError,
    IssuancePeriodExpiredError,
    MinimumAmountNotMetError,
    NotInIssuancePeriodError,
    OwnershipMismatchError,
    ResourceNotFoundError,
)
from commerce.models.api import CouponEventStatus, CouponStatus, DiscountType, PaginationInfo
from commerce.models.domain import AppliedCoupon, CouponData, Page, PageRequest
from commerce.observability.metrics import metrics, track_operation
from commerce.services.locking import keyed_locks

logger = get_logger(__name__)

_CODE_ALPHABET = string.ascii_uppercase + string.digits

# Attempts at finding an unused coupon code before giving up
_CODE_ATTEMPTS = 5


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def generate_coupon_code(event_name: str) -> str:
    """Event name prefix (5 chars, upper-cased), a dash and a random suffix."""
    suffix = "".join(
        secrets.choice(_CODE_ALPHABET) for _ in range(settings.coupon_code_suffix_length)
    )
    return f"{event_name[:5].upper()}-{suffix}"


def calculate_discount(discount_type: DiscountType, discount_value: int, order_amount: int) -> int:
    """
    Discount a coupon yields on an order amount.

    PERCENTAGE floors amount * value / 100, FIXED_AMOUNT is the value itself.
    The result never exceeds the order amount.
    """
    if discount_type == DiscountType.PERCENTAGE:
        discount = order_amount * discount_value // 100
    else:
        discount = discount_value
    return max(0, min(discount, order_amount))


class CouponAllocator:
    """Service for issuing, applying and redeeming coupons."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with database session."""
        self.session = session

    async def issue(self, user_id: UUID, coupon_event_id: UUID) -> CouponData:
        """
        Issue one coupon of an event to a user.

        Raises:
            ResourceNotFoundError: event or user doesn't exist
            IssuancePeriodExpiredError: the event window has ended
            NotInIssuancePeriodError: the window has not opened or the event is not ACTIVE
            CouponExhaustedError: every coupon of the event is issued
            DuplicateIssuanceError: user already holds an AVAILABLE coupon of the event
        """
        with track_operation("coupon_issue"):
            async with keyed_locks.hold(("coupon_event", coupon_event_id)):
                try:
                    coupon, event = await self._issue_locked(user_id, coupon_event_id)
                except CommerceError as exc:
                    await self.session.rollback()
                    metrics.record_coupon_issuance(exc.kind.value)
                    logger.info(
                        "coupon_issue_rejected",
                        user_id=str(user_id),
                        coupon_event_id=str(coupon_event_id),
                        reason=exc.kind.value,
                    )
                    raise
                except Exception:
                    await self.session.rollback()
                    raise

        metrics.record_coupon_issuance("issued")
        logger.info(
            "coupon_issued",
            user_id=str(user_id),
            coupon_event_id=str(coupon_event_id),
            coupon_id=str(coupon.id),
            coupon_code=coupon.coupon_code,
        )
        return self._coupon_to_domain(coupon, event)

    async def apply_to_order(
        self, coupon_id: UUID, order_amount: int, user_id: UUID | None = None
    ) -> AppliedCoupon:
        """
        Price a coupon against an order amount. Read-only.

        Raises:
            ResourceNotFoundError: coupon doesn't exist
            OwnershipMismatchError: user_id given and the coupon belongs to someone else
            CouponUnavailableError: coupon is not AVAILABLE
            CouponExpiredError: coupon is past its expiry
            MinimumAmountNotMetError: order amount is below the event minimum
        """
        coupon, event = await self._load_coupon_with_event(coupon_id)

        if user_id is not None and coupon.user_id != user_id:
            raise OwnershipMismatchError("Coupon", coupon_id, user_id)

        if coupon.status != CouponStatus.AVAILABLE:
            raise CouponUnavailableError(coupon_id, CouponStatus(coupon.status).value)

        if coupon.expired_at < _utc_now():
            raise CouponExpiredError(coupon_id)

        if order_amount < event.minimum_order_amount:
            raise MinimumAmountNotMetError(order_amount, event.minimum_order_amount)

        discount_type = DiscountType(event.discount_type)
        return AppliedCoupon(
            coupon_id=coupon.id,
            coupon_code=coupon.coupon_code,
            discount_type=discount_type,
            discount_value=event.discount_value,
            discount_amount=calculate_discount(discount_type, event.discount_value, order_amount),
        )

    async def mark_used(self, coupon_id: UUID) -> CouponData:
        """
        Redeem a coupon (AVAILABLE -> USED).

        Raises:
            ResourceNotFoundError: coupon doesn't exist
            CouponUnavailableError: coupon is not AVAILABLE
        """
        async with keyed_locks.hold(("coupon", coupon_id)):
            stmt = (
                update(Coupon)
                .where(Coupon.id == coupon_id, Coupon.status == CouponStatus.AVAILABLE)
                .values(status=CouponStatus.USED, used_at=_utc_now())
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(stmt)

            if result.rowcount != 1:
                await self.session.rollback()
                coupon, _ = await self._load_coupon_with_event(coupon_id)
                raise CouponUnavailableError(coupon_id, CouponStatus(coupon.status).value)

            coupon, event = await self._load_coupon_with_event(coupon_id)
            await self.session.commit()

        logger.info("coupon_used", coupon_id=str(coupon_id), user_id=str(coupon.user_id))
        return self._coupon_to_domain(coupon, event)

    async def release(self, coupon_id: UUID) -> CouponData:
        """
        Undo a redemption (USED -> AVAILABLE).

        Raises:
            ResourceNotFoundError: coupon doesn't exist
            CouponUnavailableError: coupon is not USED
            DataIntegrityError: the user holds another AVAILABLE coupon of the event
        """
        async with keyed_locks.hold(("coupon", coupon_id)):
            stmt = (
                update(Coupon)
                .where(Coupon.id == coupon_id, Coupon.status == CouponStatus.USED)
                .values(status=CouponStatus.AVAILABLE, used_at=None)
                .execution_options(synchronize_session=False)
            )
            try:
                result = await self.session.execute(stmt)
            except IntegrityError as e:
                await self.session.rollback()
                raise DataIntegrityError(
                    f"Coupon {coupon_id} cannot be released: another coupon of the event "
                    f"is available to the user ({e.__class__.__name__})"
                ) from e

            if result.rowcount != 1:
                await self.session.rollback()
                coupon, _ = await self._load_coupon_with_event(coupon_id)
                raise CouponUnavailableError(coupon_id, CouponStatus(coupon.status).value)

            coupon, event = await self._load_coupon_with_event(coupon_id)
            await self.session.commit()

        logger.info("coupon_released", coupon_id=str(coupon_id), user_id=str(coupon.user_id))
        return self._coupon_to_domain(coupon, event)

    async def sweep_expired(self, now: datetime | None = None) -> int:
        """
        Expire AVAILABLE coupons past their expiry and close ended events.

        Returns the number of coupons moved to EXPIRED.
        """
        cutoff = now or _utc_now()

        coupon_result = await self.session.execute(
            update(Coupon)
            .where(Coupon.status == CouponStatus.AVAILABLE, Coupon.expired_at < cutoff)
            .values(status=CouponStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        event_result = await self.session.execute(
            update(CouponEvent)
            .where(CouponEvent.status == CouponEventStatus.ACTIVE, CouponEvent.end_date < cutoff)
            .values(status=CouponEventStatus.EXPIRED, version=CouponEvent.version + 1)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

        expired = coupon_result.rowcount or 0
        if expired:
            metrics.coupons_expired_total.inc(expired)
        logger.info(
            "coupons_swept",
            coupons_expired=expired,
            events_expired=event_result.rowcount or 0,
        )
        return expired

    async def get_coupons(
        self,
        user_id: UUID,
        status: CouponStatus | None = None,
        page: int = 1,
        size: int | None = None,
    ) -> Page[CouponData]:
        """
        List a user's coupons with their discount terms, newest first.

        Raises:
            ValidationError: invalid page or size
        """
        request = PageRequest(page=page, size=size or settings.default_page_size)

        conditions = [Coupon.user_id == user_id]
        if status is not None:
            conditions.append(Coupon.status == status)

        total = await self.session.scalar(
            select(func.count()).select_from(Coupon).where(*conditions)
        )

        stmt = (
            select(Coupon, CouponEvent)
            .join(CouponEvent, CouponEvent.id == Coupon.coupon_event_id)
            .where(*conditions)
            .order_by(Coupon.issued_at.desc(), Coupon.id.desc())
            .offset(request.offset)
            .limit(request.size)
        )
        result = await self.session.execute(stmt)

        return Page(
            items=tuple(self._coupon_to_domain(coupon, event) for coupon, event in result.all()),
            pagination=PaginationInfo.from_total(request.page, request.size, total or 0),
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _issue_locked(
        self, user_id: UUID, coupon_event_id: UUID
    ) -> tuple[Coupon, CouponEvent]:
        """Run the issuance checks and mint the coupon. Caller holds the event lock."""
        event = await self._load_event(coupon_event_id)

        if await self.session.get(User, user_id) is None:
            raise ResourceNotFoundError("User", user_id)

        now = _utc_now()
        if now > event.end_date:
            raise IssuancePeriodExpiredError(coupon_event_id)
        if now < event.start_date:
            raise NotInIssuancePeriodError(coupon_event_id, "issuance has not started")
        if event.status != CouponEventStatus.ACTIVE:
            raise NotInIssuancePeriodError(
                coupon_event_id, f"event is {CouponEventStatus(event.status).value}"
            )

        if event.issued_quantity >= event.total_quantity:
            raise CouponExhaustedError(coupon_event_id, event.total_quantity)

        if await self._find_available_coupon(user_id, coupon_event_id) is not None:
            raise DuplicateIssuanceError(user_id, coupon_event_id)

        for attempt in range(1, _CODE_ATTEMPTS + 1):
            admitted = await self.session.execute(
                update(CouponEvent)
                .where(
                    CouponEvent.id == coupon_event_id,
                    CouponEvent.issued_quantity < CouponEvent.total_quantity,
                    CouponEvent.status == CouponEventStatus.ACTIVE,
                    CouponEvent.start_date <= now,
                    CouponEvent.end_date >= now,
                )
                .values(
                    issued_quantity=CouponEvent.issued_quantity + 1,
                    version=CouponEvent.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if admitted.rowcount != 1:
                # Lost the last coupon to another process
                await self.session.rollback()
                event = await self._load_event(coupon_event_id)
                raise CouponExhaustedError(coupon_event_id, event.total_quantity)

            coupon = Coupon(
                user_id=user_id,
                coupon_event_id=coupon_event_id,
                coupon_code=generate_coupon_code(event.name),
                status=CouponStatus.AVAILABLE,
                issued_at=now,
                expired_at=event.end_date,
            )
            self.session.add(coupon)

            try:
                await self.session.flush()
            except IntegrityError:
                # Counter increment is rolled back together with the coupon
                await self.session.rollback()
                if await self._find_available_coupon(user_id, coupon_event_id) is not None:
                    raise DuplicateIssuanceError(user_id, coupon_event_id)
                logger.warning(
                    "coupon_code_collision",
                    coupon_event_id=str(coupon_event_id),
                    attempt=attempt,
                )
                event = await self._load_event(coupon_event_id)
                continue

            event = await self._load_event(coupon_event_id)
            if event.issued_quantity > event.total_quantity:
                metrics.db_write_verifications_total.labels(success="False").inc()
                raise DataIntegrityError(
                    f"Coupon event {coupon_event_id} over-issued: "
                    f"{event.issued_quantity}/{event.total_quantity}"
                )
            metrics.db_write_verifications_total.labels(success="True").inc()

            await self.session.commit()
            return coupon, event

        raise DataIntegrityError(
            f"No unused coupon code found for event {coupon_event_id} "
            f"after {_CODE_ATTEMPTS} attempts"
        )

    async def _load_event(self, coupon_event_id: UUID) -> CouponEvent:
        """Read the current event row, bypassing stale identity-map state."""
        stmt = (
            select(CouponEvent)
            .where(CouponEvent.id == coupon_event_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        event = result.scalar_one_or_none()
        if event is None:
            raise ResourceNotFoundError("CouponEvent", coupon_event_id)
        return event

    async def _load_coupon_with_event(self, coupon_id: UUID) -> tuple[Coupon, CouponEvent]:
        """Read a coupon together with the event it was minted from."""
        stmt = (
            select(Coupon, CouponEvent)
            .join(CouponEvent, CouponEvent.id == Coupon.coupon_event_id)
            .where(Coupon.id == coupon_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        row = result.one_or_none()
        if row is None:
            raise ResourceNotFoundError("Coupon", coupon_id)
        return row[0], row[1]

    async def _find_available_coupon(self, user_id: UUID, coupon_event_id: UUID) -> Coupon | None:
        """Find the user's AVAILABLE coupon of an event, if any."""
        stmt = select(Coupon).where(
            Coupon.user_id == user_id,
            Coupon.coupon_event_id == coupon_event_id,
            Coupon.status == CouponStatus.AVAILABLE,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    def _coupon_to_domain(self, coupon: Coupon, event: CouponEvent) -> CouponData:
        """Convert ORM coupon and its event to domain model."""
        return CouponData(
            coupon_id=coupon.id,
            coupon_code=coupon.coupon_code,
            user_id=coupon.user_id,
            coupon_event_id=coupon.coupon_event_id,
            discount_type=DiscountType(event.discount_type),
            discount_value=event.discount_value,
            minimum_order_amount=event.minimum_order_amount,
            status=CouponStatus(coupon.status),
            issued_at=coupon.issued_at,
            used_at=coupon.used_at,
            expired_at=coupon.expired_at,
        )
