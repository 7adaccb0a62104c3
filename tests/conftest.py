"""
Pytest Configuration and Centralized Fixtures.

Provides reusable mocks and fixtures for testing:
- Mocked database sessions and ORM rows for unit tests
- A temporary SQLite database for integration and concurrency tests
- Seeding helpers for users, products, coupon events and coupons
"""

import os
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID, uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# Set required environment variables BEFORE importing commerce modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from commerce.db.models import (
    Balance,
    Coupon,
    CouponEvent,
    Order,
    Product,
    User,
)
from commerce.db.session import build_engine, build_session_factory, create_schema
from commerce.models.api import (
    CouponEventStatus,
    CouponStatus,
    DiscountType,
    OrderStatus,
    ProductStatus,
    UserStatus,
)

# ============================================================================
# Database Session Fixtures (mocked)
# ============================================================================


@pytest.fixture
def db_session() -> AsyncMock:
    """Create a mock database session with sensible defaults."""
    session = AsyncMock(spec=AsyncSession)

    # Basic operations
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    session.add = MagicMock()
    session.get = AsyncMock(return_value=None)
    session.scalar = AsyncMock(return_value=0)

    # Default execute returns empty result
    session.execute = AsyncMock(return_value=make_result())

    return session


def make_result(
    scalar: object | None = None,
    rows: list | None = None,
    rowcount: int = 0,
) -> MagicMock:
    """Build a mock query result."""
    result = MagicMock()
    result.scalar_one_or_none = MagicMock(return_value=scalar)
    result.scalars = MagicMock(return_value=iter(rows or []))
    result.all = MagicMock(return_value=rows or [])
    result.one_or_none = MagicMock(return_value=rows[0] if rows else None)
    result.rowcount = rowcount
    return result


# ============================================================================
# Mock Row Factories
# ============================================================================


def create_mock_balance(
    user_id: UUID | None = None,
    current_balance: int = 0,
    daily_charge_amount: int = 0,
    daily_charge_reset_at: datetime | None = None,
) -> MagicMock:
    """Factory function to create mock Balance rows."""
    balance = MagicMock(spec=Balance)
    balance.id = uuid4()
    balance.user_id = user_id or uuid4()
    balance.current_balance = current_balance
    balance.daily_charge_amount = daily_charge_amount
    balance.daily_charge_reset_at = daily_charge_reset_at or (
        datetime.now(UTC) + timedelta(hours=12)
    )
    balance.last_updated_at = datetime.now(UTC)
    balance.created_at = datetime.now(UTC)
    return balance


def create_mock_product(
    product_id: UUID | None = None,
    name: str = "Keyboard",
    price: int = 50_000,
    stock_quantity: int = 10,
    status: ProductStatus = ProductStatus.ACTIVE,
    version: int = 0,
) -> MagicMock:
    """Factory function to create mock Product rows."""
    product = MagicMock(spec=Product)
    product.id = product_id or uuid4()
    product.name = name
    product.price = price
    product.stock_quantity = stock_quantity
    product.status = status
    product.version = version
    return product


def create_mock_event(
    event_id: UUID | None = None,
    name: str = "Spring Sale",
    discount_type: DiscountType = DiscountType.PERCENTAGE,
    discount_value: int = 10,
    total_quantity: int = 100,
    issued_quantity: int = 0,
    minimum_order_amount: int = 0,
    status: CouponEventStatus = CouponEventStatus.ACTIVE,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> MagicMock:
    """Factory function to create mock CouponEvent rows."""
    now = datetime.now(UTC)
    event = MagicMock(spec=CouponEvent)
    event.id = event_id or uuid4()
    event.name = name
    event.discount_type = discount_type
    event.discount_value = discount_value
    event.total_quantity = total_quantity
    event.issued_quantity = issued_quantity
    event.minimum_order_amount = minimum_order_amount
    event.status = status
    event.start_date = start_date or now - timedelta(days=1)
    event.end_date = end_date or now + timedelta(days=7)
    event.version = 0
    return event


def create_mock_coupon(
    event: MagicMock,
    user_id: UUID | None = None,
    status: CouponStatus = CouponStatus.AVAILABLE,
    expired_at: datetime | None = None,
) -> MagicMock:
    """Factory function to create mock Coupon rows."""
    coupon = MagicMock(spec=Coupon)
    coupon.id = uuid4()
    coupon.user_id = user_id or uuid4()
    coupon.coupon_event_id = event.id
    coupon.coupon_code = f"{event.name[:5].upper()}-ABC123"
    coupon.status = status
    coupon.issued_at = datetime.now(UTC)
    coupon.used_at = None
    coupon.expired_at = expired_at or event.end_date
    return coupon


def create_mock_order(
    user_id: UUID | None = None,
    status: OrderStatus = OrderStatus.PENDING,
    final_amount: int = 70_000,
) -> MagicMock:
    """Factory function to create mock Order rows."""
    order = MagicMock(spec=Order)
    order.id = uuid4()
    order.user_id = user_id or uuid4()
    order.coupon_id = None
    order.status = status
    order.total_amount = final_amount
    order.discount_amount = 0
    order.final_amount = final_amount
    order.version = 0
    order.created_at = datetime.now(UTC)
    order.updated_at = datetime.now(UTC)
    return order


# ============================================================================
# SQLite Database Fixtures (integration)
# ============================================================================


@pytest.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Engine on a fresh SQLite file with the full schema."""
    test_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'commerce.db'}")
    await create_schema(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return build_session_factory(engine)


@pytest.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """One session on the test database."""
    async with session_factory() as db:
        yield db


class Seeder:
    """Inserts rows that the commerce core treats as managed elsewhere."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def _save(self, row: object) -> None:
        async with self.session_factory() as db:
            db.add(row)
            await db.commit()

    async def user(self, name: str = "Kim") -> UUID:
        user = User(id=uuid4(), name=name, email=f"{uuid4().hex}@example.com", status=UserStatus.ACTIVE)
        await self._save(user)
        return user.id

    async def product(
        self,
        name: str = "Keyboard",
        price: int = 50_000,
        stock: int = 10,
        status: ProductStatus = ProductStatus.ACTIVE,
    ) -> UUID:
        product = Product(
            id=uuid4(), name=name, price=price, stock_quantity=stock, status=status, version=0
        )
        await self._save(product)
        return product.id

    async def event(
        self,
        name: str = "Spring Sale",
        discount_type: DiscountType = DiscountType.PERCENTAGE,
        discount_value: int = 10,
        total: int = 100,
        issued: int = 0,
        minimum: int = 0,
        status: CouponEventStatus = CouponEventStatus.ACTIVE,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> UUID:
        now = datetime.now(UTC)
        event = CouponEvent(
            id=uuid4(),
            name=name,
            discount_type=discount_type,
            discount_value=discount_value,
            total_quantity=total,
            issued_quantity=issued,
            minimum_order_amount=minimum,
            start_date=start or now - timedelta(days=1),
            end_date=end or now + timedelta(days=7),
            status=status,
            version=0,
        )
        await self._save(event)
        return event.id

    async def coupon(
        self,
        user_id: UUID,
        event_id: UUID,
        status: CouponStatus = CouponStatus.AVAILABLE,
        expired_at: datetime | None = None,
    ) -> UUID:
        coupon = Coupon(
            id=uuid4(),
            user_id=user_id,
            coupon_event_id=event_id,
            coupon_code=f"SEED-{uuid4().hex[:8].upper()}",
            status=status,
            issued_at=datetime.now(UTC),
            expired_at=expired_at or datetime.now(UTC) + timedelta(days=7),
        )
        await self._save(coupon)
        return coupon.id


@pytest.fixture
def seed(session_factory: async_sessionmaker[AsyncSession]) -> Seeder:
    """Seeding helper bound to the test database."""
    return Seeder(session_factory)
