"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Dialect,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from commerce.models.api import (
    CouponEventStatus,
    CouponStatus,
    DiscountType,
    OrderStatus,
    PaymentStatus,
    ProductStatus,
    TransactionType,
    UserStatus,
)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """
    Timezone-aware timestamp column.

    PostgreSQL keeps the offset; SQLite drops it, so values read back without
    tzinfo are tagged as UTC and values written are normalized to UTC first.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


def _enum_column(enum_cls: type[Enum], name: str) -> SQLEnum:
    """Enum column stored as its string value (no native DB enum)."""
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=20,
        values_callable=lambda x: [e.value for e in x],
    )


class User(Base):
    """
    ORM model for users table.

    Users are managed outside the commerce core; the ledger only checks
    that a user exists before opening a balance.
    """

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    status: Mapped[UserStatus] = mapped_column(
        _enum_column(UserStatus, "user_status"), nullable=False, default=UserStatus.ACTIVE
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<User(id={self.id}, email={self.email}, status={self.status})>"


class Balance(Base):
    """
    ORM model for balances table.

    One row per user, created lazily. Mutated only by the balance ledger.
    """

    __tablename__ = "balances"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, unique=True
    )

    current_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Charged amount of the current UTC day and when that counter rolls over
    daily_charge_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    daily_charge_reset_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    last_updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint("current_balance >= 0", name="ck_balance_non_negative"),
        CheckConstraint("daily_charge_amount >= 0", name="ck_daily_charge_non_negative"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Balance(user_id={self.user_id}, current_balance={self.current_balance})>"


class BalanceTransaction(Base):
    """
    ORM model for balance_transactions table.

    Immutable, append-only log of every balance mutation.
    """

    __tablename__ = "balance_transactions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)

    transaction_type: Mapped[TransactionType] = mapped_column(
        _enum_column(TransactionType, "transaction_type"), nullable=False
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Balance snapshots (denormalized for auditing)
    balance_before: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    description: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transaction_amount_positive"),
        CheckConstraint(
            "(transaction_type = 'USE' AND balance_after = balance_before - amount) OR "
            "(transaction_type IN ('CHARGE', 'REFUND') AND balance_after = balance_before + amount)",
            name="ck_transaction_balance_consistency",
        ),
        Index("idx_balance_transactions_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<BalanceTransaction(id={self.id}, user_id={self.user_id}, "
            f"type={self.transaction_type}, amount={self.amount})>"
        )


class Product(Base):
    """
    ORM model for products table.

    Catalog fields are managed elsewhere; stock is mutated only through
    version-checked updates by the inventory manager.
    """

    __tablename__ = "products"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    stock_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[ProductStatus] = mapped_column(
        _enum_column(ProductStatus, "product_status"),
        nullable=False,
        default=ProductStatus.ACTIVE,
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Optimistic concurrency token, +1 on every stock mutation
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_product_price_non_negative"),
        CheckConstraint("stock_quantity >= 0", name="ck_product_stock_non_negative"),
        Index("idx_products_status", "status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Product(id={self.id}, name={self.name}, "
            f"stock={self.stock_quantity}, status={self.status})>"
        )


class CouponEvent(Base):
    """
    ORM model for coupon_events table.

    A time-windowed, quantity-bounded discount offer.
    """

    __tablename__ = "coupon_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    discount_type: Mapped[DiscountType] = mapped_column(
        _enum_column(DiscountType, "discount_type"), nullable=False
    )
    discount_value: Mapped[int] = mapped_column(BigInteger, nullable=False)

    total_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    issued_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    minimum_order_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    start_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[CouponEventStatus] = mapped_column(
        _enum_column(CouponEventStatus, "coupon_event_status"),
        nullable=False,
        default=CouponEventStatus.ACTIVE,
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("discount_value > 0", name="ck_coupon_event_discount_positive"),
        CheckConstraint("total_quantity >= 0", name="ck_coupon_event_total_non_negative"),
        CheckConstraint(
            "issued_quantity >= 0 AND issued_quantity <= total_quantity",
            name="ck_coupon_event_issued_within_total",
        ),
        CheckConstraint("start_date <= end_date", name="ck_coupon_event_window"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CouponEvent(id={self.id}, name={self.name}, "
            f"issued={self.issued_quantity}/{self.total_quantity})>"
        )


class Coupon(Base):
    """
    ORM model for coupons table.

    Individual grants minted from a coupon event.
    """

    __tablename__ = "coupons"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    coupon_event_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("coupon_events.id"), nullable=False
    )
    coupon_code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    status: Mapped[CouponStatus] = mapped_column(
        _enum_column(CouponStatus, "coupon_status"),
        nullable=False,
        default=CouponStatus.AVAILABLE,
    )

    issued_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    expired_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        # At most one AVAILABLE coupon per (user, event)
        Index(
            "uq_coupons_available_user_event",
            "user_id",
            "coupon_event_id",
            unique=True,
            postgresql_where=text("status = 'AVAILABLE'"),
            sqlite_where=text("status = 'AVAILABLE'"),
        ),
        Index("idx_coupons_user_status", "user_id", "status"),
        Index("idx_coupons_status_expired_at", "status", "expired_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Coupon(id={self.id}, code={self.coupon_code}, status={self.status})>"


class Order(Base):
    """
    ORM model for orders table.

    Status moves PENDING -> COMPLETED or PENDING -> FAILED, never back.
    """

    __tablename__ = "orders"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    coupon_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("coupons.id"), nullable=True
    )
    status: Mapped[OrderStatus] = mapped_column(
        _enum_column(OrderStatus, "order_status"),
        nullable=False,
        default=OrderStatus.PENDING,
    )

    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    discount_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    final_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "final_amount = total_amount - discount_amount", name="ck_order_final_amount"
        ),
        CheckConstraint("final_amount >= 0", name="ck_order_final_non_negative"),
        Index("idx_orders_user_created", "user_id", "created_at"),
        Index("idx_orders_status", "status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Order(id={self.id}, user_id={self.user_id}, status={self.status})>"


class OrderLineItem(Base):
    """
    ORM model for order_line_items table.

    Unit price and product name are snapshots taken at order time.
    """

    __tablename__ = "order_line_items"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    order_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=False, index=True
    )
    product_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("products.id"), nullable=False)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_price: Mapped[int] = mapped_column(BigInteger, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_line_item_quantity_positive"),
        CheckConstraint("total_price = unit_price * quantity", name="ck_line_item_total"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<OrderLineItem(order_id={self.order_id}, product_id={self.product_id}, "
            f"quantity={self.quantity}, unit_price={self.unit_price})>"
        )


class Payment(Base):
    """
    ORM model for payments table.

    One row per order: SUCCESS on a completed saga, FAILED on a compensated one.
    """

    __tablename__ = "payments"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    order_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("orders.id"), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        _enum_column(PaymentStatus, "payment_status"), nullable=False
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_before: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (UniqueConstraint("order_id", name="uq_payment_order"),)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Payment(id={self.id}, order_id={self.order_id}, status={self.status})>"

