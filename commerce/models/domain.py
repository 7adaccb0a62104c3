"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Generic, TypeVar
from uuid import UUID

from commerce.config import settings
from commerce.exceptions import ValidationError
from commerce.models.api import (
    CouponStatus,
    DiscountType,
    OrderStatus,
    PaginationInfo,
    PaymentStatus,
    ProductStatus,
    TransactionType,
)

T = TypeVar("T")


@dataclass(frozen=True)
class PageRequest:
    """Validated page/size pair (page >= 1, 1 <= size <= max_page_size)."""

    page: int = 1
    size: int = settings.default_page_size

    def __post_init__(self) -> None:
        """Validate pagination bounds."""
        if self.page < 1:
            raise ValidationError("page", f"page must be >= 1, got {self.page}")
        if not 1 <= self.size <= settings.max_page_size:
            raise ValidationError(
                "size", f"size must be between 1 and {settings.max_page_size}, got {self.size}"
            )

    @property
    def offset(self) -> int:
        """Row offset of the first item on this page."""
        return (self.page - 1) * self.size


@dataclass(frozen=True)
class Page(Generic[T]):
    """One page of a listing plus its pagination block."""

    items: tuple[T, ...]
    pagination: PaginationInfo


# ============================================================================
# Balance Ledger
# ============================================================================


@dataclass(frozen=True)
class BalanceData:
    """Immutable balance snapshot."""

    user_id: UUID
    current_balance: int
    daily_charge_amount: int
    last_updated_at: datetime


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable balance transaction after persistence."""

    transaction_id: UUID
    user_id: UUID
    transaction_type: TransactionType
    amount: int
    balance_before: int
    balance_after: int
    description: str
    created_at: datetime


@dataclass(frozen=True)
class ChargeResult:
    """Outcome of a successful balance charge."""

    user_id: UUID
    charged_amount: int
    new_balance: int
    charged_at: datetime
    transaction: LedgerEntry


# ============================================================================
# Inventory
# ============================================================================


@dataclass(frozen=True)
class ProductData:
    """Immutable product snapshot."""

    product_id: UUID
    name: str
    price: int
    stock_quantity: int
    status: ProductStatus
    version: int


# ============================================================================
# Coupons
# ============================================================================


@dataclass(frozen=True)
class CouponData:
    """Immutable coupon snapshot joined with its event's discount terms."""

    coupon_id: UUID
    coupon_code: str
    user_id: UUID
    coupon_event_id: UUID
    discount_type: DiscountType
    discount_value: int
    minimum_order_amount: int
    status: CouponStatus
    issued_at: datetime
    used_at: datetime | None
    expired_at: datetime


@dataclass(frozen=True)
class AppliedCoupon:
    """Discount a coupon yields on a given order amount."""

    coupon_id: UUID
    coupon_code: str
    discount_type: DiscountType
    discount_value: int
    discount_amount: int


# ============================================================================
# Orders
# ============================================================================


@dataclass(frozen=True)
class OrderItem:
    """Requested product and quantity. Validated by the orchestrator."""

    product_id: UUID
    quantity: int


@dataclass(frozen=True)
class OrderLine:
    """Order line with the unit price captured at order time."""

    product_id: UUID
    product_name: str
    unit_price: int
    quantity: int
    total_price: int


@dataclass(frozen=True)
class OrderReceipt:
    """Result of order creation."""

    order_id: UUID
    user_id: UUID
    status: OrderStatus
    total_amount: int
    discount_amount: int
    final_amount: int
    items: tuple[OrderLine, ...]
    coupon: AppliedCoupon | None
    created_at: datetime


@dataclass(frozen=True)
class PaymentData:
    """Immutable payment record."""

    payment_id: UUID
    order_id: UUID
    status: PaymentStatus
    amount: int
    balance_before: int
    balance_after: int
    failure_reason: str | None
    created_at: datetime


@dataclass(frozen=True)
class OrderDetail:
    """Read projection joining order, line items, coupon and payment."""

    order_id: UUID
    user_id: UUID
    status: OrderStatus
    total_amount: int
    discount_amount: int
    final_amount: int
    items: tuple[OrderLine, ...]
    coupon: AppliedCoupon | None
    payment: PaymentData | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class OrderSummary:
    """Row of the user order listing."""

    order_id: UUID
    status: OrderStatus
    total_amount: int
    discount_amount: int
    final_amount: int
    item_count: int
    created_at: datetime
