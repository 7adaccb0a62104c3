"""
API Models - Enumerations and Pydantic models shared with the API boundary.

NO DICTIONARIES - All data structures are strongly typed.
"""

import math
import time
from enum import Enum
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, Field

from commerce.exceptions import CommerceError, ErrorKind

T = TypeVar("T")


class UserStatus(str, Enum):
    """User status enumeration."""

    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"


class TransactionType(str, Enum):
    """Balance transaction type enumeration."""

    CHARGE = "CHARGE"
    USE = "USE"
    REFUND = "REFUND"


class ProductStatus(str, Enum):
    """Product sale status enumeration."""

    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    OUT_OF_STOCK = "OUT_OF_STOCK"


class DiscountType(str, Enum):
    """Coupon discount type enumeration."""

    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"


class CouponEventStatus(str, Enum):
    """Coupon event status enumeration."""

    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    EXPIRED = "EXPIRED"


class CouponStatus(str, Enum):
    """Coupon status enumeration."""

    AVAILABLE = "AVAILABLE"
    USED = "USED"
    EXPIRED = "EXPIRED"


class OrderStatus(str, Enum):
    """Order status enumeration. COMPLETED and FAILED are terminal."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class PaymentStatus(str, Enum):
    """Payment outcome enumeration."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class OrderSortField(str, Enum):
    """Sortable order columns for the user order listing."""

    CREATED_AT = "createdAt"
    FINAL_AMOUNT = "finalAmount"


class SortOrder(str, Enum):
    """Sort direction."""

    ASC = "ASC"
    DESC = "DESC"


# ============================================================================
# Pagination Models
# ============================================================================


class PaginationInfo(BaseModel):
    """Pagination block shared by coupon, order and transaction listings."""

    page: int
    size: int
    total: int
    total_pages: int
    has_next: bool
    has_previous: bool

    @classmethod
    def from_total(cls, page: int, size: int, total: int) -> "PaginationInfo":
        """Derive page counts and navigation flags from a total row count."""
        total_pages = math.ceil(total / size) if total else 0
        return cls(
            page=page,
            size=size,
            total=total,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_previous=page > 1,
        )


# ============================================================================
# Response Envelopes
# ============================================================================


class SuccessResponse(BaseModel, Generic[T]):
    """Success envelope returned by the API boundary."""

    success: Literal[True] = True
    data: T
    timestamp: int

    @classmethod
    def of(cls, data: T) -> "SuccessResponse[T]":
        """Wrap data with the current time in epoch milliseconds."""
        return cls(data=data, timestamp=int(time.time() * 1000))


# ============================================================================
# Error Models
# ============================================================================


class ErrorBody(BaseModel):
    """Error payload: stable kind, human message and kind-specific details."""

    code: ErrorKind
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Failure envelope returned by the API boundary."""

    success: Literal[False] = False
    error: ErrorBody
    timestamp: int


def to_error_response(exc: BaseException) -> tuple[int, ErrorResponse]:
    """
    Map an exception to (HTTP status, error envelope).

    The status comes from the exception's ErrorKind. Anything that is not a
    CommerceError is reported as InternalError without leaking its message.
    """
    if isinstance(exc, CommerceError):
        kind = exc.kind
        body = ErrorBody(code=kind, message=exc.message, details=exc.details)
    else:
        kind = ErrorKind.INTERNAL_ERROR
        body = ErrorBody(code=kind, message="Internal server error")

    return kind.http_status, ErrorResponse(error=body, timestamp=int(time.time() * 1000))
