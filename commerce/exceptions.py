"""
Exception Classes - Strongly typed exception hierarchy.

Every exception carries a stable ErrorKind. The boundary layer switches on
the kind to pick an HTTP status and never inspects message text.
"""

from enum import Enum
from typing import Any
from uuid import UUID


class ErrorKind(str, Enum):
    """Machine-readable error kinds exposed to callers."""

    NOT_FOUND = "NotFound"
    VALIDATION_ERROR = "ValidationError"
    DAILY_LIMIT_EXCEEDED = "DailyLimitExceeded"
    BALANCE_CAP_EXCEEDED = "BalanceCapExceeded"
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    OUT_OF_STOCK = "OutOfStock"
    PRODUCT_UNAVAILABLE = "ProductUnavailable"
    COUPON_EXHAUSTED = "CouponExhausted"
    DUPLICATE_ISSUANCE = "DuplicateIssuance"
    NOT_IN_ISSUANCE_PERIOD = "NotInIssuancePeriod"
    ISSUANCE_PERIOD_EXPIRED = "IssuancePeriodExpired"
    COUPON_UNAVAILABLE = "CouponUnavailable"
    COUPON_EXPIRED = "CouponExpired"
    MINIMUM_AMOUNT_NOT_MET = "MinimumAmountNotMet"
    OWNERSHIP_MISMATCH = "OwnershipMismatch"
    ALREADY_PROCESSED = "AlreadyProcessed"
    CONCURRENT_MODIFICATION = "ConcurrentModification"
    INTERNAL_ERROR = "InternalError"

    @property
    def http_status(self) -> int:
        """HTTP status code the API boundary uses for this kind."""
        if self is ErrorKind.NOT_FOUND:
            return 404
        if self in _CONFLICT_KINDS:
            return 409
        if self is ErrorKind.INTERNAL_ERROR:
            return 500
        return 400


_CONFLICT_KINDS = frozenset(
    {
        ErrorKind.COUPON_EXHAUSTED,
        ErrorKind.ALREADY_PROCESSED,
        ErrorKind.DUPLICATE_ISSUANCE,
        ErrorKind.CONCURRENT_MODIFICATION,
    }
)


class CommerceError(Exception):
    """Base exception for all commerce errors."""

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    @property
    def details(self) -> dict[str, Any]:
        """Kind-specific context for the error envelope."""
        return {}


# ============================================================================
# Generic
# ============================================================================


class ResourceNotFoundError(CommerceError):
    """Raised when a user, product, order, coupon or coupon event is missing."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, resource: str, resource_id: UUID | str) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found: {resource_id}")

    @property
    def details(self) -> dict[str, Any]:
        return {"resource": self.resource, "id": str(self.resource_id)}


class ValidationError(CommerceError):
    """Raised for malformed amounts, quantities or pagination parameters."""

    kind = ErrorKind.VALIDATION_ERROR

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(message)

    @property
    def details(self) -> dict[str, Any]:
        return {"field": self.field}


class ConcurrentModificationError(CommerceError):
    """Raised when optimistic retries are exhausted for a contended resource."""

    kind = ErrorKind.CONCURRENT_MODIFICATION

    def __init__(self, resource: str, resource_id: UUID | str, attempts: int) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.attempts = attempts
        super().__init__(
            f"Concurrent modification detected for {resource} {resource_id} "
            f"after {attempts} attempts"
        )

    @property
    def details(self) -> dict[str, Any]:
        return {
            "resource": self.resource,
            "id": str(self.resource_id),
            "attempts": self.attempts,
        }


class DataIntegrityError(CommerceError):
    """Raised when a write cannot be verified or an invariant is violated."""

    kind = ErrorKind.INTERNAL_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(f"Data integrity error: {message}")


# ============================================================================
# Balance Ledger
# ============================================================================


class DailyLimitExceededError(CommerceError):
    """Raised when a charge would push the daily charged amount over the limit."""

    kind = ErrorKind.DAILY_LIMIT_EXCEEDED

    def __init__(self, attempted: int, charged_today: int, limit: int) -> None:
        self.attempted = attempted
        self.charged_today = charged_today
        self.limit = limit
        super().__init__(
            f"Daily charge limit exceeded. Charged today: {charged_today}, "
            f"Attempted: {attempted}, Limit: {limit}"
        )

    @property
    def details(self) -> dict[str, Any]:
        return {
            "attempted_amount": self.attempted,
            "charged_today": self.charged_today,
            "limit": self.limit,
        }


class BalanceCapExceededError(CommerceError):
    """Raised when a charge would push the balance over the holding cap."""

    kind = ErrorKind.BALANCE_CAP_EXCEEDED

    def __init__(self, attempted: int, balance: int, limit: int) -> None:
        self.attempted = attempted
        self.balance = balance
        self.limit = limit
        super().__init__(
            f"Balance cap exceeded. Balance: {balance}, Attempted: {attempted}, Limit: {limit}"
        )

    @property
    def details(self) -> dict[str, Any]:
        return {
            "attempted_amount": self.attempted,
            "current_balance": self.balance,
            "limit": self.limit,
        }


class InsufficientBalanceError(CommerceError):
    """Raised when a balance does not cover the amount to deduct."""

    kind = ErrorKind.INSUFFICIENT_BALANCE

    def __init__(self, balance: int, required: int) -> None:
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient balance. Balance: {balance}, Required: {required}")

    @property
    def details(self) -> dict[str, Any]:
        return {"current_balance": self.balance, "required_amount": self.required}


# ============================================================================
# Inventory
# ============================================================================


class OutOfStockError(CommerceError):
    """Raised when a product does not have enough stock."""

    kind = ErrorKind.OUT_OF_STOCK

    def __init__(self, product_id: UUID, requested: int, available: int) -> None:
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for product {product_id}. "
            f"Requested: {requested}, Available: {available}"
        )

    @property
    def details(self) -> dict[str, Any]:
        return {
            "product_id": str(self.product_id),
            "requested_quantity": self.requested,
            "available_quantity": self.available,
        }


class ProductNotFoundError(ResourceNotFoundError):
    """Raised when an ordered product does not exist."""

    def __init__(self, product_id: UUID) -> None:
        self.product_id = product_id
        super().__init__("Product", product_id)


class ProductUnavailableError(CommerceError):
    """Raised when an ordered product is not on sale."""

    kind = ErrorKind.PRODUCT_UNAVAILABLE

    def __init__(self, product_id: UUID, name: str, status: str) -> None:
        self.product_id = product_id
        self.name = name
        self.status = status
        super().__init__(f"Product '{name}' is not on sale (status: {status})")

    @property
    def details(self) -> dict[str, Any]:
        return {"product_id": str(self.product_id), "status": self.status}


# ============================================================================
# Coupons
# ============================================================================


class CouponExhaustedError(CommerceError):
    """Raised when a coupon event has no coupons left to issue."""

    kind = ErrorKind.COUPON_EXHAUSTED

    def __init__(self, coupon_event_id: UUID, total_quantity: int) -> None:
        self.coupon_event_id = coupon_event_id
        self.total_quantity = total_quantity
        super().__init__(f"All {total_quantity} coupons of event {coupon_event_id} are issued")

    @property
    def details(self) -> dict[str, Any]:
        return {
            "coupon_event_id": str(self.coupon_event_id),
            "total_quantity": self.total_quantity,
        }


class DuplicateIssuanceError(CommerceError):
    """Raised when the user already holds an available coupon of the event."""

    kind = ErrorKind.DUPLICATE_ISSUANCE

    def __init__(self, user_id: UUID, coupon_event_id: UUID) -> None:
        self.user_id = user_id
        self.coupon_event_id = coupon_event_id
        super().__init__(f"User {user_id} already holds a coupon of event {coupon_event_id}")

    @property
    def details(self) -> dict[str, Any]:
        return {"user_id": str(self.user_id), "coupon_event_id": str(self.coupon_event_id)}


class NotInIssuancePeriodError(CommerceError):
    """Raised when issuance is attempted before the window opens or on an inactive event."""

    kind = ErrorKind.NOT_IN_ISSUANCE_PERIOD

    def __init__(self, coupon_event_id: UUID, reason: str) -> None:
        self.coupon_event_id = coupon_event_id
        self.reason = reason
        super().__init__(f"Coupon event {coupon_event_id} is not issuing: {reason}")

    @property
    def details(self) -> dict[str, Any]:
        return {"coupon_event_id": str(self.coupon_event_id), "reason": self.reason}


class IssuancePeriodExpiredError(CommerceError):
    """Raised when issuance is attempted after the window closed."""

    kind = ErrorKind.ISSUANCE_PERIOD_EXPIRED

    def __init__(self, coupon_event_id: UUID) -> None:
        self.coupon_event_id = coupon_event_id
        super().__init__(f"Issuance period of coupon event {coupon_event_id} has ended")

    @property
    def details(self) -> dict[str, Any]:
        return {"coupon_event_id": str(self.coupon_event_id)}


class CouponUnavailableError(CommerceError):
    """Raised when a coupon is not in AVAILABLE status."""

    kind = ErrorKind.COUPON_UNAVAILABLE

    def __init__(self, coupon_id: UUID, status: str) -> None:
        self.coupon_id = coupon_id
        self.status = status
        super().__init__(f"Coupon {coupon_id} cannot be used (status: {status})")

    @property
    def details(self) -> dict[str, Any]:
        return {"coupon_id": str(self.coupon_id), "status": self.status}


class CouponExpiredError(CommerceError):
    """Raised when a coupon is past its expiry."""

    kind = ErrorKind.COUPON_EXPIRED

    def __init__(self, coupon_id: UUID) -> None:
        self.coupon_id = coupon_id
        super().__init__(f"Coupon {coupon_id} has expired")

    @property
    def details(self) -> dict[str, Any]:
        return {"coupon_id": str(self.coupon_id)}


class MinimumAmountNotMetError(CommerceError):
    """Raised when the order amount is below the coupon's minimum."""

    kind = ErrorKind.MINIMUM_AMOUNT_NOT_MET

    def __init__(self, order_amount: int, minimum_amount: int) -> None:
        self.order_amount = order_amount
        self.minimum_amount = minimum_amount
        super().__init__(
            f"Order amount {order_amount} is below the coupon minimum {minimum_amount}"
        )

    @property
    def details(self) -> dict[str, Any]:
        return {"order_amount": self.order_amount, "minimum_order_amount": self.minimum_amount}


# ============================================================================
# Orders
# ============================================================================


class OwnershipMismatchError(CommerceError):
    """Raised when a user acts on an order or coupon they do not own."""

    kind = ErrorKind.OWNERSHIP_MISMATCH

    def __init__(self, resource: str, resource_id: UUID, user_id: UUID) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.user_id = user_id
        super().__init__(f"{resource} {resource_id} does not belong to user {user_id}")

    @property
    def details(self) -> dict[str, Any]:
        return {
            "resource": self.resource,
            "id": str(self.resource_id),
            "user_id": str(self.user_id),
        }


class AlreadyProcessedError(CommerceError):
    """Raised when payment is attempted on an order that is no longer payable."""

    kind = ErrorKind.ALREADY_PROCESSED

    def __init__(self, order_id: UUID, status: str) -> None:
        self.order_id = order_id
        self.status = status
        super().__init__(f"Order {order_id} has already been processed (status: {status})")

    @property
    def details(self) -> dict[str, Any]:
        return {"order_id": str(self.order_id), "status": self.status}
