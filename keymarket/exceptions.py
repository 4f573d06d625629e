"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID


class MarketError(Exception):
    """Base exception for all order engine errors."""

    pass


# ============================================================================
# Input / lookup errors
# ============================================================================


class OrderValidationError(MarketError):
    """Raised when caller-supplied input is malformed."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"Invalid {field}: {message}")


class ProductNotFoundError(MarketError):
    """Raised when a product doesn't exist or is inactive."""

    def __init__(self, product_id: UUID) -> None:
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class OrderNotFoundError(MarketError):
    """Raised when no order matches the lookup."""

    def __init__(self, reference: str) -> None:
        self.reference = reference
        super().__init__(f"Order not found: {reference}")


class LicenseKeyNotFoundError(MarketError):
    """Raised when a license key doesn't exist."""

    def __init__(self, key_id: UUID) -> None:
        self.key_id = key_id
        super().__init__(f"License key not found: {key_id}")


# ============================================================================
# Business-rule blocks
# ============================================================================


class ProductUnavailableError(MarketError):
    """Raised when a product exists but cannot currently be sold."""

    def __init__(self, product_id: UUID, reason: str) -> None:
        self.product_id = product_id
        self.reason = reason
        super().__init__(f"Product {product_id} unavailable: {reason}")


class OutOfStockError(ProductUnavailableError):
    """Raised when no license key is available for a product."""

    def __init__(self, product_id: UUID) -> None:
        super().__init__(product_id, "out of stock")


class InvalidStateError(MarketError):
    """Raised when an order transition is not allowed from its current state."""

    def __init__(self, order_code: str, current: str, attempted: str) -> None:
        self.order_code = order_code
        self.current = current
        self.attempted = attempted
        super().__init__(f"Order {order_code} cannot {attempted} from state {current}")


class RefundWindowExpiredError(MarketError):
    """Raised when a refund is requested after the eligibility window."""

    def __init__(self, order_code: str, window_hours: int) -> None:
        self.order_code = order_code
        self.window_hours = window_hours
        super().__init__(f"Refund period has expired ({window_hours} hours) for {order_code}")


class PaymentAlreadyRequestedError(MarketError):
    """Raised when a payment request conflicts with the stored one."""

    def __init__(self, order_code: str, address: str) -> None:
        self.order_code = order_code
        self.address = address
        super().__init__(f"Payment already requested for {order_code} at {address}")


class AuthorizationError(MarketError):
    """Raised when a principal lacks the required role."""

    def __init__(self, required_role: str) -> None:
        self.required_role = required_role
        super().__init__(f"Authorization failed: requires role {required_role}")


class RateLimitExceededError(MarketError):
    """Raised when a caller exceeds the request budget."""

    def __init__(self, key: str, retry_after: int) -> None:
        self.key = key
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded for {key}, retry after {retry_after}s")


class PaymentGatewayError(MarketError):
    """Raised when the payment gateway collaborator fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment gateway error: {message}")


# ============================================================================
# Fatal storage errors
# ============================================================================


class WriteVerificationError(MarketError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(MarketError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")

