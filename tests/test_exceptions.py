"""
Tests for exception classes.

Covers typed attributes, message formats and the hierarchy callers rely
on when mapping errors to HTTP responses.
"""

from uuid import uuid4

import pytest

from keymarket.exceptions import (
    AuthorizationError,
    DataIntegrityError,
    InvalidStateError,
    LicenseKeyNotFoundError,
    MarketError,
    OrderNotFoundError,
    OrderValidationError,
    OutOfStockError,
    PaymentAlreadyRequestedError,
    PaymentGatewayError,
    ProductNotFoundError,
    ProductUnavailableError,
    RateLimitExceededError,
    RefundWindowExpiredError,
    WriteVerificationError,
)


class TestMarketError:
    """Tests for base MarketError."""

    def test_market_error_is_exception(self):
        assert issubclass(MarketError, Exception)

    def test_market_error_can_be_raised(self):
        with pytest.raises(MarketError):
            raise MarketError("test error")


class TestOrderValidationError:
    """Tests for OrderValidationError."""

    def test_attributes(self):
        exc = OrderValidationError("email", "not an address")
        assert exc.field == "email"
        assert exc.message == "not an address"
        assert str(exc) == "Invalid email: not an address"


class TestNotFoundErrors:
    """Tests for lookup failures."""

    def test_product_not_found(self):
        product_id = uuid4()
        exc = ProductNotFoundError(product_id)
        assert exc.product_id == product_id
        assert str(product_id) in str(exc)

    def test_order_not_found(self):
        exc = OrderNotFoundError("ORD-ABCDEF12")
        assert exc.reference == "ORD-ABCDEF12"
        assert "ORD-ABCDEF12" in str(exc)

    def test_license_key_not_found(self):
        key_id = uuid4()
        assert LicenseKeyNotFoundError(key_id).key_id == key_id


class TestProductUnavailableError:
    """Tests for sale blocks."""

    def test_reason(self):
        exc = ProductUnavailableError(uuid4(), "frozen")
        assert exc.reason == "frozen"
        assert "frozen" in str(exc)

    def test_out_of_stock_is_unavailable(self):
        """Handlers catching ProductUnavailableError also see out-of-stock."""
        product_id = uuid4()
        exc = OutOfStockError(product_id)
        assert isinstance(exc, ProductUnavailableError)
        assert exc.product_id == product_id
        assert exc.reason == "out of stock"


class TestInvalidStateError:
    """Tests for InvalidStateError."""

    def test_message_format(self):
        exc = InvalidStateError("ORD-1", "pending", "refund")
        assert exc.current == "pending"
        assert exc.attempted == "refund"
        assert str(exc) == "Order ORD-1 cannot refund from state pending"


class TestRefundWindowExpiredError:
    def test_window_in_message(self):
        exc = RefundWindowExpiredError("ORD-1", 24)
        assert exc.window_hours == 24
        assert "24 hours" in str(exc)


class TestPaymentAlreadyRequestedError:
    def test_attributes(self):
        exc = PaymentAlreadyRequestedError("ORD-1", "LTCabc")
        assert exc.order_code == "ORD-1"
        assert exc.address == "LTCabc"


class TestAccessErrors:
    """Tests for authorization and rate limiting."""

    def test_authorization_error(self):
        exc = AuthorizationError("admin")
        assert exc.required_role == "admin"
        assert "admin" in str(exc)

    def test_rate_limit_error(self):
        exc = RateLimitExceededError("10.0.0.1", 30)
        assert exc.key == "10.0.0.1"
        assert exc.retry_after == 30
        assert "30s" in str(exc)


class TestFatalErrors:
    """Tests for storage and collaborator failures."""

    @pytest.mark.parametrize(
        "exc_class,prefix",
        [
            (WriteVerificationError, "Write verification failed"),
            (DataIntegrityError, "Data integrity error"),
            (PaymentGatewayError, "Payment gateway error"),
        ],
    )
    def test_message_prefix(self, exc_class, prefix):
        exc = exc_class("boom")
        assert exc.message == "boom"
        assert str(exc) == f"{prefix}: boom"
        assert isinstance(exc, MarketError)
