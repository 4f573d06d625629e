"""
Payment Gateway Protocol - Gateway-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.

The order engine only needs three things from a gateway: a fresh receive
address per order, transaction lookups, and a way to decide whether an
inbound notification is genuine. Signature schemes stay behind the
EventAuthenticator seam.
"""

import hashlib
import hmac
from collections import OrderedDict
from decimal import Decimal
from typing import Protocol

from structlog import get_logger

from keymarket.config import settings
from keymarket.models.domain import PaymentEvent, TransactionInfo, TransactionOutput

logger = get_logger(__name__)


class EventAuthenticator(Protocol):
    """Decides whether a payment notification came from the gateway."""

    def authenticate(self, event: PaymentEvent) -> bool:
        """
        Check the event's credentials.

        Must fail closed: missing or unconfigured secrets return False.
        """
        ...


class PaymentGateway(Protocol):
    """
    Payment gateway protocol.

    Any settlement backend (BlockCypher, a node wallet, a simulator) must
    implement this interface.
    """

    async def create_address(self, order_code: str) -> str:
        """
        Generate a receive address for one order.

        Raises:
            PaymentGatewayError: If the gateway cannot issue an address
        """
        ...

    async def fetch_transaction(self, transaction_id: str) -> TransactionInfo | None:
        """
        Look up a transaction.

        Returns None if the gateway does not know the transaction.

        Raises:
            PaymentGatewayError: If the gateway is unreachable
        """
        ...


class HmacSignatureAuthenticator:
    """Hex HMAC-SHA256 over the raw request body, compared in constant time."""

    def __init__(self, secret: str) -> None:
        self._secret = secret.encode("utf-8")

    def sign(self, payload: bytes) -> str:
        """Signature a genuine gateway would send for this payload."""
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()

    def authenticate(self, event: PaymentEvent) -> bool:
        if not self._secret or not event.signature:
            return False
        return hmac.compare_digest(self.sign(event.payload), event.signature)


class SharedSecretAuthenticator:
    """Constant-time comparison of a pre-shared key (internal callers)."""

    def __init__(self, secret: str) -> None:
        self._secret = secret

    def authenticate(self, event: PaymentEvent) -> bool:
        if not self._secret or not event.signature:
            return False
        return hmac.compare_digest(self._secret.encode("utf-8"), event.signature.encode("utf-8"))


class SimulatedGateway:
    """
    In-process gateway for development and tests.

    Addresses are derived from the order code; transactions exist only
    once record_transaction() has been called. Only the most recent
    max_transactions are kept.
    """

    def __init__(self, max_transactions: int = 10000) -> None:
        if max_transactions < 1:
            raise ValueError("max_transactions must be positive")
        self.max_transactions = max_transactions
        self._transactions: OrderedDict[str, TransactionInfo] = OrderedDict()

    async def create_address(self, order_code: str) -> str:
        digest = hashlib.sha256(order_code.encode("utf-8")).hexdigest()
        return f"LTC{digest[:30]}"

    async def fetch_transaction(self, transaction_id: str) -> TransactionInfo | None:
        return self._transactions.get(transaction_id)

    def record_transaction(
        self, transaction_id: str, address: str, amount: Decimal, confirmations: int
    ) -> TransactionInfo:
        """Pretend a transaction paying `amount` to `address` was broadcast."""
        info = TransactionInfo(
            transaction_id=transaction_id,
            confirmations=confirmations,
            outputs=(TransactionOutput(address=address, amount=amount),),
        )
        self._transactions[transaction_id] = info
        self._transactions.move_to_end(transaction_id)
        while len(self._transactions) > self.max_transactions:
            self._transactions.popitem(last=False)
        logger.info(
            "simulated_transaction_recorded",
            transaction_id=transaction_id,
            address=address,
            amount=str(amount),
            confirmations=confirmations,
        )
        return info


# Global gateway instance (created on first use)
_gateway: PaymentGateway | None = None


def get_payment_gateway() -> PaymentGateway:
    """Get the configured payment gateway."""
    global _gateway
    if _gateway is None:
        if settings.payment_gateway == "blockcypher":
            from keymarket.services.blockcypher_gateway import BlockCypherGateway

            _gateway = BlockCypherGateway(
                base_url=settings.gateway_base_url,
                api_token=settings.gateway_api_token,
                timeout=settings.gateway_timeout_seconds,
            )
        else:
            _gateway = SimulatedGateway()
        logger.info("payment_gateway_initialized", gateway=settings.payment_gateway)
    return _gateway


def get_webhook_authenticator() -> HmacSignatureAuthenticator:
    """Authenticator for gateway webhook pushes."""
    return HmacSignatureAuthenticator(settings.webhook_secret)


def get_internal_authenticator() -> SharedSecretAuthenticator:
    """Authenticator for the internal process-payment route."""
    return SharedSecretAuthenticator(settings.internal_api_key)
