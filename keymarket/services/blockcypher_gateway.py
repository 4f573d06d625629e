"""
BlockCypher Payment Gateway Implementation.

NO DICTIONARIES - Responses are parsed straight into typed models.
"""

from decimal import Decimal

import httpx
from structlog import get_logger

from keymarket.exceptions import PaymentGatewayError
from keymarket.models.domain import TransactionInfo, TransactionOutput

logger = get_logger(__name__)

# Litoshis per LTC
BASE_UNITS_PER_COIN = Decimal("100000000")


class BlockCypherGateway:
    """
    BlockCypher gateway implementation.

    Implements the PaymentGateway protocol over the BlockCypher REST API.
    """

    def __init__(
        self,
        base_url: str,
        api_token: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize BlockCypher gateway.

        Args:
            base_url: Chain endpoint, e.g. https://api.blockcypher.com/v1/ltc/main
            api_token: BlockCypher API token
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.api_token = api_token
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    def _params(self) -> dict[str, str]:
        return {"token": self.api_token} if self.api_token else {}

    async def create_address(self, order_code: str) -> str:
        """
        Generate a fresh receive address.

        Raises:
            PaymentGatewayError: If BlockCypher rejects the request
        """
        try:
            response = await self._client.post("/addrs", params=self._params())
            response.raise_for_status()
            address = response.json().get("address")
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("gateway_address_creation_failed", order_code=order_code, error=str(exc))
            raise PaymentGatewayError(f"Address creation failed: {exc}") from exc

        if not address:
            raise PaymentGatewayError("Address creation returned no address")

        logger.info("gateway_address_created", order_code=order_code, address=address)
        return str(address)

    async def fetch_transaction(self, transaction_id: str) -> TransactionInfo | None:
        """
        Look up a transaction by hash.

        Returns None for unknown transactions (HTTP 404).

        Raises:
            PaymentGatewayError: On transport errors or other HTTP failures
        """
        try:
            response = await self._client.get(f"/txs/{transaction_id}", params=self._params())
            if response.status_code == 404:
                logger.info("gateway_transaction_not_found", transaction_id=transaction_id)
                return None
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "gateway_transaction_lookup_failed",
                transaction_id=transaction_id,
                error=str(exc),
            )
            raise PaymentGatewayError(f"Transaction lookup failed: {exc}") from exc

        outputs: list[TransactionOutput] = []
        for output in body.get("outputs", []):
            value = Decimal(int(output.get("value", 0))) / BASE_UNITS_PER_COIN
            for address in output.get("addresses") or []:
                outputs.append(TransactionOutput(address=address, amount=value))

        return TransactionInfo(
            transaction_id=body.get("hash", transaction_id),
            confirmations=int(body.get("confirmations", 0)),
            outputs=tuple(outputs),
        )
