"""
Tests for API Routes.

Exercises the HTTP surface end to end through the ASGI app: purchase
intake, payment polling, both reconciliation entry points, order views,
refund requests, admin routes and rate limiting.
"""

import json
from decimal import Decimal
from unittest.mock import patch
from uuid import uuid4

import pytest

from keymarket.api.dependencies import get_intake_limiter
from keymarket.config import settings
from keymarket.main import forwarded_client
from keymarket.models.api import UserRole
from keymarket.services.payment_gateway import HmacSignatureAuthenticator
from keymarket.services.rate_limiter import RateLimiter

INTERNAL_HEADERS = {"X-API-Key": "test-internal-api-key"}


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def create_order(client):
    """POST /orders and return the JSON body."""

    async def _create(product_id, email="buyer@example.com", token=None):
        response = await client.post(
            "/orders",
            json={"productId": str(product_id), "email": email},
            headers=_auth(token) if token else {},
        )
        assert response.status_code == 200, response.text
        return response.json()

    return _create


def _webhook_body(address: str, amount: str, transaction_id: str = "tx-web-1") -> bytes:
    return json.dumps(
        {
            "transactionId": transaction_id,
            "address": address,
            "amount": amount,
            "confirmations": 6,
            "status": "confirmed",
        }
    ).encode("utf-8")


def _sign(body: bytes) -> str:
    return HmacSignatureAuthenticator(settings.webhook_secret).sign(body)


# ============================================================================
# Purchase intake
# ============================================================================


class TestCreateOrder:
    """Tests for POST /orders."""

    async def test_guest_order(self, client, seed_product, notifier):
        """Guests get an order code, a payment address and the price."""
        seeded = await seed_product(price=Decimal("10"))

        response = await client.post(
            "/orders", json={"productId": str(seeded.product_id), "email": "guest@example.com"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["orderId"].startswith("ORD-")
        assert body["paymentAddress"].startswith("LTC")
        assert body["amount"] == 10.0
        assert body["currency"] == settings.payment_currency
        assert body["expiresAt"]
        assert [e.event_type.value for e in notifier.events] == ["order.created"]

    async def test_out_of_stock(self, client, seed_product):
        seeded = await seed_product(stock=0)

        response = await client.post(
            "/orders", json={"productId": str(seeded.product_id), "email": "a@example.com"}
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "OUT_OF_STOCK"

    async def test_unknown_product(self, client):
        response = await client.post(
            "/orders", json={"productId": str(uuid4()), "email": "a@example.com"}
        )

        assert response.status_code == 404

    async def test_frozen_product(self, client, seed_product):
        seeded = await seed_product(is_frozen=True)

        response = await client.post(
            "/orders", json={"productId": str(seeded.product_id), "email": "a@example.com"}
        )

        assert response.status_code == 404

    async def test_invalid_email(self, client, seed_product):
        seeded = await seed_product()

        response = await client.post(
            "/orders", json={"productId": str(seeded.product_id), "email": "not-an-email"}
        )

        assert response.status_code == 400

    async def test_missing_fields(self, client):
        """Schema violations are 422 with sanitized errors."""
        response = await client.post("/orders", json={"email": "a@example.com"})

        assert response.status_code == 422
        assert response.json()["detail"][0]["loc"][-1] == "productId"

    async def test_invalid_token_rejected(self, client, seed_product):
        """A bearer header that fails verification is 401, not guest."""
        seeded = await seed_product()

        response = await client.post(
            "/orders",
            json={"productId": str(seeded.product_id), "email": "a@example.com"},
            headers=_auth("not-a-jwt"),
        )

        assert response.status_code == 401


class TestPaymentPolling:
    """Tests for payment-status and payment details."""

    async def test_payment_status_pending(self, client, seed_product, create_order):
        seeded = await seed_product()
        order = await create_order(seeded.product_id)

        response = await client.get(f"/orders/{order['orderId']}/payment-status")

        assert response.status_code == 200
        assert response.json()["paymentStatus"] == "pending"
        assert response.json()["status"] == "pending"

    async def test_payment_status_unknown_order(self, client):
        response = await client.get("/orders/ORD-NOPE0000/payment-status")

        assert response.status_code == 404

    async def test_payment_details_uri(self, client, seed_product, create_order):
        """The payment URI carries the address and a plain decimal amount."""
        seeded = await seed_product(price=Decimal("10"))
        order = await create_order(seeded.product_id)

        response = await client.get(f"/payments/order/{order['orderId']}")

        assert response.status_code == 200
        body = response.json()
        assert body["address"] == order["paymentAddress"]
        assert body["paymentUri"] == f"litecoin:{order['paymentAddress']}?amount=10"
        assert body["status"] == "pending"


# ============================================================================
# Reconciliation entry points
# ============================================================================


class TestWebhook:
    """Tests for POST /payments/webhook."""

    async def test_valid_payment_completes(self, client, seed_product, create_order, notifier):
        seeded = await seed_product()
        order = await create_order(seeded.product_id)
        body = _webhook_body(order["paymentAddress"], "10")

        response = await client.post(
            "/payments/webhook",
            content=body,
            headers={"Content-Type": "application/json", "X-Webhook-Signature": _sign(body)},
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "completed"
        assert response.json()["orderId"] == order["orderId"]
        assert "sale.new" in [e.event_type.value for e in notifier.events]

    async def test_redelivery_is_acknowledged(self, client, seed_product, create_order):
        """A second delivery of the same transaction is a 200 duplicate."""
        seeded = await seed_product()
        order = await create_order(seeded.product_id)
        body = _webhook_body(order["paymentAddress"], "10")
        headers = {"Content-Type": "application/json", "X-Webhook-Signature": _sign(body)}

        await client.post("/payments/webhook", content=body, headers=headers)
        response = await client.post("/payments/webhook", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["outcome"] == "duplicate"

    async def test_bad_signature(self, client, seed_product, create_order):
        seeded = await seed_product()
        order = await create_order(seeded.product_id)
        body = _webhook_body(order["paymentAddress"], "10")

        response = await client.post(
            "/payments/webhook",
            content=body,
            headers={"Content-Type": "application/json", "X-Webhook-Signature": "0" * 64},
        )

        assert response.status_code == 401

    async def test_missing_signature(self, client):
        body = _webhook_body("LTC-anything", "10")

        response = await client.post(
            "/payments/webhook", content=body, headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 401

    async def test_malformed_body(self, client):
        body = b'{"transactionId": "tx"}'

        response = await client.post(
            "/payments/webhook",
            content=body,
            headers={"Content-Type": "application/json", "X-Webhook-Signature": _sign(body)},
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "Malformed webhook payload"

    async def test_underpayment(self, client, seed_product, create_order):
        seeded = await seed_product()
        order = await create_order(seeded.product_id)
        body = _webhook_body(order["paymentAddress"], "9.99")

        response = await client.post(
            "/payments/webhook",
            content=body,
            headers={"Content-Type": "application/json", "X-Webhook-Signature": _sign(body)},
        )

        assert response.status_code == 400

    async def test_unknown_address(self, client):
        body = _webhook_body("LTC-nobody", "10")

        response = await client.post(
            "/payments/webhook",
            content=body,
            headers={"Content-Type": "application/json", "X-Webhook-Signature": _sign(body)},
        )

        assert response.status_code == 404


class TestProcessPayment:
    """Tests for POST /orders/process-payment."""

    async def test_requires_api_key(self, client):
        response = await client.post(
            "/orders/process-payment",
            json={"orderId": "ORD-1", "transactionId": "tx", "confirmations": 6},
        )

        assert response.status_code == 401

    async def test_wrong_api_key(self, client):
        response = await client.post(
            "/orders/process-payment",
            json={"orderId": "ORD-1", "transactionId": "tx", "confirmations": 6},
            headers={"X-API-Key": "wrong"},
        )

        assert response.status_code == 401

    async def test_completes_from_gateway_amount(
        self, client, seed_product, create_order, gateway
    ):
        """The amount is taken from the gateway transaction."""
        seeded = await seed_product()
        order = await create_order(seeded.product_id)
        gateway.record_transaction("tx-int-1", order["paymentAddress"], Decimal("10"), 6)

        response = await client.post(
            "/orders/process-payment",
            json={"orderId": order["orderId"], "transactionId": "tx-int-1", "confirmations": 6},
            headers=INTERNAL_HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "completed"

    async def test_insufficient_confirmations(self, client, seed_product, create_order, gateway):
        """Too few confirmations is acknowledged and the order stays pending."""
        seeded = await seed_product()
        order = await create_order(seeded.product_id)
        gateway.record_transaction("tx-int-2", order["paymentAddress"], Decimal("10"), 1)

        response = await client.post(
            "/orders/process-payment",
            json={"orderId": order["orderId"], "transactionId": "tx-int-2", "confirmations": 1},
            headers=INTERNAL_HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "pending_confirmations"
        status_response = await client.get(f"/orders/{order['orderId']}/payment-status")
        assert status_response.json()["status"] == "pending"

    async def test_gateway_confirmations_cap_caller_claim(
        self, client, seed_product, create_order, gateway
    ):
        """A caller claiming more confirmations than the gateway reports is not trusted."""
        seeded = await seed_product()
        order = await create_order(seeded.product_id)
        gateway.record_transaction("tx-int-3", order["paymentAddress"], Decimal("10"), 0)

        response = await client.post(
            "/orders/process-payment",
            json={"orderId": order["orderId"], "transactionId": "tx-int-3", "confirmations": 6},
            headers=INTERNAL_HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "pending_confirmations"
        status_response = await client.get(f"/orders/{order['orderId']}/payment-status")
        assert status_response.json()["status"] == "pending"
        assert status_response.json()["paymentStatus"] == "pending"

    async def test_unknown_transaction(self, client, seed_product, create_order):
        seeded = await seed_product()
        order = await create_order(seeded.product_id)

        response = await client.post(
            "/orders/process-payment",
            json={"orderId": order["orderId"], "transactionId": "tx-none", "confirmations": 6},
            headers=INTERNAL_HEADERS,
        )

        assert response.status_code == 400

    async def test_unknown_order(self, client):
        response = await client.post(
            "/orders/process-payment",
            json={"orderId": "ORD-NOPE0000", "transactionId": "tx", "confirmations": 6},
            headers=INTERNAL_HEADERS,
        )

        assert response.status_code == 404


class TestSimulatePayment:
    """Tests for POST /payments/simulate."""

    async def test_requires_token(self, client):
        response = await client.post("/payments/simulate", json={"orderId": "ORD-1"})

        assert response.status_code == 401

    async def test_simulated_payment_completes(
        self, client, seed_product, create_order, make_token
    ):
        seeded = await seed_product()
        order = await create_order(seeded.product_id)

        response = await client.post(
            "/payments/simulate",
            json={"orderId": order["orderId"]},
            headers=_auth(make_token()),
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "completed"


# ============================================================================
# Order views and refunds
# ============================================================================


async def _paid_order(client, seeded, create_order, make_token, buyer_token):
    order = await create_order(seeded.product_id, token=buyer_token)
    response = await client.post(
        "/payments/simulate",
        json={"orderId": order["orderId"]},
        headers=_auth(make_token()),
    )
    assert response.json()["outcome"] == "completed"
    return order


class TestGetOrder:
    """Tests for GET /orders/{id}."""

    async def test_buyer_sees_license_key(self, client, seed_product, create_order, make_token):
        seeded = await seed_product()
        buyer_token = make_token(subject=str(uuid4()))
        order = await _paid_order(client, seeded, create_order, make_token, buyer_token)

        response = await client.get(f"/orders/{order['orderId']}", headers=_auth(buyer_token))

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert body["paymentStatus"] == "paid"
        assert body["licenseKey"] in seeded.codes
        assert body["total"] == 10.0
        assert body["commission"] + body["sellerEarnings"] == pytest.approx(10.0)
        assert body["product"]["name"] == "Test Product"

    async def test_seller_does_not_see_key(self, client, seed_product, create_order, make_token):
        seeded = await seed_product()
        buyer_token = make_token(subject=str(uuid4()))
        order = await _paid_order(client, seeded, create_order, make_token, buyer_token)
        seller_token = make_token(role=UserRole.SELLER, subject=str(seeded.seller_id))

        response = await client.get(f"/orders/{order['orderId']}", headers=_auth(seller_token))

        assert response.status_code == 200
        assert response.json()["licenseKey"] is None

    async def test_stranger_gets_not_found(self, client, seed_product, create_order, make_token):
        seeded = await seed_product()
        order = await create_order(seeded.product_id, token=make_token(subject=str(uuid4())))

        response = await client.get(
            f"/orders/{order['orderId']}", headers=_auth(make_token(subject=str(uuid4())))
        )

        assert response.status_code == 404

    async def test_admin_can_view(self, client, seed_product, create_order, make_token):
        seeded = await seed_product()
        order = await create_order(seeded.product_id)

        response = await client.get(
            f"/orders/{order['orderId']}", headers=_auth(make_token(role=UserRole.ADMIN))
        )

        assert response.status_code == 200

    async def test_requires_token(self, client, seed_product, create_order):
        seeded = await seed_product()
        order = await create_order(seeded.product_id)

        response = await client.get(f"/orders/{order['orderId']}")

        assert response.status_code == 401


class TestOrderHistory:
    """Tests for GET /orders/my-purchases and GET /orders/my-sales."""

    async def test_purchases_newest_first_with_keys(
        self, client, seed_product, create_order, make_token
    ):
        seeded = await seed_product(stock=3)
        buyer_token = make_token(subject=str(uuid4()))
        first = await _paid_order(client, seeded, create_order, make_token, buyer_token)
        second = await create_order(seeded.product_id, token=buyer_token)
        # Someone else's order never shows up
        await create_order(seeded.product_id, token=make_token(subject=str(uuid4())))

        response = await client.get("/orders/my-purchases", headers=_auth(buyer_token))

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 2
        assert body["page"] == 1
        assert body["limit"] == 20
        assert body["pages"] == 1
        assert [o["orderId"] for o in body["orders"]] == [second["orderId"], first["orderId"]]
        assert body["orders"][1]["licenseKey"] in seeded.codes

    async def test_purchases_status_filter(self, client, seed_product, create_order, make_token):
        seeded = await seed_product(stock=3)
        buyer_token = make_token(subject=str(uuid4()))
        paid = await _paid_order(client, seeded, create_order, make_token, buyer_token)
        await create_order(seeded.product_id, token=buyer_token)

        response = await client.get(
            "/orders/my-purchases", params={"status": "completed"}, headers=_auth(buyer_token)
        )

        body = response.json()
        assert body["total"] == 1
        assert [o["orderId"] for o in body["orders"]] == [paid["orderId"]]

    async def test_purchases_pagination(self, client, seed_product, create_order, make_token):
        seeded = await seed_product(stock=3)
        buyer_token = make_token(subject=str(uuid4()))
        created = [await create_order(seeded.product_id, token=buyer_token) for _ in range(3)]

        response = await client.get(
            "/orders/my-purchases", params={"page": 2, "limit": 2}, headers=_auth(buyer_token)
        )

        body = response.json()
        assert body["total"] == 3
        assert body["pages"] == 2
        assert [o["orderId"] for o in body["orders"]] == [created[0]["orderId"]]

    async def test_purchases_rejects_bad_page(self, client, make_token):
        response = await client.get(
            "/orders/my-purchases", params={"page": 0}, headers=_auth(make_token())
        )

        assert response.status_code == 422

    async def test_purchases_requires_token(self, client):
        response = await client.get("/orders/my-purchases")

        assert response.status_code == 401

    async def test_sales_hide_license_keys(self, client, seed_product, create_order, make_token):
        seeded = await seed_product(stock=3)
        await _paid_order(client, seeded, create_order, make_token, make_token(subject=str(uuid4())))
        await create_order(seeded.product_id)
        seller_token = make_token(role=UserRole.SELLER, subject=str(seeded.seller_id))

        response = await client.get("/orders/my-sales", headers=_auth(seller_token))

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 2
        assert all(o["licenseKey"] is None for o in body["orders"])

    async def test_sales_filters(self, client, seed_product, create_order, make_token):
        seeded = await seed_product(stock=3)
        other = await seed_product(stock=1)
        await _paid_order(client, seeded, create_order, make_token, make_token(subject=str(uuid4())))
        await create_order(seeded.product_id)
        await create_order(other.product_id)
        seller_token = make_token(role=UserRole.SELLER, subject=str(seeded.seller_id))

        pending = await client.get(
            "/orders/my-sales", params={"status": "pending"}, headers=_auth(seller_token)
        )
        by_product = await client.get(
            "/orders/my-sales",
            params={"productId": str(other.product_id)},
            headers=_auth(seller_token),
        )

        assert pending.json()["total"] == 1
        assert by_product.json()["total"] == 0

    async def test_sales_require_seller_role(self, client, make_token):
        response = await client.get("/orders/my-sales", headers=_auth(make_token()))

        assert response.status_code == 403


class TestRefundFlow:
    """Buyer refund request followed by admin resolution."""

    async def test_request_then_admin_refund(
        self, client, seed_product, create_order, make_token, notifier
    ):
        seeded = await seed_product(stock=1)
        buyer_token = make_token(subject=str(uuid4()))
        admin_headers = _auth(make_token(role=UserRole.ADMIN))
        order = await _paid_order(client, seeded, create_order, make_token, buyer_token)

        response = await client.post(
            f"/orders/{order['orderId']}/refund",
            json={"reason": "Key does not activate"},
            headers=_auth(buyer_token),
        )
        assert response.status_code == 200
        assert response.json()["status"] == "disputed"

        disputes = await client.get("/admin/disputes", headers=admin_headers)
        assert disputes.json()["total"] == 1
        assert disputes.json()["orders"][0]["dispute"]["reason"] == "Key does not activate"

        resolved = await client.put(
            f"/admin/disputes/{order['orderId']}/resolve",
            json={"verdict": "refund"},
            headers=admin_headers,
        )
        assert resolved.status_code == 200
        assert resolved.json()["status"] == "refunded"
        assert resolved.json()["dispute"]["resolution"] == "refund"

        stock = await client.get(
            f"/admin/products/{seeded.product_id}/stock", headers=admin_headers
        )
        assert stock.json()["available"] == 1
        assert "order.refunded" in [e.event_type.value for e in notifier.events]

    async def test_only_buyer_can_request(self, client, seed_product, create_order, make_token):
        seeded = await seed_product()
        order = await _paid_order(
            client, seeded, create_order, make_token, make_token(subject=str(uuid4()))
        )

        response = await client.post(
            f"/orders/{order['orderId']}/refund",
            json={"reason": "mine now"},
            headers=_auth(make_token(subject=str(uuid4()))),
        )

        assert response.status_code == 403

    async def test_pending_order_not_refundable(
        self, client, seed_product, create_order, make_token
    ):
        seeded = await seed_product()
        buyer_token = make_token(subject=str(uuid4()))
        order = await create_order(seeded.product_id, token=buyer_token)

        response = await client.post(
            f"/orders/{order['orderId']}/refund",
            json={"reason": "changed my mind"},
            headers=_auth(buyer_token),
        )

        assert response.status_code == 400

    async def test_resolve_non_disputed_conflicts(
        self, client, seed_product, create_order, make_token
    ):
        seeded = await seed_product()
        order = await create_order(seeded.product_id)

        response = await client.put(
            f"/admin/disputes/{order['orderId']}/resolve",
            json={"verdict": "uphold"},
            headers=_auth(make_token(role=UserRole.ADMIN)),
        )

        assert response.status_code == 409


# ============================================================================
# Admin
# ============================================================================


class TestAdminRoutes:
    """Tests for /admin routes."""

    async def test_non_admin_forbidden(self, client, make_token):
        response = await client.get("/admin/disputes", headers=_auth(make_token()))

        assert response.status_code == 403

    async def test_anonymous_unauthorized(self, client):
        response = await client.post("/admin/sweep")

        assert response.status_code == 401

    async def test_direct_refund(self, client, seed_product, create_order, make_token):
        seeded = await seed_product()
        order = await _paid_order(
            client, seeded, create_order, make_token, make_token(subject=str(uuid4()))
        )

        response = await client.post(
            f"/admin/orders/{order['orderId']}/refund",
            json={"reason": "goodwill"},
            headers=_auth(make_token(role=UserRole.ADMIN)),
        )

        assert response.status_code == 200
        assert response.json()["status"] == "refunded"
        assert response.json()["paymentStatus"] == "refunded"

    async def test_bulk_add_keys_and_stock(self, client, seed_product, make_token):
        seeded = await seed_product(stock=1)
        admin_headers = _auth(make_token(role=UserRole.ADMIN))

        response = await client.post(
            f"/admin/products/{seeded.product_id}/keys",
            json={"codes": ["NEW-AAAA", "NEW-BBBB", "NEW-AAAA", "bad code!"]},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json() == {"added": 2, "duplicates": 1, "invalid": 1}
        stock = await client.get(
            f"/admin/products/{seeded.product_id}/stock", headers=admin_headers
        )
        assert stock.json()["available"] == 3

    async def test_bulk_add_unknown_product(self, client, make_token):
        response = await client.post(
            f"/admin/products/{uuid4()}/keys",
            json={"codes": ["NEW-AAAA"]},
            headers=_auth(make_token(role=UserRole.ADMIN)),
        )

        assert response.status_code == 404

    async def test_sweep(self, client, make_token):
        response = await client.post(
            "/admin/sweep", headers=_auth(make_token(role=UserRole.ADMIN))
        )

        assert response.status_code == 200
        assert response.json() == {"expiredOrders": 0, "deactivatedKeys": 0, "settledOrders": 0}


# ============================================================================
# Rate limiting and service endpoints
# ============================================================================


class TestRateLimit:
    """Purchase intake is rate limited per caller."""

    async def test_returns_429_with_retry_after(self, client, seed_product):
        from keymarket.main import app

        limiter = RateLimiter(limit=2, window_seconds=60, max_keys=100)
        app.dependency_overrides[get_intake_limiter] = lambda: limiter
        seeded = await seed_product(stock=5)
        payload = {"productId": str(seeded.product_id), "email": "a@example.com"}

        first = await client.post("/orders", json=payload)
        second = await client.post("/orders", json=payload)
        third = await client.post("/orders", json=payload)

        assert first.status_code == 200
        assert second.status_code == 200
        assert third.status_code == 429
        assert int(third.headers["Retry-After"]) >= 1

    async def test_untrusted_peer_cannot_spoof_forwarded_for(self, client, seed_product):
        """Rotating X-Forwarded-For from an untrusted peer still hits one bucket."""
        from keymarket.main import app

        limiter = RateLimiter(limit=2, window_seconds=60, max_keys=100)
        app.dependency_overrides[get_intake_limiter] = lambda: limiter
        seeded = await seed_product(stock=5)
        payload = {"productId": str(seeded.product_id), "email": "a@example.com"}

        with patch.object(settings, "trusted_proxies", "10.0.0.1"):
            responses = [
                await client.post(
                    "/orders", json=payload, headers={"X-Forwarded-For": f"198.51.100.{i}"}
                )
                for i in range(3)
            ]

        assert [r.status_code for r in responses] == [200, 200, 429]

    async def test_trusted_proxy_forwards_client_address(self, client, seed_product):
        """Behind a trusted proxy each forwarded client gets its own bucket."""
        from keymarket.main import app

        limiter = RateLimiter(limit=1, window_seconds=60, max_keys=100)
        app.dependency_overrides[get_intake_limiter] = lambda: limiter
        seeded = await seed_product(stock=5)
        payload = {"productId": str(seeded.product_id), "email": "a@example.com"}

        with patch.object(settings, "trusted_proxies", "127.0.0.1"):
            first = await client.post(
                "/orders", json=payload, headers={"X-Forwarded-For": "198.51.100.1"}
            )
            second = await client.post(
                "/orders", json=payload, headers={"X-Forwarded-For": "198.51.100.2"}
            )
            # Client-supplied hops left of the proxy's own entry are ignored
            spoofed = await client.post(
                "/orders",
                json=payload,
                headers={"X-Forwarded-For": "203.0.113.7, 198.51.100.1"},
            )

        assert first.status_code == 200
        assert second.status_code == 200
        assert spoofed.status_code == 429


class TestForwardedClient:
    """Tests for X-Forwarded-For chain parsing."""

    def test_single_hop(self):
        assert forwarded_client("198.51.100.1", {"127.0.0.1"}) == "198.51.100.1"

    def test_takes_nearest_untrusted_hop(self):
        chain = "6.6.6.6, 198.51.100.1, 10.0.0.2"
        assert forwarded_client(chain, {"127.0.0.1", "10.0.0.2"}) == "198.51.100.1"

    def test_all_trusted_falls_back_to_first(self):
        assert forwarded_client("10.0.0.2, 10.0.0.3", {"10.0.0.2", "10.0.0.3"}) == "10.0.0.2"

    def test_empty_chain(self):
        assert forwarded_client(" , ", {"127.0.0.1"}) is None


class TestServiceEndpoints:
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["database"] == "connected"

    async def test_root(self, client):
        response = await client.get("/")

        assert response.json()["status"] == "running"

    async def test_metrics(self, client):
        await client.get("/health")

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "keymarket_http_requests_total" in response.text
