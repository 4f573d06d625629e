"""
Pytest Configuration and Centralized Fixtures.

Order engine tests run against a real SQLite database (aiosqlite) so
compare-and-swap updates, paired balance increments and concurrent key
assignment are exercised end to end:
- Engine / session factory per test (file-backed, fresh schema)
- Catalog seeding (seller, product, keys)
- Payment events signed like a real gateway push
- API test client with database and collaborator overrides
- Identity Service tokens
"""

import json
import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from uuid import UUID, uuid4

import jwt
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# Set required environment variables BEFORE importing keymarket modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./keymarket-test.db")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("LOG_FORMAT", "json")
os.environ.setdefault("PAYMENT_GATEWAY", "simulated")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-api-key")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("IDENTITY_JWT_SECRET", "test-identity-secret-key-min-32-chars")

from keymarket.config import settings
from keymarket.db.models import Base, LicenseKey, Product, Seller
from keymarket.models.api import ApprovalStatus, ProductStatus, UserRole
from keymarket.models.domain import OrderData, PaymentEvent
from keymarket.services.ledger import OrderLedger
from keymarket.services.notifier import RecordingNotifier
from keymarket.services.payment_gateway import HmacSignatureAuthenticator, SimulatedGateway
from keymarket.services.reconciliation import PaymentReconciliationEngine

# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh file-backed SQLite database per test."""
    db_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'keymarket.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """A single session for service-level tests."""
    async with session_factory() as db_session:
        yield db_session


@pytest.fixture
def load(session_factory: async_sessionmaker[AsyncSession]):
    """Read a row through a fresh session (never the test's identity map)."""

    async def _load(model: type, ident: UUID):
        async with session_factory() as db_session:
            return await db_session.get(model, ident)

    return _load


# ============================================================================
# Catalog Fixtures
# ============================================================================


@dataclass
class SeededProduct:
    """Ids of a seeded seller/product and the codes of its keys."""

    seller_id: UUID
    product_id: UUID
    codes: list[str]


@pytest.fixture
def seed_product(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[SeededProduct]]:
    """Factory seeding a seller, one product and its license keys."""

    async def _seed(
        price: Decimal = Decimal("10"),
        stock: int = 3,
        product_rate: Decimal | None = None,
        seller_rate: Decimal | None = None,
        approval_status: ApprovalStatus = ApprovalStatus.APPROVED,
        status: ProductStatus = ProductStatus.UNDETECTED,
        is_frozen: bool = False,
        is_active: bool = True,
        key_expires_at: datetime | None = None,
    ) -> SeededProduct:
        async with session_factory() as db_session:
            seller = Seller(display_name="Test Seller", commission_rate=seller_rate)
            db_session.add(seller)
            await db_session.flush()

            product = Product(
                seller_id=seller.id,
                name="Test Product",
                price=price,
                duration="30 days",
                instruction_url="https://example.com/activate",
                support_contact="support@example.com",
                status=status,
                approval_status=approval_status,
                is_frozen=is_frozen,
                is_active=is_active,
                commission_rate=product_rate,
            )
            db_session.add(product)
            await db_session.flush()

            codes = [f"KEY-{uuid4().hex[:12].upper()}" for _ in range(stock)]
            db_session.add_all(
                [
                    LicenseKey(
                        product_id=product.id,
                        seller_id=seller.id,
                        code=code,
                        expires_at=key_expires_at,
                    )
                    for code in codes
                ]
            )
            await db_session.commit()
            return SeededProduct(seller_id=seller.id, product_id=product.id, codes=codes)

    return _seed


# ============================================================================
# Collaborator Fixtures
# ============================================================================


@pytest.fixture
def notifier() -> RecordingNotifier:
    """Notifier that records every published event."""
    return RecordingNotifier()


@pytest.fixture
def gateway() -> SimulatedGateway:
    """In-process payment gateway."""
    return SimulatedGateway()


@pytest.fixture
def webhook_authenticator() -> HmacSignatureAuthenticator:
    """Authenticator sharing the configured webhook secret."""
    return HmacSignatureAuthenticator(settings.webhook_secret)


@pytest.fixture
def make_engine(
    gateway: SimulatedGateway,
    webhook_authenticator: HmacSignatureAuthenticator,
    notifier: RecordingNotifier,
) -> Callable[[AsyncSession], PaymentReconciliationEngine]:
    """Reconciliation engine bound to a session."""

    def _make(db_session: AsyncSession) -> PaymentReconciliationEngine:
        return PaymentReconciliationEngine(db_session, gateway, webhook_authenticator, notifier)

    return _make


@pytest.fixture
def signed_event(
    webhook_authenticator: HmacSignatureAuthenticator,
) -> Callable[..., PaymentEvent]:
    """Build a webhook event signed with the configured secret."""

    def _event(
        address: str | None,
        amount: Decimal,
        transaction_id: str = "tx-0001",
        confirmations: int = 6,
        signature: str | None = None,
    ) -> PaymentEvent:
        payload = json.dumps(
            {
                "transactionId": transaction_id,
                "address": address,
                "amount": str(amount),
                "confirmations": confirmations,
            }
        ).encode("utf-8")
        return PaymentEvent(
            transaction_id=transaction_id,
            address=address,
            amount=amount,
            confirmations=confirmations,
            payload=payload,
            signature=signature if signature is not None else webhook_authenticator.sign(payload),
        )

    return _event


@pytest.fixture
def place_order(
    session_factory: async_sessionmaker[AsyncSession],
    make_engine: Callable[[AsyncSession], PaymentReconciliationEngine],
    notifier: RecordingNotifier,
) -> Callable[..., Awaitable[OrderData]]:
    """Create an order and issue its payment address, like POST /orders."""

    async def _place(
        product_id: UUID, email: str = "buyer@example.com", buyer_id: UUID | None = None
    ) -> OrderData:
        async with session_factory() as db_session:
            ledger = OrderLedger(db_session, notifier=notifier)
            order = await ledger.create(product_id, email, buyer_id=buyer_id)
            await make_engine(db_session).request_payment(order.order_code)
            return await ledger.get(order.order_code)

    return _place


# ============================================================================
# Identity Fixtures
# ============================================================================


@pytest.fixture
def make_token() -> Callable[..., str]:
    """Issue an Identity Service token."""

    def _token(role: UserRole = UserRole.BUYER, subject: str | None = None) -> str:
        now = datetime.now(UTC)
        return jwt.encode(
            {
                "sub": subject or str(uuid4()),
                "role": role.value,
                "email": "caller@example.com",
                "iat": now,
                "exp": now + timedelta(hours=1),
            },
            settings.identity_jwt_secret,
            algorithm=settings.identity_jwt_algorithm,
        )

    return _token


# ============================================================================
# API Client Fixtures
# ============================================================================


@pytest.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: SimulatedGateway,
    notifier: RecordingNotifier,
) -> AsyncGenerator[AsyncClient, None]:
    """Async test client with the test database and collaborators injected."""
    from keymarket.api.dependencies import get_event_notifier, get_gateway
    from keymarket.db.session import get_db
    from keymarket.main import app
    from keymarket.services.rate_limiter import intake_limiter

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as db_session:
            yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_event_notifier] = lambda: notifier
    intake_limiter.reset()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    intake_limiter.reset()
