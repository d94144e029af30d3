"""
Pytest configuration and fixtures for storefront tests.

Each test gets its own file-backed SQLite database under tmp_path so
concurrent sessions behave like separate connections.
"""
import itertools
from decimal import Decimal
import os
from typing import AsyncGenerator, Dict, Optional

import pytest
import pytest_asyncio

# Set test environment before importing storefront modules
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SECRET_KEY"] = "test-secret-key-for-unit-tests-only"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["CHECKOUT_CLEANUP_ENABLED"] = "false"
os.environ["REDIS_URL"] = ""
os.environ["READ_RETRY_BASE_DELAY"] = "0.001"

from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from storefront.core.database import Base, get_db
from storefront.core.exceptions import UpstreamUnavailableError
from storefront.core.identity import Identity
from storefront.core.locks import KeyedLockManager
from storefront.core.redis_client import WebhookEventLedger
from storefront.core.search_cache import SearchCache
from storefront.core.security import create_access_token
from storefront.models import Product, ProductVariant
from storefront.services.payment_gateway import PaymentIntentResult

VALID_ADDRESS = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "address_line_1": "123 Main St",
    "city": "Springfield",
    "state_province": "IL",
    "postal_code": "62701",
    "country_code": "us",
    "phone": "+1 (217) 555-0100",
}


class FakePaymentGateway:
    """In-memory PaymentGateway; intents stay pending until ``succeed`` is called."""

    def __init__(self):
        self.intents: Dict[str, PaymentIntentResult] = {}
        self.by_idempotency_key: Dict[str, str] = {}
        self.create_calls = 0
        self.cancelled = []
        self.fail_create: Optional[Exception] = None
        self._ids = itertools.count(1)

    async def create_intent(self, amount_cents, currency, metadata, idempotency_key):
        self.create_calls += 1
        if self.fail_create is not None:
            raise self.fail_create
        if idempotency_key in self.by_idempotency_key:
            return self.intents[self.by_idempotency_key[idempotency_key]]
        intent_id = f"pi_test_{next(self._ids)}"
        intent = PaymentIntentResult(
            intent_id=intent_id,
            client_secret=f"{intent_id}_secret",
            amount=amount_cents,
            currency=currency.lower(),
            status="requires_payment_method",
            metadata=dict(metadata),
        )
        self.intents[intent_id] = intent
        self.by_idempotency_key[idempotency_key] = intent_id
        return intent

    async def retrieve_intent(self, intent_id):
        if intent_id not in self.intents:
            raise UpstreamUnavailableError("payment", f"Unknown intent {intent_id}")
        return self.intents[intent_id]

    async def cancel_intent(self, intent_id):
        self.cancelled.append(intent_id)
        intent = self.intents[intent_id]
        intent.status = "canceled"
        return intent

    def succeed(self, intent_id, amount=None):
        intent = self.intents[intent_id]
        intent.status = "succeeded"
        if amount is not None:
            intent.amount = amount
        return intent


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def catalog(session_factory) -> Dict[str, int]:
    """
    Seed catalog.

    tee: base 20.00 (compare 25.00); S stock 10, M stock 3, L 22.00 stock 0
    poster: 74.99, stock 5
    hoodie: 37.50, stock 100
    """
    async with session_factory() as session:
        tee = Product(name="Classic Tee", slug="classic-tee", category="apparel",
                      description="Soft cotton tee", base_price=Decimal("20.00"), compare_at_price=Decimal("25.00"))
        poster = Product(name="Gallery Poster", slug="gallery-poster", category="prints",
                         description="Matte print", base_price=Decimal("74.99"))
        hoodie = Product(name="Zip Hoodie", slug="zip-hoodie", category="apparel",
                         description="Heavy fleece", base_price=Decimal("37.50"))
        tee_s = ProductVariant(product=tee, title="S", sku="TEE-S", inventory_quantity=10, position=0)
        tee_m = ProductVariant(product=tee, title="M", sku="TEE-M", inventory_quantity=3, position=1)
        tee_l = ProductVariant(product=tee, title="L", sku="TEE-L", price=Decimal("22.00"), inventory_quantity=0, position=2)
        poster_v = ProductVariant(product=poster, title="Default", sku="POSTER", inventory_quantity=5)
        hoodie_v = ProductVariant(product=hoodie, title="Default", sku="HOODIE", inventory_quantity=100)
        session.add_all([tee, poster, hoodie])
        await session.commit()

        return {
            "tee": tee.id,
            "tee_s": tee_s.id,
            "tee_m": tee_m.id,
            "tee_l": tee_l.id,
            "poster": poster.id,
            "poster_v": poster_v.id,
            "hoodie": hoodie.id,
            "hoodie_v": hoodie_v.id,
        }


@pytest.fixture
def guest() -> Identity:
    return Identity.for_session("guest-session-0001")


@pytest.fixture
def user() -> Identity:
    return Identity.for_user("42")


@pytest.fixture
def payment_gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def cart_service():
    from storefront.services.cart_service import CartService

    return CartService(locks=KeyedLockManager())


@pytest.fixture
def checkout_service(payment_gateway, cart_service):
    from storefront.services.address_service import AddressService
    from storefront.services.checkout_service import CheckoutService

    return CheckoutService(
        gateway=payment_gateway,
        cart_service=cart_service,
        address_service=AddressService(locks=KeyedLockManager()),
        locks=KeyedLockManager(),
    )


@pytest.fixture
def user_token() -> str:
    return create_access_token({"sub": "42"})


@pytest_asyncio.fixture
async def client(session_factory, payment_gateway) -> AsyncGenerator[AsyncClient, None]:
    from storefront.main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.state.payment_gateway = payment_gateway
    app.state.search_cache = SearchCache(ttl_seconds=60, max_size=50)
    app.state.webhook_ledger = WebhookEventLedger()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
