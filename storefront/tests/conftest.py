"""
Test fixtures for the storefront checkout core.

Provides:
- In-memory SQLite database for isolated testing
- Async test client with proper session management
- Test data factories for products, stock, carts and checkout sessions
"""
# IMPORTANT: Set environment variables BEFORE any other imports
import os

TEST_INTERNAL_KEY = "test-internal-key"

# DB settings required by Settings validation (tests use SQLite in-memory, these are not actually used)
os.environ.setdefault("DB_USER", "test")
os.environ.setdefault("DB_PASSWORD", "test")
os.environ.setdefault("DB_NAME", "test")
# Development mode for tests (disables ALLOWED_ORIGINS requirement)
os.environ.setdefault("ENVIRONMENT", "development")
os.environ["INTERNAL_API_KEY"] = TEST_INTERNAL_KEY
# Rate limiter keeps its counters in process memory instead of Redis
os.environ["RATE_LIMIT_STORAGE_URI"] = "memory://"
os.environ["CHECKOUT_RATE_LIMIT"] = "1000/minute"
os.environ["RUN_BACKGROUND_SWEEPS"] = "false"

import uuid
from decimal import Decimal
from typing import AsyncGenerator, Optional

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.pool import StaticPool

from storefront.app.core.base import Base
import storefront.app.models.cart  # noqa: F401 - register tables with Base.metadata
import storefront.app.models.checkout  # noqa: F401
import storefront.app.models.inventory  # noqa: F401
from storefront.app.main import app
from storefront.app.api.deps import get_session, get_cache, get_session_factory
from storefront.app.models.cart import Cart
from storefront.app.models.product import Product
from storefront.app.models.inventory import StockReason
from storefront.app.services.cart import CartService
from storefront.app.services.inventory import InventoryService


# Test database URL - SQLite in-memory
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

US_ADDRESS = {
    "name": "Jane Doe",
    "phone": "+14155550100",
    "email": "jane@example.com",
    "line1": "1 Market St",
    "city": "San Francisco",
    "state": "CA",
    "postal_code": "94105",
    "country": "US",
}


class MockCacheService:
    """Mock Redis cache for testing without actual Redis."""

    def __init__(self):
        self._locks = {}

    async def ping(self) -> bool:
        return True

    async def acquire_lock(self, name: str, ttl: int) -> Optional[str]:
        if name in self._locks:
            return None
        token = uuid.uuid4().hex
        self._locks[name] = token
        return token

    async def release_lock(self, token: str) -> bool:
        for name, held in list(self._locks.items()):
            if held == token:
                del self._locks[name]
                return True
        return False


@pytest.fixture(scope="function")
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    Fresh in-memory database per test.
    All sessions from the factory share one connection (StaticPool).
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(scope="function")
async def test_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Database session used by fixtures and service-level tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def mock_cache() -> MockCacheService:
    """Provide mock cache service for testing."""
    return MockCacheService()


@pytest.fixture
async def client(
    session_factory,
    test_session: AsyncSession,
    mock_cache: MockCacheService,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client for testing API endpoints.
    Overrides database, session factory and cache dependencies.

    Note: We create a fresh session for each API call to avoid
    transaction conflicts with the test_session used for fixtures.
    """
    async def override_get_session():
        async with session_factory() as session:
            yield session

    def override_get_session_factory():
        return session_factory

    async def override_get_cache():
        yield mock_cache

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_session_factory] = override_get_session_factory
    app.dependency_overrides[get_cache] = override_get_cache

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def internal_headers() -> dict:
    return {"X-Internal-Key": TEST_INTERNAL_KEY}


# --- Test Data Factories ---

async def create_product(
    session: AsyncSession,
    sku: str,
    price: str = "10.00",
    stock: Optional[int] = None,
    status: str = "published",
    weight: Optional[str] = None,
) -> Product:
    """Insert a catalog product and, when `stock` is given, its opening stock."""
    product = Product(
        sku=sku,
        name=f"Product {sku}",
        price=Decimal(price),
        currency="USD",
        status=status,
        weight=Decimal(weight) if weight is not None else None,
    )
    session.add(product)
    await session.flush()
    if stock is not None:
        await InventoryService(session).apply_delta(product.id, stock, StockReason.INITIAL, note="Opening stock")
    await session.commit()
    return product


async def create_cart(
    session: AsyncSession,
    items: Optional[list] = None,
    user_id: Optional[int] = None,
    currency: str = "USD",
) -> Cart:
    """Create a cart (guest unless `user_id`) with (sku, qty) lines."""
    service = CartService(session)
    cart = await service.create_or_get(user_id=user_id, currency=currency)
    for sku, qty in items or []:
        await service.add_item(cart.id, sku, qty, user_id=user_id, cart_token=cart.cart_token)
    await session.commit()
    return cart


def owner_kwargs(cart: Cart) -> dict:
    """Identity arguments for service calls on `cart`."""
    if cart.user_id is not None:
        return {"user_id": cart.user_id}
    return {"cart_token": cart.cart_token}


def owner_headers(cart: Cart) -> dict:
    if cart.user_id is not None:
        return {"X-User-Id": str(cart.user_id)}
    return {"X-Cart-Token": cart.cart_token}


@pytest.fixture
async def towel(test_session: AsyncSession) -> Product:
    return await create_product(test_session, "TOWEL-001", price="25.99", stock=10, weight="0.5")


@pytest.fixture
async def mug(test_session: AsyncSession) -> Product:
    return await create_product(test_session, "MUG-001", price="12.50", stock=20, weight="0.4")
