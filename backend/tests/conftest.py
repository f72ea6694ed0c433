"""
Test fixtures for the marketplace backend tests.

Provides:
- In-memory SQLite database for isolated testing
- Async test client with proper session management
- Test data factories for creating test entities
- A scriptable fake M-Pesa gateway
"""
# IMPORTANT: Set environment variables BEFORE any other imports
import os

TEST_JWT_SECRET = "test_jwt_secret"

os.environ.setdefault("JWT_SECRET", TEST_JWT_SECRET)
# DB settings required by Settings validation (tests use SQLite in-memory, these are not actually used)
os.environ.setdefault("DB_USER", "test")
os.environ.setdefault("DB_PASSWORD", "test")
os.environ.setdefault("DB_NAME", "test")
# Development mode for tests (disables production-only requirements)
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
# STK Push is simulated unless a test injects its own gateway
os.environ.setdefault("MPESA_SIMULATE", "true")
os.environ.setdefault("MPESA_SIMULATION_DELAY_SECONDS", "10")

import pytest
from decimal import Decimal
from typing import AsyncGenerator, Dict, Optional
from unittest.mock import patch

from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.pool import StaticPool

from backend.app.core.auth import create_access_token
from backend.app.core.base import Base
from backend.app.main import app
from backend.app.api.deps import get_session, get_cache
from backend.app.models.user import User
from backend.app.models.seller import SellerProfile
from backend.app.models.category import Category
from backend.app.models.product import Product
from backend.app.models.order import Order, OrderItem
from backend.app.models.review import Review  # noqa: F401 - register with Base.metadata
from backend.app.models.notification import Notification  # noqa: F401
from backend.app.services.mpesa import MpesaConfig, MpesaError, STKPushResult, STKQueryResult


# Test database URL - SQLite in-memory
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class MockCacheService:
    """Mock Redis cache for testing without actual Redis."""

    def __init__(self):
        self._cache = {}

    async def get(self, key: str):
        return self._cache.get(key)

    async def set(self, key: str, value, ttl: int = 300):
        self._cache[key] = value

    async def delete(self, key: str):
        self._cache.pop(key, None)

    async def get_categories(self):
        return self._cache.get("categories:all")

    async def set_categories(self, categories, ttl: int = 3600):
        self._cache["categories:all"] = categories

    async def invalidate_categories(self):
        self._cache.pop("categories:all", None)


class FakeMpesaClient:
    """
    Stand-in for MpesaClient in API tests.

    Set ``push_error`` / ``query_error`` to make calls fail, and
    ``query_result`` to control what the STK query reports.
    """

    def __init__(self):
        self.config = MpesaConfig(simulate=False, simulation_delay_seconds=10)
        self.simulated = False
        self.push_calls = []
        self.query_calls = []
        self.push_error: Optional[MpesaError] = None
        self.query_error: Optional[MpesaError] = None
        self.query_result_code: Optional[str] = None
        self.query_result_desc = ""
        self._counter = 0

    async def initiate_stk_push(self, phone_number, amount, order_reference, customer_name):
        self.push_calls.append({
            "phone_number": phone_number,
            "amount": amount,
            "order_reference": order_reference,
            "customer_name": customer_name,
        })
        if self.push_error:
            raise self.push_error
        self._counter += 1
        return STKPushResult(
            merchant_request_id=f"mr-{self._counter}",
            checkout_request_id=f"ws_CO_{self._counter}",
            response_code="0",
            response_description="Success. Request accepted for processing",
            customer_message="Success. Request accepted for processing",
        )

    async def query_stk_push(self, checkout_request_id):
        self.query_calls.append(checkout_request_id)
        if self.query_error:
            raise self.query_error
        return STKQueryResult(
            checkout_request_id=checkout_request_id,
            result_code=self.query_result_code,
            result_desc=self.query_result_desc,
        )


@pytest.fixture
async def test_engine():
    """Fresh in-memory database with all tables for each test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def test_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Session used by fixtures and direct service tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def mock_cache() -> MockCacheService:
    """Provide mock cache service for testing."""
    return MockCacheService()


@pytest.fixture
def fake_mpesa() -> FakeMpesaClient:
    """Patch the payment service to use a scriptable gateway."""
    fake = FakeMpesaClient()
    with patch("backend.app.services.payment.get_mpesa_client", return_value=fake):
        yield fake


@pytest.fixture
async def client(
    session_factory: async_sessionmaker,
    mock_cache: MockCacheService,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client for testing API endpoints.
    Overrides database and cache dependencies.

    Note: We create a fresh session for each API call to avoid
    transaction conflicts with the test_session used for fixtures.
    """
    async def override_get_session():
        async with session_factory() as session:
            yield session

    async def override_get_cache():
        yield mock_cache

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_cache] = override_get_cache

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


def auth_headers(user: User) -> Dict[str, str]:
    """Bearer header for a user."""
    return {"Authorization": f"Bearer {create_access_token(user.id, user.role)}"}


# --- Test Data Factories ---

@pytest.fixture
async def test_user(test_session: AsyncSession) -> User:
    """Create a test buyer user."""
    user = User(
        email="buyer@example.com",
        name="Test Buyer",
        phone="0712345678",
        address="Kilimani, Nairobi",
        role="BUYER",
    )
    test_session.add(user)
    await test_session.commit()
    await test_session.refresh(user)
    return user


@pytest.fixture
async def test_admin(test_session: AsyncSession) -> User:
    """Create an admin user."""
    user = User(email="admin@example.com", name="Test Admin", role="ADMIN")
    test_session.add(user)
    await test_session.commit()
    await test_session.refresh(user)
    return user


@pytest.fixture
async def test_seller_user(test_session: AsyncSession) -> User:
    """Create a test seller user."""
    user = User(
        email="seller@example.com",
        name="Test Seller",
        phone="0722000000",
        role="SELLER",
    )
    test_session.add(user)
    await test_session.commit()
    await test_session.refresh(user)
    return user


@pytest.fixture
async def test_seller(test_session: AsyncSession, test_seller_user: User) -> SellerProfile:
    """Create an approved seller profile."""
    seller = SellerProfile(
        user_id=test_seller_user.id,
        business_name="Test Bakery",
        description="A test bakery",
        status="APPROVED",
        frozen=False,
    )
    test_session.add(seller)
    await test_session.commit()
    await test_session.refresh(seller)
    return seller


@pytest.fixture
async def test_category(test_session: AsyncSession) -> Category:
    """Create a test category."""
    category = Category(name="Birthday Cakes", description="Cakes for birthdays")
    test_session.add(category)
    await test_session.commit()
    await test_session.refresh(category)
    return category


@pytest.fixture
async def test_product(
    test_session: AsyncSession,
    test_seller: SellerProfile,
    test_category: Category,
) -> Product:
    """Create an active product priced at KSh 1,500 with 10 in stock."""
    product = Product(
        seller_id=test_seller.id,
        category_id=test_category.id,
        name="Chocolate Cake",
        description="Rich chocolate sponge",
        price=Decimal("1500.00"),
        stock=10,
        images=["https://img.example.com/cake.jpg"],
        is_active=True,
    )
    test_session.add(product)
    await test_session.commit()
    await test_session.refresh(product)
    return product


async def make_order(
    session: AsyncSession,
    user: User,
    product: Product,
    quantity: int = 2,
    status: str = "PENDING",
    payment_status: str = "PENDING",
    payment_method: str = "MPESA",
    merchant_request_id: Optional[str] = None,
    checkout_request_id: Optional[str] = None,
) -> Order:
    """Insert an order with a single line for the product."""
    subtotal = Decimal(product.price) * quantity
    order = Order(
        user_id=user.id,
        subtotal=subtotal,
        delivery_fee=Decimal("500"),
        total=subtotal + Decimal("500"),
        status=status,
        payment_method=payment_method,
        payment_status=payment_status,
        customer_name=user.name,
        customer_email=user.email,
        mpesa_merchant_request_id=merchant_request_id,
        mpesa_checkout_request_id=checkout_request_id,
    )
    session.add(order)
    await session.flush()
    session.add(OrderItem(order_id=order.id, product_id=product.id, quantity=quantity, price=product.price))
    await session.commit()
    await session.refresh(order)
    return order


@pytest.fixture
async def test_pending_order(test_session: AsyncSession, test_user: User, test_product: Product) -> Order:
    """M-Pesa order awaiting payment (2 x KSh 1,500 + KSh 500 delivery)."""
    return await make_order(
        test_session,
        test_user,
        test_product,
        merchant_request_id="mr-100",
        checkout_request_id="ws_CO_100",
    )
