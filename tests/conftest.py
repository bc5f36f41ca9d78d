"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- FakeRedis in place of the real client
- Test data factories (users, products, orders, reward rules)
- Actors and bearer headers for API tests
"""
# JWT_SECRET_KEY must exist before marketplace.core.config is imported
import os
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-for-testing-only-do-not-use-in-production")

import pytest
from decimal import Decimal
from typing import AsyncGenerator
from unittest.mock import patch

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from marketplace.core.auth import Actor, create_access_token
from marketplace.core.config import settings
from marketplace.db.database import Base, get_db
from marketplace.db.models.order import OrderStatus
from marketplace.db.models.product import Product
from marketplace.db.models.reward import RewardRule
from marketplace.db.models.user import User, UserRole
from marketplace.domain.services.delivery_service import DeliveryService
from marketplace.domain.services.notification_service import change_notifier
from marketplace.domain.services.order_service import DeliveryInfo, OrderLine, OrderService
from marketplace.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Redis
# ============================================================================

class FakeRedis:
    """In-memory stand-in for Redis with TTL tracking and a publish log."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}
        self.published: list[tuple[str, str]] = []

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def incr(self, key: str) -> int:
        current = self._store.get(key)
        new_val = int(current) + 1 if current is not None else 1
        self._store[key] = str(new_val)
        return new_val

    async def expire(self, key: str, ttl: int) -> None:
        if key in self._store:
            self._ttls[key] = ttl

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)
            self._ttls.pop(key, None)

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 0

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """Replace get_redis with a FakeRedis for every test."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("marketplace.core.redis_client.get_redis", _get_fake_redis):
        yield _fake


@pytest.fixture(autouse=True)
def reset_change_subscribers():
    """Subscribers registered by a test never leak into the next one"""
    yield
    change_notifier._subscribers.clear()


# ============================================================================
# Test Data Factories
# ============================================================================
#
# Factories hand back detached rows: a failed service call rolls back and
# expires everything still attached to the session.

_phone_counter = 0


def _next_phone() -> str:
    global _phone_counter
    _phone_counter += 1
    return f"+96279{_phone_counter:07d}"


def actor_of(user: User) -> Actor:
    return Actor(user_id=user.id, role=user.role)


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.role)}"}


@pytest.fixture
def user_factory(db_session: AsyncSession):
    """Factory for creating test users"""
    async def _create_user(
        role: UserRole = UserRole.BUYER,
        name: str = "Test User",
        phone_number: str | None = None,
        is_active: bool = True,
    ) -> User:
        user = User(
            name=name,
            phone_number=phone_number or _next_phone(),
            role=role,
            is_active=is_active,
        )
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        db_session.expunge(user)
        return user

    return _create_user


@pytest.fixture
def product_factory(db_session: AsyncSession):
    """Factory for creating catalog products"""
    async def _create_product(
        seller_id: int,
        name: str = "Olive oil 1L",
        price: Decimal | str = Decimal("12.50"),
        stock: int = 100,
        is_active: bool = True,
    ) -> Product:
        product = Product(
            seller_id=seller_id,
            name=name,
            price=Decimal(price),
            stock=stock,
            is_active=is_active,
        )
        db_session.add(product)
        await db_session.commit()
        await db_session.refresh(product)
        db_session.expunge(product)
        return product

    return _create_product


@pytest.fixture
def reward_rule_factory(db_session: AsyncSession):
    async def _create_rule(key: str, amount: Decimal | str = Decimal("5.00"), is_active: bool = True) -> RewardRule:
        rule = RewardRule(key=key, amount=Decimal(amount), is_active=is_active)
        db_session.add(rule)
        await db_session.commit()
        await db_session.refresh(rule)
        db_session.expunge(rule)
        return rule

    return _create_rule


DEFAULT_DELIVERY_INFO = DeliveryInfo(
    address="12 Rainbow Street, Amman",
    phone="+962791234567",
    notes="Ring twice",
)


@pytest.fixture
def order_factory(db_session: AsyncSession, product_factory):
    """Place an order through OrderService and optionally walk it forward.

    ``status`` may be any seller-driven status; ready_for_pickup also opens
    the delivery.
    """
    async def _create_order(
        buyer: User,
        seller: User,
        lines: list[tuple[Decimal | str, int]] | None = None,
        status: OrderStatus = OrderStatus.PLACED,
    ):
        items = []
        for price, quantity in lines or [(Decimal("12.50"), 3)]:
            product = await product_factory(seller_id=seller.id, price=price)
            items.append(OrderLine(product_id=product.id, quantity=quantity))

        service = OrderService(db_session)
        result = await service.create_order(actor_of(buyer), items, DEFAULT_DELIVERY_INFO)
        assert result.success, result.error_message
        order = result.value

        path = [OrderStatus.ACCEPTED, OrderStatus.PREPARING, OrderStatus.READY_FOR_PICKUP]
        if status in path:
            for step in path[:path.index(status) + 1]:
                advanced = await service.advance_status(actor_of(seller), order.id, step)
                assert advanced.success, advanced.error_message
                order = advanced.value
        db_session.expunge(order)
        return order

    return _create_order


@pytest.fixture
def delivered_flow(db_session: AsyncSession, order_factory):
    """Drive an order all the way to delivered; returns (order_id, delivery_result)"""
    async def _deliver(buyer: User, seller: User, driver: User, lines=None, cash_collected=None):
        order = await order_factory(buyer, seller, lines, status=OrderStatus.READY_FOR_PICKUP)
        delivery = await DeliveryService(db_session)._by_order(order.id)
        service = DeliveryService(db_session)

        claimed = await service.claim(actor_of(driver), delivery.id)
        assert claimed.success, claimed.error_message
        picked = await service.advance(actor_of(driver), delivery.id, "picked_up")
        assert picked.success, picked.error_message
        delivered = await service.advance(actor_of(driver), delivery.id, "delivered", cash_collected)
        assert delivered.success, delivered.error_message
        return order.id, delivered

    return _deliver


# ============================================================================
# Sample Test Data
# ============================================================================

@pytest.fixture
async def buyer(user_factory) -> User:
    return await user_factory(role=UserRole.BUYER, name="Sample Buyer")


@pytest.fixture
async def seller(user_factory) -> User:
    return await user_factory(role=UserRole.SELLER, name="Sample Seller")


@pytest.fixture
async def driver(user_factory) -> User:
    return await user_factory(role=UserRole.DRIVER, name="Sample Driver")


@pytest.fixture
async def other_driver(user_factory) -> User:
    return await user_factory(role=UserRole.DRIVER, name="Second Driver")


@pytest.fixture
async def admin(user_factory) -> User:
    return await user_factory(role=UserRole.ADMIN, name="Sample Admin")


@pytest.fixture(autouse=True)
def default_fee_policy():
    """Tests assume the shipped fee policy regardless of the local environment"""
    with patch.object(settings, "PLATFORM_FEE_RATE", Decimal("0.05")), \
         patch.object(settings, "DEFAULT_DELIVERY_FEE", Decimal("2.00")), \
         patch.object(settings, "STRICT_STOCK_CHECK", True), \
         patch.object(settings, "RATE_LIMIT_ENABLED", True):
        yield
