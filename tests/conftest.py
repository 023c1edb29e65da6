import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

import smartpick_api.models  # noqa: E402,F401
from smartpick_api.api.dependencies.redis_clients import (  # noqa: E402
    get_pickup_publisher,
    get_rate_limiter,
    get_redis,
)
from smartpick_api.app import create_app  # noqa: E402
from smartpick_api.db.base import Base  # noqa: E402
from smartpick_api.db.session import get_session  # noqa: E402
from smartpick_api.models.offer import Offer, OfferStatusEnum  # noqa: E402
from smartpick_api.models.user import Partner, User, UserRoleEnum  # noqa: E402
from smartpick_api.observability.reservations import get_reservation_store  # noqa: E402
from smartpick_api.services.abuse import RateLimiter  # noqa: E402
from smartpick_api.services.pickups import PickupEventPublisher  # noqa: E402
from smartpick_api.services.points import PointsLedgerService  # noqa: E402


class FakeRedis:
    """In-memory stand-in for the handful of Redis commands the service uses."""

    def __init__(self) -> None:
        self.counters: dict[str, int] = {}
        self.expirations: dict[str, int] = {}
        self.published: list[tuple[str, str]] = []

    async def incr(self, key: str) -> int:
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]

    async def expire(self, key: str, seconds: int) -> bool:
        self.expirations[key] = seconds
        return True

    async def ttl(self, key: str) -> int:
        return self.expirations.get(key, -1)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.counters.pop(key, None) is not None:
                removed += 1
            self.expirations.pop(key, None)
        return removed

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1


@dataclass
class Marketplace:
    customer_id: UUID
    partner_user_id: UUID
    partner_id: UUID
    offer_id: UUID
    now: datetime


@pytest.fixture(autouse=True)
def _reset_reservation_store():
    get_reservation_store().reset()
    yield
    get_reservation_store().reset()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


async def seed_marketplace(
    session: AsyncSession,
    *,
    points: int = 1000,
    quantity: int = 5,
    smart_price: str = "4.50",
    original_price: str = "10.00",
    now: datetime | None = None,
) -> Marketplace:
    moment = now or datetime.now(timezone.utc)
    customer = User(email="customer@example.com", display_name="Nino", role=UserRoleEnum.CUSTOMER.value)
    owner = User(email="bakery@example.com", display_name="Bakery Owner", role=UserRoleEnum.PARTNER.value)
    session.add_all([customer, owner])
    await session.flush()

    partner = Partner(user_id=owner.id, business_name="Corner Bakery")
    session.add(partner)
    await session.flush()

    offer = Offer(
        partner_id=partner.id,
        title="Surplus pastries",
        status=OfferStatusEnum.ACTIVE,
        quantity_total=quantity,
        quantity_available=quantity,
        smart_price=Decimal(smart_price),
        original_price=Decimal(original_price),
        pickup_start=moment - timedelta(minutes=30),
        pickup_end=moment + timedelta(hours=2),
        expires_at=moment + timedelta(hours=2),
    )
    session.add(offer)
    await session.flush()

    if points:
        await PointsLedgerService(session).grant(customer.id, points, note="seed")
    await session.commit()

    return Marketplace(
        customer_id=customer.id,
        partner_user_id=owner.id,
        partner_id=partner.id,
        offer_id=offer.id,
        now=moment,
    )


@pytest_asyncio.fixture
async def marketplace(session_factory) -> Marketplace:
    async with session_factory() as session:
        return await seed_marketplace(session)


@pytest_asyncio.fixture
async def app_with_db(session_factory, fake_redis):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    async def override_get_redis():
        return fake_redis

    async def override_get_rate_limiter():
        return RateLimiter(fake_redis, partner_limit=30, ip_limit=120, replay_threshold=10, window_seconds=60)

    async def override_get_pickup_publisher():
        return PickupEventPublisher(fake_redis, timeout_seconds=1.0)

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_rate_limiter] = override_get_rate_limiter
    app.dependency_overrides[get_pickup_publisher] = override_get_pickup_publisher

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()
