import sys
from pathlib import Path

import fakeredis
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    root_path = Path(__file__).resolve().parents[1]
    if str(root_path) not in sys.path:
        sys.path.insert(0, str(root_path))


_configure_path()

from shared.clock import utcnow  # noqa: E402
from shared.database import Base, get_session  # noqa: E402
from shared.redis_client import RedisChangeFeed, get_redis  # noqa: E402
from loyalty_api.services.rate_limiter import RateLimiter  # noqa: E402
from loyalty_api.services.refund_coordinator import RefundCoordinator  # noqa: E402


class FakeClock:
    """Управляемые часы для rate limiter (секунды)"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    # файл, а не :memory: - у каждой сессии своё соединение, как с PostgreSQL
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'loyalty.db'}", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    try:
        yield client
    finally:
        await client.flushall()
        await client.aclose()


@pytest_asyncio.fixture
async def redemption_feed(redis_client):
    return RedisChangeFeed("redemptions", redis_client)


@pytest_asyncio.fixture
async def refund_feed(redis_client):
    return RedisChangeFeed("refunds", redis_client)


@pytest_asyncio.fixture
async def fake_clock():
    return FakeClock()


@pytest_asyncio.fixture
async def limiter(redis_client, fake_clock):
    return RateLimiter(redis_client, clock=fake_clock)


@pytest_asyncio.fixture
async def refunds():
    """Все фактические возвраты, о которых сообщил координатор"""
    return []


@pytest_asyncio.fixture
async def coordinator(session_factory, redemption_feed, refund_feed, refunds):
    async def on_refund(result):
        refunds.append(result)

    return RefundCoordinator(
        session_factory=session_factory,
        feed=redemption_feed,
        notifications=refund_feed,
        on_refund=on_refund,
        clock=utcnow
    )


@pytest_asyncio.fixture
async def app_with_db(session_factory, redis_client, redemption_feed, limiter, coordinator):
    from loyalty_api import dependencies
    from loyalty_api.main import app

    async def override_get_session():
        async with session_factory() as session:
            yield session

    async def override_get_redis():
        return redis_client

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[dependencies.get_rate_limiter] = lambda: limiter
    app.dependency_overrides[dependencies.get_redemption_feed] = lambda: redemption_feed
    app.dependency_overrides[dependencies.get_refund_coordinator] = lambda: coordinator

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app_with_db):
    app, _ = app_with_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client
