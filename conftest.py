import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from limits.aio.storage import MemoryStorage
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# Load .env.test for local overrides (e.g. a shared Redis for cache tests)
from dotenv import load_dotenv

env_test_path = os.path.join(os.path.dirname(__file__), ".env.test")
if os.path.exists(env_test_path):
    load_dotenv(env_test_path, override=False)

# Settings are read at import time by several modules; pin the test values first
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./.pytest-store.db"
os.environ["CACHE_URL"] = "memory://"
os.environ["RATE_LIMIT_STORAGE_URI"] = "memory://"
os.environ["PAYMENT_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["CLEANUP_API_KEY"] = "test-cleanup-key"
os.environ["SUPABASE_JWT_SECRET"] = "test-jwt-secret"

from libs.common.config import get_settings

# Clear cached settings to reload with the test env vars
get_settings.cache_clear()
settings = get_settings()

from libs.common.rate_limit import CheckoutRateLimiter, limiter
from libs.db.base import Base
from libs.db.config import build_engine, build_session_factory
from services.commerce_service import models as _commerce_models  # noqa: F401
from services.commerce_service.app.main import app
from services.commerce_service.services.read_cache import (
    MemoryCacheBackend,
    ReadCache,
)


@pytest_asyncio.fixture
async def test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """
    A fresh SQLite database file per test.

    A file (not ``:memory:``) so that several connections see the same data,
    which the concurrency tests rely on.
    """
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(test_engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session on the per-test database."""
    session = session_factory()
    try:
        yield session
    finally:
        await session.close()


@pytest.fixture
def read_cache() -> ReadCache:
    return ReadCache(MemoryCacheBackend(), prefix="test", default_ttl=30)


@pytest.fixture
def checkout_limiter() -> CheckoutRateLimiter:
    return CheckoutRateLimiter(settings.CHECKOUT_RATE_LIMIT, storage=MemoryStorage())


@pytest_asyncio.fixture
async def client(
    session_factory, read_cache, checkout_limiter
) -> AsyncGenerator[AsyncClient, None]:
    """
    Yield an AsyncClient bound to the app with DB, cache, limiter and auth
    dependencies pointed at the per-test fixtures.
    """
    from libs.auth.dependencies import get_current_user, get_optional_user
    from libs.common.rate_limit import get_checkout_limiter
    from libs.db.session import get_async_db, get_session_factory
    from services.commerce_service.services.read_cache import get_read_cache
    from tests.factories import make_user

    async def _get_db():
        async with session_factory() as session:
            yield session

    default_user = make_user()

    app.dependency_overrides[get_async_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_read_cache] = lambda: read_cache
    app.dependency_overrides[get_checkout_limiter] = lambda: checkout_limiter
    app.dependency_overrides[get_current_user] = lambda: default_user
    app.dependency_overrides[get_optional_user] = lambda: default_user
    limiter.reset()

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
    limiter.reset()
