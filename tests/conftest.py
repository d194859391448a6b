"""Shared test fixtures for the connector test suite."""

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from app.core.database import Base
# Import all models so their metadata is registered on Base
import app.models.database  # noqa: F401
import app.models.app_log  # noqa: F401
import app.models.webhook_event  # noqa: F401
from app.services.airbyte import AirbyteClient
from app.services.app_logger import DatabaseLogSink, build_loggers
from app.services.shopify_auth import ShopifyAuth

TEST_API_KEY = "test-api-key"
TEST_API_SECRET = "test-api-secret"
AIRBYTE_URL = "http://airbyte.test/api"


@pytest_asyncio.fixture
async def session_factory():
    """
    In-memory SQLite session factory.

    aiosqlite memory databases share a single connection, so every session
    made by this factory sees the same tables. Each test gets a clean database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def async_session(session_factory):
    """Provide an in-memory SQLite async session for tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def loggers(session_factory):
    """Category loggers persisting to the test database, debug enabled."""
    return build_loggers(DatabaseLogSink(session_factory), debug_enabled=True)


@pytest.fixture
def shopify_auth():
    return ShopifyAuth(TEST_API_KEY, TEST_API_SECRET)


@pytest.fixture
def make_airbyte_client():
    """Factory for AirbyteClients whose requests are answered by ``handler(request)``."""
    def _make(handler) -> AirbyteClient:
        return AirbyteClient(AIRBYTE_URL, transport=httpx.MockTransport(handler))
    return _make
