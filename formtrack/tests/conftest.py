"""
Test configuration for formtrack tests.

Environment variables are set BEFORE any formtrack import: the settings
singleton and the module-level engine are built at import time.

API tests run against an in-memory SQLite database (aiosqlite, StaticPool so
every session sees the same connection) through app.dependency_overrides —
no PostgreSQL, Redis or geolocation upstream needed.
"""
import os
import sys
from pathlib import Path

_project_root = Path(__file__).parent.parent.parent    # .../package/
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["ADMIN_TOKEN"] = "test-admin-token"
os.environ["DEBUG"] = "false"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import formtrack.models  # noqa: F401  registers every table on Base.metadata
from formtrack.database import Base, get_db
from formtrack.ingestion.routes import get_geo_locator
from formtrack.main import app

ADMIN_TOKEN = "test-admin-token"


class FakeGeoLocator:
    """Stands in for GeoLocator; records the IPs it was asked about."""

    def __init__(self, geo=None):
        self.geo = geo
        self.calls = []

    async def lookup_or_none(self, ip_address):
        self.calls.append(ip_address)
        return self.geo


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def geo_locator():
    return FakeGeoLocator()


@pytest.fixture
def admin_headers():
    return {"X-Admin-Token": ADMIN_TOKEN}


@pytest_asyncio.fixture
async def client(session_factory, geo_locator):
    """Async httpx client using ASGI transport — no live server needed."""

    async def _get_test_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_test_db
    app.dependency_overrides[get_geo_locator] = lambda: geo_locator
    try:
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
        ) as ac:
            yield ac
    finally:
        app.dependency_overrides.clear()
