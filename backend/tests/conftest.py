"""Shared test configuration and fixtures for backend tests.

Key principles:
- All HTTP calls go through the local ASGI app (httpx ASGITransport).
- Provider HTTP is mocked with respx; nothing leaves the process.
- Single Motor/Mongo client per test session; every test gets its own database.
- AnyIO is the single async runner via pytest-anyio (@pytest.mark.anyio).
"""

from typing import Any, AsyncGenerator, Callable, Iterator

import os
import sys
from datetime import datetime
from pathlib import Path
import uuid

import httpx
import pytest
import respx
from httpx import ASGITransport
from motor.motor_asyncio import AsyncIOMotorClient

# Ensure backend root is on sys.path so that `server` module is importable
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("DISTRIBUTION_API_TOKEN", "duffel_test_token")

from server import app  # noqa: E402
from skyfare import config  # noqa: E402
from skyfare.db import get_db  # noqa: E402
from skyfare.dependencies import build_orchestrator  # noqa: E402
from skyfare.indexes.booking_indexes import ensure_booking_indexes  # noqa: E402
from skyfare.services.amount_guard import ExchangeRateTable  # noqa: E402
from skyfare.services.booking_orchestrator import BookingOrchestrator  # noqa: E402
from skyfare.services.suppliers.distribution_adapter import DistributionAdapter  # noqa: E402
from skyfare.utils import now_utc  # noqa: E402


MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
PROVIDER_URL = config.DISTRIBUTION_BASE_URL


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Force pytest-anyio to use asyncio event loop."""

    return "asyncio"


@pytest.fixture(scope="session")
async def motor_client() -> AsyncGenerator[AsyncIOMotorClient, None]:
    """Session-scoped Motor client for all tests."""

    client = AsyncIOMotorClient(MONGO_URL)
    try:
        yield client
    finally:
        client.close()


@pytest.fixture(scope="function")
async def test_db(motor_client: AsyncIOMotorClient) -> AsyncGenerator[Any, None]:
    """Function-scoped isolated database with production indexes, dropped afterwards."""

    db_name = f"skyfare_test_{uuid.uuid4().hex}"
    db = motor_client[db_name]
    await ensure_booking_indexes(db)
    try:
        yield db
    finally:
        await motor_client.drop_database(db_name)


@pytest.fixture(scope="function")
async def app_with_overrides(test_db) -> AsyncGenerator[Any, None]:
    """FastAPI app instance whose get_db dependency points to test_db."""

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield app
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def async_client(app_with_overrides) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Async HTTP client bound to the FastAPI app instance."""

    transport = ASGITransport(app=app_with_overrides)
    async with httpx.AsyncClient(transport=transport, base_url="http://test", timeout=30.0) as client:
        yield client


@pytest.fixture
def provider() -> Iterator[respx.MockRouter]:
    """respx router for the distribution API. Unmocked provider calls fail the test."""

    with respx.mock(base_url=PROVIDER_URL, assert_all_called=False) as router:
        yield router


@pytest.fixture
def adapter() -> DistributionAdapter:
    return DistributionAdapter(api_token="duffel_test_token")


@pytest.fixture
def make_orchestrator(test_db, adapter) -> Callable[..., BookingOrchestrator]:
    def _make(clock: Callable[[], datetime] = now_utc) -> BookingOrchestrator:
        return build_orchestrator(test_db, adapter, ExchangeRateTable.from_config(), clock=clock)

    return _make


@pytest.fixture
def orchestrator(make_orchestrator) -> BookingOrchestrator:
    return make_orchestrator()
