"""
Global pytest configuration and shared fixtures.
"""
import pytest
from typing import AsyncGenerator
from httpx import AsyncClient, ASGITransport

from app.main import app
from app.config import settings
from tests.utils.fake_store import FakeStore


# Every module that imports get_db_connection by name
DB_CONSUMERS = [
    "app.database",
    "app.services.seat_allocator",
    "app.services.audit_service",
    "app.services.ticket_issuance_service",
    "app.services.lock_service",
    "app.services.monitoring_service",
    "app.services.inconsistency_detector",
    "app.services.batch_validation_service",
]


# ============================================================================
# In-memory store
# ============================================================================

@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture(autouse=True)
def fake_db(store, monkeypatch):
    """Route get_db_connection to the in-memory store everywhere."""
    for module in DB_CONSUMERS:
        monkeypatch.setattr(f"{module}.get_db_connection", store.get_db_connection)
    yield store


@pytest.fixture
def seat_pool(store):
    store.seed_seat_pool(capacity=settings.seat_capacity)
    return store


# ============================================================================
# Async HTTP client
# ============================================================================

@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client against the ASGI app (lifespan not started)."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def internal_token(monkeypatch) -> str:
    token = "test-internal-token"
    monkeypatch.setattr(settings, "internal_api_token", token)
    return token
