"""
Tests for the service and health endpoints.
"""
import pytest
from httpx import AsyncClient

from app.services import monitoring_service
from app.models.monitoring import ExecutionMetrics
from tests.utils.factories import now_utc


class TestHealthEndpoints:
    """Health check endpoints."""

    @pytest.mark.asyncio
    async def test_root_endpoint(self, client: AsyncClient):
        """GET / returns service information."""
        response = await client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "Conference Tickets Reconciliation API"
        assert data["version"] == "1.0.0"
        assert "database" in data
        assert "environment" in data

    @pytest.mark.asyncio
    async def test_health_without_recent_run_is_warning(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "warning"

    @pytest.mark.asyncio
    async def test_health_after_clean_run(self, client: AsyncClient):
        await monitoring_service.record(ExecutionMetrics(
            execution_id="exec-1", recorded_at=now_utc(), duration_ms=1000
        ))

        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_health_with_store_down(self, client: AsyncClient, store):
        store.unavailable = True

        response = await client.get("/health")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "critical"
        assert data["checks"][0]["status"] is False
