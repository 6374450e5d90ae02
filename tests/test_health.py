"""Tests for health check endpoints."""

from unittest.mock import AsyncMock, patch

import pytest


class TestHealthEndpoint:
    """Tests for /health endpoint."""

    @pytest.mark.asyncio
    async def test_healthy_with_database(self, client):
        """GET /health reaches the test database and reports it connected."""
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "database": "connected"}

    @pytest.mark.asyncio
    async def test_degraded_when_db_disconnected(self, client):
        """A missing database makes the instance unfit for traffic."""
        with patch(
            "caregate.routers.health.check_database_connection",
            new_callable=AsyncMock,
        ) as mock_db:
            mock_db.return_value = False

            response = await client.get("/health")

            assert response.status_code == 503
            data = response.json()
            assert data["status"] == "degraded"
            assert data["database"] == "disconnected"


class TestLivenessProbe:
    @pytest.mark.asyncio
    async def test_returns_alive(self, client):
        """Liveness does not touch the database."""
        with patch(
            "caregate.routers.health.check_database_connection",
            new_callable=AsyncMock,
        ) as mock_db:
            response = await client.get("/health/live")

            assert response.status_code == 200
            assert response.json() == {"status": "alive"}
            mock_db.assert_not_called()


@pytest.mark.asyncio
async def test_root(client):
    response = await client.get("/")
    assert response.status_code == 200
    assert response.json()["name"] == "caregate API"
