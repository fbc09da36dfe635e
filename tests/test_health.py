"""Health and metrics endpoint tests."""

import pytest
from httpx import AsyncClient

from shortlink.dependencies import ServiceManager
from shortlink.enums import HealthStatus


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == HealthStatus.HEALTHY.value
    assert data["database"] == HealthStatus.HEALTHY.value
    assert data["cache"] == HealthStatus.DISABLED.value
    assert data["ingestor"] == HealthStatus.HEALTHY.value
    assert data["queue_depth"] == 0


@pytest.mark.asyncio
async def test_health_reports_stopped_ingestor(client: AsyncClient, services: ServiceManager) -> None:
    await services.ingestor.stop()

    data = (await client.get("/health")).json()

    assert data["status"] == HealthStatus.UNHEALTHY.value
    assert data["ingestor"] == HealthStatus.UNHEALTHY.value


@pytest.mark.asyncio
async def test_metrics_endpoint_exposes_service_counters(client: AsyncClient) -> None:
    link = (await client.post("/api/urls", json={"url": "https://example.com/m"})).json()
    await client.get(f"/s/{link['code']}")

    response = await client.get("/metrics")

    assert response.status_code == 200
    assert "shortlink_redirect_outcomes_total" in response.text
    assert "shortlink_link_operations_total" in response.text


def test_health_status_from_str() -> None:
    assert HealthStatus.from_str("healthy") is HealthStatus.HEALTHY
    assert HealthStatus.from_str("bogus") is HealthStatus.UNHEALTHY
