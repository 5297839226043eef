from contextlib import asynccontextmanager

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from services.common import ServiceSettings
from services.request_service.app.main import SERVICE_NAME, create_app


def _settings(tmp_path, **overrides) -> ServiceSettings:
    values = {
        "enable_metrics": False,
        "enable_tracing": False,
        "database_url": f"sqlite+aiosqlite:///{tmp_path / 'health.db'}",
        "escalation_sweep_interval_seconds": 3600.0,
    }
    values.update(overrides)
    return ServiceSettings(**values)


@pytest.mark.asyncio
async def test_health_reports_running_sweep(tmp_path) -> None:
    app = create_app(_settings(tmp_path))
    assert app.title == SERVICE_NAME

    async with lifespan(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "escalationSweepRunning": True}


@pytest.mark.asyncio
async def test_metrics_endpoint_is_exposed_when_enabled(tmp_path) -> None:
    app = create_app(_settings(tmp_path, enable_metrics=True, escalation_sweep_enabled=False))

    async with lifespan(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            health = await client.get("/health")
            metrics = await client.get("/metrics")

    assert health.json()["escalationSweepRunning"] is False
    assert metrics.status_code == 200
    assert "requests_routing_malformed_rules_total" in metrics.text


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with app.router.lifespan_context(app):
        yield
