"""Integration tests for the health endpoints."""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
from backend.api.main import app
from httpx import ASGITransport, AsyncClient


@pytest.fixture()
async def client() -> AsyncGenerator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def test_health(client: AsyncClient) -> None:
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


async def test_liveness(client: AsyncClient) -> None:
    resp = await client.get("/health/live")
    assert resp.json() == {"status": "alive"}


async def test_not_ready_before_startup(client: AsyncClient) -> None:
    # the lifespan never ran, so the engines were never started
    resp = await client.get("/health/ready")
    assert resp.status_code == 503
    assert resp.json() == {"status": "not_ready"}
