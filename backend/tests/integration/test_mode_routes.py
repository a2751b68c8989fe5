"""Integration tests for mode API routes (/api/v1/modes)."""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Generator
from typing import Any

import pytest
from backend.api.dependencies import get_engines, set_engines
from backend.api.main import app
from backend.core.engines import AutomationEngines
from backend.tests.fakes import FakeDeviceProxy, FakeScheduler
from httpx import ASGITransport, AsyncClient

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _override_engines(engines: AutomationEngines) -> Generator[None]:
    app.dependency_overrides[get_engines] = lambda: engines
    yield
    app.dependency_overrides.clear()


@pytest.fixture()
async def client(owner_id: uuid.UUID) -> AsyncGenerator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"X-Owner-Id": str(owner_id)},
    ) as ac:
        yield ac


def _mode_payload(device: uuid.UUID, name: str = "Movie night", **extra: Any) -> dict[str, Any]:
    return {
        "name": name,
        "actions": [{"type": "device_control", "device_id": str(device), "action": "turn_on"}],
        **extra,
    }


async def _create(client: AsyncClient, payload: dict[str, Any]) -> dict[str, Any]:
    resp = await client.post("/api/v1/modes", json=payload)
    assert resp.status_code == 201, resp.text
    return resp.json()


# ===================================================================
# CRUD
# ===================================================================


class TestModeCrud:
    async def test_create_and_get(self, client: AsyncClient, device: uuid.UUID) -> None:
        created = await _create(
            client, _mode_payload(device, settings={"restore_on_exit": True})
        )
        assert created["is_active"] is False
        assert created["settings"] == {"restore_on_exit": True, "previous_state": None}

        resp = await client.get(f"/api/v1/modes/{created['id']}")
        assert resp.json()["name"] == "Movie night"

    async def test_self_reference_rejected(self, client: AsyncClient, device: uuid.UUID) -> None:
        created = await _create(client, _mode_payload(device))
        resp = await client.patch(
            f"/api/v1/modes/{created['id']}",
            json={"actions": [{"type": "mode_activation", "mode_id": created["id"]}]},
        )
        assert resp.status_code == 400

    async def test_delete(self, client: AsyncClient, device: uuid.UUID) -> None:
        created = await _create(client, _mode_payload(device))
        assert (await client.delete(f"/api/v1/modes/{created['id']}")).status_code == 204
        assert (await client.get(f"/api/v1/modes/{created['id']}")).status_code == 404


# ===================================================================
# Activation
# ===================================================================


class TestActivation:
    async def test_activate_and_deactivate(
        self, client: AsyncClient, device: uuid.UUID, proxy: FakeDeviceProxy
    ) -> None:
        created = await _create(
            client, _mode_payload(device, settings={"restore_on_exit": True})
        )
        mode_url = f"/api/v1/modes/{created['id']}"

        resp = await client.post(f"{mode_url}/activate")
        assert resp.status_code == 200
        body = resp.json()
        assert body["command"] == "activate"
        assert body["snapshot_size"] == 1
        assert body["mode"]["is_active"] is True
        assert proxy.states[str(device)].power_state == "on"

        again = await client.post(f"{mode_url}/activate")
        assert again.status_code == 409
        assert again.json()["error"] == "ModeStateError"

        active = await client.get("/api/v1/modes/active")
        assert [mode["id"] for mode in active.json()] == [created["id"]]

        resp = await client.post(f"{mode_url}/deactivate")
        assert resp.status_code == 200
        assert resp.json()["restoration"]["restored"] == [str(device)]
        assert proxy.states[str(device)].power_state == "off"

        resp = await client.post(f"{mode_url}/deactivate")
        assert resp.status_code == 409

    async def test_activate_with_duration(
        self, client: AsyncClient, device: uuid.UUID, scheduler: FakeScheduler
    ) -> None:
        created = await _create(client, _mode_payload(device))
        resp = await client.post(
            f"/api/v1/modes/{created['id']}/activate",
            json={"duration": {"value": 2, "unit": "hours"}},
        )
        assert resp.status_code == 200
        assert resp.json()["scheduled_deactivation"] is not None
        assert scheduler.job_count == 1

    async def test_toggle(self, client: AsyncClient, device: uuid.UUID) -> None:
        created = await _create(client, _mode_payload(device))
        toggle_url = f"/api/v1/modes/{created['id']}/toggle"
        assert (await client.post(toggle_url)).json()["command"] == "activate"
        assert (await client.post(toggle_url)).json()["command"] == "deactivate"

    async def test_snapshot_failure_is_bad_gateway(
        self, client: AsyncClient, device: uuid.UUID, proxy: FakeDeviceProxy
    ) -> None:
        created = await _create(
            client, _mode_payload(device, settings={"restore_on_exit": True})
        )
        proxy.list_fails = True
        resp = await client.post(f"/api/v1/modes/{created['id']}/activate")
        assert resp.status_code == 502
        assert resp.json()["error"] == "DeviceUnavailableError"

    async def test_unknown_mode(self, client: AsyncClient) -> None:
        resp = await client.post(f"/api/v1/modes/{uuid.uuid4()}/activate")
        assert resp.status_code == 404

    async def test_statistics(self, client: AsyncClient, device: uuid.UUID) -> None:
        created = await _create(client, _mode_payload(device))
        await client.post(f"/api/v1/modes/{created['id']}/activate")

        resp = await client.get("/api/v1/modes/statistics")
        assert resp.status_code == 200
        body = resp.json()
        assert body["total_modes"] == 1
        assert body["active_modes"] == 1
        assert body["total_activations"] == 1
        assert body["auto_activate_modes"] == 0


# ===================================================================
# Engines unavailable
# ===================================================================


async def test_engines_not_running_is_503(client: AsyncClient) -> None:
    app.dependency_overrides.clear()
    set_engines(None)
    resp = await client.get("/api/v1/modes")
    assert resp.status_code == 503
