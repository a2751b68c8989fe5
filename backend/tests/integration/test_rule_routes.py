"""Integration tests for rule API routes (/api/v1/rules).

Runs the real engines over the in-memory store and fake device proxy; the app
lifespan is never started, the engines dependency is overridden instead.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Generator
from typing import Any

import pytest
from backend.api.dependencies import get_engines
from backend.api.main import app
from backend.core.engines import AutomationEngines
from backend.tests.fakes import FakeDeviceProxy
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


def _rule_payload(device: uuid.UUID, **overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "name": "Porch light",
        "triggers": [{"type": "manual"}],
        "actions": [{"type": "device_control", "device_id": str(device), "action": "turn_on"}],
    }
    payload.update(overrides)
    return payload


# ===================================================================
# Caller identity
# ===================================================================


class TestOwnerHeader:
    async def test_missing_header(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/rules", headers={"X-Owner-Id": ""})
        assert resp.status_code == 401

    async def test_malformed_header(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/rules", headers={"X-Owner-Id": "not-a-uuid"})
        assert resp.status_code == 400


# ===================================================================
# CRUD
# ===================================================================


class TestRuleCrud:
    async def test_create_list_get(self, client: AsyncClient, device: uuid.UUID) -> None:
        resp = await client.post("/api/v1/rules", json=_rule_payload(device))
        assert resp.status_code == 201
        created = resp.json()
        assert created["is_active"] is True
        assert created["actions"][0]["type"] == "device_control"

        listed = await client.get("/api/v1/rules")
        assert [rule["id"] for rule in listed.json()] == [created["id"]]

        fetched = await client.get(f"/api/v1/rules/{created['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["name"] == "Porch light"

    async def test_duplicate_name_conflicts(self, client: AsyncClient, device: uuid.UUID) -> None:
        await client.post("/api/v1/rules", json=_rule_payload(device))
        resp = await client.post("/api/v1/rules", json=_rule_payload(device))
        assert resp.status_code == 409
        assert resp.json()["error"] == "ConflictError"

    async def test_unknown_action_type_rejected(
        self, client: AsyncClient, device: uuid.UUID
    ) -> None:
        payload = _rule_payload(device, actions=[{"type": "teleport", "where": "mars"}])
        resp = await client.post("/api/v1/rules", json=payload)
        assert resp.status_code == 400
        assert resp.json()["error"] == "AutomationValidationError"

    async def test_foreign_device_rejected(self, client: AsyncClient) -> None:
        resp = await client.post("/api/v1/rules", json=_rule_payload(uuid.uuid4()))
        assert resp.status_code == 400
        assert "device_id" in resp.json()

    async def test_other_owner_sees_404(self, client: AsyncClient, device: uuid.UUID) -> None:
        created = (await client.post("/api/v1/rules", json=_rule_payload(device))).json()
        resp = await client.get(
            f"/api/v1/rules/{created['id']}", headers={"X-Owner-Id": str(uuid.uuid4())}
        )
        assert resp.status_code == 404

    async def test_update_and_delete(self, client: AsyncClient, device: uuid.UUID) -> None:
        created = (await client.post("/api/v1/rules", json=_rule_payload(device))).json()
        rule_url = f"/api/v1/rules/{created['id']}"

        patched = await client.patch(rule_url, json={"is_active": False, "priority": 8})
        assert patched.status_code == 200
        assert patched.json()["is_active"] is False
        assert patched.json()["priority"] == 8

        assert (await client.delete(rule_url)).status_code == 204
        assert (await client.get(rule_url)).status_code == 404


# ===================================================================
# Execution
# ===================================================================


class TestExecute:
    async def test_execute_runs_actions(
        self, client: AsyncClient, device: uuid.UUID, proxy: FakeDeviceProxy
    ) -> None:
        created = (await client.post("/api/v1/rules", json=_rule_payload(device))).json()
        resp = await client.post(f"/api/v1/rules/{created['id']}/execute")
        assert resp.status_code == 200
        body = resp.json()
        assert body["executed"] is True
        assert body["execution"]["status"] == "success"
        assert body["statistics"]["execution_count"] == 1
        assert proxy.states[str(device)].power_state == "on"

    async def test_cooldown_answers_429_with_retry_after(
        self, client: AsyncClient, device: uuid.UUID
    ) -> None:
        payload = _rule_payload(device, settings={"cooldown_period_seconds": 300})
        created = (await client.post("/api/v1/rules", json=payload)).json()
        execute_url = f"/api/v1/rules/{created['id']}/execute"

        assert (await client.post(execute_url)).status_code == 200
        resp = await client.post(execute_url)
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "300"
        assert resp.json()["reason"] == "cooldown"

        forced = await client.post(execute_url, json={"force": True})
        assert forced.status_code == 200

    async def test_execute_unknown_rule(self, client: AsyncClient) -> None:
        resp = await client.post(f"/api/v1/rules/{uuid.uuid4()}/execute")
        assert resp.status_code == 404

    async def test_dry_run_touches_nothing(
        self, client: AsyncClient, device: uuid.UUID, proxy: FakeDeviceProxy
    ) -> None:
        created = (await client.post("/api/v1/rules", json=_rule_payload(device))).json()
        resp = await client.post(f"/api/v1/rules/{created['id']}/test")
        assert resp.status_code == 200
        body = resp.json()
        assert body["dry_run"] is True
        assert body["would_execute"] is True
        assert body["execution"] is None
        assert proxy.calls_named("control_device") == []

    async def test_statistics_route_is_not_a_rule_id(
        self, client: AsyncClient, device: uuid.UUID
    ) -> None:
        created = (await client.post("/api/v1/rules", json=_rule_payload(device))).json()
        await client.post(f"/api/v1/rules/{created['id']}/execute")

        resp = await client.get("/api/v1/rules/statistics")
        assert resp.status_code == 200
        body = resp.json()
        assert body["total_rules"] == 1
        assert body["active_rules"] == 1
        assert body["total_executions"] == 1
        assert body["success_rate"] == 1.0


# ===================================================================
# Device events
# ===================================================================


class TestDeviceEvents:
    async def test_event_dispatches_matching_rule(
        self, client: AsyncClient, device: uuid.UUID, engines: AutomationEngines
    ) -> None:
        trigger = {
            "type": "device_state",
            "device_id": str(device),
            "operator": "changes_to",
            "value": "on",
        }
        created = (
            await client.post("/api/v1/rules", json=_rule_payload(device, triggers=[trigger]))
        ).json()

        resp = await client.post(
            "/api/v1/events/device-state",
            json={
                "device_id": str(device),
                "old_state": {"power_state": "off"},
                "new_state": {"power_state": "on"},
            },
        )
        assert resp.status_code == 202
        assert resp.json()["rules"] == [created["id"]]
        await engines.drain()
