"""Tests for backend.services.notification_service: gateway delivery, webhooks, history."""

from __future__ import annotations

import json
import uuid

import httpx
import pytest

from backend.services.notification_service import NotificationError, NotificationService

OWNER = uuid.UUID("00000000-0000-0000-0000-0000000000aa")


def _recording_transport(
    requests: list[httpx.Request], status_code: int = 200
) -> httpx.MockTransport:
    def _handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code, json={"ok": status_code < 400})

    return httpx.MockTransport(_handler)


# ===================================================================
# notify
# ===================================================================


class TestNotify:
    async def test_log_only_without_gateway(self) -> None:
        service = NotificationService()
        await service.notify(OWNER, "Door", "Front door opened")
        (record,) = service.history
        assert record.success
        assert record.channel == "push"
        assert record.target == str(OWNER)

    async def test_posts_to_gateway(self) -> None:
        requests: list[httpx.Request] = []
        service = NotificationService(
            "https://notify.test/", transport=_recording_transport(requests)
        )
        await service.notify(OWNER, "Leak", "Water sensor tripped", ["push", "email"])

        (request,) = requests
        assert request.method == "POST"
        assert str(request.url) == "https://notify.test/notify"
        body = json.loads(request.content)
        assert body == {
            "owner_id": str(OWNER),
            "title": "Leak",
            "message": "Water sensor tripped",
            "channels": ["push", "email"],
        }
        assert service.history[-1].channel == "push,email"

    async def test_gateway_rejection_raises(self) -> None:
        requests: list[httpx.Request] = []
        service = NotificationService(
            "https://notify.test", transport=_recording_transport(requests, 503)
        )
        with pytest.raises(NotificationError, match="503"):
            await service.notify(OWNER, "Leak", "Water sensor tripped")
        record = service.history[-1]
        assert not record.success
        assert record.error == "HTTP 503"

    async def test_unreachable_gateway_raises(self) -> None:
        def _handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        service = NotificationService(
            "https://notify.test", transport=httpx.MockTransport(_handler)
        )
        with pytest.raises(NotificationError, match="unreachable"):
            await service.notify(OWNER, "Leak", "Water sensor tripped")


# ===================================================================
# send_webhook
# ===================================================================


class TestWebhook:
    async def test_returns_status_code(self) -> None:
        requests: list[httpx.Request] = []
        service = NotificationService(transport=_recording_transport(requests, 202))
        status = await service.send_webhook(
            "https://hooks.test/abc",
            {"event": "alert"},
            headers={"X-Token": "secret"},
        )
        assert status == 202
        (request,) = requests
        assert request.headers["X-Token"] == "secret"
        assert json.loads(request.content) == {"event": "alert"}

    async def test_get_sends_no_body(self) -> None:
        requests: list[httpx.Request] = []
        service = NotificationService(transport=_recording_transport(requests))
        await service.send_webhook("https://hooks.test/ping", {"ignored": True}, method="GET")
        assert requests[0].method == "GET"
        assert requests[0].content == b""

    async def test_error_status_raises(self) -> None:
        requests: list[httpx.Request] = []
        service = NotificationService(transport=_recording_transport(requests, 500))
        with pytest.raises(NotificationError, match="HTTP 500"):
            await service.send_webhook("https://hooks.test/abc", {"event": "alert"})
        assert not service.history[-1].success


# ===================================================================
# History
# ===================================================================


class TestHistory:
    async def test_history_is_bounded(self) -> None:
        service = NotificationService(history_limit=3)
        for index in range(5):
            await service.notify(OWNER, f"n{index}", "body")
        assert [record.title for record in service.history] == ["n2", "n3", "n4"]

    async def test_clear_history(self) -> None:
        service = NotificationService()
        await service.notify(OWNER, "t", "m")
        service.clear_history()
        assert service.history == []
