"""Notification service for HomeFlow.

Delivers automation notifications through the notification gateway (push / email /
SMS fan-out lives there) and calls external webhooks on behalf of webhook actions.
Without a configured gateway, notifications are logged only.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised when a notification or webhook could not be delivered."""


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class NotificationRecord:
    """Record of a delivery attempt (for auditing)."""

    title: str
    message: str
    target: str
    channel: str
    sent_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    success: bool = True
    error: str | None = None


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class NotificationService:
    """Send notifications through the gateway and call external webhooks.

    Usage::

        service = NotificationService("https://notify.internal", timeout=10.0)
        await service.notify(owner_id, "Leak", "Water sensor tripped", ["push"])
        await service.send_webhook("https://hooks.example.com/abc", {"event": "alert"})
    """

    def __init__(
        self,
        gateway_url: str = "",
        *,
        timeout: float = 10.0,
        history_limit: int = 100,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._gateway_url = gateway_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._history: list[NotificationRecord] = []
        self._history_limit = history_limit

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    # ------------------------------------------------------------------
    # Public API: user notifications
    # ------------------------------------------------------------------

    async def notify(
        self,
        owner_id: uuid.UUID,
        title: str,
        message: str,
        channels: list[str] | None = None,
    ) -> None:
        """Deliver a notification to the owner on the given channels.

        Raises:
            NotificationError: If the gateway rejects or cannot be reached.
        """
        channels = channels or ["push"]
        record = NotificationRecord(
            title=title,
            message=message,
            target=str(owner_id),
            channel=",".join(channels),
        )

        if not self._gateway_url:
            logger.info(
                "Notification (log-only) for %s: [%s] %s",
                owner_id,
                title,
                message[:80],
                extra={"owner_id": str(owner_id), "channels": channels},
            )
            self._record(record)
            return

        payload = {
            "owner_id": str(owner_id),
            "title": title,
            "message": message,
            "channels": channels,
        }
        try:
            async with self._client() as client:
                response = await client.post(f"{self._gateway_url}/notify", json=payload)
                response.raise_for_status()
            logger.info("Notification sent to %s via %s", owner_id, channels)
        except httpx.HTTPStatusError as exc:
            record.success = False
            record.error = f"HTTP {exc.response.status_code}"
            logger.error("Notification gateway rejected message: %s", record.error)
            raise NotificationError(f"Notification gateway returned {record.error}") from exc
        except httpx.HTTPError as exc:
            record.success = False
            record.error = str(exc)
            logger.error("Notification gateway unreachable: %s", exc)
            raise NotificationError(f"Notification gateway unreachable: {exc}") from exc
        finally:
            self._record(record)

    # ------------------------------------------------------------------
    # Public API: webhook delivery
    # ------------------------------------------------------------------

    async def send_webhook(
        self,
        url: str,
        payload: dict[str, Any] | None = None,
        *,
        method: str = "POST",
        headers: dict[str, str] | None = None,
    ) -> int:
        """Call an external webhook and return the response status.

        Raises:
            NotificationError: On non-2xx responses or network failures.
        """
        record = NotificationRecord(
            title="webhook",
            message=str(payload)[:200],
            target=url,
            channel="webhook",
        )
        body = payload if method != "GET" else None

        try:
            async with self._client() as client:
                response = await client.request(
                    method,
                    url,
                    json=body,
                    headers={"Content-Type": "application/json", **(headers or {})},
                )
                response.raise_for_status()
            logger.info("Webhook delivered to %s (status %d)", url, response.status_code)
            return response.status_code
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Webhook to %s failed with status %d: %s",
                url,
                exc.response.status_code,
                exc.response.text[:200],
            )
            record.success = False
            record.error = f"HTTP {exc.response.status_code}"
            raise NotificationError(f"Webhook returned {record.error}") from exc
        except httpx.HTTPError as exc:
            logger.error("Webhook connection to %s failed: %s", url, exc)
            record.success = False
            record.error = str(exc)
            raise NotificationError(f"Webhook failed: {exc}") from exc
        finally:
            self._record(record)

    # ------------------------------------------------------------------
    # History / introspection
    # ------------------------------------------------------------------

    @property
    def history(self) -> list[NotificationRecord]:
        """Return a copy of the recent delivery history."""
        return list(self._history)

    def clear_history(self) -> None:
        self._history.clear()

    def _record(self, record: NotificationRecord) -> None:
        """Append a record to the history ring buffer."""
        self._history.append(record)
        if len(self._history) > self._history_limit:
            self._history = self._history[-self._history_limit :]


__all__ = [
    "NotificationError",
    "NotificationRecord",
    "NotificationService",
]
