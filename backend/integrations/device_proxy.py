"""Device proxy client for HomeFlow.

The engines never talk to physical devices; every device effect goes through a
``DeviceProxy``.  ``HTTPDeviceProxy`` is the production implementation, an async
wrapper around the device gateway REST API with typed errors for offline devices,
unknown devices and actions a device does not support.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class DeviceProxyError(Exception):
    """Base exception for all device proxy errors."""


class DeviceProxyConnectionError(DeviceProxyError):
    """Raised when the device gateway cannot be reached."""


class DeviceNotFoundError(DeviceProxyError):
    """Raised when the gateway does not know the device (404)."""


class DeviceOfflineError(DeviceProxyError):
    """Raised when the device is known but currently unreachable (409 / 503)."""


class UnsupportedActionError(DeviceProxyError):
    """Raised when the device's capabilities do not cover the action (400 / 422)."""


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class DeviceState:
    """Snapshot of a single device as reported by the gateway."""

    device_id: str
    power_state: str | None = None
    settings: dict[str, Any] = field(default_factory=dict)
    is_online: bool = True
    attributes: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeviceState:
        """Build a ``DeviceState`` from a raw gateway JSON dict."""
        return cls(
            device_id=str(data.get("device_id") or data.get("id") or ""),
            power_state=data.get("power_state"),
            settings=data.get("settings") or {},
            is_online=bool(data.get("is_online", True)),
            attributes=data.get("attributes") or {},
        )

    def as_mapping(self) -> dict[str, Any]:
        """Return the state as the mapping trigger/condition property paths resolve against."""
        return {
            "device_id": self.device_id,
            "power_state": self.power_state,
            "settings": dict(self.settings),
            "is_online": self.is_online,
            "attributes": dict(self.attributes),
        }


@runtime_checkable
class DeviceProxy(Protocol):
    """Capability interface the engines use for every device effect."""

    async def control_device(
        self,
        device_id: uuid.UUID,
        action: str,
        settings: dict[str, Any],
        owner_id: uuid.UUID,
    ) -> DeviceState: ...

    async def get_device_state(self, device_id: uuid.UUID) -> DeviceState: ...

    async def list_devices(self, owner_id: uuid.UUID) -> list[DeviceState]: ...

    async def update_device_settings(
        self,
        device_id: uuid.UUID,
        settings: dict[str, Any],
        owner_id: uuid.UUID,
    ) -> DeviceState: ...

    async def activate_scene(self, scene_id: str, owner_id: uuid.UUID) -> None: ...


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class HTTPDeviceProxy:
    """Async REST wrapper for the device gateway.

    Usage::

        proxy = HTTPDeviceProxy("http://gateway.local:8440", token="...")
        await proxy.connect()
        await proxy.control_device(device_id, "turn_on", {}, owner_id)
        await proxy.disconnect()

    Timeouts and retries are the gateway's concern; the engines only see success or a
    ``DeviceProxyError``.
    """

    def __init__(
        self,
        url: str,
        token: str = "",
        *,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = url.rstrip("/")
        self._token = token
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> HTTPDeviceProxy:
        await self.connect()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.disconnect()

    # -- lifecycle ------------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Initialise the ``httpx.AsyncClient``."""
        if self._client is not None:
            return

        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=self._timeout,
            transport=self._transport,
        )
        logger.info("Device proxy client ready for %s", self._base_url)

    async def disconnect(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            with suppress(Exception):
                await self._client.aclose()
            self._client = None
            logger.info("Device proxy client closed")

    # -- internal request helper ----------------------------------------------

    def _raise_for_status(self, response: httpx.Response, *, context: str = "") -> None:
        """Translate HTTP error codes into typed exceptions."""
        if response.is_success:
            return

        status = response.status_code
        detail = response.text[:300]
        prefix = f"[{context}] " if context else ""

        if status == 404:
            raise DeviceNotFoundError(f"{prefix}Device not found: {detail}")
        if status in (409, 503):
            raise DeviceOfflineError(f"{prefix}Device offline: {detail}")
        if status in (400, 422):
            raise UnsupportedActionError(f"{prefix}Action not supported: {detail}")
        msg = f"{prefix}Gateway error {status}: {detail}"
        logger.error(msg)
        raise DeviceProxyError(msg)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        context: str = "",
    ) -> httpx.Response:
        if self._client is None:
            await self.connect()
        assert self._client is not None  # noqa: S101 - guaranteed by connect()

        logger.debug("%s %s", method, path)
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.ConnectError as exc:
            msg = f"Cannot reach device gateway at {self._base_url}: {exc}"
            logger.error(msg)
            raise DeviceProxyConnectionError(msg) from exc
        except httpx.TimeoutException as exc:
            msg = f"Request to {path} timed out ({self._timeout}s)"
            logger.error(msg)
            raise DeviceProxyConnectionError(msg) from exc

        self._raise_for_status(response, context=context or f"{method} {path}")
        return response

    # -- device API -----------------------------------------------------------

    async def control_device(
        self,
        device_id: uuid.UUID,
        action: str,
        settings: dict[str, Any],
        owner_id: uuid.UUID,
    ) -> DeviceState:
        logger.info("Controlling device %s -> %s", device_id, action)
        response = await self._request(
            "POST",
            f"/api/devices/{device_id}/control",
            json={"action": action, "settings": settings, "owner_id": str(owner_id)},
            context=f"control({device_id})",
        )
        return DeviceState.from_dict(response.json())

    async def get_device_state(self, device_id: uuid.UUID) -> DeviceState:
        response = await self._request(
            "GET", f"/api/devices/{device_id}", context=f"get_state({device_id})"
        )
        return DeviceState.from_dict(response.json())

    async def list_devices(self, owner_id: uuid.UUID) -> list[DeviceState]:
        response = await self._request(
            "GET", "/api/devices", params={"owner_id": str(owner_id)}, context="list_devices"
        )
        return [DeviceState.from_dict(item) for item in response.json()]

    async def update_device_settings(
        self,
        device_id: uuid.UUID,
        settings: dict[str, Any],
        owner_id: uuid.UUID,
    ) -> DeviceState:
        response = await self._request(
            "PATCH",
            f"/api/devices/{device_id}/settings",
            json={"settings": settings, "owner_id": str(owner_id)},
            context=f"update_settings({device_id})",
        )
        return DeviceState.from_dict(response.json())

    async def activate_scene(self, scene_id: str, owner_id: uuid.UUID) -> None:
        logger.info("Activating scene %s", scene_id)
        await self._request(
            "POST",
            f"/api/scenes/{scene_id}/activate",
            json={"owner_id": str(owner_id)},
            context=f"scene({scene_id})",
        )


__all__ = [
    "DeviceNotFoundError",
    "DeviceOfflineError",
    "DeviceProxy",
    "DeviceProxyConnectionError",
    "DeviceProxyError",
    "DeviceState",
    "HTTPDeviceProxy",
    "UnsupportedActionError",
]
