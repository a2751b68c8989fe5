"""HomeFlow integration clients."""

from .device_proxy import (
    DeviceNotFoundError,
    DeviceOfflineError,
    DeviceProxy,
    DeviceProxyConnectionError,
    DeviceProxyError,
    DeviceState,
    HTTPDeviceProxy,
    UnsupportedActionError,
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
