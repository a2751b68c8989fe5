"""Core automation engines for HomeFlow."""

from __future__ import annotations

from .exceptions import (
    AutomationBusyError,
    AutomationError,
    AutomationValidationError,
    ConflictError,
    DeviceUnavailableError,
    ModeStateError,
    NotFoundError,
    RateLimitedError,
    StorageError,
)

__all__ = [
    "AutomationBusyError",
    "AutomationError",
    "AutomationValidationError",
    "ConflictError",
    "DeviceUnavailableError",
    "ModeStateError",
    "NotFoundError",
    "RateLimitedError",
    "StorageError",
]
