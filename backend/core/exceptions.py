"""Error taxonomy for the automation engines.

Every engine error carries the HTTP status the API layer answers with.  Action-level
failures are never raised through this hierarchy; they are recorded as execution
outcomes.  ``StorageError`` is the only error that escapes a running pipeline.
"""

from __future__ import annotations

from typing import Any


class AutomationError(Exception):
    """Base exception for all automation engine errors."""

    status_code: int = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": type(self).__name__, "detail": self.message}
        if self.details:
            payload.update(self.details)
        return payload


class NotFoundError(AutomationError):
    """Automation, device or group absent, or not owned by the caller."""

    status_code = 404


class ConflictError(AutomationError):
    """Duplicate name or a state transition that clashes with current state."""

    status_code = 409


class ModeStateError(ConflictError):
    """Mode is already active (activate) or not active (deactivate)."""


class AutomationBusyError(ConflictError):
    """The automation is executing right now."""


class RateLimitedError(AutomationError):
    """Cooldown or daily execution limit hit; retryable."""

    status_code = 429

    def __init__(
        self, message: str, *, reason: str, retry_after_seconds: int | None = None
    ) -> None:
        super().__init__(message, reason=reason, retry_after_seconds=retry_after_seconds)
        self.reason = reason
        self.retry_after_seconds = retry_after_seconds


class AutomationValidationError(AutomationError):
    """Malformed or foreign reference inside a trigger, condition or action."""

    status_code = 400


class DeviceUnavailableError(AutomationError):
    """The device proxy could not serve a read the engine cannot proceed without."""

    status_code = 502


class StorageError(AutomationError):
    """The persistence collaborator is unavailable."""

    status_code = 503


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
