"""HomeFlow application services."""

from .notification_service import NotificationError, NotificationService

__all__ = [
    "NotificationError",
    "NotificationService",
]
