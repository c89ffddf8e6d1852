"""Database models."""

from notify_reliability.models.base import Base, TimestampMixin
from notify_reliability.models.notification_delivery import (
    DeliveryChannel,
    DeliveryStatus,
    NotificationDelivery,
    NotificationDeliveryAttempt,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "DeliveryChannel",
    "DeliveryStatus",
    "NotificationDelivery",
    "NotificationDeliveryAttempt",
]
