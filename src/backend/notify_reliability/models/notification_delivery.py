"""Notification delivery tracking models for delivery status and attempt history."""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from notify_reliability.models.base import Base, TimestampMixin


class DeliveryStatus(str, Enum):
    """Delivery status tracking for notification lifecycle."""

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    BOUNCED = "bounced"


class DeliveryChannel(str, Enum):
    """Delivery channel types for notifications."""

    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    IN_APP = "in_app"


class NotificationDelivery(Base, TimestampMixin):
    """One notification's delivery on one channel."""

    __tablename__ = "notification_deliveries"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    notification_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Delivery tracking
    channel: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default=DeliveryStatus.PENDING.value,
        nullable=False,
        index=True,
    )
    destination: Mapped[str | None] = mapped_column(String(320), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)

    # External service tracking
    external_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        comment="Provider message ID returned by the channel sender",
    )

    # Retry management
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    next_retry_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    delivered_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Error tracking
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    extra: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict, nullable=False)

    def __repr__(self) -> str:
        return f"<NotificationDelivery(id={self.id}, user_id={self.user_id}, channel={self.channel}, status={self.status}, attempts={self.attempts})>"


class NotificationDeliveryAttempt(Base):
    """Append-only log entry for a single delivery attempt."""

    __tablename__ = "notification_delivery_attempts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    delivery_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("notification_deliveries.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    response_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    extra: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict, nullable=False)

    def __repr__(self) -> str:
        return f"<NotificationDeliveryAttempt(delivery_id={self.delivery_id}, attempt={self.attempt_number}, status={self.status})>"


# Create composite indexes for common queries
Index(
    "ix_notification_deliveries_channel_created",
    NotificationDelivery.channel,
    NotificationDelivery.created_at,
)
Index(
    "ix_notification_deliveries_user_status",
    NotificationDelivery.user_id,
    NotificationDelivery.status,
)
