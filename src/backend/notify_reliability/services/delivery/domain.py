"""In-memory domain objects for delivery tracking."""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from notify_reliability.models.notification_delivery import DeliveryChannel, DeliveryStatus
from notify_reliability.services.delivery.errors import UnknownChannelError

ALL_CHANNELS: tuple[DeliveryChannel, ...] = tuple(DeliveryChannel)

FAILURE_STATUSES = frozenset({DeliveryStatus.FAILED, DeliveryStatus.BOUNCED})


class BackoffStrategy(str, Enum):
    """Maps an attempt number to a retry delay."""

    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Sends withheld
    HALF_OPEN = "half_open"  # Probing recovery


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def ensure_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class DeliveryRecord:
    """Mutable state of one notification's delivery on one channel."""

    notification_id: str
    user_id: str
    channel: DeliveryChannel
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = 0
    id: str = field(default_factory=new_id)
    destination: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    last_attempt_at: datetime | None = None
    delivered_at: datetime | None = None
    failure_reason: str | None = None
    external_id: str | None = None
    next_retry_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        self.channel = DeliveryChannel(self.channel)
        self.status = DeliveryStatus(self.status)
        self.last_attempt_at = ensure_utc(self.last_attempt_at)
        self.delivered_at = ensure_utc(self.delivered_at)
        self.next_retry_at = ensure_utc(self.next_retry_at)
        self.created_at = ensure_utc(self.created_at)
        self.updated_at = ensure_utc(self.updated_at)

    def snapshot(self) -> "DeliveryRecord":
        """Detached copy safe to hand to callers."""
        return replace(self, payload=dict(self.payload), metadata=dict(self.metadata))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "notification_id": self.notification_id,
            "user_id": self.user_id,
            "channel": self.channel.value,
            "status": self.status.value,
            "attempts": self.attempts,
            "destination": self.destination,
            "last_attempt_at": _iso(self.last_attempt_at),
            "delivered_at": _iso(self.delivered_at),
            "failure_reason": self.failure_reason,
            "external_id": self.external_id,
            "next_retry_at": _iso(self.next_retry_at),
            "metadata": self.metadata,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass(frozen=True)
class DeliveryAttempt:
    """Immutable attempt log entry."""

    delivery_id: str
    attempt_number: int
    status: DeliveryStatus
    timestamp: datetime
    id: str = field(default_factory=new_id)
    response_code: int | None = None
    response_message: str | None = None
    error_details: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "delivery_id": self.delivery_id,
            "attempt_number": self.attempt_number,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "response_code": self.response_code,
            "response_message": self.response_message,
            "error_details": self.error_details,
        }


@dataclass
class CircuitBreakerState:
    """Breaker state for one channel."""

    channel: DeliveryChannel
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_time: datetime | None = None
    opened_at: datetime | None = None
    next_retry_time: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel.value,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time": _iso(self.last_failure_time),
            "opened_at": _iso(self.opened_at),
            "next_retry_time": _iso(self.next_retry_time),
        }


@dataclass(frozen=True)
class RetryQueueEntry:
    """Public view of a scheduled retry."""

    delivery_id: str
    channel: DeliveryChannel
    attempts: int
    next_retry_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "delivery_id": self.delivery_id,
            "channel": self.channel.value,
            "attempts": self.attempts,
            "next_retry_at": _iso(self.next_retry_at),
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def parse_channel(value: "DeliveryChannel | str") -> DeliveryChannel:
    """Coerce a channel name, raising UnknownChannelError for unsupported names."""
    try:
        return DeliveryChannel(value)
    except ValueError:
        raise UnknownChannelError(str(value)) from None
