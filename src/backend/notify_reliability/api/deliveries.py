"""Notification delivery reliability API endpoints."""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from notify_reliability.core.deps import get_delivery_service
from notify_reliability.models.notification_delivery import DeliveryChannel, DeliveryStatus
from notify_reliability.services.delivery.domain import DeliveryRecord, new_id
from notify_reliability.services.delivery.rules import DeliveryRule
from notify_reliability.services.delivery.stats import DeliveryStats, OverallStats, StatsPeriod
from notify_reliability.services.delivery_service import NotificationDeliveryService

router = APIRouter()


# ===========================
# Request/Response Models
# ===========================

class TrackDeliveryRequest(BaseModel):
    """A delivery outcome reported by the dispatch layer."""

    id: str = Field(default_factory=new_id)
    notification_id: str
    user_id: str
    channel: DeliveryChannel
    status: DeliveryStatus
    attempts: int = Field(default=1, ge=0)
    destination: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    delivered_at: datetime | None = None
    failure_reason: str | None = None
    external_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class AttemptResponse(BaseModel):
    """Response model for one attempt log entry."""

    id: str
    delivery_id: str
    attempt_number: int
    status: str
    timestamp: datetime
    response_code: int | None
    response_message: str | None
    error_details: str | None


class DeliveryResponse(BaseModel):
    """Response model for a delivery record."""

    id: str
    notification_id: str
    user_id: str
    channel: str
    status: str
    attempts: int
    destination: str | None
    external_id: str | None
    failure_reason: str | None
    last_attempt_at: datetime | None
    delivered_at: datetime | None
    next_retry_at: datetime | None
    metadata: dict[str, Any]
    created_at: datetime
    updated_at: datetime


class DeliveryStatusResponse(BaseModel):
    """A delivery with its attempt history."""

    delivery: DeliveryResponse
    attempts: list[AttemptResponse]


class CircuitBreakerResponse(BaseModel):
    """Response model for a channel's breaker."""

    channel: str
    state: str
    failure_count: int
    last_failure_time: datetime | None
    opened_at: datetime | None
    next_retry_time: datetime | None


class RetryQueueResponse(BaseModel):
    """Response model for a scheduled retry."""

    delivery_id: str
    channel: str
    attempts: int
    next_retry_at: datetime | None


# ===========================
# API Endpoints
# ===========================

@router.post("/deliveries", response_model=AttemptResponse, status_code=202)
async def track_delivery(
    request: TrackDeliveryRequest,
    service: NotificationDeliveryService = Depends(get_delivery_service),
) -> AttemptResponse:
    """Report a delivery attempt outcome."""
    record = DeliveryRecord(**request.model_dump())
    attempt = await service.track_delivery(record)
    return AttemptResponse(**attempt.to_dict())


@router.get("/deliveries/{delivery_id}", response_model=DeliveryStatusResponse)
async def get_delivery_status(
    delivery_id: str,
    service: NotificationDeliveryService = Depends(get_delivery_service),
) -> DeliveryStatusResponse:
    """Get a delivery and its attempts, oldest first."""
    report = await service.get_delivery_status(delivery_id)
    return DeliveryStatusResponse(
        delivery=DeliveryResponse(**report.record.to_dict()),
        attempts=[AttemptResponse(**a.to_dict()) for a in report.attempts],
    )


@router.get("/channels/{channel}/available")
async def should_attempt_delivery(
    channel: str,
    service: NotificationDeliveryService = Depends(get_delivery_service),
) -> dict[str, Any]:
    """Whether the channel's breaker currently lets deliveries through."""
    allowed = await service.should_attempt_delivery(channel)
    return {"channel": channel, "available": allowed}


@router.get("/stats", response_model=OverallStats)
async def get_overall_stats(
    period: StatsPeriod = Query(StatsPeriod.DAY, description="Statistics window"),
    service: NotificationDeliveryService = Depends(get_delivery_service),
) -> OverallStats:
    """Delivery statistics across all channels."""
    return await service.get_overall_stats(period)


@router.get("/stats/{channel}", response_model=DeliveryStats)
async def get_channel_stats(
    channel: str,
    period: StatsPeriod = Query(StatsPeriod.DAY, description="Statistics window"),
    service: NotificationDeliveryService = Depends(get_delivery_service),
) -> DeliveryStats:
    """Delivery statistics for one channel."""
    return await service.get_channel_stats(channel, period)


@router.get("/circuit-breakers", response_model=list[CircuitBreakerResponse])
async def list_circuit_breakers(
    service: NotificationDeliveryService = Depends(get_delivery_service),
) -> list[CircuitBreakerResponse]:
    """Current breaker state of every channel."""
    return [
        CircuitBreakerResponse(**state.to_dict())
        for state in service.get_circuit_breaker_states()
    ]


@router.post("/circuit-breakers/{channel}/reset")
async def reset_circuit_breaker(
    channel: str,
    service: NotificationDeliveryService = Depends(get_delivery_service),
) -> dict[str, Any]:
    """Force a channel's breaker closed."""
    if not await service.reset_circuit_breaker(channel):
        raise HTTPException(status_code=404, detail=f"Unknown delivery channel: {channel}")
    return {"channel": channel, "reset": True}


@router.get("/rules", response_model=list[DeliveryRule])
async def list_delivery_rules(
    service: NotificationDeliveryService = Depends(get_delivery_service),
) -> list[DeliveryRule]:
    """Active delivery rule of every channel."""
    return service.get_delivery_rules()


@router.patch("/rules/{channel}", response_model=DeliveryRule)
async def update_delivery_rule(
    channel: str,
    updates: dict[str, Any] = Body(...),
    service: NotificationDeliveryService = Depends(get_delivery_service),
) -> DeliveryRule:
    """Merge a partial update into a channel's rule."""
    return await service.update_delivery_rule(channel, updates)


@router.get("/retries", response_model=list[RetryQueueResponse])
async def get_retry_queue(
    service: NotificationDeliveryService = Depends(get_delivery_service),
) -> list[RetryQueueResponse]:
    """Deliveries with a scheduled retry."""
    return [
        RetryQueueResponse(**entry.to_dict())
        for entry in service.get_retry_queue_status()
    ]


@router.delete("/retries/{delivery_id}")
async def cancel_retries(
    delivery_id: str,
    service: NotificationDeliveryService = Depends(get_delivery_service),
) -> dict[str, Any]:
    """Cancel a delivery's pending retry."""
    cancelled = await service.cancel_retries(delivery_id)
    return {"delivery_id": delivery_id, "cancelled": cancelled}


@router.post("/cleanup")
async def cleanup_old_deliveries(
    older_than_days: int | None = Query(None, ge=1, description="Retention in days"),
    service: NotificationDeliveryService = Depends(get_delivery_service),
) -> dict[str, int]:
    """Remove deliveries older than the retention period."""
    removed = await service.cleanup_old_deliveries(older_than_days)
    return {"removed": removed}
