"""Delivery tracker: records attempt outcomes and drives breakers and retries."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

import structlog

from notify_reliability.core import metrics
from notify_reliability.models.notification_delivery import DeliveryStatus
from notify_reliability.services.delivery.circuit_breaker import CircuitBreakerManager
from notify_reliability.services.delivery.domain import (
    DeliveryAttempt,
    DeliveryRecord,
    utcnow,
)
from notify_reliability.services.delivery.errors import DeliveryNotFoundError
from notify_reliability.services.delivery.retry_scheduler import RetryScheduler
from notify_reliability.services.delivery.store import DeliveryStore

logger = structlog.get_logger()

SUCCESS_STATUSES = frozenset({DeliveryStatus.SENT, DeliveryStatus.DELIVERED})


@dataclass
class DeliveryStatusReport:
    """A delivery record with its attempt log, oldest attempt first."""

    record: DeliveryRecord
    attempts: list[DeliveryAttempt]

    def to_dict(self) -> dict[str, Any]:
        return {
            "delivery": self.record.to_dict(),
            "attempts": [a.to_dict() for a in self.attempts],
        }


class DeliveryTracker:
    """
    Appends attempt log entries and feeds outcomes to the breaker manager.

    Outcomes for one delivery id are processed one at a time, under the same
    per-delivery lock the scheduler takes when it starts a retry. Failed outcomes
    are handed to the retry scheduler, which reports the retried outcome back
    through track_delivery.
    """

    def __init__(
        self,
        store: DeliveryStore,
        breakers: CircuitBreakerManager,
        scheduler: RetryScheduler,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.breakers = breakers
        self.scheduler = scheduler
        self.clock = clock
        scheduler.set_outcome_handler(self.track_delivery)

    async def track_delivery(self, record: DeliveryRecord) -> DeliveryAttempt:
        """Record a delivery outcome.

        Args:
            record: Delivery in its post-attempt state

        Returns:
            The attempt log entry that was appended
        """
        lock = self.scheduler.delivery_locks(record.id)
        async with lock:
            now = self.clock()
            existing = await self.store.get(record.id)
            if existing is not None and existing is not record:
                record.created_at = existing.created_at
                if record.attempts < existing.attempts:
                    logger.warning(
                        "Attempt count went backwards, keeping stored count",
                        delivery_id=record.id,
                        reported=record.attempts,
                        stored=existing.attempts,
                    )
                    record.attempts = existing.attempts

            record.updated_at = now
            if record.last_attempt_at is None:
                record.last_attempt_at = now
            if record.status == DeliveryStatus.DELIVERED and record.delivered_at is None:
                record.delivered_at = now

            attempt = DeliveryAttempt(
                delivery_id=record.id,
                attempt_number=record.attempts,
                status=record.status,
                timestamp=now,
                response_code=record.metadata.get("response_code"),
                response_message=record.metadata.get("response_message"),
                error_details=record.failure_reason,
                metadata=dict(record.metadata),
            )

            if record.status in SUCCESS_STATUSES and self.scheduler.has_pending(record.id):
                await self.scheduler.cancel_retries(record.id)
                record.next_retry_at = None

            await self.store.put(record)
            await self.store.append_attempt(attempt)
            metrics.record_attempt(record.channel.value, record.status.value)

            await self.breakers.record_outcome(record.channel, record.status)

            if record.status == DeliveryStatus.FAILED:
                if await self.scheduler.schedule_retry(record):
                    await self.store.put(record)

        logger.info(
            "Tracked delivery attempt",
            delivery_id=record.id,
            channel=record.channel.value,
            status=record.status.value,
            attempt=record.attempts,
        )
        return attempt

    async def get_delivery_status(self, delivery_id: str) -> DeliveryStatusReport:
        """Read a delivery and its attempts.

        Raises:
            DeliveryNotFoundError: If the delivery id is unknown
        """
        record = await self.store.get(delivery_id)
        if record is None:
            raise DeliveryNotFoundError(delivery_id)
        attempts = await self.store.list_attempts(delivery_id)
        return DeliveryStatusReport(
            record=record.snapshot(),
            attempts=sorted(attempts, key=lambda a: a.timestamp),
        )

    async def cleanup_old_deliveries(self, older_than_days: int = 30) -> int:
        """Remove deliveries, with their attempts, created more than N days ago.

        Returns:
            Number of deliveries removed
        """
        cutoff = self.clock() - timedelta(days=older_than_days)
        removed = 0
        for delivery_id in await self.store.scan_older_than(cutoff):
            await self.scheduler.cancel_retries(delivery_id)
            if await self.store.delete(delivery_id):
                removed += 1

        logger.info(
            "Cleaned up old delivery records",
            removed=removed,
            older_than_days=older_than_days,
        )
        return removed
