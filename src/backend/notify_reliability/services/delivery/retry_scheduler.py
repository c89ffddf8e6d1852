"""Retry scheduling with per-channel backoff and cancellable delayed tasks."""

import asyncio
import itertools
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Mapping

import structlog

from notify_reliability.core import metrics
from notify_reliability.models.notification_delivery import DeliveryChannel, DeliveryStatus
from notify_reliability.services.delivery.circuit_breaker import CircuitBreakerManager
from notify_reliability.services.delivery.domain import (
    BackoffStrategy,
    DeliveryRecord,
    RetryQueueEntry,
    utcnow,
)
from notify_reliability.services.delivery.rules import DeliveryRule, DeliveryRuleRegistry
from notify_reliability.services.delivery.senders import ChannelSender, SendResult
from notify_reliability.services.delivery.store import DeliveryStore

logger = structlog.get_logger()

OutcomeHandler = Callable[[DeliveryRecord], Awaitable[Any]]


def compute_retry_delay(
    record: DeliveryRecord,
    rule: DeliveryRule,
    unit: timedelta = timedelta(minutes=1),
) -> timedelta:
    """Delay before the next attempt of a delivery.

    The base interval is picked by attempt number (the last interval repeats
    once attempts run past the list) and scaled by the rule's backoff strategy.
    """
    attempts = max(record.attempts, 1)
    index = min(attempts - 1, len(rule.retry_intervals) - 1)
    base = rule.retry_intervals[index]

    if rule.backoff_strategy == BackoffStrategy.EXPONENTIAL:
        factor = 2 ** (attempts - 1)
    elif rule.backoff_strategy == BackoffStrategy.LINEAR:
        factor = attempts
    else:
        factor = 1

    return unit * (base * factor)


class CancellationToken:
    """Set once a scheduled retry is cancelled or superseded."""

    __slots__ = ("_cancelled",)

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled



class DeliveryLocks:
    """One asyncio.Lock per delivery id, dropped once nothing holds it.

    Shared by the tracker and the scheduler so that recording an outcome and
    starting a retry of the same delivery never interleave their writes.
    """

    def __init__(self):
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def __call__(self, delivery_id: str) -> asyncio.Lock:
        lock = self._locks.get(delivery_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[delivery_id] = lock
        return lock


@dataclass
class ScheduledRetry:
    """A pending retry for one delivery."""

    delivery_id: str
    channel: DeliveryChannel
    attempts: int
    next_retry_at: datetime
    generation: int
    token: CancellationToken = field(default_factory=CancellationToken)
    task: asyncio.Task | None = None
    running: bool = False


class RetryScheduler:
    """
    Arms at most one delayed retry per delivery id.

    Scheduling a delivery that already has a pending retry cancels the old one
    in the same critical section that arms the new one. Every fired retry
    re-checks its cancellation token before doing work and again before
    reporting the outcome, so cancelling a retry that is already executing
    stops it from feeding a result back.
    """

    def __init__(
        self,
        rules: DeliveryRuleRegistry,
        breakers: CircuitBreakerManager,
        store: DeliveryStore,
        senders: Mapping[DeliveryChannel, ChannelSender] | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        interval_unit: timedelta = timedelta(minutes=1),
    ):
        self.rules = rules
        self.breakers = breakers
        self.store = store
        self.senders: dict[DeliveryChannel, ChannelSender] = dict(senders or {})
        self.clock = clock
        self.sleep = sleep
        self.interval_unit = interval_unit
        self._queue: dict[str, ScheduledRetry] = {}
        self._lock = asyncio.Lock()
        self._generations = itertools.count(1)
        self.delivery_locks = DeliveryLocks()
        self._outcome_handler: OutcomeHandler | None = None
        self._closed = False

    def set_outcome_handler(self, handler: OutcomeHandler) -> None:
        """Register the coroutine that records a retried delivery's outcome."""
        self._outcome_handler = handler

    def register_sender(self, channel: DeliveryChannel, sender: ChannelSender) -> None:
        self.senders[channel] = sender

    async def schedule_retry(self, record: DeliveryRecord) -> bool:
        """Arm a retry for a failed delivery if its rule and breaker allow it.

        Sets record.next_retry_at on success; the caller persists the record.

        Returns:
            True if a retry was scheduled
        """
        rule = self.rules.get_rule(record.channel)
        if not rule.active:
            logger.info(
                "Delivery rule inactive, not retrying",
                delivery_id=record.id,
                channel=record.channel.value,
            )
            return False

        if record.attempts >= rule.max_retries:
            logger.info(
                "Max retries reached",
                delivery_id=record.id,
                channel=record.channel.value,
                attempts=record.attempts,
                max_retries=rule.max_retries,
            )
            return False

        if not await self.breakers.should_attempt_delivery(record.channel):
            logger.info(
                "Circuit breaker open, skipping retry",
                delivery_id=record.id,
                channel=record.channel.value,
            )
            return False

        delay = compute_retry_delay(record, rule, self.interval_unit)
        next_retry_at = self.clock() + delay

        async with self._lock:
            if self._closed:
                return False
            self._cancel_entry(self._queue.get(record.id))
            entry = ScheduledRetry(
                delivery_id=record.id,
                channel=record.channel,
                attempts=record.attempts,
                next_retry_at=next_retry_at,
                generation=next(self._generations),
            )
            entry.task = asyncio.create_task(
                self._fire(entry, delay.total_seconds()),
                name=f"delivery-retry-{record.id}-{entry.generation}",
            )
            self._queue[record.id] = entry
            metrics.set_retry_queue_size(len(self._queue))

        record.next_retry_at = next_retry_at
        metrics.record_retry_scheduled(record.channel.value)
        logger.info(
            "Scheduled delivery retry",
            delivery_id=record.id,
            channel=record.channel.value,
            attempt=record.attempts,
            delay_seconds=delay.total_seconds(),
            next_retry_at=next_retry_at.isoformat(),
        )
        return True

    async def cancel_retries(self, delivery_id: str) -> bool:
        """Cancel a delivery's pending retry.

        Returns:
            True if a retry was pending
        """
        async with self._lock:
            cancelled = self._cancel_entry(self._queue.pop(delivery_id, None))
            metrics.set_retry_queue_size(len(self._queue))

        if cancelled:
            record = await self.store.get(delivery_id)
            if record is not None and record.next_retry_at is not None:
                record.next_retry_at = None
                await self.store.put(record)
            logger.info("Cancelled delivery retries", delivery_id=delivery_id)
        return cancelled

    def get_retry_queue_status(self) -> list[RetryQueueEntry]:
        return [
            RetryQueueEntry(
                delivery_id=entry.delivery_id,
                channel=entry.channel,
                attempts=entry.attempts,
                next_retry_at=entry.next_retry_at,
            )
            for entry in self._queue.values()
        ]

    def has_pending(self, delivery_id: str) -> bool:
        return delivery_id in self._queue

    async def shutdown(self) -> None:
        """Cancel every outstanding retry and refuse new ones."""
        async with self._lock:
            self._closed = True
            entries = list(self._queue.values())
            self._queue.clear()
            for entry in entries:
                self._cancel_entry(entry)
            metrics.set_retry_queue_size(0)

        current = asyncio.current_task()
        tasks = [e.task for e in entries if e.task is not None and e.task is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Retry scheduler stopped", cancelled=len(entries))

    def _cancel_entry(self, entry: ScheduledRetry | None) -> bool:
        if entry is None:
            return False
        entry.token.cancel()
        # A running retry finishes its send and then sees the token. A retry
        # that reschedules its own delivery must not cancel itself.
        if (
            entry.task is not None
            and not entry.running
            and entry.task is not asyncio.current_task()
        ):
            entry.task.cancel()
        return True

    async def _fire(self, entry: ScheduledRetry, delay_seconds: float) -> None:
        try:
            await self.sleep(delay_seconds)
            async with self._lock:
                if entry.token.cancelled or self._queue.get(entry.delivery_id) is not entry:
                    return
                entry.running = True
            await self._retry_delivery(entry)
        except Exception as e:
            logger.error(
                "Delivery retry failed",
                delivery_id=entry.delivery_id,
                error=str(e),
                exc_info=True,
            )
        finally:
            # No await between the identity check and the removal
            if self._queue.get(entry.delivery_id) is entry:
                del self._queue[entry.delivery_id]
                metrics.set_retry_queue_size(len(self._queue))

    async def _retry_delivery(self, entry: ScheduledRetry) -> None:
        record = await self._begin_attempt(entry)
        if record is None:
            return

        logger.info(
            "Retrying delivery",
            delivery_id=record.id,
            channel=record.channel.value,
            attempt=record.attempts,
        )
        success, message, external_id = await self._send(record)

        if entry.token.cancelled:
            logger.info(
                "Retry cancelled while in flight, discarding outcome",
                delivery_id=record.id,
                attempt=record.attempts,
            )
            return

        now = self.clock()
        record.updated_at = now
        if success:
            record.status = DeliveryStatus.DELIVERED
            record.delivered_at = now
            record.failure_reason = None
            record.external_id = external_id or record.external_id
        else:
            record.status = DeliveryStatus.FAILED
            record.failure_reason = message

        if self._outcome_handler is None:
            await self.store.put(record)
            return
        await self._outcome_handler(record)

    async def _begin_attempt(self, entry: ScheduledRetry) -> DeliveryRecord | None:
        """Mark the retried attempt as in flight, or return None to abandon it.

        Held under the delivery's lock, so the outcome that armed this retry
        is fully persisted before the record is read back.
        """
        lock = self.delivery_locks(entry.delivery_id)
        async with lock:
            if entry.token.cancelled:
                return None

            record = await self.store.get(entry.delivery_id)
            if record is None:
                logger.info("Delivery removed before retry", delivery_id=entry.delivery_id)
                return None

            if not await self.breakers.should_attempt_delivery(record.channel):
                logger.info(
                    "Circuit breaker open, aborting retry",
                    delivery_id=record.id,
                    channel=record.channel.value,
                )
                return None

            now = self.clock()
            record.attempts += 1
            record.status = DeliveryStatus.PENDING
            record.last_attempt_at = now
            record.updated_at = now
            record.next_retry_at = None
            await self.store.put(record)
        return record

    async def _send(self, record: DeliveryRecord) -> SendResult:
        sender = self.senders.get(record.channel)
        if sender is None:
            return (False, f"{record.channel.value} sender not configured", None)

        try:
            return await sender.send(record.destination, dict(record.payload))
        except Exception as e:
            logger.error(
                "Channel sender raised",
                delivery_id=record.id,
                channel=record.channel.value,
                error=str(e),
            )
            return (False, str(e), None)
