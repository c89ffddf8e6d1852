"""Notification delivery reliability service.

Owns the delivery store, rule registry, per-channel circuit breakers, retry
scheduler, tracker and statistics aggregator, and exposes the operations the
notification dispatch layer and administrative surfaces call.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Mapping

import structlog

from notify_reliability.core.config import Settings, settings as default_settings
from notify_reliability.models.notification_delivery import DeliveryChannel, DeliveryStatus
from notify_reliability.services.delivery.circuit_breaker import CircuitBreakerManager
from notify_reliability.services.delivery.domain import (
    CircuitBreakerState,
    DeliveryAttempt,
    DeliveryRecord,
    RetryQueueEntry,
    utcnow,
)
from notify_reliability.services.delivery.retry_scheduler import RetryScheduler
from notify_reliability.services.delivery.rules import (
    DeliveryRule,
    DeliveryRuleRegistry,
    DeliveryRuleUpdate,
)
from notify_reliability.services.delivery.senders import ChannelSender
from notify_reliability.services.delivery.stats import (
    DeliveryStats,
    OverallStats,
    StatsAggregator,
    StatsPeriod,
)
from notify_reliability.services.delivery.store import DeliveryStore, InMemoryDeliveryStore
from notify_reliability.services.delivery.tracker import DeliveryStatusReport, DeliveryTracker

logger = structlog.get_logger()


class NotificationDeliveryService:
    """
    Delivery tracking with per-channel circuit breakers and scheduled retries.

    Construct one per process, call start() to launch the stats cache
    housekeeping task and shutdown() to stop it and cancel every outstanding
    retry. Can also be used as an async context manager.
    """

    def __init__(
        self,
        store: DeliveryStore | None = None,
        senders: Mapping[DeliveryChannel, ChannelSender] | None = None,
        config: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or default_settings
        self.clock = clock
        self.store = store or InMemoryDeliveryStore()
        unit = timedelta(seconds=self.config.retry_interval_unit_seconds)

        self.rules = DeliveryRuleRegistry()
        self.breakers = CircuitBreakerManager(
            rules=self.rules,
            store=self.store,
            clock=clock,
            failure_window=timedelta(minutes=self.config.breaker_window_minutes),
            duration_unit=unit,
        )
        self.scheduler = RetryScheduler(
            rules=self.rules,
            breakers=self.breakers,
            store=self.store,
            senders=senders,
            clock=clock,
            sleep=sleep,
            interval_unit=unit,
        )
        self.tracker = DeliveryTracker(
            store=self.store,
            breakers=self.breakers,
            scheduler=self.scheduler,
            clock=clock,
        )
        self.stats = StatsAggregator(
            store=self.store,
            breakers=self.breakers,
            clock=clock,
            cache_ttl=timedelta(seconds=self.config.stats_cache_ttl_seconds),
        )
        self._running = False
        self._housekeeping_task: asyncio.Task | None = None

    async def __aenter__(self) -> "NotificationDeliveryService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    # ===========================
    # Lifecycle
    # ===========================

    async def start(self) -> None:
        """Start the stats cache housekeeping loop."""
        if self._running:
            return
        self._running = True
        self._housekeeping_task = asyncio.create_task(
            self._housekeeping_loop(),
            name="delivery-stats-housekeeping",
        )
        logger.info(
            "Delivery service started",
            sweep_seconds=self.config.stats_cache_sweep_seconds,
        )

    async def shutdown(self) -> None:
        """Stop housekeeping and cancel every outstanding retry."""
        self._running = False
        if self._housekeeping_task:
            self._housekeeping_task.cancel()
            try:
                await self._housekeeping_task
            except asyncio.CancelledError:
                pass
            self._housekeeping_task = None
        await self.scheduler.shutdown()
        await self.store.close()
        logger.info("Delivery service stopped")

    async def _housekeeping_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.stats_cache_sweep_seconds)
            self.stats.clear_cache()

    # ===========================
    # Delivery tracking
    # ===========================

    def register_sender(self, channel: DeliveryChannel | str, sender: ChannelSender) -> None:
        self.scheduler.register_sender(DeliveryChannel(channel), sender)

    async def track_delivery(self, record: DeliveryRecord) -> DeliveryAttempt:
        return await self.tracker.track_delivery(record)

    async def should_attempt_delivery(self, channel: DeliveryChannel | str) -> bool:
        return await self.breakers.should_attempt_delivery(channel)

    async def get_delivery_status(self, delivery_id: str) -> DeliveryStatusReport:
        return await self.tracker.get_delivery_status(delivery_id)

    async def cleanup_old_deliveries(self, older_than_days: int | None = None) -> int:
        if older_than_days is None:
            older_than_days = self.config.retention_days
        return await self.tracker.cleanup_old_deliveries(older_than_days)

    def is_terminal(self, record: DeliveryRecord) -> bool:
        """Whether a delivery will receive no further scheduled retries."""
        if record.status in (DeliveryStatus.DELIVERED, DeliveryStatus.BOUNCED):
            return True
        rule = self.rules.get_rule(record.channel)
        return (
            record.status == DeliveryStatus.FAILED
            and record.attempts >= rule.max_retries
            and not self.scheduler.has_pending(record.id)
        )

    # ===========================
    # Statistics
    # ===========================

    async def get_channel_stats(
        self,
        channel: DeliveryChannel | str,
        period: StatsPeriod | str = StatsPeriod.DAY,
    ) -> DeliveryStats:
        return await self.stats.get_channel_stats(channel, period)

    async def get_overall_stats(self, period: StatsPeriod | str = StatsPeriod.DAY) -> OverallStats:
        return await self.stats.get_overall_stats(period)

    # ===========================
    # Circuit breakers
    # ===========================

    def get_circuit_breaker_states(self) -> list[CircuitBreakerState]:
        return self.breakers.get_states()

    async def reset_circuit_breaker(self, channel: DeliveryChannel | str) -> bool:
        return await self.breakers.reset(channel)

    # ===========================
    # Rules
    # ===========================

    async def update_delivery_rule(
        self,
        channel: DeliveryChannel | str,
        updates: dict[str, Any] | DeliveryRuleUpdate,
    ) -> DeliveryRule:
        return await self.rules.update_rule(channel, updates)

    def get_delivery_rules(self) -> list[DeliveryRule]:
        return self.rules.list_rules()

    # ===========================
    # Retry queue
    # ===========================

    async def cancel_retries(self, delivery_id: str) -> bool:
        return await self.scheduler.cancel_retries(delivery_id)

    def get_retry_queue_status(self) -> list[RetryQueueEntry]:
        return self.scheduler.get_retry_queue_status()
