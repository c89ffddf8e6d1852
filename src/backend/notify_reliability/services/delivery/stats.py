"""Windowed delivery statistics with a short-lived cache."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

import structlog
from pydantic import BaseModel, ConfigDict

from notify_reliability.models.notification_delivery import DeliveryChannel, DeliveryStatus
from notify_reliability.services.delivery.circuit_breaker import CircuitBreakerManager
from notify_reliability.services.delivery.domain import ALL_CHANNELS, parse_channel, utcnow
from notify_reliability.services.delivery.store import DeliveryStore

logger = structlog.get_logger()


class StatsPeriod(str, Enum):
    """Wall-clock aligned statistics windows."""

    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class DeliveryStats(BaseModel):
    """Delivery metrics for one channel over one period."""

    model_config = ConfigDict(frozen=True)

    channel: DeliveryChannel
    period: StatsPeriod
    total_sent: int
    total_delivered: int
    total_failed: int
    total_bounced: int
    delivery_rate: float          # percentage
    avg_delivery_time_ms: int
    retry_rate: float             # percentage
    circuit_breaker_triggered: bool
    last_updated: datetime


class OverallTotals(BaseModel):
    """Totals across every channel."""

    total_sent: int
    total_delivered: int
    total_failed: int
    delivery_rate: float
    avg_delivery_time_ms: int


class OverallStats(BaseModel):
    """Per-channel stats plus cross-channel totals."""

    period: StatsPeriod
    by_channel: dict[DeliveryChannel, DeliveryStats]
    overall: OverallTotals


def period_start(period: StatsPeriod | str, now: datetime) -> datetime:
    """Start of the wall-clock period containing now.

    Weeks start on Sunday at midnight.
    """
    period = StatsPeriod(period)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == StatsPeriod.HOUR:
        return now.replace(minute=0, second=0, microsecond=0)
    if period == StatsPeriod.DAY:
        return midnight
    if period == StatsPeriod.WEEK:
        # weekday(): Monday=0 ... Sunday=6
        return midnight - timedelta(days=(now.weekday() + 1) % 7)
    return midnight.replace(day=1)


def _percent(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


class StatsAggregator:
    """Computes statistics from delivery records and caches them briefly."""

    def __init__(
        self,
        store: DeliveryStore,
        breakers: CircuitBreakerManager,
        clock: Callable[[], datetime] = utcnow,
        cache_ttl: timedelta = timedelta(minutes=5),
    ):
        self.store = store
        self.breakers = breakers
        self.clock = clock
        self.cache_ttl = cache_ttl
        self._cache: dict[tuple[DeliveryChannel, StatsPeriod], DeliveryStats] = {}

    async def get_channel_stats(
        self,
        channel: DeliveryChannel | str,
        period: StatsPeriod | str,
    ) -> DeliveryStats:
        """Stats for a channel, served from cache while younger than the TTL."""
        channel = parse_channel(channel)
        period = StatsPeriod(period)
        now = self.clock()

        cached = self._cache.get((channel, period))
        if cached is not None and now - cached.last_updated < self.cache_ttl:
            return cached

        records = await self.store.scan_window(channel, period_start(period, now))
        total_sent = len(records)
        total_delivered = sum(1 for r in records if r.status == DeliveryStatus.DELIVERED)
        total_failed = sum(1 for r in records if r.status == DeliveryStatus.FAILED)
        total_bounced = sum(1 for r in records if r.status == DeliveryStatus.BOUNCED)

        delivery_times = [
            (r.delivered_at - r.created_at).total_seconds() * 1000
            for r in records
            if r.status == DeliveryStatus.DELIVERED and r.delivered_at is not None
        ]
        avg_delivery_time = (
            round(sum(delivery_times) / len(delivery_times)) if delivery_times else 0
        )
        retried = sum(1 for r in records if r.attempts > 1)

        stats = DeliveryStats(
            channel=channel,
            period=period,
            total_sent=total_sent,
            total_delivered=total_delivered,
            total_failed=total_failed,
            total_bounced=total_bounced,
            delivery_rate=_percent(total_delivered, total_sent),
            avg_delivery_time_ms=avg_delivery_time,
            retry_rate=_percent(retried, total_sent),
            circuit_breaker_triggered=self.breakers.is_tripped(channel),
            last_updated=now,
        )
        self._cache[(channel, period)] = stats
        return stats

    async def get_overall_stats(self, period: StatsPeriod | str) -> OverallStats:
        """Aggregate every channel; average delivery time is weighted by delivered count."""
        period = StatsPeriod(period)
        by_channel: dict[DeliveryChannel, DeliveryStats] = {}
        total_sent = total_delivered = total_failed = 0
        weighted_time = 0
        delivered_count = 0

        for channel in ALL_CHANNELS:
            stats = await self.get_channel_stats(channel, period)
            by_channel[channel] = stats
            total_sent += stats.total_sent
            total_delivered += stats.total_delivered
            total_failed += stats.total_failed
            if stats.total_delivered:
                weighted_time += stats.avg_delivery_time_ms * stats.total_delivered
                delivered_count += stats.total_delivered

        return OverallStats(
            period=period,
            by_channel=by_channel,
            overall=OverallTotals(
                total_sent=total_sent,
                total_delivered=total_delivered,
                total_failed=total_failed,
                delivery_rate=_percent(total_delivered, total_sent),
                avg_delivery_time_ms=round(weighted_time / delivered_count) if delivered_count else 0,
            ),
        )

    def clear_cache(self) -> int:
        """Drop every cached entry. Returns how many were dropped."""
        count = len(self._cache)
        self._cache.clear()
        if count:
            logger.debug("Delivery stats cache cleared", entries=count)
        return count
