"""Per-channel circuit breakers driven by tracked delivery outcomes.

States:
- CLOSED: Normal operation, deliveries pass through
- OPEN: Trailing failure rate reached the rule threshold, deliveries withheld
- HALF_OPEN: Open duration elapsed, deliveries pass through as probes

Transitions happen only when an outcome is recorded, when a channel is
queried, or on manual reset. Open to half-open is pulled lazily on the next
access; nothing runs on a timer.
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable

import structlog

from notify_reliability.core import metrics
from notify_reliability.models.notification_delivery import DeliveryChannel, DeliveryStatus
from notify_reliability.services.delivery.domain import (
    ALL_CHANNELS,
    FAILURE_STATUSES,
    CircuitBreakerState,
    CircuitState,
    parse_channel,
    utcnow,
)
from notify_reliability.services.delivery.errors import UnknownChannelError
from notify_reliability.services.delivery.rules import DeliveryRule, DeliveryRuleRegistry
from notify_reliability.services.delivery.store import DeliveryStore

logger = structlog.get_logger()


class CircuitBreakerManager:
    """Owns one breaker per channel, each guarded by its own lock."""

    def __init__(
        self,
        rules: DeliveryRuleRegistry,
        store: DeliveryStore,
        clock: Callable[[], datetime] = utcnow,
        failure_window: timedelta = timedelta(hours=1),
        duration_unit: timedelta = timedelta(minutes=1),
    ):
        self.rules = rules
        self.store = store
        self.clock = clock
        self.failure_window = failure_window
        self.duration_unit = duration_unit
        self._states = {channel: CircuitBreakerState(channel=channel) for channel in ALL_CHANNELS}
        self._locks = {channel: asyncio.Lock() for channel in ALL_CHANNELS}
        for channel in ALL_CHANNELS:
            metrics.set_circuit_breaker_state(channel.value, CircuitState.CLOSED.value)

    async def failure_rate(self, channel: DeliveryChannel, now: datetime | None = None) -> float:
        """Percentage of failed or bounced deliveries over the trailing window."""
        now = now or self.clock()
        records = await self.store.scan_window(channel, now - self.failure_window)
        if not records:
            return 0.0
        failures = sum(1 for r in records if r.status in FAILURE_STATUSES)
        return failures / len(records) * 100

    async def record_outcome(
        self,
        channel: DeliveryChannel | str,
        status: DeliveryStatus | str,
    ) -> CircuitBreakerState:
        """Re-evaluate a channel's breaker after a delivery outcome."""
        channel = parse_channel(channel)
        status = DeliveryStatus(status)
        rule = self.rules.get_rule(channel)

        async with self._locks[channel]:
            breaker = self._states[channel]
            now = self.clock()
            self._maybe_half_open(breaker, now)

            if status in FAILURE_STATUSES:
                breaker.failure_count += 1
                breaker.last_failure_time = now

                if breaker.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN):
                    rate = await self.failure_rate(channel, now)
                    if rate >= rule.failure_threshold:
                        self._open(breaker, rule, now, rate)

            elif status == DeliveryStatus.DELIVERED and breaker.state == CircuitState.HALF_OPEN:
                breaker.state = CircuitState.CLOSED
                breaker.failure_count = 0
                breaker.opened_at = None
                breaker.next_retry_time = None
                logger.info("Circuit breaker closed", channel=channel.value)

            metrics.set_circuit_breaker_state(channel.value, breaker.state.value)
            return replace(breaker)

    async def should_attempt_delivery(self, channel: DeliveryChannel | str) -> bool:
        """False only while the channel's breaker is open."""
        channel = parse_channel(channel)
        async with self._locks[channel]:
            breaker = self._states[channel]
            self._maybe_half_open(breaker, self.clock())
            return breaker.state != CircuitState.OPEN

    async def reset(self, channel: DeliveryChannel | str) -> bool:
        """Force a channel's breaker closed and clear its counters."""
        try:
            channel = parse_channel(channel)
        except UnknownChannelError:
            return False

        async with self._locks[channel]:
            breaker = self._states[channel]
            previous = breaker.state
            breaker.state = CircuitState.CLOSED
            breaker.failure_count = 0
            breaker.last_failure_time = None
            breaker.opened_at = None
            breaker.next_retry_time = None
            metrics.set_circuit_breaker_state(channel.value, breaker.state.value)

        logger.info(
            "Circuit breaker manually reset",
            channel=channel.value,
            previous_state=previous.value,
        )
        return True

    def get_state(self, channel: DeliveryChannel | str) -> CircuitBreakerState:
        return replace(self._states[parse_channel(channel)])

    def get_states(self) -> list[CircuitBreakerState]:
        return [replace(self._states[channel]) for channel in ALL_CHANNELS]

    def is_tripped(self, channel: DeliveryChannel | str) -> bool:
        """True while open or half-open."""
        return self._states[parse_channel(channel)].state != CircuitState.CLOSED

    def _open(
        self,
        breaker: CircuitBreakerState,
        rule: DeliveryRule,
        now: datetime,
        rate: float,
    ) -> None:
        previous = breaker.state
        breaker.state = CircuitState.OPEN
        breaker.opened_at = now
        breaker.next_retry_time = now + self.duration_unit * rule.circuit_breaker_duration
        logger.warning(
            "Circuit breaker opened",
            channel=breaker.channel.value,
            previous_state=previous.value,
            failure_rate=round(rate, 1),
            failure_threshold=rule.failure_threshold,
            next_retry_time=breaker.next_retry_time.isoformat(),
        )

    def _maybe_half_open(self, breaker: CircuitBreakerState, now: datetime) -> None:
        if (
            breaker.state == CircuitState.OPEN
            and breaker.next_retry_time is not None
            and now >= breaker.next_retry_time
        ):
            breaker.state = CircuitState.HALF_OPEN
            metrics.set_circuit_breaker_state(breaker.channel.value, breaker.state.value)
            logger.info("Circuit breaker half-open", channel=breaker.channel.value)
