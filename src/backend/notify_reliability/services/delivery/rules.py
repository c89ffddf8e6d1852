"""Per-channel delivery rules: retry budget, backoff and breaker policy."""

import asyncio
from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, ValidationError

from notify_reliability.models.notification_delivery import DeliveryChannel
from notify_reliability.services.delivery.domain import (
    BackoffStrategy,
    new_id,
    parse_channel,
    utcnow,
)
from notify_reliability.services.delivery.errors import RuleValidationError

logger = structlog.get_logger()


class DeliveryRule(BaseModel):
    """Retry and circuit breaker policy for one channel.

    Intervals and the breaker duration are expressed in minutes.
    """

    id: str = Field(default_factory=new_id)
    name: str = Field(min_length=1, max_length=100)
    channel: DeliveryChannel
    max_retries: int = Field(ge=0, le=10)
    retry_intervals: list[PositiveFloat] = Field(min_length=1)
    backoff_strategy: BackoffStrategy
    failure_threshold: float = Field(ge=0, le=100)
    circuit_breaker_duration: float = Field(gt=0)
    active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class DeliveryRuleUpdate(BaseModel):
    """Partial rule update. Unknown fields are rejected."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=100)
    max_retries: int | None = Field(default=None, ge=0, le=10)
    retry_intervals: list[PositiveFloat] | None = Field(default=None, min_length=1)
    backoff_strategy: BackoffStrategy | None = None
    failure_threshold: float | None = Field(default=None, ge=0, le=100)
    circuit_breaker_duration: float | None = Field(default=None, gt=0)
    active: bool | None = None


# Channel defaults. SMS is costly so it retries less and tolerates more failure.
DEFAULT_RULES: dict[DeliveryChannel, dict[str, Any]] = {
    DeliveryChannel.EMAIL: {
        "name": "Email Delivery Rule",
        "max_retries": 3,
        "retry_intervals": [5, 15, 60],
        "backoff_strategy": BackoffStrategy.EXPONENTIAL,
        "failure_threshold": 20,
        "circuit_breaker_duration": 30,
    },
    DeliveryChannel.SMS: {
        "name": "SMS Delivery Rule",
        "max_retries": 2,
        "retry_intervals": [2, 10],
        "backoff_strategy": BackoffStrategy.FIXED,
        "failure_threshold": 30,
        "circuit_breaker_duration": 15,
    },
    DeliveryChannel.PUSH: {
        "name": "Push Notification Rule",
        "max_retries": 3,
        "retry_intervals": [1, 5, 30],
        "backoff_strategy": BackoffStrategy.LINEAR,
        "failure_threshold": 25,
        "circuit_breaker_duration": 20,
    },
    DeliveryChannel.IN_APP: {
        "name": "In-App Notification Rule",
        "max_retries": 1,
        "retry_intervals": [1],
        "backoff_strategy": BackoffStrategy.FIXED,
        "failure_threshold": 50,
        "circuit_breaker_duration": 10,
    },
}


class DeliveryRuleRegistry:
    """Holds exactly one active rule per channel.

    Reads return the current rule object without locking; updates build a new
    rule and swap it in under the registry lock so readers never observe a
    half-applied update.
    """

    def __init__(self, overrides: dict[DeliveryChannel, dict[str, Any]] | None = None):
        self._rules: dict[DeliveryChannel, DeliveryRule] = {}
        self._lock = asyncio.Lock()
        for channel, defaults in DEFAULT_RULES.items():
            values = {**defaults, **(overrides or {}).get(channel, {})}
            self._rules[channel] = DeliveryRule(channel=channel, **values)

    def get_rule(self, channel: DeliveryChannel | str) -> DeliveryRule:
        """Get the rule for a channel. Every supported channel has one."""
        return self._rules[parse_channel(channel)]

    def list_rules(self) -> list[DeliveryRule]:
        return list(self._rules.values())

    async def update_rule(
        self,
        channel: DeliveryChannel | str,
        updates: dict[str, Any] | DeliveryRuleUpdate,
    ) -> DeliveryRule:
        """Merge a partial update into the channel's rule.

        Raises:
            RuleValidationError: If the update is malformed. The existing rule
                is left untouched.
        """
        channel = parse_channel(channel)
        if isinstance(updates, DeliveryRuleUpdate):
            validated = updates
        else:
            try:
                validated = DeliveryRuleUpdate.model_validate(updates)
            except ValidationError as e:
                raise RuleValidationError(
                    f"Invalid delivery rule update for {channel.value}",
                    errors=e.errors(include_url=False, include_context=False),
                ) from e

        changes = validated.model_dump(exclude_unset=True, exclude_none=True)

        async with self._lock:
            current = self._rules[channel]
            try:
                rule = DeliveryRule.model_validate(
                    {**current.model_dump(), **changes, "updated_at": utcnow()}
                )
            except ValidationError as e:
                raise RuleValidationError(
                    f"Invalid delivery rule update for {channel.value}",
                    errors=e.errors(include_url=False, include_context=False),
                ) from e
            self._rules[channel] = rule

        logger.info(
            "Delivery rule updated",
            channel=channel.value,
            fields=sorted(changes),
        )
        return rule
