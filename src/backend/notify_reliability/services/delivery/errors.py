"""Exceptions raised by the delivery reliability services."""

from typing import Any


class DeliveryError(Exception):
    """Base exception for delivery tracking errors."""

    pass


class RuleValidationError(DeliveryError):
    """Raised when a delivery rule update is malformed."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.errors = errors or []


class DeliveryNotFoundError(DeliveryError):
    """Raised when a delivery id is unknown."""

    def __init__(self, delivery_id: str):
        super().__init__(f"Delivery {delivery_id} not found")
        self.delivery_id = delivery_id


class UnknownChannelError(DeliveryError):
    """Raised when a channel name is not one of the supported channels."""

    def __init__(self, channel: str):
        super().__init__(f"Unknown delivery channel: {channel}")
        self.channel = channel
