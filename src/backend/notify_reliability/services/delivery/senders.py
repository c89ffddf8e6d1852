"""Channel sender port.

A channel sender attempts one delivery of a payload to a destination and
returns a tuple of (success, message, external_id), the same contract the
provider-specific email/SMS/push delivery services follow:
- success: True if the provider accepted the message
- message: Status message, or the failure reason
- external_id: Provider correlation id (message id, SID, ...)
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

SendResult = tuple[bool, str, str | None]


class ChannelSender(ABC):
    """Delivers a payload over one channel."""

    @abstractmethod
    async def send(self, destination: str | None, payload: dict[str, Any]) -> SendResult:
        """Attempt delivery.

        Args:
            destination: Channel address (email, phone number, device token, user id)
            payload: Rendered message content

        Returns:
            Tuple of (success, message, external_id)
        """
        pass


class CallableSender(ChannelSender):
    """Adapts a coroutine function to the ChannelSender interface."""

    def __init__(self, func: Callable[[str | None, dict[str, Any]], Awaitable[SendResult]]):
        self._func = func

    async def send(self, destination: str | None, payload: dict[str, Any]) -> SendResult:
        return await self._func(destination, payload)
