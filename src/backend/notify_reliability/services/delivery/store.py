"""Storage port for delivery records and their attempt logs."""

from abc import ABC, abstractmethod
from datetime import datetime

from notify_reliability.models.notification_delivery import DeliveryChannel
from notify_reliability.services.delivery.domain import DeliveryAttempt, DeliveryRecord


class DeliveryStore(ABC):
    """
    Persistence boundary for the delivery tracker.

    Implementations own durability only. Ordering and locking decisions stay
    in the services that call them, so a durable backend can be swapped in
    without touching breaker or retry logic.
    """

    @abstractmethod
    async def get(self, delivery_id: str) -> DeliveryRecord | None:
        """Fetch a record by id, or None."""

    @abstractmethod
    async def put(self, record: DeliveryRecord) -> None:
        """Insert or replace a record."""

    @abstractmethod
    async def delete(self, delivery_id: str) -> bool:
        """Delete a record together with its attempts. Returns whether it existed."""

    @abstractmethod
    async def append_attempt(self, attempt: DeliveryAttempt) -> None:
        """Append an entry to a delivery's attempt log."""

    @abstractmethod
    async def list_attempts(self, delivery_id: str) -> list[DeliveryAttempt]:
        """Attempts for a delivery, oldest first."""

    @abstractmethod
    async def scan_window(
        self,
        channel: DeliveryChannel,
        start: datetime,
        end: datetime | None = None,
    ) -> list[DeliveryRecord]:
        """Records on a channel created in [start, end)."""

    @abstractmethod
    async def scan_older_than(self, cutoff: datetime) -> list[str]:
        """Ids of records created before cutoff."""

    async def close(self) -> None:
        """Release backend resources."""
        return None


class InMemoryDeliveryStore(DeliveryStore):
    """Process-local store.

    Records are kept by reference; the tracker mutates them in place. Appends
    never await, so on a single event loop they cannot interleave.
    """

    def __init__(self):
        self._records: dict[str, DeliveryRecord] = {}
        self._attempts: dict[str, list[DeliveryAttempt]] = {}

    async def get(self, delivery_id: str) -> DeliveryRecord | None:
        return self._records.get(delivery_id)

    async def put(self, record: DeliveryRecord) -> None:
        self._records[record.id] = record

    async def delete(self, delivery_id: str) -> bool:
        existed = self._records.pop(delivery_id, None) is not None
        self._attempts.pop(delivery_id, None)
        return existed

    async def append_attempt(self, attempt: DeliveryAttempt) -> None:
        self._attempts.setdefault(attempt.delivery_id, []).append(attempt)

    async def list_attempts(self, delivery_id: str) -> list[DeliveryAttempt]:
        return sorted(self._attempts.get(delivery_id, []), key=lambda a: a.timestamp)

    async def scan_window(
        self,
        channel: DeliveryChannel,
        start: datetime,
        end: datetime | None = None,
    ) -> list[DeliveryRecord]:
        return [
            record
            for record in self._records.values()
            if record.channel == channel
            and record.created_at >= start
            and (end is None or record.created_at < end)
        ]

    async def scan_older_than(self, cutoff: datetime) -> list[str]:
        return [
            delivery_id
            for delivery_id, record in self._records.items()
            if record.created_at < cutoff
        ]
