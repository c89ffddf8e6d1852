"""SQLAlchemy-backed delivery store."""

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from notify_reliability.models.base import Base
from notify_reliability.models.notification_delivery import (
    DeliveryChannel,
    NotificationDelivery,
    NotificationDeliveryAttempt,
)
from notify_reliability.services.delivery.domain import (
    DeliveryAttempt,
    DeliveryRecord,
    ensure_utc,
)
from notify_reliability.services.delivery.store import DeliveryStore


def _to_record(row: NotificationDelivery) -> DeliveryRecord:
    return DeliveryRecord(
        id=row.id,
        notification_id=row.notification_id,
        user_id=row.user_id,
        channel=row.channel,
        status=row.status,
        attempts=row.attempts,
        destination=row.destination,
        payload=dict(row.payload or {}),
        last_attempt_at=row.last_attempt_at,
        delivered_at=row.delivered_at,
        failure_reason=row.failure_reason,
        external_id=row.external_id,
        next_retry_at=row.next_retry_at,
        metadata=dict(row.extra or {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_attempt(row: NotificationDeliveryAttempt) -> DeliveryAttempt:
    return DeliveryAttempt(
        id=row.id,
        delivery_id=row.delivery_id,
        attempt_number=row.attempt_number,
        status=row.status,
        # SQLite hands back naive datetimes even for timezone-aware columns
        timestamp=ensure_utc(row.timestamp),
        response_code=row.response_code,
        response_message=row.response_message,
        error_details=row.error_details,
        metadata=dict(row.extra or {}),
    )


async def create_tables(engine: AsyncEngine) -> None:
    """Create the delivery tables if they do not exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class SqlDeliveryStore(DeliveryStore):
    """Durable store over the notification_deliveries tables.

    Every call runs in its own session and commits before returning. Records
    returned are detached copies; callers persist changes with put().
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: AsyncEngine | None = None,
    ):
        self.session_factory = session_factory
        self.engine = engine

    async def get(self, delivery_id: str) -> DeliveryRecord | None:
        async with self.session_factory() as db:
            row = await db.get(NotificationDelivery, delivery_id)
            return _to_record(row) if row else None

    async def put(self, record: DeliveryRecord) -> None:
        async with self.session_factory() as db:
            row = await db.get(NotificationDelivery, record.id)
            if row is None:
                row = NotificationDelivery(id=record.id, created_at=record.created_at)
                db.add(row)

            row.notification_id = record.notification_id
            row.user_id = record.user_id
            row.channel = record.channel.value
            row.status = record.status.value
            row.attempts = record.attempts
            row.destination = record.destination
            row.payload = dict(record.payload)
            row.last_attempt_at = record.last_attempt_at
            row.delivered_at = record.delivered_at
            row.failure_reason = record.failure_reason
            row.external_id = record.external_id
            row.next_retry_at = record.next_retry_at
            row.extra = dict(record.metadata)
            row.updated_at = record.updated_at
            await db.commit()

    async def delete(self, delivery_id: str) -> bool:
        async with self.session_factory() as db:
            await db.execute(
                delete(NotificationDeliveryAttempt).where(
                    NotificationDeliveryAttempt.delivery_id == delivery_id
                )
            )
            result = await db.execute(
                delete(NotificationDelivery).where(NotificationDelivery.id == delivery_id)
            )
            await db.commit()
            return result.rowcount > 0

    async def append_attempt(self, attempt: DeliveryAttempt) -> None:
        async with self.session_factory() as db:
            db.add(
                NotificationDeliveryAttempt(
                    id=attempt.id,
                    delivery_id=attempt.delivery_id,
                    attempt_number=attempt.attempt_number,
                    status=attempt.status.value,
                    timestamp=attempt.timestamp,
                    response_code=attempt.response_code,
                    response_message=attempt.response_message,
                    error_details=attempt.error_details,
                    extra=dict(attempt.metadata),
                )
            )
            await db.commit()

    async def list_attempts(self, delivery_id: str) -> list[DeliveryAttempt]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(NotificationDeliveryAttempt)
                .where(NotificationDeliveryAttempt.delivery_id == delivery_id)
                .order_by(NotificationDeliveryAttempt.timestamp)
            )
            return [_to_attempt(row) for row in result.scalars().all()]

    async def scan_window(
        self,
        channel: DeliveryChannel,
        start: datetime,
        end: datetime | None = None,
    ) -> list[DeliveryRecord]:
        query = select(NotificationDelivery).where(
            NotificationDelivery.channel == DeliveryChannel(channel).value,
            NotificationDelivery.created_at >= start,
        )
        if end is not None:
            query = query.where(NotificationDelivery.created_at < end)

        async with self.session_factory() as db:
            result = await db.execute(query)
            return [_to_record(row) for row in result.scalars().all()]

    async def scan_older_than(self, cutoff: datetime) -> list[str]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(NotificationDelivery.id).where(NotificationDelivery.created_at < cutoff)
            )
            return list(result.scalars().all())

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
