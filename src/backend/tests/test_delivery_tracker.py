"""Tests for delivery tracking, status queries and cleanup."""

from datetime import timedelta

import pytest

from notify_reliability.models.notification_delivery import DeliveryStatus
from notify_reliability.services.delivery.domain import CircuitState, DeliveryRecord
from notify_reliability.services.delivery.errors import DeliveryNotFoundError

from conftest import seed_records


class TestTrackDelivery:
    """Tests for recording attempt outcomes."""

    @pytest.mark.asyncio
    async def test_track_appends_attempt(self, service, make_record, clock):
        record = make_record(
            status=DeliveryStatus.SENT,
            metadata={"response_code": 202, "response_message": "Accepted"},
        )

        attempt = await service.track_delivery(record)

        assert attempt.delivery_id == record.id
        assert attempt.attempt_number == 1
        assert attempt.status == DeliveryStatus.SENT
        assert attempt.timestamp == clock.now
        assert attempt.response_code == 202
        assert attempt.response_message == "Accepted"

        report = await service.get_delivery_status(record.id)
        assert report.record.status == DeliveryStatus.SENT
        assert report.record.last_attempt_at == clock.now
        assert report.attempts == [attempt]

    @pytest.mark.asyncio
    async def test_delivered_sets_delivered_at(self, service, make_record, clock):
        record = make_record(status=DeliveryStatus.DELIVERED)
        clock.advance(seconds=3)

        await service.track_delivery(record)

        report = await service.get_delivery_status(record.id)
        assert report.record.delivered_at == clock.now

    @pytest.mark.asyncio
    async def test_failure_schedules_retry(self, service, make_record, clock):
        await seed_records(service.store, "email", DeliveryStatus.DELIVERED, 9, clock.now)
        record = make_record(failure_reason="Mailbox full")

        attempt = await service.track_delivery(record)

        assert attempt.error_details == "Mailbox full"
        assert service.scheduler.has_pending(record.id)
        stored = await service.store.get(record.id)
        assert stored.next_retry_at == clock.now + timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_failure_that_trips_breaker_is_not_retried(self, service, make_record):
        record = make_record()

        await service.track_delivery(record)

        assert service.breakers.get_state("email").state == CircuitState.OPEN
        assert not service.scheduler.has_pending(record.id)
        assert await service.should_attempt_delivery("email") is False

    @pytest.mark.asyncio
    async def test_bounce_is_not_retried(self, service, make_record, clock):
        await seed_records(service.store, "email", DeliveryStatus.DELIVERED, 9, clock.now)
        record = make_record(status=DeliveryStatus.BOUNCED)

        await service.track_delivery(record)

        assert not service.scheduler.has_pending(record.id)
        assert service.is_terminal(record)

    @pytest.mark.asyncio
    async def test_success_cancels_pending_retry(self, service, make_record, clock):
        await seed_records(service.store, "email", DeliveryStatus.DELIVERED, 9, clock.now)
        record = make_record()
        await service.track_delivery(record)
        assert service.scheduler.has_pending(record.id)

        clock.advance(minutes=1)
        delivered = make_record(id=record.id, status=DeliveryStatus.DELIVERED, attempts=1)
        await service.track_delivery(delivered)

        assert not service.scheduler.has_pending(record.id)
        report = await service.get_delivery_status(record.id)
        assert report.record.status == DeliveryStatus.DELIVERED
        assert report.record.next_retry_at is None
        assert [a.status for a in report.attempts] == [
            DeliveryStatus.FAILED,
            DeliveryStatus.DELIVERED,
        ]

    @pytest.mark.asyncio
    async def test_attempt_count_never_goes_backwards(self, service, make_record, clock):
        record = make_record(status=DeliveryStatus.SENT, attempts=3)
        await service.track_delivery(record)

        clock.advance(minutes=1)
        stale = make_record(id=record.id, status=DeliveryStatus.DELIVERED, attempts=1)
        attempt = await service.track_delivery(stale)

        assert attempt.attempt_number == 3
        assert (await service.store.get(record.id)).attempts == 3

    @pytest.mark.asyncio
    async def test_creation_time_preserved(self, service, make_record, clock):
        record = make_record(status=DeliveryStatus.SENT)
        created = record.created_at
        await service.track_delivery(record)

        clock.advance(minutes=2)
        later = make_record(id=record.id, status=DeliveryStatus.DELIVERED)
        await service.track_delivery(later)

        stored = await service.store.get(record.id)
        assert stored.created_at == created
        assert stored.updated_at == clock.now


class TestDeliveryStatus:
    """Tests for delivery status queries."""

    @pytest.mark.asyncio
    async def test_unknown_delivery(self, service):
        with pytest.raises(DeliveryNotFoundError) as exc_info:
            await service.get_delivery_status("missing")

        assert exc_info.value.delivery_id == "missing"

    @pytest.mark.asyncio
    async def test_attempts_oldest_first(self, service, make_record, clock):
        record = make_record(status=DeliveryStatus.SENT)
        await service.track_delivery(record)
        for status in (DeliveryStatus.SENT, DeliveryStatus.DELIVERED):
            clock.advance(seconds=30)
            await service.track_delivery(make_record(id=record.id, status=status, attempts=2))

        report = await service.get_delivery_status(record.id)

        timestamps = [a.timestamp for a in report.attempts]
        assert timestamps == sorted(timestamps)
        assert report.attempts[-1].status == DeliveryStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_report_is_a_snapshot(self, service, make_record):
        record = make_record(status=DeliveryStatus.SENT, metadata={"provider": "smtp"})
        await service.track_delivery(record)

        report = await service.get_delivery_status(record.id)
        report.record.status = DeliveryStatus.BOUNCED
        report.record.metadata["provider"] = "changed"

        stored = await service.store.get(record.id)
        assert stored.status == DeliveryStatus.SENT
        assert stored.metadata == {"provider": "smtp"}

    @pytest.mark.asyncio
    async def test_report_to_dict(self, service, make_record):
        record = make_record(status=DeliveryStatus.SENT)
        await service.track_delivery(record)

        data = (await service.get_delivery_status(record.id)).to_dict()

        assert data["delivery"]["id"] == record.id
        assert data["delivery"]["channel"] == "email"
        assert data["attempts"][0]["status"] == "sent"


class TestCleanup:
    """Tests for retention cleanup."""

    @pytest.mark.asyncio
    async def test_removes_old_deliveries_and_attempts(self, service, make_record, clock):
        old = make_record(status=DeliveryStatus.SENT, created_at=clock.now - timedelta(days=40))
        recent = make_record(status=DeliveryStatus.SENT, created_at=clock.now - timedelta(days=5))
        await service.track_delivery(old)
        await service.track_delivery(recent)

        removed = await service.cleanup_old_deliveries()

        assert removed == 1
        with pytest.raises(DeliveryNotFoundError):
            await service.get_delivery_status(old.id)
        assert await service.store.list_attempts(old.id) == []
        assert (await service.get_delivery_status(recent.id)).record.id == recent.id

    @pytest.mark.asyncio
    async def test_cleanup_cancels_pending_retries(self, service, clock):
        old = DeliveryRecord(
            notification_id="n-old",
            user_id="user-1",
            channel="email",
            status=DeliveryStatus.FAILED,
            attempts=1,
            created_at=clock.now - timedelta(days=10),
        )
        await service.store.put(old)
        await service.scheduler.schedule_retry(old)

        removed = await service.cleanup_old_deliveries(older_than_days=7)

        assert removed == 1
        assert not service.scheduler.has_pending(old.id)

    @pytest.mark.asyncio
    async def test_cleanup_with_nothing_old(self, service, make_record):
        await service.track_delivery(make_record(status=DeliveryStatus.SENT))

        assert await service.cleanup_old_deliveries(older_than_days=1) == 0
