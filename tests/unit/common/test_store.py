import asyncio
from datetime import timedelta

import pytest

from receipt_vault.common.config import SQLStoreConfig, StoreType
from receipt_vault.common.models import (
    DeliveryAttempt,
    DeliveryStatus,
    DomainEvent,
    Job,
    JobState,
    OCRPayload,
    QueueName,
    WebhookSubscription,
    utcnow,
)
from receipt_vault.common.sql_store import SQLStore
from receipt_vault.common.store import MemoryStore, create_store


def make_job(priority=0, **changes):
    return Job(
        queue_name=QueueName.OCR,
        payload=OCRPayload(receipt_id="r1", file_path="/tmp/r1.jpg", user_id="u1"),
        priority=priority,
        max_attempts=3,
        **changes,
    )


@pytest.fixture(params=["memory", "sql"])
async def backend(request, tmp_path):
    """Fixture that runs each test against both store implementations."""
    if request.param == "memory":
        yield MemoryStore()
        return

    store = SQLStore(SQLStoreConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'store.db'}"))
    await store.initialize()
    try:
        yield store
    finally:
        await store.close()


class TestCreateStore:

    def test_create_memory_store(self):
        assert isinstance(create_store(StoreType.MEMORY), MemoryStore)

    def test_create_sql_store(self, tmp_path):
        store = create_store(
            StoreType.SQL, SQLStoreConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'x.db'}")
        )
        assert isinstance(store, SQLStore)

    def test_missing_sql_config(self):
        """Test that an exception is raised when SQL config is missing."""
        with pytest.raises(ValueError, match="no SQL configuration provided"):
            create_store(StoreType.SQL)

    def test_unsupported_store_type(self):
        with pytest.raises(ValueError, match="Unsupported store type"):
            create_store("unsupported")


class TestJobStorage:

    @pytest.mark.asyncio
    async def test_add_job_is_idempotent_by_id(self, backend):
        """Test that adding the same id twice keeps the first job."""
        first, created = await backend.add_job(make_job(id="job-1"))
        second, created_again = await backend.add_job(make_job(id="job-1", priority=9))

        assert created is True
        assert created_again is False
        assert second.priority == first.priority == 0

    @pytest.mark.asyncio
    async def test_eligible_order_is_priority_then_sequence(self, backend, clock):
        now = clock.now()
        low, _ = await backend.add_job(make_job(priority=0, next_eligible_at=now))
        high, _ = await backend.add_job(make_job(priority=5, next_eligible_at=now))
        low_later, _ = await backend.add_job(make_job(priority=0, next_eligible_at=now))
        await backend.add_job(make_job(priority=10, next_eligible_at=now + timedelta(seconds=30)))

        eligible = await backend.find_eligible_jobs(QueueName.OCR, now, 10)
        assert [job.id for job in eligible] == [high.id, low.id, low_later.id]

    @pytest.mark.asyncio
    async def test_conditional_update(self, backend):
        """Test that an update only applies when expected fields still match."""
        job, _ = await backend.add_job(make_job())

        updated = await backend.update_job(
            job.id,
            expected={"state": JobState.WAITING, "attempts": 0},
            changes={"state": JobState.ACTIVE, "attempts": 1},
        )
        stale = await backend.update_job(
            job.id,
            expected={"state": JobState.WAITING, "attempts": 0},
            changes={"state": JobState.ACTIVE, "attempts": 1},
        )

        assert updated.state == JobState.ACTIVE
        assert updated.attempts == 1
        assert stale is None
        assert await backend.update_job("missing", {}, {"progress": 5}) is None

    @pytest.mark.asyncio
    async def test_concurrent_updates_have_one_winner(self, backend):
        job, _ = await backend.add_job(make_job())
        results = await asyncio.gather(
            *(
                backend.update_job(
                    job.id,
                    expected={"state": JobState.WAITING},
                    changes={"state": JobState.ACTIVE, "worker_id": f"w{i}"},
                )
                for i in range(5)
            )
        )
        assert len([result for result in results if result is not None]) == 1

    @pytest.mark.asyncio
    async def test_count_and_expired_leases(self, backend, clock):
        now = clock.now()
        await backend.add_job(make_job())
        await backend.add_job(
            make_job(state=JobState.ACTIVE, lease_expires_at=now - timedelta(seconds=1))
        )
        await backend.add_job(
            make_job(state=JobState.ACTIVE, lease_expires_at=now + timedelta(seconds=60))
        )

        counts = await backend.count_jobs(QueueName.OCR)
        assert counts[JobState.WAITING] == 1
        assert counts[JobState.ACTIVE] == 2
        assert counts[JobState.FAILED] == 0

        expired = await backend.find_expired_leases(now)
        assert len(expired) == 1

    @pytest.mark.asyncio
    async def test_archive_jobs(self, backend, clock):
        """Test that old terminal jobs are archived with counts and failure summaries."""
        old = clock.now() - timedelta(hours=48)
        await backend.add_job(make_job(state=JobState.COMPLETED, finished_at=old))
        failed, _ = await backend.add_job(
            make_job(state=JobState.FAILED, finished_at=old, failure_reason="bad scan", attempts=3)
        )
        await backend.add_job(make_job(state=JobState.COMPLETED, finished_at=clock.now()))

        removed = await backend.archive_jobs(QueueName.OCR, clock.now() - timedelta(hours=24))

        assert removed == {JobState.COMPLETED: 1, JobState.FAILED: 1}
        assert await backend.get_job(failed.id) is None
        assert await backend.archived_counts(QueueName.OCR) == {
            JobState.COMPLETED: 1,
            JobState.FAILED: 1,
        }
        summaries = await backend.list_failure_summaries(QueueName.OCR)
        assert [(s.id, s.failure_reason, s.attempts) for s in summaries] == [
            (failed.id, "bad scan", 3)
        ]
        assert (await backend.count_jobs(QueueName.OCR))[JobState.COMPLETED] == 1


class TestWebhookStorage:

    @pytest.fixture
    def subscription(self):
        return WebhookSubscription(
            owner_id="owner-1",
            url="https://example.com/hook",
            secret="s3cr3t-value",
            events=["receipt.created"],
        )

    @pytest.mark.asyncio
    async def test_event_round_trip(self, backend):
        event = DomainEvent(type="receipt.created", payload={"amount": 12.5})
        await backend.add_event(event)
        stored = await backend.get_event(event.id)
        assert stored.payload == {"amount": 12.5}
        assert stored.type == "receipt.created"

    @pytest.mark.asyncio
    async def test_subscription_update_and_soft_delete(self, backend, subscription):
        await backend.add_subscription(subscription)
        updated = await backend.update_subscription(subscription.id, {"active": False})
        assert updated.active is False

        await backend.update_subscription(subscription.id, {"deleted_at": utcnow()})
        assert await backend.list_subscriptions("owner-1") == []
        assert len(await backend.list_subscriptions("owner-1", include_deleted=True)) == 1

    @pytest.mark.asyncio
    async def test_one_delivery_per_webhook_and_event(self, backend):
        """Test that a second delivery for the same pair returns the first."""
        first, created = await backend.add_delivery(
            DeliveryAttempt(webhook_id="w1", event_id="e1", event_type="receipt.created")
        )
        second, created_again = await backend.add_delivery(
            DeliveryAttempt(webhook_id="w1", event_id="e1", event_type="receipt.created")
        )
        assert created is True
        assert created_again is False
        assert second.id == first.id
        assert await backend.count_deliveries("w1") == 1

    @pytest.mark.asyncio
    async def test_due_deliveries_and_purge(self, backend, clock):
        now = clock.now()
        due, _ = await backend.add_delivery(
            DeliveryAttempt(
                webhook_id="w1",
                event_id="e1",
                event_type="receipt.created",
                status=DeliveryStatus.RETRYING,
                next_attempt_at=now - timedelta(seconds=5),
            )
        )
        await backend.add_delivery(
            DeliveryAttempt(
                webhook_id="w1",
                event_id="e2",
                event_type="receipt.created",
                status=DeliveryStatus.RETRYING,
                next_attempt_at=now + timedelta(seconds=5),
            )
        )
        await backend.add_delivery(
            DeliveryAttempt(
                webhook_id="w1",
                event_id="e3",
                event_type="receipt.created",
                status=DeliveryStatus.SUCCESS,
                completed_at=now - timedelta(days=40),
                next_attempt_at=now - timedelta(days=40),
            )
        )
        stranded, _ = await backend.add_delivery(
            DeliveryAttempt(
                webhook_id="w1",
                event_id="e4",
                event_type="receipt.created",
                next_attempt_at=now - timedelta(seconds=1),
            )
        )

        assert [d.id for d in await backend.find_due_deliveries(now, 10)] == [
            due.id,
            stranded.id,
        ]
        assert await backend.count_deliveries("w1", DeliveryStatus.RETRYING) == 2
        assert await backend.delete_deliveries(now - timedelta(days=30)) == 1
        assert await backend.count_deliveries("w1") == 3

    @pytest.mark.asyncio
    async def test_list_deliveries_pagination(self, backend, clock):
        for index in range(5):
            await backend.add_delivery(
                DeliveryAttempt(
                    webhook_id="w1",
                    event_id=f"e{index}",
                    event_type="receipt.created",
                    scheduled_at=clock.advance(1),
                )
            )

        page = await backend.list_deliveries("w1", limit=2, offset=1)
        assert [d.event_id for d in page] == ["e3", "e2"]
