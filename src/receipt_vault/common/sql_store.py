"""SQLAlchemy-backed store.

Conditional updates compile to ``UPDATE ... WHERE id = :id AND <expected>``
and succeed only when exactly one row changed, so concurrent claimers
racing on the same record cannot both win.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from loguru import logger
from pydantic import BaseModel
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    TypeDecorator,
    UniqueConstraint,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection, create_async_engine

from receipt_vault.common.config import SQLStoreConfig
from receipt_vault.common.models import (
    TERMINAL_DELIVERY_STATUSES,
    TERMINAL_JOB_STATES,
    DeliveryAttempt,
    DeliveryStatus,
    DomainEvent,
    FailedJobSummary,
    Job,
    JobState,
    QueueName,
    WebhookSubscription,
)
from receipt_vault.common.store import Store


class UTCDateTime(TypeDecorator):
    """Stores naive UTC and hands back timezone-aware datetimes."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


metadata = MetaData()

jobs_table = Table(
    "jobs",
    metadata,
    Column("sequence", Integer, primary_key=True, autoincrement=True),
    Column("id", String(64), nullable=False, unique=True),
    Column("queue_name", String(16), nullable=False),
    Column("payload", JSON, nullable=False),
    Column("priority", Integer, nullable=False, default=0),
    Column("state", String(16), nullable=False),
    Column("attempts", Integer, nullable=False, default=0),
    Column("max_attempts", Integer, nullable=False),
    Column("progress", Integer, nullable=False, default=0),
    Column("next_eligible_at", UTCDateTime, nullable=False),
    Column("created_at", UTCDateTime, nullable=False),
    Column("processed_at", UTCDateTime),
    Column("finished_at", UTCDateTime),
    Column("lease_expires_at", UTCDateTime),
    Column("worker_id", String(255)),
    Column("failure_reason", Text),
    Column("result", JSON),
    Index("ix_jobs_claim", "queue_name", "state", "next_eligible_at"),
)

archived_counts_table = Table(
    "archived_job_counts",
    metadata,
    Column("queue_name", String(16), primary_key=True),
    Column("state", String(16), primary_key=True),
    Column("count", Integer, nullable=False, default=0),
)

failure_summaries_table = Table(
    "failed_job_summaries",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("queue_name", String(16), nullable=False, index=True),
    Column("failure_reason", Text),
    Column("attempts", Integer, nullable=False),
    Column("finished_at", UTCDateTime),
)

events_table = Table(
    "domain_events",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("type", String(64), nullable=False, index=True),
    Column("payload", JSON, nullable=False),
    Column("produced_by", String(255), nullable=False),
    Column("timestamp", UTCDateTime, nullable=False),
)

subscriptions_table = Table(
    "webhook_subscriptions",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("owner_id", String(255), nullable=False, index=True),
    Column("url", Text, nullable=False),
    Column("secret", String(255), nullable=False),
    Column("description", Text),
    Column("events", JSON, nullable=False),
    Column("filter_rules", JSON, nullable=False),
    Column("active", Boolean, nullable=False, default=True),
    Column("retry_policy", JSON, nullable=False),
    Column("created_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
    Column("deleted_at", UTCDateTime),
)

deliveries_table = Table(
    "webhook_deliveries",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("webhook_id", String(64), nullable=False, index=True),
    Column("event_id", String(64), nullable=False),
    Column("event_type", String(64), nullable=False),
    Column("status", String(16), nullable=False),
    Column("http_status", Integer),
    Column("attempt_number", Integer, nullable=False, default=0),
    Column("scheduled_at", UTCDateTime, nullable=False),
    Column("next_attempt_at", UTCDateTime),
    Column("completed_at", UTCDateTime),
    Column("response_snippet", Text),
    Column("error", Text),
    Column("duration_ms", Integer),
    UniqueConstraint("webhook_id", "event_id", name="uq_delivery_webhook_event"),
    Index("ix_deliveries_due", "status", "next_attempt_at"),
)


def _to_db(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_to_db(item) for item in value]
    return value


def _row_values(model: BaseModel) -> Dict[str, Any]:
    return {key: _to_db(getattr(model, key)) for key in type(model).model_fields}


def _conditions(table: Table, expected: Mapping[str, Any]) -> list:
    conditions = []
    for key, value in expected.items():
        column = table.c[key]
        if value is None:
            conditions.append(column.is_(None))
        else:
            conditions.append(column == _to_db(value))
    return conditions


class SQLStore(Store):
    def __init__(self, config: SQLStoreConfig):
        self.engine = create_async_engine(config.url, echo=config.echo)
        logger.info(f"Initialized SQL store at {self.engine.url.render_as_string(hide_password=True)}")

    async def initialize(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    async def _fetch_one(self, conn: AsyncConnection, table: Table, record_id: str):
        result = await conn.execute(select(table).where(table.c.id == record_id))
        return result.first()

    async def _conditional_update(
        self,
        table: Table,
        record_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ):
        values = {key: _to_db(value) for key, value in changes.items()}
        async with self.engine.begin() as conn:
            result = await conn.execute(
                update(table)
                .where(table.c.id == record_id, *_conditions(table, expected))
                .values(**values)
            )
            if result.rowcount != 1:
                return None
            return await self._fetch_one(conn, table, record_id)

    # Jobs

    async def add_job(self, job: Job) -> Tuple[Job, bool]:
        values = _row_values(job)
        values.pop("sequence")
        try:
            async with self.engine.begin() as conn:
                await conn.execute(insert(jobs_table).values(**values))
                row = await self._fetch_one(conn, jobs_table, job.id)
            return Job.model_validate(dict(row._mapping)), True
        except IntegrityError:
            existing = await self.get_job(job.id)
            if existing is None:
                raise
            return existing, False

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self.engine.connect() as conn:
            row = await self._fetch_one(conn, jobs_table, job_id)
        return Job.model_validate(dict(row._mapping)) if row else None

    async def find_eligible_jobs(
        self, queue_name: QueueName, now: datetime, limit: int
    ) -> List[Job]:
        query = (
            select(jobs_table)
            .where(
                jobs_table.c.queue_name == queue_name.value,
                jobs_table.c.state == JobState.WAITING.value,
                jobs_table.c.next_eligible_at <= now,
            )
            .order_by(jobs_table.c.priority.desc(), jobs_table.c.sequence)
            .limit(limit)
        )
        async with self.engine.connect() as conn:
            result = await conn.execute(query)
            return [Job.model_validate(dict(row._mapping)) for row in result]

    async def update_job(
        self, job_id: str, expected: Mapping[str, Any], changes: Mapping[str, Any]
    ) -> Optional[Job]:
        row = await self._conditional_update(jobs_table, job_id, expected, changes)
        return Job.model_validate(dict(row._mapping)) if row else None

    async def list_jobs(
        self, queue_name: Optional[QueueName] = None, state: Optional[JobState] = None
    ) -> List[Job]:
        query = select(jobs_table).order_by(jobs_table.c.sequence)
        if queue_name is not None:
            query = query.where(jobs_table.c.queue_name == queue_name.value)
        if state is not None:
            query = query.where(jobs_table.c.state == state.value)
        async with self.engine.connect() as conn:
            result = await conn.execute(query)
            return [Job.model_validate(dict(row._mapping)) for row in result]

    async def count_jobs(self, queue_name: QueueName) -> Dict[JobState, int]:
        query = (
            select(jobs_table.c.state, func.count(jobs_table.c.id))
            .where(jobs_table.c.queue_name == queue_name.value)
            .group_by(jobs_table.c.state)
        )
        async with self.engine.connect() as conn:
            result = await conn.execute(query)
            counts = {JobState(state): count for state, count in result.all()}
        return {state: counts.get(state, 0) for state in JobState}

    async def find_expired_leases(self, now: datetime) -> List[Job]:
        query = select(jobs_table).where(
            jobs_table.c.state == JobState.ACTIVE.value,
            jobs_table.c.lease_expires_at <= now,
        )
        async with self.engine.connect() as conn:
            result = await conn.execute(query)
            return [Job.model_validate(dict(row._mapping)) for row in result]

    async def archive_jobs(
        self, queue_name: QueueName, finished_before: datetime
    ) -> Dict[JobState, int]:
        removed = {state: 0 for state in TERMINAL_JOB_STATES}
        async with self.engine.begin() as conn:
            result = await conn.execute(
                select(jobs_table).where(
                    jobs_table.c.queue_name == queue_name.value,
                    jobs_table.c.state.in_([state.value for state in TERMINAL_JOB_STATES]),
                    jobs_table.c.finished_at < finished_before,
                )
            )
            expired = [Job.model_validate(dict(row._mapping)) for row in result]
            if not expired:
                return removed

            for job in expired:
                removed[job.state] += 1
                if job.state == JobState.FAILED:
                    await conn.execute(
                        insert(failure_summaries_table).values(
                            id=job.id,
                            queue_name=queue_name.value,
                            failure_reason=job.failure_reason,
                            attempts=job.attempts,
                            finished_at=job.finished_at,
                        )
                    )

            for state, count in removed.items():
                if not count:
                    continue
                bumped = await conn.execute(
                    update(archived_counts_table)
                    .where(
                        archived_counts_table.c.queue_name == queue_name.value,
                        archived_counts_table.c.state == state.value,
                    )
                    .values(count=archived_counts_table.c.count + count)
                )
                if bumped.rowcount == 0:
                    await conn.execute(
                        insert(archived_counts_table).values(
                            queue_name=queue_name.value, state=state.value, count=count
                        )
                    )

            await conn.execute(
                delete(jobs_table).where(jobs_table.c.id.in_([job.id for job in expired]))
            )
        return removed

    async def archived_counts(self, queue_name: QueueName) -> Dict[JobState, int]:
        query = select(archived_counts_table.c.state, archived_counts_table.c.count).where(
            archived_counts_table.c.queue_name == queue_name.value
        )
        async with self.engine.connect() as conn:
            result = await conn.execute(query)
            counts = {JobState(state): count for state, count in result.all()}
        return {state: counts.get(state, 0) for state in TERMINAL_JOB_STATES}

    async def list_failure_summaries(
        self, queue_name: QueueName, limit: int = 100
    ) -> List[FailedJobSummary]:
        query = (
            select(failure_summaries_table)
            .where(failure_summaries_table.c.queue_name == queue_name.value)
            .order_by(failure_summaries_table.c.finished_at.desc())
            .limit(limit)
        )
        async with self.engine.connect() as conn:
            result = await conn.execute(query)
            return [FailedJobSummary.model_validate(dict(row._mapping)) for row in result]

    # Events

    async def add_event(self, event: DomainEvent) -> DomainEvent:
        async with self.engine.begin() as conn:
            await conn.execute(insert(events_table).values(**_row_values(event)))
        return event

    async def get_event(self, event_id: str) -> Optional[DomainEvent]:
        async with self.engine.connect() as conn:
            row = await self._fetch_one(conn, events_table, event_id)
        return DomainEvent.model_validate(dict(row._mapping)) if row else None

    # Subscriptions

    async def add_subscription(
        self, subscription: WebhookSubscription
    ) -> WebhookSubscription:
        async with self.engine.begin() as conn:
            await conn.execute(
                insert(subscriptions_table).values(**_row_values(subscription))
            )
        return subscription

    async def get_subscription(self, subscription_id: str) -> Optional[WebhookSubscription]:
        async with self.engine.connect() as conn:
            row = await self._fetch_one(conn, subscriptions_table, subscription_id)
        return WebhookSubscription.model_validate(dict(row._mapping)) if row else None

    async def update_subscription(
        self, subscription_id: str, changes: Mapping[str, Any]
    ) -> Optional[WebhookSubscription]:
        row = await self._conditional_update(
            subscriptions_table, subscription_id, {}, changes
        )
        return WebhookSubscription.model_validate(dict(row._mapping)) if row else None

    async def list_subscriptions(
        self, owner_id: Optional[str] = None, include_deleted: bool = False
    ) -> List[WebhookSubscription]:
        query = select(subscriptions_table).order_by(subscriptions_table.c.created_at)
        if owner_id is not None:
            query = query.where(subscriptions_table.c.owner_id == owner_id)
        if not include_deleted:
            query = query.where(subscriptions_table.c.deleted_at.is_(None))
        async with self.engine.connect() as conn:
            result = await conn.execute(query)
            return [WebhookSubscription.model_validate(dict(row._mapping)) for row in result]

    # Deliveries

    async def add_delivery(self, delivery: DeliveryAttempt) -> Tuple[DeliveryAttempt, bool]:
        try:
            async with self.engine.begin() as conn:
                await conn.execute(insert(deliveries_table).values(**_row_values(delivery)))
            return delivery, True
        except IntegrityError:
            async with self.engine.connect() as conn:
                result = await conn.execute(
                    select(deliveries_table).where(
                        deliveries_table.c.webhook_id == delivery.webhook_id,
                        deliveries_table.c.event_id == delivery.event_id,
                    )
                )
                row = result.first()
            if row is None:
                raise
            return DeliveryAttempt.model_validate(dict(row._mapping)), False

    async def get_delivery(self, delivery_id: str) -> Optional[DeliveryAttempt]:
        async with self.engine.connect() as conn:
            row = await self._fetch_one(conn, deliveries_table, delivery_id)
        return DeliveryAttempt.model_validate(dict(row._mapping)) if row else None

    async def update_delivery(
        self,
        delivery_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> Optional[DeliveryAttempt]:
        row = await self._conditional_update(
            deliveries_table, delivery_id, expected, changes
        )
        return DeliveryAttempt.model_validate(dict(row._mapping)) if row else None

    async def list_deliveries(
        self,
        webhook_id: str,
        status: Optional[DeliveryStatus] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[DeliveryAttempt]:
        query = (
            select(deliveries_table)
            .where(deliveries_table.c.webhook_id == webhook_id)
            .order_by(deliveries_table.c.scheduled_at.desc())
            .offset(offset)
        )
        if status is not None:
            query = query.where(deliveries_table.c.status == status.value)
        if limit is not None:
            query = query.limit(limit)
        async with self.engine.connect() as conn:
            result = await conn.execute(query)
            return [DeliveryAttempt.model_validate(dict(row._mapping)) for row in result]

    async def count_deliveries(
        self, webhook_id: str, status: Optional[DeliveryStatus] = None
    ) -> int:
        query = select(func.count(deliveries_table.c.id)).where(
            deliveries_table.c.webhook_id == webhook_id
        )
        if status is not None:
            query = query.where(deliveries_table.c.status == status.value)
        async with self.engine.connect() as conn:
            result = await conn.execute(query)
            return result.scalar() or 0

    async def find_due_deliveries(self, now: datetime, limit: int) -> List[DeliveryAttempt]:
        query = (
            select(deliveries_table)
            .where(
                deliveries_table.c.status.in_(
                    [DeliveryStatus.PENDING.value, DeliveryStatus.RETRYING.value]
                ),
                deliveries_table.c.next_attempt_at <= now,
            )
            .order_by(deliveries_table.c.next_attempt_at)
            .limit(limit)
        )
        async with self.engine.connect() as conn:
            result = await conn.execute(query)
            return [DeliveryAttempt.model_validate(dict(row._mapping)) for row in result]

    async def delete_deliveries(self, completed_before: datetime) -> int:
        async with self.engine.begin() as conn:
            result = await conn.execute(
                delete(deliveries_table).where(
                    deliveries_table.c.status.in_(
                        [status.value for status in TERMINAL_DELIVERY_STATUSES]
                    ),
                    deliveries_table.c.completed_at < completed_before,
                )
            )
            return result.rowcount
