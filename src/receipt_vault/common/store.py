import asyncio
import itertools
from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from loguru import logger

from receipt_vault.common.config import SQLStoreConfig, StoreType
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


class Store(ABC):
    """Durable home of jobs, events, subscriptions and deliveries.

    Every mutation goes through a conditional update: ``expected`` maps
    field names to the values the record must still hold, and the write
    happens only if all of them match. The updated record is returned, or
    ``None`` when the record is gone or another writer got there first.
    """

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    # Jobs

    @abstractmethod
    async def add_job(self, job: Job) -> Tuple[Job, bool]:
        """Insert ``job`` unless its id exists. Returns (job, created)."""

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        pass

    @abstractmethod
    async def find_eligible_jobs(
        self, queue_name: QueueName, now: datetime, limit: int
    ) -> List[Job]:
        """Waiting jobs due at ``now``, highest priority then oldest first."""

    @abstractmethod
    async def update_job(
        self, job_id: str, expected: Mapping[str, Any], changes: Mapping[str, Any]
    ) -> Optional[Job]:
        pass

    @abstractmethod
    async def list_jobs(
        self, queue_name: Optional[QueueName] = None, state: Optional[JobState] = None
    ) -> List[Job]:
        pass

    @abstractmethod
    async def count_jobs(self, queue_name: QueueName) -> Dict[JobState, int]:
        pass

    @abstractmethod
    async def find_expired_leases(self, now: datetime) -> List[Job]:
        pass

    @abstractmethod
    async def archive_jobs(
        self, queue_name: QueueName, finished_before: datetime
    ) -> Dict[JobState, int]:
        """Delete terminal jobs finished before the cutoff.

        Counts of deleted jobs are added to the archived totals and failed
        jobs leave a ``FailedJobSummary`` behind.
        """

    @abstractmethod
    async def archived_counts(self, queue_name: QueueName) -> Dict[JobState, int]:
        pass

    @abstractmethod
    async def list_failure_summaries(
        self, queue_name: QueueName, limit: int = 100
    ) -> List[FailedJobSummary]:
        pass

    # Events

    @abstractmethod
    async def add_event(self, event: DomainEvent) -> DomainEvent:
        pass

    @abstractmethod
    async def get_event(self, event_id: str) -> Optional[DomainEvent]:
        pass

    # Subscriptions

    @abstractmethod
    async def add_subscription(
        self, subscription: WebhookSubscription
    ) -> WebhookSubscription:
        pass

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Optional[WebhookSubscription]:
        pass

    @abstractmethod
    async def update_subscription(
        self, subscription_id: str, changes: Mapping[str, Any]
    ) -> Optional[WebhookSubscription]:
        pass

    @abstractmethod
    async def list_subscriptions(
        self, owner_id: Optional[str] = None, include_deleted: bool = False
    ) -> List[WebhookSubscription]:
        pass

    # Deliveries

    @abstractmethod
    async def add_delivery(self, delivery: DeliveryAttempt) -> Tuple[DeliveryAttempt, bool]:
        """Insert unless one exists for the same (webhook_id, event_id)."""

    @abstractmethod
    async def get_delivery(self, delivery_id: str) -> Optional[DeliveryAttempt]:
        pass

    @abstractmethod
    async def update_delivery(
        self,
        delivery_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> Optional[DeliveryAttempt]:
        pass

    @abstractmethod
    async def list_deliveries(
        self,
        webhook_id: str,
        status: Optional[DeliveryStatus] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[DeliveryAttempt]:
        """Deliveries of one subscription, newest first."""

    @abstractmethod
    async def count_deliveries(
        self, webhook_id: str, status: Optional[DeliveryStatus] = None
    ) -> int:
        pass

    @abstractmethod
    async def find_due_deliveries(self, now: datetime, limit: int) -> List[DeliveryAttempt]:
        """Unfinished deliveries whose next_attempt_at has passed, oldest first."""
        pass

    @abstractmethod
    async def delete_deliveries(self, completed_before: datetime) -> int:
        pass


def _matches(record: Any, expected: Mapping[str, Any]) -> bool:
    return all(getattr(record, key) == value for key, value in expected.items())


class MemoryStore(Store):
    """Process-local store. Each operation runs under a single asyncio lock."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._sequence = itertools.count(1)
        self._jobs: Dict[str, Job] = {}
        self._archived: Dict[QueueName, Counter] = {}
        self._failure_summaries: Dict[QueueName, List[FailedJobSummary]] = {}
        self._events: Dict[str, DomainEvent] = {}
        self._subscriptions: Dict[str, WebhookSubscription] = {}
        self._deliveries: Dict[str, DeliveryAttempt] = {}
        self._delivery_keys: Dict[Tuple[str, str], str] = {}

    async def add_job(self, job: Job) -> Tuple[Job, bool]:
        async with self._lock:
            existing = self._jobs.get(job.id)
            if existing:
                return existing, False
            job = job.model_copy(update={"sequence": next(self._sequence)})
            self._jobs[job.id] = job
            return job, True

    async def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    async def find_eligible_jobs(
        self, queue_name: QueueName, now: datetime, limit: int
    ) -> List[Job]:
        async with self._lock:
            eligible = [
                job
                for job in self._jobs.values()
                if job.queue_name == queue_name
                and job.state == JobState.WAITING
                and job.next_eligible_at <= now
            ]
        eligible.sort(key=lambda job: (-job.priority, job.sequence))
        return eligible[:limit]

    async def update_job(
        self, job_id: str, expected: Mapping[str, Any], changes: Mapping[str, Any]
    ) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not _matches(job, expected):
                return None
            job = job.model_copy(update=dict(changes))
            self._jobs[job_id] = job
            return job

    async def list_jobs(
        self, queue_name: Optional[QueueName] = None, state: Optional[JobState] = None
    ) -> List[Job]:
        jobs = [
            job
            for job in self._jobs.values()
            if (queue_name is None or job.queue_name == queue_name)
            and (state is None or job.state == state)
        ]
        return sorted(jobs, key=lambda job: job.sequence)

    async def count_jobs(self, queue_name: QueueName) -> Dict[JobState, int]:
        counts = Counter(
            job.state for job in self._jobs.values() if job.queue_name == queue_name
        )
        return {state: counts.get(state, 0) for state in JobState}

    async def find_expired_leases(self, now: datetime) -> List[Job]:
        return [
            job
            for job in self._jobs.values()
            if job.state == JobState.ACTIVE
            and job.lease_expires_at is not None
            and job.lease_expires_at <= now
        ]

    async def archive_jobs(
        self, queue_name: QueueName, finished_before: datetime
    ) -> Dict[JobState, int]:
        async with self._lock:
            expired = [
                job
                for job in self._jobs.values()
                if job.queue_name == queue_name
                and job.state in TERMINAL_JOB_STATES
                and job.finished_at is not None
                and job.finished_at < finished_before
            ]
            removed = Counter(job.state for job in expired)
            self._archived.setdefault(queue_name, Counter()).update(removed)
            summaries = self._failure_summaries.setdefault(queue_name, [])
            for job in expired:
                if job.state == JobState.FAILED:
                    summaries.append(
                        FailedJobSummary(
                            id=job.id,
                            queue_name=job.queue_name,
                            failure_reason=job.failure_reason,
                            attempts=job.attempts,
                            finished_at=job.finished_at,
                        )
                    )
                del self._jobs[job.id]
        return {state: removed.get(state, 0) for state in TERMINAL_JOB_STATES}

    async def archived_counts(self, queue_name: QueueName) -> Dict[JobState, int]:
        archived = self._archived.get(queue_name, Counter())
        return {state: archived.get(state, 0) for state in TERMINAL_JOB_STATES}

    async def list_failure_summaries(
        self, queue_name: QueueName, limit: int = 100
    ) -> List[FailedJobSummary]:
        summaries = self._failure_summaries.get(queue_name, [])
        return list(reversed(summaries))[:limit]

    async def add_event(self, event: DomainEvent) -> DomainEvent:
        self._events[event.id] = event
        return event

    async def get_event(self, event_id: str) -> Optional[DomainEvent]:
        return self._events.get(event_id)

    async def add_subscription(
        self, subscription: WebhookSubscription
    ) -> WebhookSubscription:
        self._subscriptions[subscription.id] = subscription
        return subscription

    async def get_subscription(self, subscription_id: str) -> Optional[WebhookSubscription]:
        return self._subscriptions.get(subscription_id)

    async def update_subscription(
        self, subscription_id: str, changes: Mapping[str, Any]
    ) -> Optional[WebhookSubscription]:
        async with self._lock:
            subscription = self._subscriptions.get(subscription_id)
            if subscription is None:
                return None
            subscription = subscription.model_copy(update=dict(changes))
            self._subscriptions[subscription_id] = subscription
            return subscription

    async def list_subscriptions(
        self, owner_id: Optional[str] = None, include_deleted: bool = False
    ) -> List[WebhookSubscription]:
        subscriptions = [
            sub
            for sub in self._subscriptions.values()
            if (owner_id is None or sub.owner_id == owner_id)
            and (include_deleted or sub.deleted_at is None)
        ]
        return sorted(subscriptions, key=lambda sub: sub.created_at)

    async def add_delivery(self, delivery: DeliveryAttempt) -> Tuple[DeliveryAttempt, bool]:
        key = (delivery.webhook_id, delivery.event_id)
        async with self._lock:
            existing_id = self._delivery_keys.get(key)
            if existing_id:
                return self._deliveries[existing_id], False
            self._deliveries[delivery.id] = delivery
            self._delivery_keys[key] = delivery.id
            return delivery, True

    async def get_delivery(self, delivery_id: str) -> Optional[DeliveryAttempt]:
        return self._deliveries.get(delivery_id)

    async def update_delivery(
        self,
        delivery_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> Optional[DeliveryAttempt]:
        async with self._lock:
            delivery = self._deliveries.get(delivery_id)
            if delivery is None or not _matches(delivery, expected):
                return None
            delivery = delivery.model_copy(update=dict(changes))
            self._deliveries[delivery_id] = delivery
            return delivery

    def _filter_deliveries(
        self, webhook_id: str, status: Optional[DeliveryStatus]
    ) -> List[DeliveryAttempt]:
        return [
            delivery
            for delivery in self._deliveries.values()
            if delivery.webhook_id == webhook_id
            and (status is None or delivery.status == status)
        ]

    async def list_deliveries(
        self,
        webhook_id: str,
        status: Optional[DeliveryStatus] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[DeliveryAttempt]:
        deliveries = sorted(
            self._filter_deliveries(webhook_id, status),
            key=lambda delivery: delivery.scheduled_at,
            reverse=True,
        )
        end = None if limit is None else offset + limit
        return deliveries[offset:end]

    async def count_deliveries(
        self, webhook_id: str, status: Optional[DeliveryStatus] = None
    ) -> int:
        return len(self._filter_deliveries(webhook_id, status))

    async def find_due_deliveries(self, now: datetime, limit: int) -> List[DeliveryAttempt]:
        due = [
            delivery
            for delivery in self._deliveries.values()
            if delivery.status not in TERMINAL_DELIVERY_STATUSES
            and delivery.next_attempt_at is not None
            and delivery.next_attempt_at <= now
        ]
        due.sort(key=lambda delivery: delivery.next_attempt_at)
        return due[:limit]

    async def delete_deliveries(self, completed_before: datetime) -> int:
        async with self._lock:
            expired = [
                delivery
                for delivery in self._deliveries.values()
                if delivery.status in TERMINAL_DELIVERY_STATUSES
                and delivery.completed_at is not None
                and delivery.completed_at < completed_before
            ]
            for delivery in expired:
                del self._deliveries[delivery.id]
                self._delivery_keys.pop((delivery.webhook_id, delivery.event_id), None)
        return len(expired)


def create_store(
    store_type: StoreType, sql_config: Optional[SQLStoreConfig] = None
) -> Store:
    if store_type == StoreType.MEMORY:
        logger.info("Using in-memory store")
        return MemoryStore()
    elif store_type == StoreType.SQL:
        if not sql_config:
            raise ValueError("SQL store selected but no SQL configuration provided")
        from receipt_vault.common.sql_store import SQLStore

        return SQLStore(sql_config)
    else:
        raise ValueError(f"Unsupported store type: {store_type}")
