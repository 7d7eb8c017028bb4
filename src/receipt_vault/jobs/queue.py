from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from loguru import logger
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from receipt_vault.common.config import JobsConfig
from receipt_vault.common.errors import NotFoundError, ValidationError
from receipt_vault.common.metrics import metrics
from receipt_vault.common.models import (
    PAYLOAD_MODELS,
    FailedJobSummary,
    Job,
    JobState,
    QueueName,
    QueueStats,
    utcnow,
)
from receipt_vault.common.retry import RetryScheduler
from receipt_vault.common.store import Store

# How many waiting candidates a claim looks at before giving up on a round.
CLAIM_CANDIDATES = 10


def parse_queue_name(queue_name: Union[str, QueueName]) -> QueueName:
    try:
        return QueueName(queue_name)
    except ValueError:
        allowed = ", ".join(q.value for q in QueueName)
        raise ValidationError(f"Unknown queue: {queue_name} (expected one of {allowed})")


class TaskQueue:
    """Durable multi-queue job store with priorities and retry state.

    Every state transition is a conditional update keyed by the job id and
    the state (plus attempt number) the caller last saw. The attempt
    number doubles as a fencing token: once a lease has been reclaimed and
    the job claimed again, the previous worker can no longer complete or
    fail it.
    """

    def __init__(
        self,
        store: Store,
        config: JobsConfig,
        retry_scheduler: Optional[RetryScheduler] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.config = config
        self.clock = clock
        self.retry_scheduler = retry_scheduler or RetryScheduler(clock=clock)

    async def enqueue(
        self,
        queue_name: Union[str, QueueName],
        payload: Union[Mapping[str, Any], BaseModel],
        priority: int = 0,
        max_attempts: Optional[int] = None,
        job_id: Optional[str] = None,
        delay: float = 0,
    ) -> str:
        """Validate and store a new waiting job, returning its id.

        Passing ``job_id`` makes the call idempotent: if a job with that id
        already exists, its id is returned and nothing new is stored.
        """
        queue = parse_queue_name(queue_name)
        settings = self.config.settings_for(queue)

        if max_attempts is None:
            max_attempts = settings.max_attempts
        if max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1")

        payload_model = PAYLOAD_MODELS[queue]
        if isinstance(payload, BaseModel):
            payload = payload.model_dump()
        try:
            validated = payload_model.model_validate(
                {**payload, "kind": queue.value}
            )
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid payload for queue {queue.value}: {e}")

        now = self.clock()
        extra = {"id": job_id} if job_id else {}
        job = Job(
            **extra,
            queue_name=queue,
            payload=validated,
            priority=priority,
            max_attempts=max_attempts,
            created_at=now,
            next_eligible_at=now + timedelta(seconds=delay),
        )

        stored, created = await self.store.add_job(job)
        if created:
            metrics.jobs_enqueued_total.labels(queue=queue.value).inc()
            logger.info(
                f"Enqueued {queue.value} job {stored.id} "
                f"(priority={priority}, max_attempts={max_attempts})"
            )
        else:
            logger.info(f"Job {stored.id} already exists in state {stored.state.value}")
        return stored.id

    async def claim(
        self, queue_name: Union[str, QueueName], worker_id: str = "worker"
    ) -> Optional[Job]:
        """Move one eligible waiting job to active and return it.

        Candidates are fetched in batches. Every lost race means another
        worker took that job, so the next batch excludes it and the loop
        ends once a fetch comes back empty.
        """
        queue = parse_queue_name(queue_name)
        now = self.clock()

        while True:
            candidates = await self.store.find_eligible_jobs(queue, now, CLAIM_CANDIDATES)
            if not candidates:
                return None

            for candidate in candidates:
                claimed = await self.store.update_job(
                    candidate.id,
                    expected={"state": JobState.WAITING, "attempts": candidate.attempts},
                    changes={
                        "state": JobState.ACTIVE,
                        "attempts": candidate.attempts + 1,
                        "processed_at": now,
                        "lease_expires_at": now + timedelta(seconds=self.config.lease_timeout),
                        "worker_id": worker_id,
                        "progress": 0,
                    },
                )
                if claimed:
                    logger.debug(
                        f"Worker {worker_id} claimed {queue.value} job {claimed.id} "
                        f"(attempt {claimed.attempts}/{claimed.max_attempts})"
                    )
                    return claimed
                logger.debug(f"Lost claim race for job {candidate.id}")

    async def _active_job(self, job_id: str, attempt: Optional[int]) -> Optional[Job]:
        job = await self.store.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}")
        if job.state != JobState.ACTIVE or (attempt is not None and job.attempts != attempt):
            logger.warning(
                f"Ignoring outcome for job {job_id}: state={job.state.value}, "
                f"attempts={job.attempts}, reported attempt={attempt}"
            )
            return None
        return job

    async def complete(
        self,
        job_id: str,
        result: Optional[Dict[str, Any]] = None,
        attempt: Optional[int] = None,
    ) -> Optional[Job]:
        job = await self._active_job(job_id, attempt)
        if job is None:
            return None

        completed = await self.store.update_job(
            job_id,
            expected={"state": JobState.ACTIVE, "attempts": job.attempts},
            changes={
                "state": JobState.COMPLETED,
                "finished_at": self.clock(),
                "result": result,
                "progress": 100,
                "lease_expires_at": None,
                "failure_reason": None,
            },
        )
        if completed:
            metrics.jobs_completed_total.labels(queue=job.queue_name.value).inc()
            logger.info(f"Job {job_id} completed after {job.attempts} attempt(s)")
        return completed

    async def fail(
        self,
        job_id: str,
        reason: str,
        retryable: bool = True,
        attempt: Optional[int] = None,
    ) -> Optional[Job]:
        """Record a failed attempt: back to waiting with backoff, or terminal."""
        job = await self._active_job(job_id, attempt)
        if job is None:
            return None
        return await self._record_failure(job, reason, retryable)

    async def _record_failure(self, job: Job, reason: str, retryable: bool) -> Optional[Job]:
        queue = job.queue_name.value
        expected = {"state": JobState.ACTIVE, "attempts": job.attempts}

        if retryable and job.attempts < job.max_attempts:
            settings = self.config.settings_for(job.queue_name)
            next_eligible_at = self.retry_scheduler.next_eligible_at(
                job.attempts - 1,
                settings.backoff_delay,
                settings.backoff_multiplier,
                settings.max_backoff,
            )
            updated = await self.store.update_job(
                job.id,
                expected=expected,
                changes={
                    "state": JobState.WAITING,
                    "next_eligible_at": next_eligible_at,
                    "failure_reason": reason,
                    "lease_expires_at": None,
                    "worker_id": None,
                },
            )
            if updated:
                metrics.job_retries_total.labels(queue=queue).inc()
                logger.warning(
                    f"Job {job.id} failed attempt {job.attempts}/{job.max_attempts}: "
                    f"{reason}; retrying at {next_eligible_at.isoformat()}"
                )
            return updated

        updated = await self.store.update_job(
            job.id,
            expected=expected,
            changes={
                "state": JobState.FAILED,
                "finished_at": self.clock(),
                "failure_reason": reason,
                "lease_expires_at": None,
            },
        )
        if updated:
            metrics.jobs_failed_total.labels(queue=queue).inc()
            logger.error(
                f"Job {job.id} failed permanently after {job.attempts} attempt(s): {reason}"
            )
        return updated

    async def heartbeat(self, job_id: str, attempt: int) -> bool:
        """Extend the lease of a running job."""
        updated = await self.store.update_job(
            job_id,
            expected={"state": JobState.ACTIVE, "attempts": attempt},
            changes={
                "lease_expires_at": self.clock()
                + timedelta(seconds=self.config.lease_timeout)
            },
        )
        return updated is not None

    async def update_progress(
        self, job_id: str, progress: int, attempt: Optional[int] = None
    ) -> bool:
        progress = max(0, min(100, int(progress)))
        expected: Dict[str, Any] = {"state": JobState.ACTIVE}
        if attempt is not None:
            expected["attempts"] = attempt
        updated = await self.store.update_job(
            job_id, expected=expected, changes={"progress": progress}
        )
        return updated is not None

    async def retry(self, job_id: str) -> Optional[Job]:
        """Manually send a failed job back to waiting.

        With ``manual_retry_resets_attempts`` the job gets its full number of
        attempts again; otherwise it gets exactly one more attempt counted
        against the original cap.
        """
        job = await self.store.get_job(job_id)
        if job is None or job.state != JobState.FAILED:
            return None

        attempts = 0 if self.config.manual_retry_resets_attempts else job.max_attempts - 1
        retried = await self.store.update_job(
            job_id,
            expected={"state": JobState.FAILED, "attempts": job.attempts},
            changes={
                "state": JobState.WAITING,
                "attempts": attempts,
                "next_eligible_at": self.clock(),
                "finished_at": None,
                "progress": 0,
                "worker_id": None,
            },
        )
        if retried:
            logger.info(f"Job {job_id} manually retried (attempts reset to {attempts})")
        return retried

    async def reclaim_expired(self) -> int:
        """Treat active jobs whose lease ran out as failed attempts."""
        reclaimed = 0
        for job in await self.store.find_expired_leases(self.clock()):
            updated = await self._record_failure(
                job, f"Lease expired while held by {job.worker_id}", retryable=True
            )
            if updated:
                reclaimed += 1
                metrics.jobs_reclaimed_total.labels(queue=job.queue_name.value).inc()
        if reclaimed:
            logger.warning(f"Reclaimed {reclaimed} job(s) with expired leases")
        return reclaimed

    async def cleanup(self, retention: Optional[timedelta] = None) -> Dict[str, int]:
        """Prune finished jobs older than the retention window."""
        if retention is None:
            retention = timedelta(hours=self.config.retention_hours)
        cutoff = self.clock() - retention

        removed: Dict[str, int] = {}
        for queue in QueueName:
            counts = await self.store.archive_jobs(queue, cutoff)
            removed[queue.value] = sum(counts.values())
        logger.info(f"Cleaned old jobs from queues: {removed}")
        return removed

    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self.store.get_job(job_id)

    async def get_status(self, queue_name: Union[str, QueueName], job_id: str) -> Optional[Job]:
        queue = parse_queue_name(queue_name)
        job = await self.store.get_job(job_id)
        if job is None or job.queue_name != queue:
            return None
        return job

    async def stats(self, queue_name: Union[str, QueueName]) -> QueueStats:
        counts = await self.store.count_jobs(parse_queue_name(queue_name))
        return QueueStats(**{state.value: count for state, count in counts.items()})

    async def all_stats(self) -> Dict[str, QueueStats]:
        return {queue.value: await self.stats(queue) for queue in QueueName}

    async def archived_stats(self, queue_name: Union[str, QueueName]) -> QueueStats:
        counts = await self.store.archived_counts(parse_queue_name(queue_name))
        return QueueStats(**{state.value: count for state, count in counts.items()})

    async def dead_letter(
        self, queue_name: Union[str, QueueName], limit: int = 100
    ) -> List[FailedJobSummary]:
        """Failed jobs still in the store followed by archived summaries."""
        queue = parse_queue_name(queue_name)
        live = [
            FailedJobSummary(
                id=job.id,
                queue_name=job.queue_name,
                failure_reason=job.failure_reason,
                attempts=job.attempts,
                finished_at=job.finished_at,
            )
            for job in await self.store.list_jobs(queue, JobState.FAILED)
        ]
        archived = await self.store.list_failure_summaries(queue, limit)
        return (live + archived)[:limit]
