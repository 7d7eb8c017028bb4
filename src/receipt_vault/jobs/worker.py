import asyncio
import os
import socket
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

from loguru import logger

from receipt_vault.common.config import JobsConfig
from receipt_vault.common.errors import PermanentFailure
from receipt_vault.common.metrics import measure_time, metrics
from receipt_vault.common.models import Job, QueueName
from receipt_vault.jobs.handlers import JobContext, JobHandler
from receipt_vault.jobs.queue import TaskQueue, parse_queue_name

if TYPE_CHECKING:
    from receipt_vault.webhooks.dispatcher import WebhookDispatcher
    from receipt_vault.webhooks.events import EventBus


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


async def _wait(shutdown_event: asyncio.Event, timeout: float) -> None:
    try:
        await asyncio.wait_for(shutdown_event.wait(), timeout)
    except asyncio.TimeoutError:
        pass


class WorkerPool:
    """Runs independent claim loops for each queue that has a handler.

    Each queue gets as many loops as its ``concurrency`` setting. Next to
    them a heartbeat loop keeps the leases of running jobs alive, and a
    maintenance loop reclaims expired leases and prunes old history. When
    a dispatcher is given, its redelivery loop runs in the same pool.
    """

    def __init__(
        self,
        task_queue: TaskQueue,
        handlers: Dict[QueueName, JobHandler],
        config: JobsConfig,
        event_bus: Optional["EventBus"] = None,
        dispatcher: Optional["WebhookDispatcher"] = None,
        worker_id: Optional[str] = None,
    ):
        self.task_queue = task_queue
        self.handlers = handlers
        self.config = config
        self.event_bus = event_bus
        self.dispatcher = dispatcher
        self.worker_id = worker_id or default_worker_id()
        self._running: Dict[str, Job] = {}
        self._shutdown_event: Optional[asyncio.Event] = None

    async def process_one(
        self, queue_name: Union[str, QueueName], worker_id: Optional[str] = None
    ) -> Optional[Job]:
        """Claim and run a single job.

        Returns the job as recorded after the attempt, or None when nothing
        was eligible.
        """
        queue = parse_queue_name(queue_name)
        job = await self.task_queue.claim(queue, worker_id or self.worker_id)
        if job is None:
            return None
        return await self._run_job(job)

    @measure_time(
        metrics.job_processing_time,
        lambda self, handler, job, *_: {"queue": job.queue_name.value},
    )
    async def _execute(
        self, handler: JobHandler, job: Job, context: JobContext, timeout: float
    ) -> Dict[str, Any]:
        return await asyncio.wait_for(handler.handle(job, context), timeout)

    async def _run_job(self, job: Job) -> Optional[Job]:
        queue = job.queue_name.value
        handler = self.handlers.get(job.queue_name)
        if handler is None:
            return await self.task_queue.fail(
                job.id,
                f"No handler registered for queue {queue}",
                retryable=False,
                attempt=job.attempts,
            )

        settings = self.config.settings_for(job.queue_name)
        context = JobContext(job, self.task_queue, self.event_bus)
        self._running[job.id] = job
        try:
            result = await self._execute(handler, job, context, settings.handler_timeout)
        except PermanentFailure as e:
            logger.error(f"Job {job.id} on {queue} failed permanently: {e}")
            return await self.task_queue.fail(
                job.id, str(e), retryable=False, attempt=job.attempts
            )
        except asyncio.TimeoutError:
            reason = f"Handler timed out after {settings.handler_timeout}s"
            logger.error(f"Job {job.id} on {queue}: {reason}")
            return await self.task_queue.fail(
                job.id, reason, retryable=True, attempt=job.attempts
            )
        except Exception as e:
            logger.error(f"Job {job.id} on {queue} raised {type(e).__name__}: {e}")
            return await self.task_queue.fail(
                job.id, str(e) or type(e).__name__, retryable=True, attempt=job.attempts
            )
        finally:
            self._running.pop(job.id, None)

        return await self.task_queue.complete(job.id, result, attempt=job.attempts)

    async def _worker_loop(
        self, queue: QueueName, index: int, shutdown_event: asyncio.Event
    ) -> None:
        worker_id = f"{self.worker_id}:{queue.value}:{index}"
        logger.debug(f"Worker {worker_id} started")

        while not shutdown_event.is_set():
            try:
                job = await self.task_queue.claim(queue, worker_id)
                if job is None:
                    await _wait(shutdown_event, self.config.poll_interval)
                    continue
                await self._run_job(job)
            except Exception as e:
                logger.error(f"Error in {queue.value} worker loop: {e}")
                await _wait(shutdown_event, self.config.poll_interval)

        logger.debug(f"Worker {worker_id} stopped")

    async def send_heartbeats(self) -> int:
        """Extend the lease of every job this pool is running."""
        extended = 0
        for job in list(self._running.values()):
            if await self.task_queue.heartbeat(job.id, job.attempts):
                extended += 1
            else:
                logger.warning(f"Lost lease on job {job.id} (attempt {job.attempts})")
        return extended

    async def _heartbeat_loop(self, shutdown_event: asyncio.Event) -> None:
        while not shutdown_event.is_set():
            await _wait(shutdown_event, self.config.heartbeat_interval)
            try:
                await self.send_heartbeats()
            except Exception as e:
                logger.error(f"Error sending heartbeats: {e}")

    async def run_maintenance(self) -> Dict[str, Any]:
        """Reclaim expired leases and prune finished jobs and deliveries."""
        summary: Dict[str, Any] = {
            "reclaimed": await self.task_queue.reclaim_expired(),
            "pruned": await self.task_queue.cleanup(),
        }
        if self.dispatcher is not None:
            summary["deliveries_purged"] = await self.dispatcher.cleanup()
        return summary

    async def _maintenance_loop(self, shutdown_event: asyncio.Event) -> None:
        while not shutdown_event.is_set():
            try:
                await self.run_maintenance()
            except Exception as e:
                logger.error(f"Error in maintenance loop: {e}")
            await _wait(shutdown_event, self.config.maintenance_interval)

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Run all loops until ``shutdown_event`` is set.

        Jobs already running are allowed to finish; no new ones are claimed.
        """
        self._shutdown_event = shutdown_event
        tasks: List[asyncio.Task] = []
        for queue, handler in self.handlers.items():
            concurrency = self.config.settings_for(queue).concurrency
            logger.info(
                f"Starting {concurrency} {queue.value} worker(s) with {type(handler).__name__}"
            )
            for index in range(concurrency):
                tasks.append(
                    asyncio.create_task(self._worker_loop(queue, index, shutdown_event))
                )
        tasks.append(asyncio.create_task(self._heartbeat_loop(shutdown_event)))
        tasks.append(asyncio.create_task(self._maintenance_loop(shutdown_event)))
        if self.dispatcher is not None:
            tasks.append(asyncio.create_task(self.dispatcher.run(shutdown_event)))

        metrics.up.labels(component="worker").set(1)
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            if self.event_bus is not None:
                await self.event_bus.drain()
            metrics.up.labels(component="worker").set(0)
            logger.info("Worker pool stopped")

    def stop(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()
