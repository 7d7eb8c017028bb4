from datetime import datetime
from typing import Callable, Dict, Optional

from loguru import logger

from receipt_vault.common.config import BaseConfig
from receipt_vault.common.models import QueueName, utcnow
from receipt_vault.common.retry import RetryScheduler
from receipt_vault.common.store import Store, create_store
from receipt_vault.jobs.handlers import EmailHandler, ExportHandler, JobHandler, OCRHandler
from receipt_vault.jobs.providers import (
    HTTPOCRProvider,
    HTTPReceiptSource,
    OCRProvider,
    ReceiptSource,
)
from receipt_vault.jobs.queue import TaskQueue
from receipt_vault.jobs.worker import WorkerPool
from receipt_vault.webhooks.dispatcher import WebhookDispatcher
from receipt_vault.webhooks.events import EventBus
from receipt_vault.webhooks.registry import SubscriptionRegistry


class Services:
    """The components one process needs, sharing a single store."""

    def __init__(
        self,
        config: BaseConfig,
        store: Store,
        task_queue: TaskQueue,
        registry: SubscriptionRegistry,
        dispatcher: WebhookDispatcher,
        event_bus: EventBus,
        worker_pool: WorkerPool,
    ):
        self.config = config
        self.store = store
        self.task_queue = task_queue
        self.registry = registry
        self.dispatcher = dispatcher
        self.event_bus = event_bus
        self.worker_pool = worker_pool

    async def start(self) -> None:
        await self.store.initialize()

    async def close(self) -> None:
        await self.event_bus.drain()
        await self.store.close()


def build_handlers(
    config: BaseConfig,
    ocr_provider: Optional[OCRProvider] = None,
    receipt_source: Optional[ReceiptSource] = None,
) -> Dict[QueueName, JobHandler]:
    if ocr_provider is None and config.ocr.url:
        ocr_provider = HTTPOCRProvider(config.ocr)
    if receipt_source is None and config.receipts.url:
        receipt_source = HTTPReceiptSource(config.receipts)

    handlers: Dict[QueueName, JobHandler] = {
        QueueName.EMAIL: EmailHandler(config.jobs.storage_dir),
    }
    if ocr_provider is not None:
        handlers[QueueName.OCR] = OCRHandler(ocr_provider)
    else:
        logger.warning("No OCR provider configured, ocr jobs will stay queued")
    if receipt_source is not None:
        handlers[QueueName.EXPORT] = ExportHandler(receipt_source, config.jobs.export_dir)
    else:
        logger.warning("No receipt source configured, export jobs will stay queued")
    return handlers


def build_services(
    config: BaseConfig,
    store: Optional[Store] = None,
    ocr_provider: Optional[OCRProvider] = None,
    receipt_source: Optional[ReceiptSource] = None,
    clock: Callable[[], datetime] = utcnow,
    worker_id: Optional[str] = None,
) -> Services:
    if store is None:
        config.validate_store_config()
        store = create_store(config.store_type, config.sql)

    task_queue = TaskQueue(store, config.jobs, RetryScheduler(clock=clock), clock=clock)
    registry = SubscriptionRegistry(store, clock=clock)
    dispatcher = WebhookDispatcher(
        store,
        registry,
        config.webhooks,
        RetryScheduler(cap=config.webhooks.max_backoff, clock=clock),
        clock=clock,
    )
    event_bus = EventBus(store, dispatcher, clock=clock)
    worker_pool = WorkerPool(
        task_queue,
        build_handlers(config, ocr_provider, receipt_source),
        config.jobs,
        event_bus=event_bus,
        dispatcher=dispatcher,
        worker_id=worker_id,
    )
    return Services(config, store, task_queue, registry, dispatcher, event_bus, worker_pool)
