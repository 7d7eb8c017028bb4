"""Job queue, handlers and worker pool."""

from receipt_vault.jobs.handlers import (
    EmailHandler,
    ExportHandler,
    JobContext,
    JobHandler,
    OCRHandler,
)
from receipt_vault.jobs.providers import (
    HTTPOCRProvider,
    HTTPReceiptSource,
    OCRProvider,
    ReceiptSource,
)
from receipt_vault.jobs.queue import TaskQueue
from receipt_vault.jobs.worker import WorkerPool

__all__ = [
    "EmailHandler",
    "ExportHandler",
    "JobContext",
    "JobHandler",
    "OCRHandler",
    "HTTPOCRProvider",
    "HTTPReceiptSource",
    "OCRProvider",
    "ReceiptSource",
    "TaskQueue",
    "WorkerPool",
]
