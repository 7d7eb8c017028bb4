import asyncio
import binascii
import csv
import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from loguru import logger

from receipt_vault.common.errors import PermanentFailure, TransientFailure
from receipt_vault.common.models import (
    DomainEvent,
    EmailPayload,
    ExportFormat,
    ExportPayload,
    Job,
    OCRPayload,
    QueueName,
)
from receipt_vault.jobs.providers import OCRProvider, ReceiptSource

if TYPE_CHECKING:
    from receipt_vault.jobs.queue import TaskQueue
    from receipt_vault.webhooks.events import EventBus


class JobContext:
    """What a handler may do besides returning a result."""

    def __init__(
        self,
        job: Job,
        task_queue: "TaskQueue",
        event_bus: Optional["EventBus"] = None,
    ):
        self.job = job
        self.task_queue = task_queue
        self.event_bus = event_bus

    async def update_progress(self, progress: int) -> None:
        await self.task_queue.update_progress(
            self.job.id, progress, attempt=self.job.attempts
        )

    async def enqueue(self, queue_name: QueueName, payload: Dict[str, Any], **options) -> str:
        return await self.task_queue.enqueue(queue_name, payload, **options)

    async def emit(self, event_type: str, payload: Dict[str, Any]) -> Optional[DomainEvent]:
        if self.event_bus is None:
            logger.debug(f"No event bus configured, dropping {event_type}")
            return None
        return await self.event_bus.emit(
            event_type, payload, produced_by=f"{self.job.queue_name.value}-worker"
        )


class JobHandler(ABC):
    queue_name: QueueName

    @abstractmethod
    async def handle(self, job: Job, context: JobContext) -> Dict[str, Any]:
        """Run the job and return its result.

        Raise ``PermanentFailure`` for inputs that can never succeed; any
        other exception counts as a transient failure and is retried.
        """


class OCRHandler(JobHandler):
    queue_name = QueueName.OCR

    def __init__(self, provider: OCRProvider):
        self.provider = provider

    async def handle(self, job: Job, context: JobContext) -> Dict[str, Any]:
        payload: OCRPayload = job.payload
        logger.info(f"Starting OCR processing for receipt {payload.receipt_id}")
        await context.update_progress(10)

        path = Path(payload.file_path)
        try:
            image = await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            raise PermanentFailure(f"Receipt file not found: {path}")
        except OSError as e:
            raise TransientFailure(f"Could not read receipt file {path}: {e}")
        if not image:
            raise PermanentFailure(f"Receipt file is empty: {path}")

        await context.update_progress(20)
        result = await self.provider.extract(image, path.name)
        await context.update_progress(90)

        extracted = {
            "vendor": result.vendor_name,
            "amount": result.total_amount,
            "currency": result.currency,
            "date": result.date,
        }
        await context.emit(
            "receipt.ocr_completed",
            {
                "receiptId": payload.receipt_id,
                "userId": payload.user_id,
                "companyId": payload.company_id,
                "confidence": result.confidence,
                **extracted,
            },
        )
        await context.update_progress(100)

        logger.info(
            f"OCR processing completed for receipt {payload.receipt_id} "
            f"(confidence={result.confidence}, vendor={result.vendor_name}, "
            f"amount={result.total_amount})"
        )
        return {
            "success": True,
            "receipt_id": payload.receipt_id,
            "confidence": result.confidence,
            "extracted_data": extracted,
        }


def _is_supported_attachment(content_type: str) -> bool:
    content_type = content_type.lower()
    return content_type.startswith("image/") or content_type == "application/pdf"


def _write_file(path: Path, content: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)


class EmailHandler(JobHandler):
    """Stores receipt attachments from an inbound email and queues OCR for each."""

    queue_name = QueueName.EMAIL

    def __init__(self, storage_dir: str):
        self.storage_dir = Path(storage_dir)

    async def handle(self, job: Job, context: JobContext) -> Dict[str, Any]:
        payload: EmailPayload = job.payload
        logger.info(
            f"Processing email {payload.email_id} with {len(payload.attachments)} attachments"
        )

        ocr_jobs: List[str] = []
        skipped: List[str] = []
        total = max(1, len(payload.attachments))

        for index, attachment in enumerate(payload.attachments):
            if not _is_supported_attachment(attachment.content_type):
                logger.debug(
                    f"Skipping attachment {attachment.filename} ({attachment.content_type})"
                )
                skipped.append(attachment.filename)
                continue

            try:
                content = attachment.content()
            except (binascii.Error, ValueError):
                raise PermanentFailure(f"Attachment {attachment.filename} is not valid base64")

            receipt_id = f"{payload.email_id}-{index}"
            filename = Path(attachment.filename).name or f"attachment-{index}"
            target = self.storage_dir / payload.email_id / f"{index}-{filename}"
            await asyncio.to_thread(_write_file, target, content)

            ocr_job_id = await context.enqueue(
                QueueName.OCR,
                {
                    "receipt_id": receipt_id,
                    "file_path": str(target),
                    "user_id": payload.user_id,
                },
                job_id=f"ocr-{receipt_id}",
            )
            ocr_jobs.append(ocr_job_id)
            await context.update_progress(int(100 * (index + 1) / total))

        return {
            "success": True,
            "email_id": payload.email_id,
            "processed_attachments": len(ocr_jobs),
            "skipped_attachments": skipped,
            "ocr_jobs": ocr_jobs,
        }


def _write_export(path: Path, export_format: ExportFormat, rows: List[Dict[str, Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if export_format == ExportFormat.JSON:
        with open(path, "w") as f:
            json.dump(rows, f, indent=2, default=str)
        return

    fieldnames: List[str] = []
    for row in rows:
        for key in row:
            if key not in fieldnames:
                fieldnames.append(key)
    with open(path, "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames, restval="")
        writer.writeheader()
        writer.writerows(rows)


class ExportHandler(JobHandler):
    queue_name = QueueName.EXPORT

    def __init__(self, source: ReceiptSource, export_dir: str):
        self.source = source
        self.export_dir = Path(export_dir)

    async def handle(self, job: Job, context: JobContext) -> Dict[str, Any]:
        payload: ExportPayload = job.payload
        logger.info(
            f"Processing export {payload.export_id} of type {payload.format.value} "
            f"for user {payload.user_id}"
        )
        await context.update_progress(25)

        receipts = await self.source.fetch_receipts(
            payload.user_id, payload.filters, payload.date_range
        )
        await context.update_progress(75)

        path = self.export_dir / f"{payload.export_id}.{payload.format.value}"
        await asyncio.to_thread(_write_export, path, payload.format, receipts)

        await context.emit(
            "export.completed",
            {
                "exportId": payload.export_id,
                "userId": payload.user_id,
                "format": payload.format.value,
                "recordCount": len(receipts),
            },
        )
        await context.update_progress(100)

        return {
            "success": True,
            "export_id": payload.export_id,
            "file_path": str(path),
            "record_count": len(receipts),
        }
