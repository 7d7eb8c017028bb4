import base64
import binascii
import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Ids used as file or directory names under a configured root.
SAFE_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.-]*$"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class QueueName(str, Enum):
    OCR = "ocr"
    EMAIL = "email"
    EXPORT = "export"


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATES = (JobState.COMPLETED, JobState.FAILED)

# Job names reported by the status endpoint, one per queue.
JOB_NAMES = {
    QueueName.OCR: "process-receipt-ocr",
    QueueName.EMAIL: "process-email-receipts",
    QueueName.EXPORT: "generate-export",
}


class OCRPayload(BaseModel):
    kind: Literal["ocr"] = "ocr"
    receipt_id: str = Field(min_length=1)
    file_path: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    company_id: Optional[str] = None


class EmailAttachment(BaseModel):
    filename: str = Field(min_length=1)
    content_type: str
    data: str  # base64

    @field_validator("data")
    @classmethod
    def check_base64(cls, value: str) -> str:
        try:
            base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("attachment data is not valid base64")
        return value

    def content(self) -> bytes:
        return base64.b64decode(self.data, validate=True)


class EmailPayload(BaseModel):
    kind: Literal["email"] = "email"
    email_id: str = Field(min_length=1, max_length=200, pattern=SAFE_NAME_PATTERN)
    user_id: str = Field(min_length=1)
    attachments: List[EmailAttachment] = Field(default_factory=list)


class ExportFormat(str, Enum):
    CSV = "csv"
    JSON = "json"


class DateRange(BaseModel):
    start: date
    end: date

    @model_validator(mode="after")
    def check_order(self) -> "DateRange":
        if self.start > self.end:
            raise ValueError("date_range.start must not be after date_range.end")
        return self


class ExportPayload(BaseModel):
    kind: Literal["export"] = "export"
    export_id: str = Field(min_length=1, max_length=200, pattern=SAFE_NAME_PATTERN)
    user_id: str = Field(min_length=1)
    format: ExportFormat = ExportFormat.CSV
    filters: Dict[str, Any] = Field(default_factory=dict)
    date_range: Optional[DateRange] = None


JobPayload = Annotated[
    Union[OCRPayload, EmailPayload, ExportPayload], Field(discriminator="kind")
]

PAYLOAD_MODELS = {
    QueueName.OCR: OCRPayload,
    QueueName.EMAIL: EmailPayload,
    QueueName.EXPORT: ExportPayload,
}


class Job(BaseModel):
    id: str = Field(default_factory=new_id)
    queue_name: QueueName
    payload: JobPayload
    priority: int = 0
    state: JobState = JobState.WAITING
    attempts: int = 0
    max_attempts: int = Field(ge=1)
    progress: int = 0
    sequence: int = 0
    next_eligible_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    lease_expires_at: Optional[datetime] = None
    worker_id: Optional[str] = None
    failure_reason: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


class QueueStats(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0


class FailedJobSummary(BaseModel):
    id: str
    queue_name: QueueName
    failure_reason: Optional[str] = None
    attempts: int
    finished_at: Optional[datetime] = None


class OCRResult(BaseModel):
    text: str = ""
    confidence: float = 0.0
    vendor_name: Optional[str] = None
    total_amount: Optional[float] = None
    currency: Optional[str] = None
    date: Optional[str] = None


EVENT_TYPES = {
    "receipt.created": "Triggered when a new receipt is created",
    "receipt.updated": "Triggered when a receipt is updated",
    "receipt.deleted": "Triggered when a receipt is deleted",
    "receipt.approved": "Triggered when a receipt is approved",
    "receipt.rejected": "Triggered when a receipt is rejected",
    "receipt.ocr_completed": "Triggered when OCR extraction finishes for a receipt",
    "user.created": "Triggered when a user is created",
    "user.updated": "Triggered when a user is updated",
    "user.deleted": "Triggered when a user is deleted",
    "company.updated": "Triggered when company settings change",
    "api_key.created": "Triggered when an API key is created",
    "api_key.revoked": "Triggered when an API key is revoked",
    "export.completed": "Triggered when a receipt export file is ready",
}


class DomainEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    produced_by: str = "system"
    timestamp: datetime = Field(default_factory=utcnow)


class FilterOperator(str, Enum):
    EQUALS = "equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"


class FilterRule(BaseModel):
    field: str = Field(min_length=1)
    operator: FilterOperator
    value: str


class RetryPolicy(BaseModel):
    max_retries: int = Field(default=3, ge=1, le=10)
    retry_delay_seconds: int = Field(default=60, ge=1, le=3600)
    backoff_multiplier: float = Field(default=2.0, ge=1, le=5)


class WebhookSubscription(BaseModel):
    id: str = Field(default_factory=new_id)
    owner_id: str
    url: str
    secret: str
    description: Optional[str] = None
    events: List[str]
    filter_rules: List[FilterRule] = Field(default_factory=list)
    active: bool = True
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    RETRYING = "retrying"


TERMINAL_DELIVERY_STATUSES = (DeliveryStatus.SUCCESS, DeliveryStatus.FAILED)


class DeliveryAttempt(BaseModel):
    id: str = Field(default_factory=new_id)
    webhook_id: str
    event_id: str
    event_type: str
    status: DeliveryStatus = DeliveryStatus.PENDING
    http_status: Optional[int] = None
    attempt_number: int = 0
    scheduled_at: datetime = Field(default_factory=utcnow)
    next_attempt_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    response_snippet: Optional[str] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None
