from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from receipt_vault.common.models import (
    JOB_NAMES,
    DeliveryAttempt,
    DeliveryStatus,
    FilterRule,
    Job,
    RetryPolicy,
    WebhookSubscription,
)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def epoch_ms(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(value.timestamp() * 1000)


def job_status_view(job: Job) -> Dict[str, Any]:
    return {
        "id": job.id,
        "name": JOB_NAMES[job.queue_name],
        "data": job.payload.model_dump(mode="json", exclude={"kind"}),
        "progress": job.progress,
        "status": job.state.value,
        "processedOn": epoch_ms(job.processed_at),
        "finishedOn": epoch_ms(job.finished_at),
        "failedReason": job.failure_reason,
        "returnvalue": job.result,
        "attemptsMade": job.attempts,
    }


class RetryPolicyBody(CamelModel):
    max_retries: int = 3
    retry_delay: int = 60  # seconds
    backoff_multiplier: float = 2.0

    def to_policy(self) -> Dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "retry_delay_seconds": self.retry_delay,
            "backoff_multiplier": self.backoff_multiplier,
        }

    @classmethod
    def from_policy(cls, policy: RetryPolicy) -> "RetryPolicyBody":
        return cls(
            max_retries=policy.max_retries,
            retry_delay=policy.retry_delay_seconds,
            backoff_multiplier=policy.backoff_multiplier,
        )


class WebhookCreate(CamelModel):
    url: str
    events: List[str]
    description: Optional[str] = None
    secret: Optional[str] = None
    active: bool = True
    retry_policy: Optional[RetryPolicyBody] = None
    filter_rules: List[FilterRule] = Field(default_factory=list)


class WebhookUpdate(CamelModel):
    url: Optional[str] = None
    events: Optional[List[str]] = None
    description: Optional[str] = None
    secret: Optional[str] = None
    active: Optional[bool] = None
    retry_policy: Optional[RetryPolicyBody] = None
    filter_rules: Optional[List[FilterRule]] = None


class WebhookView(CamelModel):
    id: str
    url: str
    events: List[str]
    description: Optional[str] = None
    active: bool
    retry_policy: RetryPolicyBody
    filter_rules: List[FilterRule]
    created_at: datetime
    updated_at: datetime
    secret: Optional[str] = None

    @classmethod
    def from_subscription(
        cls, subscription: WebhookSubscription, include_secret: bool = False
    ) -> "WebhookView":
        return cls(
            id=subscription.id,
            url=subscription.url,
            events=subscription.events,
            description=subscription.description,
            active=subscription.active,
            retry_policy=RetryPolicyBody.from_policy(subscription.retry_policy),
            filter_rules=subscription.filter_rules,
            created_at=subscription.created_at,
            updated_at=subscription.updated_at,
            secret=subscription.secret if include_secret else None,
        )

    def render(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class DeliveryView(CamelModel):
    id: str
    webhook_id: str
    event_id: str
    event_type: str
    status: DeliveryStatus
    http_status: Optional[int] = None
    attempt_number: int
    scheduled_at: datetime
    next_attempt_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    response_snippet: Optional[str] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None

    @classmethod
    def render(cls, delivery: DeliveryAttempt) -> Dict[str, Any]:
        view = cls.model_validate(delivery.model_dump())
        return view.model_dump(mode="json", by_alias=True)


class WebhookTestRequest(CamelModel):
    event: str = "receipt.created"
    payload: Dict[str, Any] = Field(default_factory=dict)


class SignatureCheck(CamelModel):
    payload: str
    signature: str
    secret: str


def pagination(page: int, limit: int, total: int) -> Dict[str, int]:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": (total + limit - 1) // limit if limit else 0,
    }
