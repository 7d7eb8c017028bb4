"""Models, configuration and storage shared by jobs, webhooks and the API."""

from receipt_vault.common.config import (
    APIConfig,
    BaseConfig,
    JobsConfig,
    MetricsConfig,
    QueueSettings,
    SQLStoreConfig,
    StoreType,
    WebhooksConfig,
    WorkerConfig,
    load_config_from_file,
)
from receipt_vault.common.errors import (
    NotFoundError,
    PermanentFailure,
    ReceiptVaultError,
    SignatureFailure,
    TransientFailure,
    ValidationError,
)
from receipt_vault.common.metrics import (
    MetricsRegistry,
    measure_time,
    metrics,
    start_metrics_server,
)
from receipt_vault.common.models import (
    DeliveryAttempt,
    DeliveryStatus,
    DomainEvent,
    Job,
    JobState,
    QueueName,
    QueueStats,
    WebhookSubscription,
)
from receipt_vault.common.retry import RetryScheduler
from receipt_vault.common.store import MemoryStore, Store, create_store

__all__ = [
    # Config
    "APIConfig",
    "BaseConfig",
    "JobsConfig",
    "MetricsConfig",
    "QueueSettings",
    "SQLStoreConfig",
    "StoreType",
    "WebhooksConfig",
    "WorkerConfig",
    "load_config_from_file",
    # Errors
    "NotFoundError",
    "PermanentFailure",
    "ReceiptVaultError",
    "SignatureFailure",
    "TransientFailure",
    "ValidationError",
    # Metrics
    "MetricsRegistry",
    "measure_time",
    "metrics",
    "start_metrics_server",
    # Models
    "DeliveryAttempt",
    "DeliveryStatus",
    "DomainEvent",
    "Job",
    "JobState",
    "QueueName",
    "QueueStats",
    "WebhookSubscription",
    # Retry and storage
    "RetryScheduler",
    "MemoryStore",
    "Store",
    "create_store",
]
