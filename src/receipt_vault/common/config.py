from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Type, TypeVar

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from receipt_vault.common.models import QueueName


class StoreType(str, Enum):
    MEMORY = "memory"
    SQL = "sql"


class SQLStoreConfig(BaseModel):
    url: str = "sqlite+aiosqlite:///receipt_vault.db"
    echo: bool = False


class MetricsConfig(BaseModel):
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 9090
    path: str = "/metrics"


class QueueSettings(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    backoff_delay: float = 2.0  # seconds
    backoff_multiplier: float = 2.0
    max_backoff: float = 3600.0  # seconds
    concurrency: int = Field(default=1, ge=1)
    handler_timeout: float = 120.0  # seconds


def default_queue_settings() -> Dict[QueueName, QueueSettings]:
    return {
        QueueName.OCR: QueueSettings(
            max_attempts=3, backoff_delay=2.0, concurrency=5, handler_timeout=60.0
        ),
        QueueName.EMAIL: QueueSettings(
            max_attempts=5, backoff_delay=5.0, concurrency=3
        ),
        QueueName.EXPORT: QueueSettings(
            max_attempts=2, backoff_delay=3.0, concurrency=2, handler_timeout=300.0
        ),
    }


class JobsConfig(BaseModel):
    queues: Dict[QueueName, QueueSettings] = Field(
        default_factory=default_queue_settings
    )
    poll_interval: float = 1.0  # seconds
    lease_timeout: float = 300.0  # seconds
    heartbeat_interval: float = 30.0  # seconds
    maintenance_interval: float = 60.0  # seconds
    retention_hours: float = 24.0
    manual_retry_resets_attempts: bool = True
    storage_dir: str = "./data/attachments"
    export_dir: str = "./data/exports"

    @field_validator("queues")
    @classmethod
    def fill_missing_queues(cls, value: Dict[QueueName, QueueSettings]):
        merged = default_queue_settings()
        merged.update(value)
        return merged

    def settings_for(self, queue_name: QueueName) -> QueueSettings:
        return self.queues[QueueName(queue_name)]


class WebhooksConfig(BaseModel):
    timeout: float = 10.0  # seconds
    poll_interval: float = 5.0  # seconds
    max_backoff: float = 3600.0  # seconds
    claim_lease: float = 60.0  # seconds
    delivery_retention_days: float = 30.0
    response_snippet_length: int = 500
    user_agent: str = "ReceiptVault-Webhooks/0.1"
    manual_retry_resets_attempts: bool = True

    @model_validator(mode="after")
    def validate_claim_lease(self) -> "WebhooksConfig":
        # Unfinished deliveries are reclaimed once their lease passes.
        if self.claim_lease <= self.timeout:
            raise ValueError("claim_lease must be longer than the request timeout")
        return self


class OCRProviderConfig(BaseModel):
    url: Optional[str] = None
    api_key: Optional[str] = None
    timeout: float = 30.0  # seconds


class ReceiptSourceConfig(BaseModel):
    url: Optional[str] = None
    timeout: float = 30.0  # seconds


class BaseConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="RECEIPT_VAULT_",
        extra="ignore",
    )

    log_level: str = "INFO"
    store_type: StoreType = StoreType.MEMORY
    sql: SQLStoreConfig = SQLStoreConfig()
    metrics: MetricsConfig = MetricsConfig()
    jobs: JobsConfig = JobsConfig()
    webhooks: WebhooksConfig = WebhooksConfig()
    ocr: OCRProviderConfig = OCRProviderConfig()
    receipts: ReceiptSourceConfig = ReceiptSourceConfig()

    def validate_store_config(self) -> None:
        if self.store_type == StoreType.SQL and not self.sql.url:
            raise ValueError("SQL store selected but no database URL provided")


class APIConfig(BaseConfig):
    host: str = "0.0.0.0"
    port: int = 8000
    run_workers: bool = False


class WorkerConfig(BaseConfig):
    worker_id: Optional[str] = None


ConfigT = TypeVar("ConfigT", bound=BaseConfig)


def load_config_from_file(config_path: str, config_cls: Type[ConfigT]) -> ConfigT:
    """Load configuration from a YAML file."""
    file_path = Path(config_path)
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(file_path, "r") as f:
        config_data = yaml.safe_load(f) or {}

    return config_cls.model_validate(config_data)
