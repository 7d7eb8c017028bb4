from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from receipt_vault.api.server import create_app
from receipt_vault.common.config import APIConfig, JobsConfig, MetricsConfig, WebhooksConfig
from receipt_vault.common.models import DateRange, OCRResult
from receipt_vault.common.retry import RetryScheduler
from receipt_vault.common.store import MemoryStore
from receipt_vault.jobs.providers import OCRProvider, ReceiptSource
from receipt_vault.jobs.queue import TaskQueue
from receipt_vault.services import build_services
from receipt_vault.webhooks.dispatcher import WebhookDispatcher
from receipt_vault.webhooks.events import EventBus
from receipt_vault.webhooks.registry import SubscriptionRegistry


class FakeClock:
    """Controllable clock for retry and lease timing."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


class FakeOCRProvider(OCRProvider):
    """OCR provider returning a fixed result and recording what it saw."""

    def __init__(self, result: Optional[OCRResult] = None):
        self.result = result or OCRResult(
            text="ACME STORE\nTOTAL 42.50",
            confidence=0.93,
            vendor_name="ACME Store",
            total_amount=42.5,
            currency="USD",
            date="2024-01-01",
        )
        self.calls: List[Dict[str, Any]] = []

    async def extract(self, image: bytes, filename: str) -> OCRResult:
        self.calls.append({"image": image, "filename": filename})
        return self.result


class FakeReceiptSource(ReceiptSource):
    def __init__(self, receipts: Optional[List[Dict[str, Any]]] = None):
        self.receipts = receipts if receipts is not None else [
            {"id": "r-1", "vendor": "ACME", "amount": 12.5},
            {"id": "r-2", "vendor": "Corner Shop", "amount": 7.25, "category": "food"},
        ]
        self.calls: List[Dict[str, Any]] = []

    async def fetch_receipts(
        self,
        user_id: str,
        filters: Dict[str, Any],
        date_range: Optional[DateRange] = None,
    ) -> List[Dict[str, Any]]:
        self.calls.append({"user_id": user_id, "filters": filters, "date_range": date_range})
        return self.receipts


def mock_http_session(responses=None, error: Optional[Exception] = None) -> MagicMock:
    """Build a mock aiohttp session whose ``post`` yields the given responses.

    ``responses`` is a list of (status, text) pairs returned in order.
    Passing ``error`` makes every ``post`` call raise it instead.
    """
    session = MagicMock()
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=None)

    if error is not None:
        session.post = MagicMock(side_effect=error)
        return session

    contexts = []
    for status, text in responses or [(200, "OK")]:
        response = MagicMock()
        response.status = status
        response.text = AsyncMock(return_value=text)
        cm = MagicMock()
        cm.__aenter__ = AsyncMock(return_value=response)
        cm.__aexit__ = AsyncMock(return_value=None)
        contexts.append(cm)
    session.post = MagicMock(side_effect=contexts)
    return session


@pytest.fixture
def clock():
    """Fixture that provides a controllable clock."""
    return FakeClock()


@pytest.fixture
def store():
    """Fixture that provides an empty in-memory store."""
    return MemoryStore()


@pytest.fixture
def jobs_config(tmp_path):
    """Fixture that provides the default job settings with temp directories."""
    return JobsConfig(
        storage_dir=str(tmp_path / "attachments"),
        export_dir=str(tmp_path / "exports"),
    )


@pytest.fixture
def webhooks_config():
    return WebhooksConfig()


@pytest.fixture
def task_queue(store, jobs_config, clock):
    """Fixture that provides a task queue driven by the fake clock."""
    return TaskQueue(store, jobs_config, RetryScheduler(clock=clock.now), clock=clock.now)


@pytest.fixture
def registry(store, clock):
    return SubscriptionRegistry(store, clock=clock.now)


@pytest.fixture
def dispatcher(store, registry, webhooks_config, clock):
    """Fixture that provides a webhook dispatcher driven by the fake clock."""
    return WebhookDispatcher(
        store,
        registry,
        webhooks_config,
        RetryScheduler(cap=webhooks_config.max_backoff, clock=clock.now),
        clock=clock.now,
    )


@pytest.fixture
def event_bus(store, dispatcher, clock):
    return EventBus(store, dispatcher, clock=clock.now)


@pytest.fixture
def ocr_provider():
    return FakeOCRProvider()


@pytest.fixture
def receipt_source():
    """Fixture that provides a receipt source holding two receipts."""
    return FakeReceiptSource()


@pytest.fixture
def http_session():
    """Fixture that provides a factory for mock aiohttp sessions."""
    return mock_http_session


@pytest.fixture
def ocr_payload(tmp_path):
    """Fixture that provides an OCR payload pointing at a small receipt file."""
    receipt_file = tmp_path / "receipt.jpg"
    receipt_file.write_bytes(b"\xff\xd8\xff fake jpeg bytes")
    return {
        "receipt_id": "receipt-1",
        "file_path": str(receipt_file),
        "user_id": "user-1",
        "company_id": "company-1",
    }


@pytest.fixture
def api_config(tmp_path):
    """Fixture that provides an API configuration with metrics disabled."""
    return APIConfig(
        log_level="INFO",
        metrics=MetricsConfig(enabled=False),
        jobs=JobsConfig(
            storage_dir=str(tmp_path / "attachments"),
            export_dir=str(tmp_path / "exports"),
        ),
    )


@pytest.fixture
def services(api_config, store, clock):
    """Fixture that provides the full component graph over the memory store."""
    return build_services(
        api_config,
        store=store,
        ocr_provider=FakeOCRProvider(),
        receipt_source=FakeReceiptSource(),
        clock=clock.now,
        worker_id="test-worker",
    )


@pytest.fixture
def api_client(api_config, services):
    """Fixture that provides a test client for the API."""
    app = create_app(api_config, services)
    with TestClient(app) as client:
        yield client
