"""External collaborators used by job handlers.

The OCR engine and the receipt store live outside this service. Handlers
talk to them through these small interfaces, and the HTTP implementations
below are what the worker wires up from configuration.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import aiohttp
from loguru import logger

from receipt_vault.common.config import OCRProviderConfig, ReceiptSourceConfig
from receipt_vault.common.errors import PermanentFailure, TransientFailure
from receipt_vault.common.models import DateRange, OCRResult


class OCRProvider(ABC):
    @abstractmethod
    async def extract(self, image: bytes, filename: str) -> OCRResult:
        pass


class ReceiptSource(ABC):
    @abstractmethod
    async def fetch_receipts(
        self,
        user_id: str,
        filters: Dict[str, Any],
        date_range: Optional[DateRange] = None,
    ) -> List[Dict[str, Any]]:
        pass


def _raise_for_status(service: str, status: int, body: str) -> None:
    if status < 400:
        return
    message = f"{service} returned HTTP {status}: {body[:200]}"
    # Client errors other than throttling mean the request itself is bad.
    if 400 <= status < 500 and status not in (408, 429):
        raise PermanentFailure(message)
    raise TransientFailure(message)


class HTTPOCRProvider(OCRProvider):
    """Posts the raw image to an OCR service and reads back JSON fields."""

    def __init__(self, config: OCRProviderConfig):
        if not config.url:
            raise ValueError("OCR provider URL is not configured")
        self.url = config.url
        self.api_key = config.api_key
        self.timeout = config.timeout

    async def extract(self, image: bytes, filename: str) -> OCRResult:
        headers = {"Content-Type": "application/octet-stream", "X-Filename": filename}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.url,
                    data=image,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response:
                    if response.status >= 400:
                        _raise_for_status("OCR provider", response.status, await response.text())
                    data = await response.json()
        except aiohttp.ClientError as e:
            raise TransientFailure(f"OCR provider unreachable: {e}")

        logger.debug(f"OCR provider processed {filename}")
        return OCRResult.model_validate(data)


class HTTPReceiptSource(ReceiptSource):
    """Reads a user's receipts from the receipts service."""

    def __init__(self, config: ReceiptSourceConfig):
        if not config.url:
            raise ValueError("Receipt source URL is not configured")
        self.url = config.url.rstrip("/")
        self.timeout = config.timeout

    async def fetch_receipts(
        self,
        user_id: str,
        filters: Dict[str, Any],
        date_range: Optional[DateRange] = None,
    ) -> List[Dict[str, Any]]:
        params = {"userId": user_id}
        params.update({key: str(value) for key, value in filters.items()})
        if date_range:
            params["startDate"] = date_range.start.isoformat()
            params["endDate"] = date_range.end.isoformat()

        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    f"{self.url}/receipts",
                    params=params,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response:
                    if response.status >= 400:
                        _raise_for_status("Receipt source", response.status, await response.text())
                    data = await response.json()
        except aiohttp.ClientError as e:
            raise TransientFailure(f"Receipt source unreachable: {e}")

        if isinstance(data, dict):
            data = data.get("receipts", [])
        return list(data)
