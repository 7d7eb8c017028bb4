import hashlib
import hmac
import json
from typing import Any, Dict, Union

from loguru import logger

from receipt_vault.common.errors import SignatureFailure
from receipt_vault.common.models import DomainEvent

SIGNATURE_HEADER = "X-Webhook-Signature"
SIGNATURE_PREFIX = "sha256="


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def envelope(event: DomainEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "type": event.type,
        "producedBy": event.produced_by,
        "timestamp": event.timestamp.isoformat(),
        "data": event.payload,
    }


def canonical_body(document: Any) -> bytes:
    """Serialize with sorted keys and compact separators, as UTF-8."""
    return json.dumps(
        document, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str
    ).encode("utf-8")


def sign(raw_body: Union[str, bytes], secret: str) -> str:
    """Hex HMAC-SHA256 of the raw body under ``secret``."""
    return hmac.new(_to_bytes(secret), _to_bytes(raw_body), hashlib.sha256).hexdigest()


def verify_signature(raw_body: Union[str, bytes], signature: str, secret: str) -> bool:
    if not signature or not secret:
        return False
    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX):]
    expected = sign(raw_body, secret)
    return hmac.compare_digest(_to_bytes(expected), _to_bytes(signature))


def require_valid_signature(raw_body: Union[str, bytes], signature: str, secret: str) -> None:
    if not verify_signature(raw_body, signature, secret):
        logger.warning("Rejected webhook payload with an invalid signature")
        raise SignatureFailure("Invalid webhook signature")
