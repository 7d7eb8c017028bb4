"""Domain events and outbound webhook delivery."""

from receipt_vault.webhooks.dispatcher import DeliveryOutcome, WebhookDispatcher
from receipt_vault.webhooks.events import EventBus
from receipt_vault.webhooks.filters import matches
from receipt_vault.webhooks.registry import SubscriptionRegistry
from receipt_vault.webhooks.signing import (
    SIGNATURE_HEADER,
    require_valid_signature,
    sign,
    verify_signature,
)

__all__ = [
    "DeliveryOutcome",
    "WebhookDispatcher",
    "EventBus",
    "matches",
    "SubscriptionRegistry",
    "SIGNATURE_HEADER",
    "require_valid_signature",
    "sign",
    "verify_signature",
]
