import secrets
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
from urllib.parse import urlparse

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from receipt_vault.common.errors import NotFoundError, ValidationError
from receipt_vault.common.models import (
    EVENT_TYPES,
    DomainEvent,
    FilterOperator,
    FilterRule,
    RetryPolicy,
    WebhookSubscription,
    utcnow,
)
from receipt_vault.common.store import Store
from receipt_vault.webhooks.filters import as_number, matches

MIN_SECRET_LENGTH = 8
MAX_SECRET_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500

UPDATABLE_FIELDS = (
    "url",
    "events",
    "description",
    "secret",
    "active",
    "retry_policy",
    "filter_rules",
)


def generate_secret() -> str:
    return secrets.token_hex(32)


def validate_url(url: str) -> str:
    parsed = urlparse(url or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"Invalid webhook URL: {url}")
    return url


def validate_events(events: Iterable[str]) -> List[str]:
    events = list(dict.fromkeys(events or []))
    if not events:
        raise ValidationError("At least one event type is required")
    unknown = [event for event in events if event not in EVENT_TYPES]
    if unknown:
        raise ValidationError(f"Unknown event type(s): {', '.join(unknown)}")
    return events


def validate_secret(secret: str) -> str:
    if not MIN_SECRET_LENGTH <= len(secret) <= MAX_SECRET_LENGTH:
        raise ValidationError(
            f"Secret must be between {MIN_SECRET_LENGTH} and {MAX_SECRET_LENGTH} characters"
        )
    return secret


def validate_description(description: Optional[str]) -> Optional[str]:
    if description is not None and len(description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(
            f"Description must be at most {MAX_DESCRIPTION_LENGTH} characters"
        )
    return description


def validate_filter_rules(
    rules: Optional[Iterable[Union[FilterRule, Dict[str, Any]]]]
) -> List[FilterRule]:
    validated = []
    for rule in rules or []:
        try:
            rule = FilterRule.model_validate(rule)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid filter rule: {e}")
        numeric = rule.operator in (FilterOperator.GREATER_THAN, FilterOperator.LESS_THAN)
        if numeric and as_number(rule.value) is None:
            raise ValidationError(
                f"Filter on {rule.field} uses {rule.operator.value} with a non-numeric value"
            )
        validated.append(rule)
    return validated


def validate_retry_policy(
    policy: Optional[Union[RetryPolicy, Dict[str, Any]]]
) -> RetryPolicy:
    if policy is None:
        return RetryPolicy()
    try:
        return RetryPolicy.model_validate(policy)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid retry policy: {e}")


class SubscriptionRegistry:
    """Owner-scoped CRUD over webhook subscriptions."""

    def __init__(self, store: Store, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    async def create(
        self,
        owner_id: str,
        url: str,
        events: Iterable[str],
        description: Optional[str] = None,
        secret: Optional[str] = None,
        active: bool = True,
        retry_policy: Optional[Union[RetryPolicy, Dict[str, Any]]] = None,
        filter_rules: Optional[Iterable[Union[FilterRule, Dict[str, Any]]]] = None,
    ) -> WebhookSubscription:
        now = self.clock()
        subscription = WebhookSubscription(
            owner_id=owner_id,
            url=validate_url(url),
            secret=validate_secret(secret) if secret else generate_secret(),
            description=validate_description(description),
            events=validate_events(events),
            filter_rules=validate_filter_rules(filter_rules),
            active=active,
            retry_policy=validate_retry_policy(retry_policy),
            created_at=now,
            updated_at=now,
        )
        await self.store.add_subscription(subscription)
        logger.info(
            f"Webhook {subscription.id} created for owner {owner_id} "
            f"({subscription.url}, events={subscription.events})"
        )
        return subscription

    async def get(
        self, subscription_id: str, owner_id: Optional[str] = None
    ) -> WebhookSubscription:
        subscription = await self.store.get_subscription(subscription_id)
        if (
            subscription is None
            or subscription.deleted_at is not None
            or (owner_id is not None and subscription.owner_id != owner_id)
        ):
            raise NotFoundError(f"Webhook not found: {subscription_id}")
        return subscription

    async def list(
        self,
        owner_id: Optional[str] = None,
        active: Optional[bool] = None,
        event: Optional[str] = None,
    ) -> List[WebhookSubscription]:
        return [
            subscription
            for subscription in await self.store.list_subscriptions(owner_id)
            if (active is None or subscription.active == active)
            and (event is None or event in subscription.events)
        ]

    async def update(
        self, subscription_id: str, owner_id: Optional[str] = None, **changes: Any
    ) -> WebhookSubscription:
        """Apply a partial update. Fields passed as None are left unchanged."""
        await self.get(subscription_id, owner_id)

        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

        validators = {
            "url": validate_url,
            "events": validate_events,
            "description": validate_description,
            "secret": validate_secret,
            "retry_policy": validate_retry_policy,
            "filter_rules": validate_filter_rules,
            "active": bool,
        }
        updates = {
            field: validators[field](value)
            for field, value in changes.items()
            if value is not None
        }
        updates["updated_at"] = self.clock()

        updated = await self.store.update_subscription(subscription_id, updates)
        if updated is None:
            raise NotFoundError(f"Webhook not found: {subscription_id}")
        logger.info(f"Webhook {subscription_id} updated: {sorted(updates)}")
        return updated

    async def delete(self, subscription_id: str, owner_id: Optional[str] = None) -> None:
        """Soft delete: the record stays for delivery history but stops receiving events."""
        await self.get(subscription_id, owner_id)
        now = self.clock()
        await self.store.update_subscription(
            subscription_id, {"deleted_at": now, "active": False, "updated_at": now}
        )
        logger.info(f"Webhook {subscription_id} deleted")

    async def matching(self, event: DomainEvent) -> List[WebhookSubscription]:
        return [
            subscription
            for subscription in await self.store.list_subscriptions()
            if subscription.active and matches(event, subscription)
        ]
