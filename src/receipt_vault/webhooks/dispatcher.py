import asyncio
import time
from collections import Counter
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Hashable, List, Optional, Tuple
from urllib.parse import urlparse

import aiohttp
from loguru import logger
from pydantic import BaseModel

from receipt_vault.common.config import WebhooksConfig
from receipt_vault.common.errors import NotFoundError, ValidationError
from receipt_vault.common.metrics import metrics
from receipt_vault.common.models import (
    EVENT_TYPES,
    DeliveryAttempt,
    DeliveryStatus,
    DomainEvent,
    WebhookSubscription,
    new_id,
    utcnow,
)
from receipt_vault.common.retry import RetryScheduler
from receipt_vault.common.store import Store
from receipt_vault.webhooks import signing
from receipt_vault.webhooks.registry import SubscriptionRegistry

# Due retries looked at per poll.
RETRY_BATCH_SIZE = 100


class DeliveryOutcome(BaseModel):
    success: bool
    http_status: Optional[int] = None
    response_snippet: Optional[str] = None
    error: Optional[str] = None
    duration_ms: int = 0


class _KeyedLocks:
    """One asyncio lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Counter = Counter()

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class WebhookDispatcher:
    """Signs and delivers events to subscribers and drives redeliveries.

    A delivery record exists once per (webhook, event). Its first attempt
    happens during fan-out; later attempts are picked up by
    ``process_due_retries`` once ``next_attempt_at`` has passed.
    """

    def __init__(
        self,
        store: Store,
        registry: SubscriptionRegistry,
        config: WebhooksConfig,
        retry_scheduler: Optional[RetryScheduler] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.registry = registry
        self.config = config
        self.clock = clock
        self.retry_scheduler = retry_scheduler or RetryScheduler(
            cap=config.max_backoff, clock=clock
        )
        self._locks = _KeyedLocks()

    def _headers(
        self,
        subscription: WebhookSubscription,
        event: DomainEvent,
        delivery_id: str,
        body: bytes,
    ) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "User-Agent": self.config.user_agent,
            signing.SIGNATURE_HEADER: signing.sign(body, subscription.secret),
            "X-Webhook-Event": event.type,
            "X-Webhook-Delivery": delivery_id,
            "Idempotency-Key": f"{subscription.id}:{event.id}",
        }

    async def send(
        self, subscription: WebhookSubscription, event: DomainEvent, delivery_id: str
    ) -> DeliveryOutcome:
        """Make one signed POST. Never raises; failures come back in the outcome."""
        body = signing.canonical_body(signing.envelope(event))
        headers = self._headers(subscription, event, delivery_id, body)
        parsed_url = urlparse(subscription.url)
        target = parsed_url.netloc or subscription.url

        http_status = None
        snippet = None
        error = None
        start_time = time.monotonic()
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    subscription.url,
                    data=body,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.config.timeout),
                ) as response:
                    http_status = response.status
                    text = await response.text()
                    snippet = text[: self.config.response_snippet_length]
        except asyncio.TimeoutError:
            error = f"Request timed out after {self.config.timeout}s"
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
        duration = time.monotonic() - start_time
        metrics.delivery_latency.labels(target=target).observe(duration)

        success = http_status is not None and 200 <= http_status < 300
        if http_status is not None and not success:
            error = f"HTTP {http_status}"
        return DeliveryOutcome(
            success=success,
            http_status=http_status,
            response_snippet=snippet,
            error=error,
            duration_ms=int(duration * 1000),
        )

    async def dispatch(self, event: DomainEvent) -> List[DeliveryAttempt]:
        """Fan an event out to every active subscription that matches it."""
        subscriptions = await self.registry.matching(event)
        if not subscriptions:
            logger.debug(f"No webhooks subscribed to {event.type} event {event.id}")
            return []

        results = await asyncio.gather(
            *(self.deliver(event, subscription) for subscription in subscriptions),
            return_exceptions=True,
        )
        deliveries = []
        for subscription, result in zip(subscriptions, results):
            if isinstance(result, BaseException):
                logger.error(
                    f"Error delivering event {event.id} to webhook {subscription.id}: {result}"
                )
            else:
                deliveries.append(result)
        return deliveries

    async def deliver(
        self, event: DomainEvent, subscription: WebhookSubscription
    ) -> DeliveryAttempt:
        now = self.clock()
        async with self._locks.hold((subscription.id, event.id)):
            delivery, created = await self.store.add_delivery(
                DeliveryAttempt(
                    webhook_id=subscription.id,
                    event_id=event.id,
                    event_type=event.type,
                    scheduled_at=now,
                    next_attempt_at=now + timedelta(seconds=self.config.claim_lease),
                )
            )
            if not created:
                logger.debug(
                    f"Delivery of event {event.id} to webhook {subscription.id} already exists"
                )
                return delivery
            return await self._attempt(delivery, subscription, event)

    async def _attempt(
        self,
        delivery: DeliveryAttempt,
        subscription: WebhookSubscription,
        event: DomainEvent,
    ) -> DeliveryAttempt:
        outcome = await self.send(subscription, event, delivery.id)
        return await self._record_outcome(delivery, subscription, outcome)

    async def _record_outcome(
        self,
        delivery: DeliveryAttempt,
        subscription: WebhookSubscription,
        outcome: DeliveryOutcome,
    ) -> DeliveryAttempt:
        attempt_number = delivery.attempt_number + 1
        policy = subscription.retry_policy
        now = self.clock()
        changes: Dict[str, Any] = {
            "attempt_number": attempt_number,
            "http_status": outcome.http_status,
            "response_snippet": outcome.response_snippet,
            "error": outcome.error,
            "duration_ms": outcome.duration_ms,
        }

        if outcome.success:
            changes.update(
                status=DeliveryStatus.SUCCESS, completed_at=now, next_attempt_at=None
            )
        elif attempt_number >= policy.max_retries:
            changes.update(
                status=DeliveryStatus.FAILED, completed_at=now, next_attempt_at=None
            )
        else:
            changes.update(
                status=DeliveryStatus.RETRYING,
                next_attempt_at=self.retry_scheduler.next_eligible_at(
                    attempt_number - 1,
                    policy.retry_delay_seconds,
                    policy.backoff_multiplier,
                    self.config.max_backoff,
                ),
            )

        updated = await self.store.update_delivery(
            delivery.id,
            expected={
                "attempt_number": delivery.attempt_number,
                "status": delivery.status,
            },
            changes=changes,
        )
        if updated is None:
            logger.warning(f"Delivery {delivery.id} changed while sending, outcome dropped")
            return await self.store.get_delivery(delivery.id) or delivery

        status = updated.status
        metrics.deliveries_total.labels(outcome=status.value).inc()
        if status == DeliveryStatus.SUCCESS:
            logger.info(
                f"Delivered event {updated.event_id} to {subscription.url} "
                f"(status={outcome.http_status}, attempt {attempt_number})"
            )
        elif status == DeliveryStatus.RETRYING:
            logger.warning(
                f"Delivery {updated.id} to {subscription.url} failed ({outcome.error}); "
                f"attempt {attempt_number}/{policy.max_retries}, "
                f"next at {updated.next_attempt_at.isoformat()}"
            )
        else:
            logger.error(
                f"Giving up delivery {updated.id} to {subscription.url} "
                f"after {attempt_number} attempt(s): {outcome.error}"
            )
        return updated

    async def _fail_delivery(self, delivery: DeliveryAttempt, reason: str) -> Optional[DeliveryAttempt]:
        updated = await self.store.update_delivery(
            delivery.id,
            expected={"status": delivery.status, "attempt_number": delivery.attempt_number},
            changes={
                "status": DeliveryStatus.FAILED,
                "error": reason,
                "completed_at": self.clock(),
                "next_attempt_at": None,
            },
        )
        if updated:
            metrics.deliveries_total.labels(outcome=DeliveryStatus.FAILED.value).inc()
            logger.warning(f"Delivery {delivery.id} failed: {reason}")
        return updated

    async def _claim_retry(self, delivery: DeliveryAttempt) -> Optional[DeliveryAttempt]:
        return await self.store.update_delivery(
            delivery.id,
            expected={
                "status": delivery.status,
                "attempt_number": delivery.attempt_number,
                "next_attempt_at": delivery.next_attempt_at,
            },
            changes={
                "next_attempt_at": self.clock()
                + timedelta(seconds=self.config.claim_lease)
            },
        )

    async def _redeliver(self, delivery: DeliveryAttempt) -> bool:
        claimed = await self._claim_retry(delivery)
        if claimed is None:
            return False

        subscription = await self.store.get_subscription(claimed.webhook_id)
        if subscription is None or subscription.deleted_at is not None:
            await self._fail_delivery(claimed, "Webhook was deleted")
            return True
        if not subscription.active:
            await self._fail_delivery(claimed, "Webhook is disabled")
            return True

        event = await self.store.get_event(claimed.event_id)
        if event is None:
            await self._fail_delivery(claimed, f"Event {claimed.event_id} no longer exists")
            return True

        async with self._locks.hold((subscription.id, event.id)):
            await self._attempt(claimed, subscription, event)
        return True

    async def process_due_retries(self) -> int:
        """Send every unfinished delivery whose next attempt is due.

        This includes first attempts whose sender never recorded an outcome.
        """
        due = await self.store.find_due_deliveries(self.clock(), RETRY_BATCH_SIZE)
        if not due:
            return 0

        results = await asyncio.gather(
            *(self._redeliver(delivery) for delivery in due), return_exceptions=True
        )
        processed = 0
        for delivery, result in zip(due, results):
            if isinstance(result, BaseException):
                logger.error(f"Error redelivering {delivery.id}: {result}")
            elif result:
                processed += 1
        if processed:
            logger.info(f"Processed {processed} webhook redelivery(ies)")
        return processed

    async def test_webhook(
        self,
        subscription: WebhookSubscription,
        event_type: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> DeliveryOutcome:
        """Send a one-off signed request. Delivery history is not touched."""
        if event_type not in EVENT_TYPES:
            raise ValidationError(f"Unknown event type: {event_type}")
        event = DomainEvent(
            type=event_type,
            payload=payload or {},
            produced_by="webhook-test",
            timestamp=self.clock(),
        )
        outcome = await self.send(subscription, event, f"test-{new_id()}")
        logger.info(
            f"Test delivery to webhook {subscription.id}: success={outcome.success}, "
            f"status={outcome.http_status}"
        )
        return outcome

    @staticmethod
    def verify_signature(raw_body, signature: str, secret: str) -> bool:
        return signing.verify_signature(raw_body, signature, secret)

    async def retry_delivery(
        self, webhook_id: str, delivery_id: str
    ) -> Optional[DeliveryAttempt]:
        """Make a failed delivery due now. Returns None unless it was failed."""
        delivery = await self.store.get_delivery(delivery_id)
        if (
            delivery is None
            or delivery.webhook_id != webhook_id
            or delivery.status != DeliveryStatus.FAILED
        ):
            return None

        subscription = await self.store.get_subscription(webhook_id)
        if subscription is None:
            return None

        if self.config.manual_retry_resets_attempts:
            attempt_number = 0
        else:
            attempt_number = subscription.retry_policy.max_retries - 1

        retried = await self.store.update_delivery(
            delivery_id,
            expected={
                "status": DeliveryStatus.FAILED,
                "attempt_number": delivery.attempt_number,
            },
            changes={
                "status": DeliveryStatus.RETRYING,
                "attempt_number": attempt_number,
                "next_attempt_at": self.clock(),
                "completed_at": None,
            },
        )
        if retried:
            logger.info(f"Delivery {delivery_id} queued for manual retry")
        return retried

    async def list_deliveries(
        self,
        webhook_id: str,
        status: Optional[DeliveryStatus] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[DeliveryAttempt], int]:
        page = max(1, page)
        deliveries = await self.store.list_deliveries(
            webhook_id, status, limit=limit, offset=(page - 1) * limit
        )
        total = await self.store.count_deliveries(webhook_id, status)
        return deliveries, total

    async def get_delivery(self, webhook_id: str, delivery_id: str) -> DeliveryAttempt:
        delivery = await self.store.get_delivery(delivery_id)
        if delivery is None or delivery.webhook_id != webhook_id:
            raise NotFoundError(f"Delivery not found: {delivery_id}")
        return delivery

    async def stats(self, webhook_id: str) -> Dict[str, Any]:
        deliveries = await self.store.list_deliveries(webhook_id)
        counts = Counter(delivery.status for delivery in deliveries)
        durations = [
            delivery.duration_ms
            for delivery in deliveries
            if delivery.duration_ms is not None
        ]
        total = len(deliveries)
        successful = counts.get(DeliveryStatus.SUCCESS, 0)
        return {
            "total": total,
            "successful": successful,
            "failed": counts.get(DeliveryStatus.FAILED, 0),
            "retrying": counts.get(DeliveryStatus.RETRYING, 0),
            "pending": counts.get(DeliveryStatus.PENDING, 0),
            "success_rate": round(100.0 * successful / total, 2) if total else 0.0,
            "average_duration_ms": round(sum(durations) / len(durations), 2)
            if durations
            else 0.0,
            "last_delivery_at": deliveries[0].scheduled_at if deliveries else None,
        }

    async def cleanup(self, retention: Optional[timedelta] = None) -> int:
        """Delete finished deliveries older than the history window."""
        if retention is None:
            retention = timedelta(days=self.config.delivery_retention_days)
        removed = await self.store.delete_deliveries(self.clock() - retention)
        if removed:
            logger.info(f"Removed {removed} old webhook deliveries")
        return removed

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Poll for due redeliveries until ``shutdown_event`` is set."""
        logger.info("Starting webhook redelivery loop")
        while not shutdown_event.is_set():
            try:
                await self.process_due_retries()
            except Exception as e:
                logger.error(f"Error in redelivery loop: {e}")
            try:
                await asyncio.wait_for(shutdown_event.wait(), self.config.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Webhook redelivery loop stopped")
