import asyncio
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Set

from loguru import logger

from receipt_vault.common.errors import ValidationError
from receipt_vault.common.metrics import metrics
from receipt_vault.common.models import EVENT_TYPES, DomainEvent, utcnow
from receipt_vault.common.store import Store

if TYPE_CHECKING:
    from receipt_vault.webhooks.dispatcher import WebhookDispatcher


class EventBus:
    """Persists domain events and hands them to the dispatcher.

    ``emit`` returns as soon as the event is stored. Fan-out to subscribers
    runs as a background task whose errors are logged and never reach the
    producer.
    """

    def __init__(
        self,
        store: Store,
        dispatcher: Optional["WebhookDispatcher"] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock
        self._tasks: Set[asyncio.Task] = set()

    async def emit(
        self, event_type: str, payload: Dict[str, Any], produced_by: str = "system"
    ) -> DomainEvent:
        if event_type not in EVENT_TYPES:
            raise ValidationError(f"Unknown event type: {event_type}")
        if not isinstance(payload, dict):
            raise ValidationError("Event payload must be a JSON object")

        event = DomainEvent(
            type=event_type,
            payload=payload,
            produced_by=produced_by,
            timestamp=self.clock(),
        )
        await self.store.add_event(event)
        metrics.events_emitted_total.labels(event_type=event_type).inc()
        logger.info(f"Emitted {event_type} event {event.id} from {produced_by}")

        if self.dispatcher is not None:
            task = asyncio.create_task(self.dispatcher.dispatch(event))
            self._tasks.add(task)
            task.add_done_callback(self._fan_out_done)
        return event

    def _fan_out_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Webhook fan-out failed: {error}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every fan-out started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
