from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from receipt_vault.common.errors import ValidationError
from receipt_vault.webhooks.events import EventBus


class TestEventBus:

    @pytest.mark.asyncio
    async def test_emit_persists_event(self, store, clock):
        bus = EventBus(store, clock=clock.now)

        event = await bus.emit("receipt.created", {"receiptId": "r-1"}, produced_by="receipts-api")

        stored = await store.get_event(event.id)
        assert stored.payload == {"receiptId": "r-1"}
        assert stored.produced_by == "receipts-api"
        assert stored.timestamp == clock.now()
        assert bus.pending == 0

    @pytest.mark.asyncio
    async def test_unknown_event_type(self, store):
        bus = EventBus(store)
        with pytest.raises(ValidationError, match="Unknown event type"):
            await bus.emit("receipt.exploded", {})

    @pytest.mark.asyncio
    async def test_payload_must_be_object(self, store):
        bus = EventBus(store)
        with pytest.raises(ValidationError, match="JSON object"):
            await bus.emit("receipt.created", ["not", "an", "object"])

    @pytest.mark.asyncio
    async def test_fan_out_runs_in_background(self, store):
        """Test that emit hands the event to the dispatcher and drain waits for it."""
        dispatcher = MagicMock()
        dispatcher.dispatch = AsyncMock(return_value=[])
        bus = EventBus(store, dispatcher)

        event = await bus.emit("receipt.created", {"receiptId": "r-1"})
        await bus.drain()

        dispatcher.dispatch.assert_awaited_once_with(event)
        assert bus.pending == 0

    @pytest.mark.asyncio
    async def test_fan_out_errors_are_logged(self, store):
        """Test that a dispatcher failure never reaches the producer."""
        dispatcher = MagicMock()
        dispatcher.dispatch = AsyncMock(side_effect=RuntimeError("store unavailable"))
        bus = EventBus(store, dispatcher)

        with patch("receipt_vault.webhooks.events.logger") as mock_logger:
            await bus.emit("receipt.created", {"receiptId": "r-1"})
            await bus.drain()

        mock_logger.error.assert_called_once()
        assert "store unavailable" in mock_logger.error.call_args.args[0]
