import pytest
from unittest.mock import patch
from uuid import uuid4
from app.consumers.notification_consumer import handle_notification_event, render_notification
from app.consumers.outbox_poller import poll_outbox_for_new_events
from app.core.config import MAX_ATTEMPTS
from app.models.order import Actor
from app.models.outbox import OutboxEvent
from app.models.processed_event import ProcessedEvent
from app.services.order_service import update_order_status


class TestNotificationConsumer:

    def test_render_status_change(self):
        notification = render_notification("order.status_changed.v1", {
            "order_id": "o-1", "user_id": "user-1", "restaurant_id": "r-1", "new_status": "preparing",
        })
        assert notification == {"audience": "user", "recipient": "user-1", "message": "Order o-1 is now preparing."}

    def test_render_unknown_event(self):
        assert render_notification("order.teleported.v1", {"order_id": "o-1"}) is None

    def test_render_missing_field_falls_back(self):
        notification = render_notification("order.rated.v1", {"order_id": "o-1", "restaurant_id": "r-1"})
        assert notification["recipient"] == "r-1"
        assert notification["message"] == "Update for order o-1."

    @pytest.mark.asyncio
    async def test_notification_sent_once(self, db):
        event_id = uuid4()
        payload = {"order_id": "o-1", "user_id": "user-1", "restaurant_id": "r-1", "total": "565.00"}

        with patch("app.consumers.notification_consumer.send_notification") as mock_send:
            assert await handle_notification_event("order.placed.v1", payload, event_id) is True
            assert await handle_notification_event("order.placed.v1", payload, event_id) is False

        mock_send.assert_called_once()
        assert await ProcessedEvent.filter(event_id=str(event_id)).count() == 1


class TestOutboxPoller:

    @pytest.mark.asyncio
    async def test_poller_publishes_order_events(self, make_order):
        order = await make_order()
        await update_order_status(order.id, "confirmed", Actor.RESTAURANT)

        with patch("app.consumers.notification_consumer.send_notification") as mock_send:
            published = await poll_outbox_for_new_events()

        assert published == 2
        assert mock_send.call_count == 2
        assert await OutboxEvent.filter(published=False).count() == 0
        # nothing left for a second pass
        assert await poll_outbox_for_new_events() == 0

    @pytest.mark.asyncio
    async def test_failed_dispatch_is_retried_then_abandoned(self, make_order):
        await make_order()

        with patch("app.consumers.outbox_poller.handle_notification_event", side_effect=RuntimeError("smtp down")):
            for _ in range(MAX_ATTEMPTS + 1):
                assert await poll_outbox_for_new_events() == 0

        event = await OutboxEvent.get(event_type="order.placed.v1")
        assert event.published is False
        assert event.attempts == MAX_ATTEMPTS
        assert event.last_error == "smtp down"
