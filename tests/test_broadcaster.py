import pytest
from uuid import uuid4
from app.events.broadcaster import OrderBroadcaster, LOCATION_UPDATED, ORDER_STATUS_UPDATED


@pytest.mark.asyncio
async def test_publish_reaches_only_that_order():
    hub = OrderBroadcaster(queue_size=10)
    order_a, order_b = uuid4(), uuid4()
    sub_a = hub.subscribe(order_a)
    sub_b = hub.subscribe(order_b)

    delivered = hub.publish_status(order_a, "preparing", "Kitchen started")

    assert delivered == 1
    message = await sub_a.get()
    assert message["event"] == ORDER_STATUS_UPDATED
    assert message["order_id"] == str(order_a)
    assert message["status"] == "preparing"
    assert "timestamp" in message
    assert sub_b.queue.empty()


@pytest.mark.asyncio
async def test_no_replay_for_late_subscribers():
    hub = OrderBroadcaster()
    order_id = uuid4()
    assert hub.publish_location(order_id, 12.9, 77.6) == 0

    async with hub.subscribe(order_id) as sub:
        assert sub.queue.empty()
        hub.publish_location(order_id, 13.0, 77.7)
        message = await sub.get()
        assert message["event"] == LOCATION_UPDATED
        assert message["location"] == {"latitude": 13.0, "longitude": 77.7}

    assert hub.subscriber_count(order_id) == 0


@pytest.mark.asyncio
async def test_slow_subscriber_misses_events_without_blocking_publisher():
    hub = OrderBroadcaster(queue_size=1)
    order_id = uuid4()
    slow = hub.subscribe(order_id)
    fast = hub.subscribe(order_id)

    assert hub.publish_status(order_id, "confirmed") == 2
    await fast.get()
    # slow never drained its queue
    assert hub.publish_status(order_id, "preparing") == 1
    assert (await slow.get())["status"] == "confirmed"
    assert (await fast.get())["status"] == "preparing"

    slow.close()
    slow.close()
    assert hub.subscriber_count(order_id) == 1
