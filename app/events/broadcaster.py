import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set
from uuid import UUID
from app.core.config import SUBSCRIBER_QUEUE_SIZE

log = logging.getLogger("broadcaster")

LOCATION_UPDATED = "location-updated"
ORDER_STATUS_UPDATED = "order-status-updated"


class Subscription:
    """One subscriber's view of an order channel: a bounded queue of events."""

    def __init__(self, broadcaster: "OrderBroadcaster", order_id: str, maxsize: int):
        self.broadcaster = broadcaster
        self.order_id = order_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    async def get(self) -> Dict[str, Any]:
        return await self.queue.get()

    def close(self):
        if not self.closed:
            self.closed = True
            self.broadcaster.unsubscribe(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.close()


class OrderBroadcaster:
    """
    In-process pub/sub with one channel per order id.

    At-most-once, no replay: a subscriber sees only events published while it is
    subscribed. Publishing never blocks and never fails the publisher; a
    subscriber whose queue is full simply misses the event.
    """

    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self.queue_size = queue_size
        self._channels: Dict[str, Set[Subscription]] = {}

    def subscribe(self, order_id) -> Subscription:
        key = str(order_id)
        sub = Subscription(self, key, self.queue_size)
        self._channels.setdefault(key, set()).add(sub)
        log.info(f"Subscriber joined order-{key} ({len(self._channels[key])} listening)")
        return sub

    def unsubscribe(self, sub: Subscription):
        subs = self._channels.get(sub.order_id)
        if not subs:
            return
        subs.discard(sub)
        if not subs:
            del self._channels[sub.order_id]
        log.info(f"Subscriber left order-{sub.order_id}")

    def subscriber_count(self, order_id) -> int:
        return len(self._channels.get(str(order_id), ()))

    def publish(self, order_id, event: str, data: Optional[Dict[str, Any]] = None) -> int:
        """Delivers the event to current subscribers; returns how many received it."""
        key = str(order_id)
        message = {
            "event": event,
            "order_id": key,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **(data or {}),
        }
        delivered = 0
        for sub in list(self._channels.get(key, ())):
            try:
                sub.queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                log.warning(f"Dropping {event} for a slow subscriber on order-{key}")
        return delivered

    def publish_status(self, order_id: UUID, status: str, note: Optional[str] = None) -> int:
        return self.publish(order_id, ORDER_STATUS_UPDATED, {"status": status, "note": note})

    def publish_location(self, order_id: UUID, latitude: float, longitude: float) -> int:
        return self.publish(
            order_id, LOCATION_UPDATED, {"location": {"latitude": latitude, "longitude": longitude}}
        )


broadcaster = OrderBroadcaster()
