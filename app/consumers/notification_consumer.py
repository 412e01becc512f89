import logging
from typing import Dict, Any, Optional
from uuid import UUID
from tortoise.transactions import in_transaction
from app.models.processed_event import ProcessedEvent

log = logging.getLogger("notification_consumer")

CONSUMER_NAME = "notifications"

# event_type -> (audience, message template)
NOTIFICATION_TEMPLATES = {
    "order.placed.v1": ("user", "Your order {order_id} has been placed. Total: {total}."),
    "order.status_changed.v1": ("user", "Order {order_id} is now {new_status}."),
    "order.courier_assigned.v1": ("user", "A delivery partner has been assigned to order {order_id}."),
    "order.rated.v1": ("restaurant", "Order {order_id} received a {overall} star rating."),
    "payment.completed.v1": ("user", "Payment of {amount} for order {order_id} received."),
    "payment.failed.v1": ("user", "Payment for order {order_id} failed. Please try again."),
    "payment.refunded.v1": ("user", "A refund of {amount} for order {order_id} has been issued."),
}


def render_notification(event_type: str, payload: Dict[str, Any]) -> Optional[Dict[str, str]]:
    template = NOTIFICATION_TEMPLATES.get(event_type)
    if not template:
        return None
    audience, message = template
    recipient = payload.get("user_id") if audience == "user" else payload.get("restaurant_id")
    try:
        text = message.format(**payload)
    except KeyError as e:
        log.warning(f"Payload for {event_type} is missing {e}; sending generic text.")
        text = f"Update for order {payload.get('order_id')}."
    return {"audience": audience, "recipient": recipient, "message": text}


def send_notification(notification: Dict[str, str]):
    """
    Hands the notification to the email/SMS/push collaborator.
    Delivery itself is external; here it is only logged.
    """
    log.info(f"[NOTIFICATION] {notification['audience']} {notification['recipient']}: {notification['message']}")


async def handle_notification_event(event_type: str, event_payload: Dict[str, Any], event_id: UUID) -> bool:
    """
    Consumer logic for order/payment notification events.
    Returns False when the event was already handled by this consumer.
    """
    event_id_str = str(event_id)

    # Idempotency Check
    if await ProcessedEvent.filter(event_id=event_id_str, consumer=CONSUMER_NAME).exists():
        log.info(f"Idempotency: Event {event_id_str} already processed.")
        return False

    notification = render_notification(event_type, event_payload)
    async with in_transaction() as conn:
        await ProcessedEvent.create(event_id=event_id_str, consumer=CONSUMER_NAME, using_db=conn)
    if notification:
        send_notification(notification)
    return True
