import asyncio
import logging
from app.models.outbox import OutboxEvent
from app.consumers.notification_consumer import handle_notification_event
from app.core.db import init_db, close_db
from app.core.config import POLLING_INTERVAL, MAX_ATTEMPTS, BATCH_SIZE, LOG_LEVEL

log = logging.getLogger("outbox_poller")


async def dispatch_event(event: OutboxEvent):
    """
    Routes an OutboxEvent to the consumers interested in it.
    Stands in for a message broker (Kafka/RabbitMQ) dispatcher.
    """
    event_type = event.event_type
    log.info(f"Poller DISPATCHING: {event_type} (ID: {event.id.hex[:8]}...)")

    if event_type.startswith(("order.", "payment.")):
        await handle_notification_event(event_type, event.payload, event.id)
    elif event_type == "agent.status_changed.v1":
        log.info(f"Agent {event.payload.get('agent_id')} is now {event.payload.get('state')}.")
    else:
        log.warning(f"No handler found for event type: {event_type}")


async def poll_outbox_for_new_events() -> int:
    """
    Queries the Outbox table for unpublished events and attempts to dispatch them.
    Returns the number of events published in this pass.
    """
    # Select events that haven't been published and haven't exceeded max attempts
    events = await OutboxEvent.filter(published=False, attempts__lt=MAX_ATTEMPTS).limit(BATCH_SIZE).order_by('created_at')

    published = 0
    for event in events:
        try:
            await dispatch_event(event)
            event.published = True
            await event.save(update_fields=['published'])
            published += 1
        except Exception as e:
            event.attempts += 1
            event.last_error = str(e)
            await event.save(update_fields=['attempts', 'last_error'])
            log.exception(f"Dispatch failed for event {event.id} (attempt {event.attempts}).")
    return published


async def start_outbox_poller():
    """Main loop for the poller service."""
    await init_db()
    log.info("--- Outbox Poller Service Started ---")

    try:
        while True:
            try:
                await poll_outbox_for_new_events()
            except Exception as e:
                log.error(f"Poller encountered a critical DB error: {e}.")

            await asyncio.sleep(POLLING_INTERVAL)
    finally:
        await close_db()


if __name__ == "__main__":
    logging.basicConfig(level=LOG_LEVEL, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    try:
        asyncio.run(start_outbox_poller())
    except KeyboardInterrupt:
        log.info("Poller service stopped.")
