from tortoise import fields, models
import uuid


class ProcessedEvent(models.Model):
    """
    Idempotency ledger for outbox consumers: one row per (event, consumer)
    once that consumer has handled the event.
    """
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    event_id = fields.CharField(max_length=128)
    consumer = fields.CharField(max_length=64)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "processed_events"
        unique_together = (("event_id", "consumer"),)
