from enum import Enum
from typing import Optional
from uuid import UUID
from tortoise import fields, models
import uuid


class VehicleType(str, Enum):
    BIKE = "bike"
    SCOOTER = "scooter"
    BICYCLE = "bicycle"
    CAR = "car"


class AgentState(str, Enum):
    OFFLINE = "offline"
    ONLINE_IDLE = "online-idle"
    BUSY = "busy"  # Holding an active order, whether or not still on duty


def availability_fields(is_online: bool, active_order_id: Optional[UUID]) -> dict:
    """
    The only place agent availability is derived.

    Every write touching ``is_online`` or ``active_order_id`` goes through this so
    ``is_available`` can never drift from ``is_online and active_order_id is None``.
    """
    return {
        "is_online": is_online,
        "active_order_id": active_order_id,
        "is_available": bool(is_online and active_order_id is None),
    }


class DeliveryAgent(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    user_id = fields.CharField(max_length=64, unique=True)
    vehicle_type = fields.CharEnumField(VehicleType, max_length=16)
    vehicle_number = fields.CharField(max_length=32)
    driving_license = fields.CharField(max_length=64)

    is_online = fields.BooleanField(default=False)
    is_available = fields.BooleanField(default=False)
    # Plain column rather than a FK: Order already references DeliveryAgent.
    active_order_id = fields.UUIDField(null=True)

    latitude = fields.FloatField(null=True)
    longitude = fields.FloatField(null=True)

    earnings_total = fields.DecimalField(max_digits=14, decimal_places=2, default=0)
    total_deliveries = fields.IntField(default=0)
    completed_deliveries = fields.IntField(default=0)

    version = fields.IntField(default=0)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "delivery_agents"
        indexes = [
            ("is_online", "is_available"),
        ]

    @property
    def state(self) -> AgentState:
        if self.active_order_id is not None:
            return AgentState.BUSY
        return AgentState.ONLINE_IDLE if self.is_online else AgentState.OFFLINE

    @property
    def is_eligible(self) -> bool:
        return self.is_online and self.is_available and self.active_order_id is None
