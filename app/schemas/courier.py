import uuid
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field
from app.models.delivery_agent import AgentState, DeliveryAgent, VehicleType


class AgentRegisterRequest(BaseModel):
    user_id: str
    vehicle_type: VehicleType
    vehicle_number: str = Field(..., min_length=1)
    driving_license: str = Field(..., min_length=1)


class AvailabilityRequest(BaseModel):
    online: bool


class LocationRequest(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class AgentResponse(BaseModel):
    id: uuid.UUID
    user_id: str
    vehicle_type: VehicleType
    state: AgentState
    is_online: bool
    is_available: bool
    active_order_id: Optional[uuid.UUID] = None
    earnings_total: Decimal
    total_deliveries: int
    completed_deliveries: int

    @classmethod
    def from_agent(cls, agent: DeliveryAgent) -> "AgentResponse":
        return cls(
            id=agent.id,
            user_id=agent.user_id,
            vehicle_type=agent.vehicle_type,
            state=agent.state,
            is_online=agent.is_online,
            is_available=agent.is_available,
            active_order_id=agent.active_order_id,
            earnings_total=agent.earnings_total,
            total_deliveries=agent.total_deliveries,
            completed_deliveries=agent.completed_deliveries,
        )
