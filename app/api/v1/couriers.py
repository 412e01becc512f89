import logging
from uuid import UUID
from fastapi import APIRouter, HTTPException, status
from app.core.errors import CoordinatorError
from app.schemas.courier import AgentRegisterRequest, AgentResponse, AvailabilityRequest, LocationRequest
from app.schemas.order import OrderResponse
from app.schemas.response import SuccessResponse
from app.services.dispatch_service import (
    get_active_order,
    get_agent,
    list_available_agents,
    register_agent,
    report_courier_location,
    set_agent_online,
)

router = APIRouter()
log = logging.getLogger("uvicorn")


@router.post("/", status_code=status.HTTP_201_CREATED, response_model=SuccessResponse)
async def register_agent_endpoint(payload: AgentRegisterRequest):
    agent = await register_agent(
        payload.user_id, payload.vehicle_type, payload.vehicle_number, payload.driving_license
    )
    return SuccessResponse(data=AgentResponse.from_agent(agent).model_dump(mode="json"))


@router.get("/available", response_model=SuccessResponse)
async def available_agents_endpoint():
    agents = await list_available_agents()
    return SuccessResponse(data=[AgentResponse.from_agent(a).model_dump(mode="json") for a in agents])


@router.get("/{agent_id}", response_model=SuccessResponse)
async def get_agent_endpoint(agent_id: UUID):
    agent = await get_agent(agent_id)
    return SuccessResponse(data=AgentResponse.from_agent(agent).model_dump(mode="json"))


@router.patch("/{agent_id}/availability", response_model=SuccessResponse)
async def availability_endpoint(agent_id: UUID, payload: AvailabilityRequest):
    """Toggles the agent online/offline. A busy agent keeps its order when going offline."""
    agent = await set_agent_online(agent_id, payload.online)
    return SuccessResponse(data=AgentResponse.from_agent(agent).model_dump(mode="json"))


@router.post("/{agent_id}/location", response_model=SuccessResponse)
async def location_endpoint(agent_id: UUID, payload: LocationRequest):
    """
    Live location push from the courier app. Fans out to the tracking
    subscribers of the order being delivered, if any.
    """
    try:
        ack = await report_courier_location(agent_id, payload.latitude, payload.longitude)
        return SuccessResponse(data=ack)
    except CoordinatorError:
        raise
    except Exception as e:
        log.error(f"Error recording location for agent {agent_id}: {e}")
        raise HTTPException(status_code=500, detail="Server failed to record location.")


@router.get("/{agent_id}/active-order", response_model=SuccessResponse)
async def active_order_endpoint(agent_id: UUID):
    order = await get_active_order(agent_id)
    data = OrderResponse.from_order(order).model_dump(mode="json") if order else None
    return SuccessResponse(data=data)
