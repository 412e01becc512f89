import logging
import math
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID
from tortoise import timezone
from tortoise.transactions import in_transaction
from app.core.db import conditional_update
from app.core.errors import (
    AgentNotFound,
    AgentUnavailable,
    AlreadyAssigned,
    ConcurrencyError,
    InvalidTransition,
    OrderNotFound,
    ValidationError,
)
from app.core.locks import agent_locks, order_locks
from app.events.broadcaster import broadcaster
from app.events.outbox_utility import create_outbox_event, emit_order_event
from app.models.delivery_agent import DeliveryAgent, VehicleType, availability_fields
from app.models.order import Actor, Order, OrderStatus
from app.models.restaurant import Restaurant
from app.services.order_service import parse_choice, parse_uuid
from app.services.state_machine import apply_transition

log = logging.getLogger("dispatch_service")

EARTH_RADIUS_KM = 6371


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometers."""
    lat1_rad, lat2_rad = math.radians(lat1), math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lon = math.radians(lon2 - lon1)
    a = (math.sin(delta_lat / 2) ** 2 +
         math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(delta_lon / 2) ** 2)
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def validate_coordinates(latitude, longitude) -> Tuple[float, float]:
    try:
        lat, lon = float(latitude), float(longitude)
    except (TypeError, ValueError):
        raise ValidationError("Latitude and longitude must be numbers.")
    if not -90 <= lat <= 90 or not -180 <= lon <= 180:
        raise ValidationError(f"Coordinates out of range: ({lat}, {lon}).")
    return lat, lon


# ----------- Agent lifecycle -----------

async def register_agent(user_id: str, vehicle_type, vehicle_number: str, driving_license: str) -> DeliveryAgent:
    if not user_id or not vehicle_number or not driving_license:
        raise ValidationError("User id, vehicle number and driving license are required.")
    vehicle_type = parse_choice(VehicleType, vehicle_type, "vehicle type")
    if await DeliveryAgent.filter(user_id=user_id).exists():
        raise ValidationError(f"User {user_id} is already registered as a delivery agent.")
    agent = await DeliveryAgent.create(
        user_id=user_id,
        vehicle_type=vehicle_type,
        vehicle_number=vehicle_number,
        driving_license=driving_license,
        **availability_fields(False, None),
    )
    log.info(f"Delivery agent {agent.id} registered for user {user_id}.")
    return agent


async def get_agent(agent_id: UUID, conn: Any = None) -> DeliveryAgent:
    agent = await DeliveryAgent.get_or_none(id=agent_id).using_db(conn)
    if not agent:
        raise AgentNotFound(f"Delivery agent {agent_id} not found.")
    return agent


async def set_agent_online(agent_id: UUID, online: bool) -> DeliveryAgent:
    """Goes on or off duty. Availability is re-derived; an active order is kept."""
    async with agent_locks.hold(agent_id):
        async with in_transaction() as conn:
            agent = await get_agent(agent_id, conn)
            await conditional_update(agent, conn, **availability_fields(online, agent.active_order_id))
            await create_outbox_event(
                aggregate_type="agent",
                aggregate_id=agent.id,
                event_type="agent.status_changed.v1",
                payload={"agent_id": str(agent.id), "is_online": online, "state": agent.state.value},
                conn=conn,
            )
    log.info(f"Agent {agent_id} is now {agent.state.value}.")
    return agent


async def list_available_agents() -> List[DeliveryAgent]:
    return await DeliveryAgent.filter(
        is_online=True, is_available=True, active_order_id__isnull=True
    ).order_by("created_at")


async def get_active_order(agent_id: UUID) -> Optional[Order]:
    agent = await get_agent(agent_id)
    if agent.active_order_id is None:
        return None
    return await Order.get_or_none(id=agent.active_order_id)


# ----------- Assignment -----------

def _check_assignable(order: Order) -> None:
    if order.is_terminal or order.status == OrderStatus.OUT_FOR_DELIVERY:
        raise InvalidTransition(f"Cannot assign a courier to an order that is {order.status.value}.")
    if order.delivery_person_id is not None:
        raise AlreadyAssigned(f"Order {order.id} already has courier {order.delivery_person_id}.")


async def _rank_candidates(order: Order) -> List[UUID]:
    """Eligible agents, nearest to the restaurant first; agents with no known location last."""
    restaurant = await Restaurant.get_or_none(id=order.restaurant_id)
    agents = await list_available_agents()
    has_origin = restaurant is not None and restaurant.latitude is not None and restaurant.longitude is not None

    def distance(agent: DeliveryAgent):
        if not has_origin or agent.latitude is None or agent.longitude is None:
            return (1, 0.0)
        return (0, haversine_km(restaurant.latitude, restaurant.longitude, agent.latitude, agent.longitude))

    return [agent.id for agent in sorted(agents, key=distance)]


async def _bind(order_id: UUID, agent_id: UUID, actor: Actor) -> Tuple[Order, bool]:
    """
    Binds agent and order in one transaction. The agent write only succeeds if
    the agent is still unbound and on duty, so a concurrent binding elsewhere
    makes this one fail with AgentUnavailable and roll back entirely.
    """
    async with agent_locks.hold(agent_id):
        async with in_transaction() as conn:
            order = await Order.get_or_none(id=order_id).using_db(conn)
            if not order:
                raise OrderNotFound(f"Order {order_id} not found.")
            _check_assignable(order)

            agent = await get_agent(agent_id, conn)
            if not agent.is_eligible:
                raise AgentUnavailable(f"Delivery agent {agent_id} is not available.")
            try:
                await conditional_update(
                    agent, conn,
                    guard={"active_order_id__isnull": True, "is_online": True},
                    **availability_fields(agent.is_online, order.id),
                )
            except ConcurrencyError:
                raise AgentUnavailable(f"Delivery agent {agent_id} was taken by another order.")

            await conditional_update(order, conn, delivery_person_id=agent.id, assigned_at=timezone.now())

            confirmed = False
            if order.status == OrderStatus.PENDING:
                await apply_transition(order, OrderStatus.CONFIRMED, actor, conn, note=f"Courier {agent.id} assigned")
                confirmed = True
            await emit_order_event(order, "order.courier_assigned.v1", conn=conn, agent_id=str(agent.id))

    log.info(f"Agent {agent_id} assigned to order {order_id}.")
    return order, confirmed


async def assign_courier(order_id: UUID, agent_id: Optional[UUID] = None) -> Order:
    """
    Binds a courier to the order exclusively. With ``agent_id`` the restaurant's
    choice is validated; without it the nearest eligible agent is picked.
    """
    order_id = parse_uuid(order_id, "order id")
    async with order_locks.hold(order_id):
        order = await Order.get_or_none(id=order_id)
        if not order:
            raise OrderNotFound(f"Order {order_id} not found.")
        _check_assignable(order)

        if agent_id is not None:
            order, confirmed = await _bind(order_id, parse_uuid(agent_id, "agent id"), Actor.RESTAURANT)
        else:
            for candidate in await _rank_candidates(order):
                try:
                    order, confirmed = await _bind(order_id, candidate, Actor.SYSTEM)
                    break
                except (AgentUnavailable, AgentNotFound) as e:
                    log.info(f"Skipping candidate {candidate} for order {order_id}: {e}")
            else:
                raise AgentUnavailable("No delivery agent is available right now.")

    if confirmed:
        broadcaster.publish_status(order.id, order.status.value, "Courier assigned")
    return order


# ----------- Live location -----------

async def report_courier_location(agent_id: UUID, latitude, longitude) -> Dict[str, Any]:
    """
    Overwrites the courier's location and, when delivering, the order's tracked
    location, then pushes ``location-updated`` to the order's subscribers.
    """
    lat, lon = validate_coordinates(latitude, longitude)
    agent = await get_agent(agent_id)
    await DeliveryAgent.filter(id=agent.id).update(latitude=lat, longitude=lon)

    order_id = agent.active_order_id
    if order_id is not None:
        await Order.filter(id=order_id).update(current_latitude=lat, current_longitude=lon)
        broadcaster.publish_location(order_id, lat, lon)

    return {"ack": True, "agent_id": str(agent.id), "order_id": str(order_id) if order_id else None}
