"""
Order fulfillment and payment state machines.

Fulfillment status and payment status are two independent tracks, each with its
own legality table. Nothing here blocks a fulfillment transition on payment
(cash-on-delivery orders never leave ``pending`` payment until settled offline).

``apply_transition`` must run inside an open transaction (``conn``) with the
order's lock held, and with the assigned courier's lock held when the target
status releases the courier.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID
from tortoise import timezone
from app.core.config import COURIER_FEE_SHARE
from app.core.db import conditional_update
from app.core.errors import AlreadyCancelled, InvalidTransition, NotAssignedCourier
from app.events.outbox_utility import emit_order_event
from app.models.delivery_agent import DeliveryAgent, availability_fields
from app.models.order import (
    Actor,
    Order,
    OrderStatus,
    OrderStatusEntry,
    PaymentStatus,
    TERMINAL_STATUSES,
)

log = logging.getLogger("state_machine")

ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PREPARING, OrderStatus.CANCELLED},
    OrderStatus.PREPARING: {OrderStatus.OUT_FOR_DELIVERY},
    OrderStatus.OUT_FOR_DELIVERY: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

# Only these actors may write a cancellation record.
CANCELLING_ACTORS = {Actor.USER, Actor.RESTAURANT, Actor.ADMIN}

# Pickup and drop-off belong to the assigned courier.
COURIER_STATUSES = {OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED}

PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PROCESSING},
    PaymentStatus.PROCESSING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.FAILED: {PaymentStatus.PROCESSING, PaymentStatus.COMPLETED},
    PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED},
    PaymentStatus.REFUNDED: set(),
}

CENT = Decimal("0.01")


@dataclass
class TransitionResult:
    order: Order
    previous_status: OrderStatus
    released_agent_id: Optional[UUID] = None
    courier_earnings: Optional[Decimal] = None


def check_transition(current: OrderStatus, new: OrderStatus, actor: Actor) -> None:
    """Raises unless ``current -> new`` is legal for ``actor``."""
    if new == OrderStatus.CANCELLED:
        if current == OrderStatus.CANCELLED:
            raise AlreadyCancelled("Order has already been cancelled.")
        if current in TERMINAL_STATUSES:
            raise InvalidTransition(f"Order is already in a final state: {current.value}.")
        if actor not in CANCELLING_ACTORS:
            raise InvalidTransition(f"{actor.value} cannot cancel an order.")
        # Administrative override: any non-terminal status may be cancelled.
        if actor == Actor.ADMIN or new in ORDER_TRANSITIONS[current]:
            return
        raise InvalidTransition(f"Order cannot be cancelled from {current.value} by {actor.value}.")

    if current in TERMINAL_STATUSES:
        raise InvalidTransition(f"Order is already in a final state: {current.value}. Status cannot be updated.")
    if new not in ORDER_TRANSITIONS[current]:
        raise InvalidTransition(f"Illegal transition {current.value} -> {new.value}.")


def check_courier(order: Order, new_status: OrderStatus, actor: Actor, agent_id: Optional[UUID] = None) -> None:
    if new_status not in COURIER_STATUSES:
        return
    if order.delivery_person_id is None:
        raise InvalidTransition(f"Order cannot move to {new_status.value} without an assigned courier.")
    if actor == Actor.COURIER and agent_id is not None and agent_id != order.delivery_person_id:
        raise NotAssignedCourier(f"Courier {agent_id} is not assigned to order {order.id}.")


def can_transition_payment(current: PaymentStatus, new: PaymentStatus) -> bool:
    return new in PAYMENT_TRANSITIONS[current]


def courier_share(delivery_fee: Decimal) -> Decimal:
    return (Decimal(delivery_fee) * COURIER_FEE_SHARE).quantize(CENT)


async def append_history(order: Order, status: OrderStatus, conn: Any, actor: Optional[Actor] = None,
                         note: Optional[str] = None) -> OrderStatusEntry:
    sequence = await OrderStatusEntry.filter(order_id=order.id).using_db(conn).count()
    return await OrderStatusEntry.create(
        order_id=order.id,
        sequence=sequence,
        status=status,
        actor=actor,
        note=note,
        using_db=conn,
    )


async def release_agent(order: Order, conn: Any, credit_delivery: bool) -> Optional[Decimal]:
    """
    Frees the courier bound to ``order``. On a completed delivery the courier's
    counters and earnings are credited; returns the credited amount.
    """
    agent = await DeliveryAgent.get_or_none(id=order.delivery_person_id).using_db(conn)
    if agent is None:
        log.warning(f"Order {order.id} references missing agent {order.delivery_person_id}.")
        return None
    if agent.active_order_id != order.id:
        log.warning(f"Agent {agent.id} is not holding order {order.id} (holds {agent.active_order_id}); nothing to release.")
        return None

    changes = availability_fields(agent.is_online, None)
    earnings = None
    if credit_delivery:
        earnings = courier_share(order.delivery_fee)
        changes.update(
            earnings_total=agent.earnings_total + earnings,
            total_deliveries=agent.total_deliveries + 1,
            completed_deliveries=agent.completed_deliveries + 1,
        )
    await conditional_update(agent, conn, **changes)
    log.info(f"Agent {agent.id} released from order {order.id} (earned {earnings or 0}).")
    return earnings


async def apply_transition(order: Order, new_status: OrderStatus, actor: Actor, conn: Any,
                           note: Optional[str] = None, agent_id: Optional[UUID] = None) -> TransitionResult:
    """
    Moves ``order`` to ``new_status`` with all entry side effects, appending the
    history entry in the same transaction as the status write.
    """
    previous = order.status
    check_transition(previous, new_status, actor)
    check_courier(order, new_status, actor, agent_id)

    now = timezone.now()
    changes = {"status": new_status}
    if new_status == OrderStatus.OUT_FOR_DELIVERY:
        changes["picked_up_at"] = now
    elif new_status == OrderStatus.DELIVERED:
        changes["actual_delivery_time"] = now
        changes["delivered_at"] = now
    elif new_status == OrderStatus.CANCELLED:
        changes["cancel_reason"] = note or f"Cancelled by {actor.value}"
        changes["cancelled_by"] = actor
        changes["cancelled_at"] = now

    await conditional_update(order, conn, **changes)
    await append_history(order, new_status, conn, actor=actor, note=note)

    result = TransitionResult(order=order, previous_status=previous)
    if new_status in TERMINAL_STATUSES and order.delivery_person_id:
        result.released_agent_id = order.delivery_person_id
        result.courier_earnings = await release_agent(
            order, conn, credit_delivery=new_status == OrderStatus.DELIVERED
        )

    await emit_order_event(
        order,
        "order.status_changed.v1",
        conn=conn,
        old_status=previous.value,
        new_status=new_status.value,
        actor=actor.value,
        note=note,
    )
    log.info(f"Order {order.id}: {previous.value} -> {new_status.value} by {actor.value}.")
    return result
