import asyncio
import pytest
from decimal import Decimal
from types import SimpleNamespace
from uuid import uuid4
from tortoise.transactions import in_transaction
from app.core.errors import AlreadyCancelled, ConcurrencyError, InvalidTransition, NotAssignedCourier
from app.core.db import conditional_update
from app.core.locks import KeyedLock
from app.models.order import Actor, Order, OrderStatus, PaymentStatus
from app.services.dispatch_service import assign_courier
from app.services.state_machine import (
    apply_transition,
    can_transition_payment,
    check_courier,
    check_transition,
    courier_share,
)


@pytest.mark.parametrize("current,new,actor", [
    (OrderStatus.PENDING, OrderStatus.CONFIRMED, Actor.RESTAURANT),
    (OrderStatus.CONFIRMED, OrderStatus.PREPARING, Actor.RESTAURANT),
    (OrderStatus.PREPARING, OrderStatus.OUT_FOR_DELIVERY, Actor.COURIER),
    (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED, Actor.COURIER),
    (OrderStatus.PENDING, OrderStatus.CANCELLED, Actor.USER),
    (OrderStatus.CONFIRMED, OrderStatus.CANCELLED, Actor.RESTAURANT),
    (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED, Actor.ADMIN),
])
def test_legal_transitions(current, new, actor):
    check_transition(current, new, actor)


@pytest.mark.parametrize("current,new,actor", [
    (OrderStatus.PENDING, OrderStatus.DELIVERED, Actor.ADMIN),
    (OrderStatus.DELIVERED, OrderStatus.PREPARING, Actor.ADMIN),
    (OrderStatus.DELIVERED, OrderStatus.CANCELLED, Actor.ADMIN),
    (OrderStatus.PREPARING, OrderStatus.CANCELLED, Actor.USER),
    (OrderStatus.PENDING, OrderStatus.CANCELLED, Actor.COURIER),
    (OrderStatus.CANCELLED, OrderStatus.CONFIRMED, Actor.ADMIN),
])
def test_illegal_transitions(current, new, actor):
    with pytest.raises(InvalidTransition):
        check_transition(current, new, actor)


def test_cancelling_twice():
    with pytest.raises(AlreadyCancelled):
        check_transition(OrderStatus.CANCELLED, OrderStatus.CANCELLED, Actor.ADMIN)


def test_payment_track():
    assert can_transition_payment(PaymentStatus.PENDING, PaymentStatus.PROCESSING)
    assert can_transition_payment(PaymentStatus.FAILED, PaymentStatus.COMPLETED)
    assert can_transition_payment(PaymentStatus.COMPLETED, PaymentStatus.REFUNDED)
    assert not can_transition_payment(PaymentStatus.PENDING, PaymentStatus.COMPLETED)
    assert not can_transition_payment(PaymentStatus.REFUNDED, PaymentStatus.COMPLETED)


def test_courier_share():
    assert courier_share(Decimal("40.00")) == Decimal("28.00")
    assert courier_share(Decimal("33.33")) == Decimal("23.33")


@pytest.mark.asyncio
async def test_apply_transition_reports_release(make_order, make_agent):
    agent = await make_agent()
    order = await assign_courier((await make_order()).id, agent.id)
    await Order.filter(id=order.id).update(status=OrderStatus.OUT_FOR_DELIVERY)

    async with in_transaction() as conn:
        order = await Order.get(id=order.id).using_db(conn)
        result = await apply_transition(order, OrderStatus.DELIVERED, Actor.COURIER, conn)

    assert result.previous_status == OrderStatus.OUT_FOR_DELIVERY
    assert result.released_agent_id == agent.id
    assert result.courier_earnings == Decimal("28.00")
    assert order.actual_delivery_time is not None


@pytest.mark.asyncio
async def test_stale_write_is_rejected(make_order):
    order = await make_order()
    stale = await Order.get(id=order.id)
    await conditional_update(order, tax=order.tax)

    with pytest.raises(ConcurrencyError):
        await conditional_update(stale, status=OrderStatus.CONFIRMED)
    assert (await Order.get(id=order.id)).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_keyed_lock_serializes_and_cleans_up():
    locks = KeyedLock("test")
    events = []

    async def worker(name):
        async with locks.hold("42"):
            events.append(f"{name}-in")
            await asyncio.sleep(0)
            events.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))

    assert events == ["a-in", "a-out", "b-in", "b-out"]
    assert not locks.is_locked("42")
    assert locks._locks == {}

    async with locks.hold(None):
        pass


def test_check_courier():
    agent_id = uuid4()
    unassigned = SimpleNamespace(id=uuid4(), delivery_person_id=None)
    assigned = SimpleNamespace(id=uuid4(), delivery_person_id=agent_id)

    check_courier(unassigned, OrderStatus.PREPARING, Actor.RESTAURANT)
    with pytest.raises(InvalidTransition):
        check_courier(unassigned, OrderStatus.OUT_FOR_DELIVERY, Actor.ADMIN)
    check_courier(assigned, OrderStatus.DELIVERED, Actor.COURIER, agent_id)
    check_courier(assigned, OrderStatus.DELIVERED, Actor.COURIER)
    with pytest.raises(NotAssignedCourier):
        check_courier(assigned, OrderStatus.DELIVERED, Actor.COURIER, uuid4())
