import asyncio
import pytest
from decimal import Decimal
from app.core.errors import AlreadyRated, NotDelivered, ValidationError
from app.models.order import Actor, Order, OrderStatus
from app.models.outbox import OutboxEvent
from app.models.restaurant import Restaurant
from app.services.dispatch_service import assign_courier
from app.services.order_service import submit_rating, update_order_status
from app.services.rating_service import overall_rating, round1

DELIVERY_PATH = [OrderStatus.PREPARING, OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED]


async def _delivered(make_order, make_agent):
    agent = await make_agent()
    order = await assign_courier((await make_order()).id, agent.id)
    for status in DELIVERY_PATH:
        order = await update_order_status(order.id, status, Actor.COURIER, agent_id=agent.id)
    return order


def test_overall_rating_rounding():
    assert overall_rating(4, 5) == Decimal("4.5")
    assert overall_rating(1, 2) == Decimal("1.5")
    assert round1(Decimal("4.25")) == Decimal("4.3")
    assert round1(Decimal("4.333")) == Decimal("4.3")


@pytest.mark.asyncio
async def test_concurrent_ratings_aggregate(make_order, make_agent, restaurant):
    """Ratings 4 and 5 on a fresh restaurant -> average 4.5, count 2."""
    first = await _delivered(make_order, make_agent)
    second = await _delivered(make_order, make_agent)

    await asyncio.gather(
        submit_rating(first.id, 4, 4),
        submit_rating(second.id, 5, 5),
    )

    restaurant = await Restaurant.get(id=restaurant.id)
    assert restaurant.rating_average == Decimal("4.5")
    assert restaurant.rating_count == 2


@pytest.mark.asyncio
async def test_rating_is_written_once(make_order, make_agent, restaurant):
    order = await _delivered(make_order, make_agent)

    order = await submit_rating(order.id, 5, 4, review="Hot and on time")
    assert order.rating_overall == Decimal("4.5")
    assert order.reviewed_at is not None

    with pytest.raises(AlreadyRated):
        await submit_rating(order.id, 1, 1)

    reloaded = await Order.get(id=order.id)
    assert reloaded.rating_food == 5
    assert reloaded.review == "Hot and on time"
    assert (await Restaurant.get(id=restaurant.id)).rating_count == 1
    assert await OutboxEvent.filter(aggregate_id=order.id, event_type="order.rated.v1").count() == 1


@pytest.mark.asyncio
async def test_only_delivered_orders_can_be_rated(make_order):
    order = await make_order()
    with pytest.raises(NotDelivered):
        await submit_rating(order.id, 5, 5)


@pytest.mark.asyncio
@pytest.mark.parametrize("food,delivery", [(0, 5), (6, 5), (5, 4.5), (True, 5)])
async def test_rating_bounds(make_order, make_agent, food, delivery):
    order = await _delivered(make_order, make_agent)
    with pytest.raises(ValidationError):
        await submit_rating(order.id, food, delivery)
    assert (await Order.get(id=order.id)).rating_overall is None
