import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any
from uuid import UUID
from app.core.db import conditional_update
from app.core.errors import RestaurantNotFound
from app.models.order import Order
from app.models.restaurant import Restaurant

log = logging.getLogger("rating_service")

ONE_DECIMAL = Decimal("0.1")


def round1(value: Decimal) -> Decimal:
    return Decimal(value).quantize(ONE_DECIMAL, rounding=ROUND_HALF_UP)


def overall_rating(food: int, delivery: int) -> Decimal:
    return round1(Decimal(food + delivery) / 2)


async def recompute_restaurant_rating(restaurant_id: UUID, conn: Any) -> Restaurant:
    """
    Full recompute of the restaurant's rating aggregate from every rated order.

    Callers hold the restaurant's lock and run this in the same transaction as
    the rating write, so the new rating is part of the scan.
    """
    restaurant = await Restaurant.get_or_none(id=restaurant_id).using_db(conn)
    if not restaurant:
        raise RestaurantNotFound(f"Restaurant {restaurant_id} not found.")

    ratings = await Order.filter(
        restaurant_id=restaurant_id, rating_overall__isnull=False
    ).using_db(conn).values_list("rating_overall", flat=True)

    count = len(ratings)
    average = round1(sum((Decimal(r) for r in ratings), Decimal("0")) / count) if count else Decimal("0.0")

    await conditional_update(restaurant, conn, rating_average=average, rating_count=count)
    log.info(f"Restaurant {restaurant_id} rating recomputed: {average} over {count} ratings.")
    return restaurant
