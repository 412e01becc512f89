import logging
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional
from uuid import UUID
from tortoise import timezone
from tortoise.transactions import in_transaction
from app.core.db import conditional_update
from app.core.errors import (
    AlreadyRated,
    CannotCancelAtThisStage,
    AlreadyCancelled,
    NotDelivered,
    OrderNotFound,
    RestaurantNotFound,
    ValidationError,
)
from app.core.locks import agent_locks, order_locks, restaurant_locks
from app.events.broadcaster import broadcaster
from app.events.outbox_utility import emit_order_event
from app.models.order import Actor, Order, OrderItem, OrderStatus, PaymentMethod
from app.models.restaurant import MenuItem, Restaurant
from app.services.rating_service import overall_rating, recompute_restaurant_rating
from app.services.state_machine import CANCELLING_ACTORS, append_history, apply_transition

log = logging.getLogger("order_service")

CENT = Decimal("0.01")
ADDRESS_FIELDS = ("street", "city", "state", "zip_code")


def parse_choice(enum_cls, value, label: str):
    """Coerces API/string input into one of the domain enums."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ValidationError(f"Invalid {label} '{value}'. Expected one of: {allowed}.")


def parse_uuid(value, label: str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {label}: {value!r}.")


def _normalize_items(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not items:
        raise ValidationError("Order must contain items.")
    normalized = []
    for it in items:
        quantity = it.get("quantity")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise ValidationError(f"Quantity must be a whole number of at least 1, got {quantity!r}.")
        customizations = []
        for c in it.get("customizations") or []:
            if not c.get("name") or not c.get("selected_option"):
                raise ValidationError("Each customization needs a name and a selected option.")
            customizations.append({"name": c["name"], "selected_option": c["selected_option"]})
        normalized.append({
            "menu_item_id": parse_uuid(it.get("menu_item_id"), "menu item id"),
            "quantity": quantity,
            "customizations": customizations,
        })
    return normalized


def _validate_address(address: Dict[str, Any]) -> Dict[str, Any]:
    if not address:
        raise ValidationError("Delivery address is required.")
    missing = [f for f in ADDRESS_FIELDS if not address.get(f)]
    if missing:
        raise ValidationError(f"Delivery address is missing: {', '.join(missing)}.")
    return {
        "street": address["street"],
        "city": address["city"],
        "state": address["state"],
        "zip_code": address["zip_code"],
        "country": address.get("country") or "India",
        "landmark": address.get("landmark"),
    }


async def place_order(
    user_id: str,
    restaurant_id: UUID,
    items: List[Dict[str, Any]],
    address: Dict[str, Any],
    payment_method,
    phone: str,
    special_instructions: Optional[str] = None,
) -> Order:
    """
    Creates the order with frozen price snapshots, its line items and the
    initial ``pending`` history entry in one transaction.
    """
    if not user_id:
        raise ValidationError("User id is required.")
    if not phone:
        raise ValidationError("Contact phone is required.")
    if special_instructions and len(special_instructions) > 200:
        raise ValidationError("Special instructions cannot exceed 200 characters.")
    restaurant_id = parse_uuid(restaurant_id, "restaurant id")
    lines = _normalize_items(items)
    delivery_address = _validate_address(address)
    payment_method = parse_choice(PaymentMethod, payment_method, "payment method")

    async with in_transaction() as conn:
        restaurant = await Restaurant.get_or_none(id=restaurant_id).using_db(conn)
        if not restaurant or not restaurant.is_active:
            raise RestaurantNotFound("Restaurant not found or is inactive.")
        if not restaurant.is_delivery_available:
            raise ValidationError(f"{restaurant.name} is not accepting delivery orders.")

        menu_items = await MenuItem.filter(
            id__in=[line["menu_item_id"] for line in lines], restaurant_id=restaurant.id
        ).using_db(conn)
        menu_map = {m.id: m for m in menu_items}

        subtotal = Decimal("0.00")
        for line in lines:
            menu = menu_map.get(line["menu_item_id"])
            if not menu or not menu.is_available:
                name = menu.name if menu else line["menu_item_id"]
                raise ValidationError(f"Item {name} is not available.")
            extras = Decimal("0")
            for c in line["customizations"]:
                option_price = menu.option_price(c["name"], c["selected_option"])
                if option_price is None:
                    raise ValidationError(f"{menu.name} has no option '{c['selected_option']}' for '{c['name']}'.")
                c["additional_price"] = str(option_price)
                extras += option_price
            line["menu"] = menu
            line["unit_price"] = menu.final_price
            line["line_total"] = ((line["unit_price"] + extras) * line["quantity"]).quantize(CENT)
            subtotal += line["line_total"]

        if subtotal < restaurant.minimum_order_amount:
            raise ValidationError(f"Minimum order amount is {restaurant.minimum_order_amount}.")

        delivery_fee = Decimal(restaurant.delivery_fee).quantize(CENT)
        tax = (subtotal * Decimal(restaurant.tax_percent) / 100).quantize(CENT, rounding=ROUND_HALF_UP)
        discount = Decimal("0.00")
        total = subtotal + delivery_fee + tax - discount

        order = await Order.create(
            user_id=user_id,
            restaurant=restaurant,
            status=OrderStatus.PENDING,
            subtotal=subtotal,
            delivery_fee=delivery_fee,
            tax=tax,
            discount=discount,
            total=total,
            contact_phone=phone,
            special_instructions=special_instructions,
            payment_method=payment_method,
            estimated_delivery_time=timezone.now() + timedelta(minutes=restaurant.estimated_delivery_minutes),
            using_db=conn,
            **delivery_address,
        )

        for position, line in enumerate(lines):
            await OrderItem.create(
                order=order,
                menu_item=line["menu"],
                position=position,
                name=line["menu"].name,
                quantity=line["quantity"],
                unit_price=line["unit_price"],
                customizations=line["customizations"],
                line_total=line["line_total"],
                using_db=conn,
            )

        await append_history(order, OrderStatus.PENDING, conn, actor=Actor.USER, note="Order placed")
        await emit_order_event(
            order, "order.placed.v1", conn=conn,
            total=str(total), payment_method=payment_method.value,
        )

    log.info(f"Order {order.id} placed for user {user_id} at restaurant {restaurant_id} (total {total}).")
    return order


async def load_order(order_id: UUID, conn: Any = None) -> Order:
    order = await Order.get_or_none(id=order_id).using_db(conn)
    if not order:
        raise OrderNotFound(f"Order {order_id} not found.")
    return order


async def get_order_by_id(order_id: UUID) -> Optional[Order]:
    """Fetches an order with its line items and status history."""
    return await Order.get_or_none(id=order_id).prefetch_related('items', 'status_history')


async def list_orders(user_id: Optional[str] = None, restaurant_id: Optional[UUID] = None,
                      status=None) -> List[Order]:
    filters = {}
    if user_id:
        filters["user_id"] = user_id
    if restaurant_id:
        filters["restaurant_id"] = restaurant_id
    if status:
        filters["status"] = parse_choice(OrderStatus, status, "status")
    return await Order.filter(**filters).order_by("-created_at")


async def update_order_status(order_id: UUID, new_status, actor, note: Optional[str] = None,
                              agent_id: Optional[UUID] = None) -> Order:
    """
    Applies one state-machine transition. Transitions on the same order are
    serialized so history entries keep the real order of events. A courier
    reporting pickup or delivery passes its ``agent_id`` to prove the assignment.
    """
    new_status = parse_choice(OrderStatus, new_status, "status")
    actor = parse_choice(Actor, actor, "actor")
    if agent_id is not None:
        agent_id = parse_uuid(agent_id, "agent id")

    async with order_locks.hold(order_id):
        order = await load_order(order_id)
        async with agent_locks.hold(order.delivery_person_id):
            async with in_transaction() as conn:
                order = await load_order(order_id, conn)
                await apply_transition(order, new_status, actor, conn, note=note, agent_id=agent_id)

    broadcaster.publish_status(order.id, order.status.value, note)
    return order


def _check_cancellable(order: Order, actor: Actor) -> None:
    if order.status == OrderStatus.CANCELLED:
        raise AlreadyCancelled("Order has already been cancelled.")
    if order.status == OrderStatus.DELIVERED:
        raise CannotCancelAtThisStage("Order cannot be cancelled at this stage.")
    if actor != Actor.ADMIN and order.status not in (OrderStatus.PENDING, OrderStatus.CONFIRMED):
        raise CannotCancelAtThisStage("Order cannot be cancelled at this stage.")


async def cancel_order(order_id: UUID, actor, reason: Optional[str] = None) -> Order:
    """
    Cancels the order on behalf of a user, restaurant or admin and releases any
    assigned courier. Users and restaurants may only cancel before preparation.
    """
    actor = parse_choice(Actor, actor, "actor")
    if actor not in CANCELLING_ACTORS:
        raise ValidationError(f"{actor.value} cannot cancel orders.")
    reason = reason or f"Cancelled by {actor.value}"

    async with order_locks.hold(order_id):
        order = await load_order(order_id)
        _check_cancellable(order, actor)
        async with agent_locks.hold(order.delivery_person_id):
            async with in_transaction() as conn:
                order = await load_order(order_id, conn)
                _check_cancellable(order, actor)
                await apply_transition(order, OrderStatus.CANCELLED, actor, conn, note=reason)

    broadcaster.publish_status(order.id, order.status.value, reason)
    return order


def _validate_score(value, label: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or not 1 <= value <= 5:
        raise ValidationError(f"{label} rating must be a whole number between 1 and 5.")
    return value


def _check_rateable(order: Order) -> None:
    if order.status != OrderStatus.DELIVERED:
        raise NotDelivered("Can only rate delivered orders.")
    if order.is_rated:
        raise AlreadyRated("Order already rated.")


async def submit_rating(order_id: UUID, food: int, delivery: int, review: Optional[str] = None) -> Order:
    """
    Records the one-time rating of a delivered order and recomputes the
    restaurant aggregate in the same transaction.
    """
    food = _validate_score(food, "Food")
    delivery = _validate_score(delivery, "Delivery")

    async with order_locks.hold(order_id):
        order = await load_order(order_id)
        _check_rateable(order)
        async with restaurant_locks.hold(order.restaurant_id):
            async with in_transaction() as conn:
                order = await load_order(order_id, conn)
                _check_rateable(order)
                overall = overall_rating(food, delivery)
                await conditional_update(
                    order, conn,
                    rating_food=food,
                    rating_delivery=delivery,
                    rating_overall=overall,
                    review=review,
                    reviewed_at=timezone.now(),
                )
                await recompute_restaurant_rating(order.restaurant_id, conn)
                await emit_order_event(order, "order.rated.v1", conn=conn, overall=str(overall))

    log.info(f"Order {order_id} rated {overall} (food {food}, delivery {delivery}).")
    return order
