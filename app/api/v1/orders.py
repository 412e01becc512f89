import logging
from fastapi import APIRouter, HTTPException, status
from app.core.errors import CoordinatorError, OrderNotFound
from app.models.order import OrderStatus
from app.schemas.response import SuccessResponse
from app.services.order_service import (
    place_order,
    get_order_by_id,
    list_orders,
    update_order_status,
    cancel_order,
    submit_rating,
)
from app.services.dispatch_service import assign_courier
from app.schemas.order import (
    AssignCourierRequest,
    CancelRequest,
    OrderDetailResponse,
    OrderRequest,
    OrderResponse,
    OrderStatusUpdate,
    RatingRequest,
)
from typing import Optional
from uuid import UUID

router = APIRouter()
log = logging.getLogger("uvicorn")


@router.post("/", status_code=status.HTTP_201_CREATED, response_model=SuccessResponse)
async def create_order_endpoint(request_data: OrderRequest, user_id: str):
    """
    Places a new order. Prices are snapshotted from the menu at this moment.
    """
    try:
        items_data = [
            {
                "menu_item_id": str(item.menu_item_id),
                "quantity": item.quantity,
                "customizations": [c.model_dump() for c in item.customizations],
            }
            for item in request_data.items
        ]

        order = await place_order(
            user_id=user_id,
            restaurant_id=request_data.restaurant_id,
            items=items_data,
            address=request_data.delivery_address.model_dump(),
            payment_method=request_data.payment_method,
            phone=request_data.contact_phone,
            special_instructions=request_data.special_instructions,
        )
        log.info(f"Order {order.id} placed successfully for user {user_id}.")
        data = OrderResponse.from_order(order).model_dump(mode="json")
        return SuccessResponse(data=data, message="Order placed.")
    except CoordinatorError:
        raise
    except Exception as e:
        log.error(f"Error placing order: {e}")
        raise HTTPException(status_code=500, detail="Server failed to place order.")


@router.get("/", response_model=SuccessResponse)
async def list_orders_endpoint(user_id: Optional[str] = None, restaurant_id: Optional[UUID] = None,
                               status: Optional[OrderStatus] = None):
    orders = await list_orders(user_id=user_id, restaurant_id=restaurant_id, status=status)
    return SuccessResponse(data=[OrderResponse.from_order(o).model_dump(mode="json") for o in orders])


@router.get("/{order_id}", response_model=SuccessResponse)
async def get_order_endpoint(order_id: UUID):
    """Fetches details for a specific order, including items and status history."""
    order = await get_order_by_id(order_id)
    if not order:
        raise OrderNotFound(f"Order {order_id} not found.")
    return SuccessResponse(data=OrderDetailResponse.from_order(order).model_dump(mode="json"))


@router.patch("/{order_id}/status", response_model=SuccessResponse)
async def update_status_endpoint(order_id: UUID, payload: OrderStatusUpdate):
    """
    Moves the order along the fulfillment track (e.g. 'preparing', 'out-for-delivery', 'delivered').
    """
    try:
        order = await update_order_status(order_id, payload.status, payload.actor, payload.note, agent_id=payload.agent_id)
        data = OrderResponse.from_order(order).model_dump(mode="json")
        return SuccessResponse(data=data, message=f"Order status successfully updated to {order.status.value}")
    except CoordinatorError as e:
        log.warning(f"Status update rejected for order {order_id}: {e.message}")
        raise
    except Exception as e:
        log.error(f"Error updating order status: {e}")
        raise HTTPException(status_code=500, detail="Server failed to update order status.")


@router.post("/{order_id}/cancel", response_model=SuccessResponse)
async def cancel_order_endpoint(order_id: UUID, payload: CancelRequest):
    """
    Cancels the order and frees its courier, if one was assigned.
    """
    try:
        order = await cancel_order(order_id, payload.actor, payload.reason)
        data = OrderResponse.from_order(order).model_dump(mode="json")
        return SuccessResponse(data=data, message="Order cancelled.")
    except CoordinatorError as e:
        log.warning(f"Cancellation rejected for order {order_id}: {e.message}")
        raise
    except Exception as e:
        log.error(f"Error cancelling order: {e}")
        raise HTTPException(status_code=500, detail="Server failed to cancel order.")


@router.post("/{order_id}/assign", response_model=SuccessResponse)
async def assign_courier_endpoint(order_id: UUID, payload: AssignCourierRequest):
    try:
        order = await assign_courier(order_id, payload.agent_id)
        data = OrderResponse.from_order(order).model_dump(mode="json")
        return SuccessResponse(data=data, message=f"Courier {order.delivery_person_id} assigned.")
    except CoordinatorError:
        raise
    except Exception as e:
        log.error(f"Error assigning courier to order {order_id}: {e}")
        raise HTTPException(status_code=500, detail="Server failed to assign a courier.")


@router.post("/{order_id}/rating", response_model=SuccessResponse)
async def rate_order_endpoint(order_id: UUID, payload: RatingRequest):
    try:
        order = await submit_rating(order_id, payload.food, payload.delivery, payload.review)
        data = {
            "order_id": str(order.id),
            "food": order.rating_food,
            "delivery": order.rating_delivery,
            "overall": str(order.rating_overall),
        }
        return SuccessResponse(data=data, message="Thanks for rating your order.")
    except CoordinatorError:
        raise
    except Exception as e:
        log.error(f"Error rating order {order_id}: {e}")
        raise HTTPException(status_code=500, detail="Server failed to save the rating.")
