from pydantic import BaseModel, Field
from typing import List, Optional
import uuid
from decimal import Decimal
from app.models.order import Actor, Order, OrderStatus, PaymentMethod, PaymentStatus


class CustomizationRequest(BaseModel):
    """Picks one option of a menu item customization; the price comes from the menu."""
    name: str
    selected_option: str


class OrderItemRequest(BaseModel):
    """Schema for a single item in the order request."""
    menu_item_id: uuid.UUID
    quantity: int = Field(..., ge=1)
    customizations: List[CustomizationRequest] = Field(default_factory=list)


class AddressRequest(BaseModel):
    street: str
    city: str
    state: str
    zip_code: str
    country: str = "India"
    landmark: Optional[str] = None


class OrderRequest(BaseModel):
    """Schema for the full order placement request body."""
    restaurant_id: uuid.UUID
    items: List[OrderItemRequest]
    delivery_address: AddressRequest
    payment_method: PaymentMethod
    contact_phone: str
    special_instructions: Optional[str] = Field(None, max_length=200)


class OrderStatusUpdate(BaseModel):
    """Schema for updating an order status."""
    status: OrderStatus
    actor: Actor = Actor.RESTAURANT
    agent_id: Optional[uuid.UUID] = None  # the acting courier, for pickup and delivery
    note: Optional[str] = Field(None, max_length=255)


class CancelRequest(BaseModel):
    actor: Actor = Actor.USER
    reason: Optional[str] = Field(None, max_length=255)


class RatingRequest(BaseModel):
    food: int = Field(..., ge=1, le=5)
    delivery: int = Field(..., ge=1, le=5)
    review: Optional[str] = None


class AssignCourierRequest(BaseModel):
    """Leave agent_id empty to let the dispatcher pick the nearest available courier."""
    agent_id: Optional[uuid.UUID] = None


class OrderItemResponse(BaseModel):
    """Schema for an item inside the detailed order response."""
    name: str
    quantity: int
    price: str  # Use string for Decimal type serialization
    line_total: str
    customizations: list


class StatusHistoryResponse(BaseModel):
    status: OrderStatus
    timestamp: str
    note: Optional[str] = None


class OrderResponse(BaseModel):
    """Order header: pricing, fulfillment and payment tracks."""
    id: uuid.UUID
    user_id: str
    restaurant_id: uuid.UUID
    status: OrderStatus
    subtotal: Decimal
    delivery_fee: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    delivery_person_id: Optional[uuid.UUID] = None
    rating_overall: Optional[Decimal] = None
    cancel_reason: Optional[str] = None
    created_at: str

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        return cls(
            id=order.id,
            user_id=order.user_id,
            restaurant_id=order.restaurant_id,
            status=order.status,
            subtotal=order.subtotal,
            delivery_fee=order.delivery_fee,
            tax=order.tax,
            discount=order.discount,
            total=order.total,
            payment_method=order.payment_method,
            payment_status=order.payment_status,
            delivery_person_id=order.delivery_person_id,
            rating_overall=order.rating_overall,
            cancel_reason=order.cancel_reason,
            created_at=str(order.created_at),
        )


class OrderDetailResponse(OrderResponse):
    """Schema for fetching detailed order information."""
    items: List[OrderItemResponse]
    status_history: List[StatusHistoryResponse]
    current_location: Optional[dict] = None

    @classmethod
    def from_order(cls, order: Order) -> "OrderDetailResponse":
        header = OrderResponse.from_order(order).model_dump()
        location = None
        if order.current_latitude is not None:
            location = {"latitude": order.current_latitude, "longitude": order.current_longitude}
        return cls(
            **header,
            items=[
                OrderItemResponse(
                    name=i.name,
                    quantity=i.quantity,
                    price=str(i.unit_price),
                    line_total=str(i.line_total),
                    customizations=i.customizations,
                )
                for i in order.items
            ],
            status_history=[
                StatusHistoryResponse(status=h.status, timestamp=str(h.timestamp), note=h.note)
                for h in order.status_history
            ],
            current_location=location,
        )
