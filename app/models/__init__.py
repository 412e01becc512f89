# app/models/__init__.py
from .order import Order, OrderItem, OrderStatusEntry, PaymentAttempt, OrderStatus, PaymentStatus, PaymentMethod, PaymentGateway, Actor
from .restaurant import Restaurant, MenuItem
from .delivery_agent import DeliveryAgent, AgentState, VehicleType
from .outbox import OutboxEvent
from .processed_event import ProcessedEvent

# Export all models
__all__ = [
    "Actor",
    "AgentState",
    "DeliveryAgent",
    "MenuItem",
    "Order",
    "OrderItem",
    "OrderStatus",
    "OrderStatusEntry",
    "OutboxEvent",
    "PaymentAttempt",
    "PaymentGateway",
    "PaymentMethod",
    "PaymentStatus",
    "ProcessedEvent",
    "Restaurant",
    "VehicleType",
]
