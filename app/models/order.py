from enum import Enum
from tortoise import fields, models
import uuid


class OrderStatus(str, Enum):
    PENDING = "pending"  # Placed by the customer, awaiting restaurant/courier
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    OUT_FOR_DELIVERY = "out-for-delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (OrderStatus.DELIVERED, OrderStatus.CANCELLED)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    UPI = "upi"
    WALLET = "wallet"


class PaymentGateway(str, Enum):
    RAZORPAY = "razorpay"
    STRIPE = "stripe"


class Actor(str, Enum):
    USER = "user"
    RESTAURANT = "restaurant"
    ADMIN = "admin"
    COURIER = "courier"
    SYSTEM = "system"


class Order(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    user_id = fields.CharField(max_length=64)
    restaurant = fields.ForeignKeyField("models.Restaurant", related_name="orders")
    status = fields.CharEnumField(OrderStatus, max_length=32, default=OrderStatus.PENDING)

    # Pricing, frozen at placement
    subtotal = fields.DecimalField(max_digits=12, decimal_places=2)
    delivery_fee = fields.DecimalField(max_digits=12, decimal_places=2, default=0)
    tax = fields.DecimalField(max_digits=12, decimal_places=2, default=0)
    discount = fields.DecimalField(max_digits=12, decimal_places=2, default=0)
    total = fields.DecimalField(max_digits=14, decimal_places=2)

    # Delivery address & contact
    street = fields.CharField(max_length=255)
    city = fields.CharField(max_length=128)
    state = fields.CharField(max_length=128)
    zip_code = fields.CharField(max_length=16)
    country = fields.CharField(max_length=64, default="India")
    landmark = fields.CharField(max_length=255, null=True)
    contact_phone = fields.CharField(max_length=32)
    special_instructions = fields.CharField(max_length=200, null=True)
    estimated_delivery_time = fields.DatetimeField(null=True)
    actual_delivery_time = fields.DatetimeField(null=True)

    # Payment track (independent of status)
    payment_method = fields.CharEnumField(PaymentMethod, max_length=16)
    payment_status = fields.CharEnumField(PaymentStatus, max_length=16, default=PaymentStatus.PENDING)
    payment_gateway = fields.CharEnumField(PaymentGateway, max_length=16, null=True)
    payment_intent_id = fields.CharField(max_length=128, null=True, unique=True)
    payment_reference = fields.CharField(max_length=128, null=True) # gateway payment id, used for refunds
    paid_at = fields.DatetimeField(null=True)
    refunded_at = fields.DatetimeField(null=True)
    refund_amount = fields.DecimalField(max_digits=14, decimal_places=2, null=True)

    # Courier assignment & live tracking
    delivery_person = fields.ForeignKeyField(
        "models.DeliveryAgent", related_name="orders", null=True, on_delete=fields.SET_NULL
    )
    assigned_at = fields.DatetimeField(null=True)
    picked_up_at = fields.DatetimeField(null=True)
    delivered_at = fields.DatetimeField(null=True)
    current_latitude = fields.FloatField(null=True)
    current_longitude = fields.FloatField(null=True)

    # Rating, set once after delivery
    rating_food = fields.SmallIntField(null=True)
    rating_delivery = fields.SmallIntField(null=True)
    rating_overall = fields.DecimalField(max_digits=3, decimal_places=1, null=True)
    review = fields.TextField(null=True)
    reviewed_at = fields.DatetimeField(null=True)

    # Cancellation record, written once
    cancel_reason = fields.CharField(max_length=255, null=True)
    cancelled_by = fields.CharEnumField(Actor, max_length=16, null=True)
    cancelled_at = fields.DatetimeField(null=True)

    version = fields.IntField(default=0)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "orders"
        indexes = [
            ("restaurant_id",),          # Restaurant order queries
            ("status",),                 # Status-based filtering
            ("user_id",),                # User order history
            ("created_at",),             # Time-based queries
            ("restaurant_id", "status"), # Composite: restaurant's orders by status
        ]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_rated(self) -> bool:
        return self.rating_overall is not None


class OrderItem(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    order = fields.ForeignKeyField("models.Order", related_name="items")
    menu_item = fields.ForeignKeyField("models.MenuItem", related_name="order_items")
    position = fields.SmallIntField()
    name = fields.CharField(max_length=255) # snapshot
    quantity = fields.IntField()
    unit_price = fields.DecimalField(max_digits=12, decimal_places=2) # snapshot
    customizations = fields.JSONField(default=list) # [{"name", "selected_option", "additional_price"}]
    line_total = fields.DecimalField(max_digits=14, decimal_places=2)

    class Meta:
        table = "order_items"
        ordering = ["position"]
        indexes = [
            ("order_id",),              # Order line items
            ("menu_item_id",),          # Menu item popularity
        ]


class OrderStatusEntry(models.Model):
    """Append-only status history. Rows are only ever inserted."""
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    order = fields.ForeignKeyField("models.Order", related_name="status_history")
    sequence = fields.IntField()
    status = fields.CharEnumField(OrderStatus, max_length=32)
    actor = fields.CharEnumField(Actor, max_length=16, null=True)
    note = fields.CharField(max_length=255, null=True)
    timestamp = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "order_status_history"
        ordering = ["sequence"]
        unique_together = (("order", "sequence"),)


class PaymentAttempt(models.Model):
    """Every gateway intent opened for an order. Callbacks resolve through here, so a superseded intent still settles."""
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    order = fields.ForeignKeyField("models.Order", related_name="payment_attempts")
    provider = fields.CharEnumField(PaymentGateway, max_length=16)
    intent_id = fields.CharField(max_length=128)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "payment_attempts"
        ordering = ["created_at"]
        unique_together = (("provider", "intent_id"),)
