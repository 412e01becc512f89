from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
from tortoise import fields, models
from tortoise.validators import MaxValueValidator, MinValueValidator
import uuid

CENT = Decimal("0.01")


class Restaurant(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    name = fields.CharField(max_length=255)
    is_active = fields.BooleanField(default=True)
    is_delivery_available = fields.BooleanField(default=True)
    latitude = fields.FloatField(null=True)
    longitude = fields.FloatField(null=True)

    # Delivery settings
    delivery_fee = fields.DecimalField(max_digits=12, decimal_places=2, default=0)
    minimum_order_amount = fields.DecimalField(max_digits=12, decimal_places=2, default=0)
    tax_percent = fields.DecimalField(max_digits=5, decimal_places=2, default=5)
    estimated_delivery_minutes = fields.IntField(default=30)

    # Derived by the rating aggregator, never written directly
    rating_average = fields.DecimalField(max_digits=3, decimal_places=1, default=0)
    rating_count = fields.IntField(default=0)

    version = fields.IntField(default=0)

    class Meta:
        table = "restaurants"
        indexes = [
            ("is_active",),  # For filtering active restaurants
        ]


class MenuItem(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    restaurant = fields.ForeignKeyField("models.Restaurant", related_name="menu_items")
    name = fields.CharField(max_length=255)
    price = fields.DecimalField(max_digits=12, decimal_places=2, validators=[MinValueValidator(0)])
    discount = fields.DecimalField(
        max_digits=5, decimal_places=2, default=0,
        validators=[MinValueValidator(0), MaxValueValidator(100)],
    )  # percent off ``price``
    # [{"name": "Add-ons", "options": [{"label": "Extra raita", "price": "20.00"}]}]
    customizations = fields.JSONField(default=list)
    is_available = fields.BooleanField(default=True)

    class Meta:
        table = "menu_items"
        indexes = [
            ("restaurant_id",),  # Fast restaurant menu queries
            ("restaurant_id", "is_available"),  # Composite: restaurant's available items
        ]

    @property
    def final_price(self) -> Decimal:
        """Unit price after the item discount."""
        price = Decimal(self.price)
        off = price * Decimal(self.discount) / 100
        return (price - off).quantize(CENT, rounding=ROUND_HALF_UP)

    def option_price(self, group: str, label: str) -> Optional[Decimal]:
        """Catalog price of one customization option, or None if the menu does not offer it."""
        for customization in self.customizations or []:
            if customization.get("name") != group:
                continue
            for option in customization.get("options") or []:
                if option.get("label") == label:
                    return Decimal(str(option.get("price", 0))).quantize(CENT)
        return None
