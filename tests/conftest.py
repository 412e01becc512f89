import pytest
from decimal import Decimal
from app.core.db import init_db, close_db
from app.models.delivery_agent import DeliveryAgent, VehicleType, availability_fields
from app.models.restaurant import Restaurant, MenuItem
from app.services.order_service import place_order

# Restaurant sits in central Bengaluru; agents are placed relative to it.
RESTAURANT_LAT, RESTAURANT_LON = 12.9716, 77.5946

ADDRESS = {
    "street": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "zip_code": "560001",
}


@pytest.fixture
async def db():
    """Fresh in-memory SQLite schema per test."""
    await init_db("sqlite://:memory:")
    yield
    await close_db()


@pytest.fixture
async def restaurant(db):
    return await Restaurant.create(
        name="Demo Restaurant",
        latitude=RESTAURANT_LAT,
        longitude=RESTAURANT_LON,
        delivery_fee=Decimal("40.00"),
        minimum_order_amount=Decimal("100.00"),
        tax_percent=Decimal("5"),
    )


@pytest.fixture
async def menu(restaurant):
    """Two priced items: a 250.00 biryani with paid add-ons and a 50.00 drink."""
    biryani = await MenuItem.create(
        restaurant=restaurant,
        name="Chicken Biryani",
        price=Decimal("250.00"),
        customizations=[{"name": "Add-ons", "options": [
            {"label": "Extra raita", "price": "20.00"},
            {"label": "No onion", "price": "0"},
        ]}],
    )
    drink = await MenuItem.create(restaurant=restaurant, name="Cold Drink", price=Decimal("50.00"))
    return {"biryani": biryani, "drink": drink}


@pytest.fixture
def make_agent(db):
    counter = {"n": 0}

    async def _make(online=True, latitude=None, longitude=None, **kwargs):
        counter["n"] += 1
        return await DeliveryAgent.create(
            user_id=kwargs.pop("user_id", f"courier-{counter['n']}"),
            vehicle_type=kwargs.pop("vehicle_type", VehicleType.BIKE),
            vehicle_number=f"KA01AB{1000 + counter['n']}",
            driving_license=f"DL-{counter['n']}",
            latitude=latitude,
            longitude=longitude,
            **availability_fields(online, None),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_order(restaurant, menu):
    """Places a 2 x biryani order (subtotal 500) unless told otherwise."""

    async def _make(user_id="user-123", payment_method="upi", items=None):
        items = items or [{"menu_item_id": menu["biryani"].id, "quantity": 2}]
        return await place_order(
            user_id=user_id,
            restaurant_id=restaurant.id,
            items=items,
            address=ADDRESS,
            payment_method=payment_method,
            phone="+919800000000",
        )

    return _make
