# scripts/seed_data.py
import asyncio
import logging
from decimal import Decimal
from app.core.config import LOG_LEVEL
from app.core.db import init_db, close_db
from app.models.restaurant import Restaurant, MenuItem
from app.models.delivery_agent import DeliveryAgent, VehicleType, availability_fields

log = logging.getLogger("seed_data")

MENU = [
    ("Paneer Wrap", "149.00"),
    ("Chili Paneer Rice", "199.00"),
    ("Cold Drink", "49.00"),
]

AGENTS = [
    # user_id, vehicle, plate, lat, lon
    ("courier-001", VehicleType.BIKE, "KA01AB1234", 12.9716, 77.5946),
    ("courier-002", VehicleType.SCOOTER, "KA02CD5678", 12.9352, 77.6245),
]


async def seed():
    # Create one restaurant
    rest, _ = await Restaurant.get_or_create(
        name="Demo Restaurant",
        defaults={
            "latitude": 12.9700,
            "longitude": 77.6000,
            "delivery_fee": Decimal("40.00"),
            "minimum_order_amount": Decimal("100.00"),
        },
    )
    log.info(f"Restaurant: {rest.id}")

    for name, price in MENU:
        item, _ = await MenuItem.get_or_create(restaurant=rest, name=name, defaults={"price": price, "is_available": True})
        log.info(f"Menu item {name}: {item.id}")

    for user_id, vehicle, plate, lat, lon in AGENTS:
        agent, created = await DeliveryAgent.get_or_create(
            user_id=user_id,
            defaults={
                "vehicle_type": vehicle,
                "vehicle_number": plate,
                "driving_license": f"DL-{user_id}",
                "latitude": lat,
                "longitude": lon,
                **availability_fields(True, None),
            },
        )
        log.info(f"Agent {user_id}: {agent.id} ({'created' if created else 'existing'})")


async def main():
    await init_db()
    try:
        await seed()
    finally:
        await close_db()

if __name__ == "__main__":
    logging.basicConfig(level=LOG_LEVEL, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    asyncio.run(main())
