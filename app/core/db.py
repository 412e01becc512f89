from typing import Any
from tortoise import Tortoise
from tortoise.models import Model
from app.core.config import DB_URL
from app.core.errors import ConcurrencyError
import logging
from logging import INFO

# Set logging level for Tortoise ORM
logging.getLogger('tortoise').setLevel(INFO)
log = logging.getLogger("db")

# Define all models modules for the ORM
MODELS_MODULES = [
    "app.models.order",
    "app.models.restaurant",
    "app.models.delivery_agent",
    "app.models.outbox",
    "app.models.processed_event",
]

async def init_db(db_url: str = DB_URL):
    """Initializes the Tortoise ORM connection and generates schemas."""
    try:
        await Tortoise.init(
            db_url=db_url,
            modules={"models": MODELS_MODULES},
        )
        # Generate the database schema (create tables)
        await Tortoise.generate_schemas()
        log.info("Database connection established and schemas generated.")
    except Exception as e:
        log.error(f"FATAL ERROR: Could not connect to database at {db_url}. Error: {e}")
        # Re-raise to prevent the application from starting without a database
        raise

async def close_db():
    """Closes all database connections."""
    await Tortoise.close_connections()
    log.info("Database connections closed.")


async def conditional_update(instance: Model, conn: Any = None, guard: dict = None, **changes) -> None:
    """
    Compare-and-swap write keyed on the instance's ``version`` column.

    Only the given columns are written, and only if the row still carries the
    version this instance was loaded with (plus any extra ``guard`` filters).
    On success the instance is updated in memory and its version bumped; when
    no row matches, ConcurrencyError is raised and nothing is written.
    """
    filters = {"id": instance.id, "version": instance.version}
    if guard:
        filters.update(guard)
    new_version = instance.version + 1
    updated = await type(instance).filter(**filters).using_db(conn).update(version=new_version, **changes)
    if not updated:
        raise ConcurrencyError(
            f"{type(instance).__name__} {instance.id} was modified concurrently (version {instance.version})."
        )
    for field, value in changes.items():
        setattr(instance, field, value)
    instance.version = new_version
