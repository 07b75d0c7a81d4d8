# allocation.py
"""
Driver allocation.

A driver is busy while a row in ``driver_allocations`` names them; the
primary key on ``driver_id`` allows one active allocation per driver and the
unique ``order_id`` one driver per order. ``users.is_available`` mirrors the
allocation for readers and is only written through a compare-and-swap on
``users.version``.

``assign``/``release`` never open their own transaction: they run inside
the state machine's unit of work.
"""
from typing import List, Optional

from sqlalchemy import select, and_

from shared.auth import Role, UserStatus
from .config import get_logger
from .database import database, is_unique_violation, utcnow
from .errors import AvailabilityError, ConflictError, NotFoundError, ValidationError
from .models import users, driver_allocations

logger = get_logger("fulfillment-service.allocation")


async def get_driver(driver_id: str) -> dict:
    row = await database.fetch_one(users.select().where(users.c.id == driver_id))
    if not row:
        raise NotFoundError("Driver not found")
    driver = dict(row)
    if driver["role"] != Role.DRIVER.value:
        raise ValidationError(f"User {driver['name']} is not a driver")
    if driver["status"] != UserStatus.APPROVED.value:
        raise ValidationError(f"Driver {driver['name']} is not active")
    return driver


async def _set_availability(driver: dict, available: bool) -> None:
    swapped = await database.fetch_val(
        users.update()
        .where(and_(users.c.id == driver["id"], users.c.version == driver["version"]))
        .values(is_available=available, version=driver["version"] + 1)
        .returning(users.c.version)
    )
    if swapped is None:
        raise ConflictError(f"Availability of driver {driver['name']} changed concurrently; try again")


async def current_allocation(driver_id: str) -> Optional[dict]:
    row = await database.fetch_one(
        driver_allocations.select().where(driver_allocations.c.driver_id == driver_id)
    )
    return dict(row) if row else None


async def assign(order: dict, driver_id: str) -> None:
    """
    Allocate `driver_id` to `order`, releasing the order's previous driver.
    A driver still holding a different order is rejected as busy.
    """
    driver = await get_driver(driver_id)
    held = await current_allocation(driver_id)
    if held and held["order_id"] != order["id"]:
        raise AvailabilityError(f"Driver {driver['name']} is busy with another order")

    if order.get("driver_id") and order["driver_id"] != driver_id:
        await release(order)

    if not held:
        try:
            await database.execute(
                driver_allocations.insert().values(
                    driver_id=driver_id,
                    order_id=order["id"],
                    acquired_at=utcnow(),
                )
            )
        except Exception as e:
            if is_unique_violation(e):
                raise AvailabilityError(f"Driver {driver['name']} is busy with another order")
            raise

    await _set_availability(driver, False)
    logger.info(f"[ALLOCATION] Driver {driver_id} -> order {order['id']}")


async def release(order: dict) -> None:
    """Free whichever driver holds `order`; a no-op for an order without one."""
    alloc = await database.fetch_one(
        driver_allocations.select().where(driver_allocations.c.order_id == order["id"])
    )
    driver_id = alloc["driver_id"] if alloc else order.get("driver_id")
    if not driver_id:
        return

    await database.execute(
        driver_allocations.delete().where(driver_allocations.c.order_id == order["id"])
    )

    # still allocated elsewhere: leave the flag alone
    if await current_allocation(driver_id):
        return

    row = await database.fetch_one(users.select().where(users.c.id == driver_id))
    if row and not row["is_available"]:
        await _set_availability(dict(row), True)
    logger.info(f"[ALLOCATION] Driver {driver_id} released from order {order['id']}")


async def list_drivers(available: Optional[bool] = None) -> List[dict]:
    query = (
        select(
            users.c.id,
            users.c.name,
            users.c.phone,
            users.c.status,
            users.c.is_available,
            driver_allocations.c.order_id.label("current_order_id"),
            driver_allocations.c.acquired_at,
        )
        .select_from(
            users.outerjoin(driver_allocations, driver_allocations.c.driver_id == users.c.id)
        )
        .where(users.c.role == Role.DRIVER.value)
        .order_by(users.c.name)
    )
    if available is not None:
        query = query.where(users.c.is_available == available)
    rows = await database.fetch_all(query)
    return [dict(row) for row in rows]
