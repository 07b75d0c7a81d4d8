# queries.py
"""Read side: order detail assembly and the role-scoped, paginated listing."""
import math
from typing import Dict, List, Optional

from sqlalchemy import select, func

from shared.auth import Actor, Role
from .database import database
from .errors import AuthError, NotFoundError, ValidationError
from .models import addresses, order_items, order_status_history, orders, products, users
from .state_machine import parse_status

MAX_PAGE_SIZE = 100


def can_view(order: dict, actor: Actor) -> bool:
    if actor.is_staff:
        return True
    if actor.role == Role.DRIVER:
        return order["driver_id"] == actor.id
    return order["customer_id"] == actor.id


async def _parties(user_ids) -> Dict[str, dict]:
    ids = [i for i in set(user_ids) if i]
    if not ids:
        return {}
    rows = await database.fetch_all(
        select(users.c.id, users.c.name, users.c.phone).where(users.c.id.in_(ids))
    )
    return {row["id"]: dict(row) for row in rows}


async def _attach(order_rows: List[dict]) -> List[dict]:
    """Hang items, address, customer, driver and history onto order rows."""
    if not order_rows:
        return []
    ids = [o["id"] for o in order_rows]

    item_rows = await database.fetch_all(
        select(order_items, products.c.name.label("product_name"))
        .select_from(order_items.join(products, order_items.c.product_id == products.c.id))
        .where(order_items.c.order_id.in_(ids))
        .order_by(order_items.c.order_id, products.c.name)
    )
    history_rows = await database.fetch_all(
        order_status_history.select()
        .where(order_status_history.c.order_id.in_(ids))
        .order_by(order_status_history.c.created_at.desc(), order_status_history.c.id.desc())
    )
    address_rows = await database.fetch_all(
        addresses.select().where(addresses.c.id.in_(list({o["address_id"] for o in order_rows})))
    )
    parties = await _parties([o["customer_id"] for o in order_rows] + [o["driver_id"] for o in order_rows])

    address_by_id = {row["id"]: dict(row) for row in address_rows}
    items: Dict[str, List[dict]] = {}
    for row in item_rows:
        items.setdefault(row["order_id"], []).append(dict(row))
    history: Dict[str, List[dict]] = {}
    for row in history_rows:
        history.setdefault(row["order_id"], []).append(dict(row))

    result = []
    for o in order_rows:
        result.append({
            **o,
            "items": items.get(o["id"], []),
            "status_history": history.get(o["id"], []),
            "address": address_by_id.get(o["address_id"]),
            "customer": parties.get(o["customer_id"]),
            "driver": parties.get(o["driver_id"]) if o["driver_id"] else None,
        })
    return result


async def get_order_detail(order_id: str) -> dict:
    row = await database.fetch_one(orders.select().where(orders.c.id == order_id))
    if not row:
        raise NotFoundError("Order not found")
    return (await _attach([dict(row)]))[0]


async def get_order_for(order_id: str, actor: Actor) -> dict:
    order = await get_order_detail(order_id)
    if not can_view(order, actor):
        raise AuthError("You are not allowed to view this order")
    return order


async def list_orders(actor: Actor, page: int = 1, limit: int = 20, status: Optional[str] = None) -> dict:
    if page < 1:
        raise ValidationError("page must be at least 1")
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

    conditions = []
    if actor.role == Role.CUSTOMER:
        conditions.append(orders.c.customer_id == actor.id)
    elif actor.role == Role.DRIVER:
        conditions.append(orders.c.driver_id == actor.id)

    if status:
        wanted = [parse_status(s.strip()).value for s in status.split(",") if s.strip()]
        if wanted:
            conditions.append(orders.c.status.in_(wanted))

    total = await database.fetch_val(
        select(func.count()).select_from(orders).where(*conditions)
    ) or 0
    rows = await database.fetch_all(
        orders.select()
        .where(*conditions)
        .order_by(orders.c.created_at.desc(), orders.c.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return {
        "orders": await _attach([dict(row) for row in rows]),
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit),
        },
    }
