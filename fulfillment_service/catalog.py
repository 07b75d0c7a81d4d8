# catalog.py
"""Service areas and the product ledger: read-only lookups plus the single
stock write path used by checkout."""
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import select, and_

from .database import database
from .models import service_areas, products, product_service_areas


async def get_active_area(name: str) -> Optional[dict]:
    row = await database.fetch_one(
        service_areas.select().where(
            and_(service_areas.c.name == name, service_areas.c.is_active == True)  # noqa: E712
        )
    )
    return dict(row) if row else None


async def fetch_active_products(product_ids: Iterable[str], for_update: bool = False) -> Dict[str, dict]:
    """Fresh product rows keyed by id; inactive or unknown ids are simply absent."""
    ids = list(set(product_ids))
    if not ids:
        return {}
    query = products.select().where(
        and_(products.c.id.in_(ids), products.c.is_active == True)  # noqa: E712
    )
    if for_update:
        # row locks on PostgreSQL; SQLite serializes writers on its own
        query = query.with_for_update()
    rows = await database.fetch_all(query)
    return {row["id"]: dict(row) for row in rows}


async def fetch_served_area_names(product_ids: Iterable[str]) -> Dict[str, Set[str]]:
    ids = list(set(product_ids))
    served: Dict[str, Set[str]] = {pid: set() for pid in ids}
    if not ids:
        return served
    query = (
        select(product_service_areas.c.product_id, service_areas.c.name)
        .select_from(
            product_service_areas.join(
                service_areas, product_service_areas.c.service_area_id == service_areas.c.id
            )
        )
        .where(product_service_areas.c.product_id.in_(ids))
    )
    for row in await database.fetch_all(query):
        served[row["product_id"]].add(row["name"])
    return served


async def decrement_stock(product_id: str, quantity: int) -> None:
    """Decrement-by-N; only ever called inside the checkout unit of work."""
    await database.execute(
        products.update()
        .where(products.c.id == product_id)
        .values(stock=products.c.stock - quantity)
    )


async def low_stock_products(product_ids: Iterable[str]) -> List[dict]:
    ids = list(set(product_ids))
    if not ids:
        return []
    rows = await database.fetch_all(
        select(products.c.id, products.c.name, products.c.stock, products.c.low_stock_threshold)
        .where(
            and_(
                products.c.id.in_(ids),
                products.c.track_stock == True,  # noqa: E712
                products.c.stock <= products.c.low_stock_threshold,
            )
        )
        .order_by(products.c.name)
    )
    return [dict(row) for row in rows]
