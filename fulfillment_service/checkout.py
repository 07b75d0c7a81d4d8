# checkout.py
"""
Checkout: turns a cart into an order.

Preconditions (approved account, own address, deliverable area) are checked
up front. Everything that reads or writes stock runs in one unit of work:
fresh product read, area and stock checks, order/items/history insert,
stock decrement and the outbox intents. A lock conflict re-runs the whole
unit, so a losing concurrent checkout re-reads committed stock and fails
cleanly instead of overselling.
"""
import secrets
import string
import uuid
from collections import OrderedDict
from decimal import Decimal

from sqlalchemy import and_

from shared.auth import Actor, Role
from .config import get_logger
from .database import database, run_in_transaction, utcnow
from .errors import AuthError, AvailabilityError, FulfillmentError, ValidationError
from .models import addresses, orders, order_items, order_status_history
from .notifications import role_recipient
from .schemas import OrderCreate
from . import audit, catalog, events, metrics, outbox

logger = get_logger("fulfillment-service.checkout")

CENT = Decimal("0.01")
_ORDER_NUMBER_CHARS = string.ascii_uppercase + string.digits


def generate_order_number(now=None) -> str:
    """Human-readable order number, e.g. ``2610-7KX2QD``."""
    now = now or utcnow()
    suffix = "".join(secrets.choice(_ORDER_NUMBER_CHARS) for _ in range(6))
    return f"{now:%y%m}-{suffix}"


def _money(value) -> Decimal:
    return Decimal(value if value is not None else 0).quantize(CENT)


async def _load_address(actor: Actor, address_id: str) -> dict:
    row = await database.fetch_one(
        addresses.select().where(and_(addresses.c.id == address_id, addresses.c.user_id == actor.id))
    )
    if not row:
        raise ValidationError("Invalid delivery address")
    return dict(row)


async def _place_order(actor: Actor, payload: OrderCreate, address: dict, area: dict) -> dict:
    quantities: "OrderedDict[str, int]" = OrderedDict()
    for item in payload.items:
        quantities[item.product_id] = quantities.get(item.product_id, 0) + item.quantity

    products = await catalog.fetch_active_products(quantities, for_update=True)
    if len(products) != len(quantities):
        raise AvailabilityError("Some products are unavailable")

    served = await catalog.fetch_served_area_names(quantities)
    for product_id in quantities:
        if area["name"] not in served[product_id]:
            raise AvailabilityError(
                f"Product \"{products[product_id]['name']}\" is not available in \"{area['name']}\". "
                f"Please choose another delivery address."
            )

    for product_id, quantity in quantities.items():
        product = products[product_id]
        if product["track_stock"] and product["stock"] < quantity:
            if product["stock"] <= 0:
                raise AvailabilityError(f"Sorry, \"{product['name']}\" is out of stock")
            raise AvailabilityError(f"Sorry, only {product['stock']} of \"{product['name']}\" left in stock")

    lines = []
    for item in payload.items:
        price = _money(products[item.product_id]["price"])
        lines.append({
            "id": str(uuid.uuid4()),
            "product_id": item.product_id,
            "quantity": item.quantity,
            "price": price,
            "total": (price * item.quantity).quantize(CENT),
            "notes": item.notes,
        })

    subtotal = sum((line["total"] for line in lines), Decimal("0")).quantize(CENT)
    delivery_fee = _money(area["delivery_fee"])
    discount = Decimal("0.00")
    total = subtotal + delivery_fee - discount

    minimum = _money(area["min_order_amount"])
    if subtotal < minimum:
        raise ValidationError(f"Minimum order amount for {area['name']} is {minimum}")

    now = utcnow()
    order = {
        "id": str(uuid.uuid4()),
        "order_number": generate_order_number(now),
        "status": "PENDING",
        "subtotal": subtotal,
        "delivery_fee": delivery_fee,
        "discount": discount,
        "total": total,
        "notes": payload.notes,
        "internal_notes": None,
        "driver_delivery_cost": None,
        "customer_id": actor.id,
        "address_id": address["id"],
        "driver_id": None,
        "version": 0,
        "created_at": now,
        "updated_at": now,
        "delivered_at": None,
    }
    await database.execute(orders.insert().values(**order))
    await database.execute_many(
        order_items.insert(),
        [{**line, "order_id": order["id"]} for line in lines],
    )
    await database.execute(
        order_status_history.insert().values(
            order_id=order["id"],
            status="PENDING",
            notes="Order created",
            changed_by=actor.id,
            created_at=now,
        )
    )

    tracked = [pid for pid in quantities if products[pid]["track_stock"]]
    for product_id in tracked:
        await catalog.decrement_stock(product_id, quantities[product_id])

    context = {"orderId": order["id"], "orderNumber": order["order_number"]}
    await outbox.enqueue("notify", {
        "recipient": role_recipient(Role.OPERATIONS.value),
        "kind": "NEW_ORDER",
        "context": context,
    })
    await outbox.enqueue("audit", audit.entry(
        user_id=actor.id,
        action="CREATE",
        entity="Order",
        entity_id=order["id"],
        new_data={"orderNumber": order["order_number"], "total": total},
    ))
    for product in await catalog.low_stock_products(tracked):
        await outbox.enqueue("notify", {
            "recipient": role_recipient(Role.OPERATIONS.value),
            "kind": "LOW_STOCK",
            "context": {"productId": product["id"], "productName": product["name"], "stock": product["stock"]},
        })
    return order


async def create_order(actor: Actor, payload: OrderCreate) -> dict:
    """Place an order for `actor`; returns the committed order row."""
    try:
        if not actor.is_approved:
            raise AuthError("Your account is not active")
        address = await _load_address(actor, payload.address_id)
        area = await catalog.get_active_area(address["area"])
        if area is None:
            raise AvailabilityError(f"Delivery to \"{address['area']}\" is not available at the moment")

        order = await run_in_transaction(_place_order, actor, payload, address, area)
    except FulfillmentError as e:
        metrics.CHECKOUT_REJECTED.labels(reason=type(e).__name__).inc()
        logger.info(f"[TRACE {actor.trace_id}] [CHECKOUT] rejected for {actor.id}: {e.message}")
        raise

    metrics.ORDERS_CREATED.inc()
    logger.info(f"[TRACE {actor.trace_id}] ✅ Order {order['order_number']} created by {actor.id} total={order['total']}")

    await events.publish_event(
        "order.created",
        {
            "order_id": order["id"],
            "order_number": order["order_number"],
            "customer_id": actor.id,
            "status": order["status"],
            "total": order["total"],
        },
        rooms=["operations", f"user-{actor.id}"],
        trace_id=actor.trace_id,
    )
    return order
