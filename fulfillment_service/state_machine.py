# state_machine.py
"""
Order lifecycle: the transition table, role gating and ``apply_transition``,
the single write path for an order after checkout.

Every status change, driver change and staff field edit runs as one unit of
work that bumps ``orders.version``, appends history, moves the driver
allocation and queues notification/audit intents in the outbox. Realtime
broadcast happens after commit.
"""
from enum import Enum
from typing import Dict, FrozenSet, Optional

from shared.auth import Actor, Role
from .config import get_logger
from .database import database, run_in_transaction, utcnow
from .errors import AuthError, ConflictError, NotFoundError, StateTransitionError, ValidationError
from .models import orders, order_status_history
from .schemas import OrderUpdate
from . import allocation, audit, events, metrics, outbox

logger = get_logger("fulfillment-service.orders")


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PREPARING = "PREPARING"
    READY = "READY"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


S = OrderStatus

ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    S.PENDING: frozenset({S.CONFIRMED, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.PREPARING, S.CANCELLED}),
    S.PREPARING: frozenset({S.READY, S.CANCELLED}),
    S.READY: frozenset({S.OUT_FOR_DELIVERY, S.CANCELLED}),
    S.OUT_FOR_DELIVERY: frozenset({S.DELIVERED, S.CANCELLED}),
    S.DELIVERED: frozenset(),
    S.CANCELLED: frozenset(),
}

_unmapped = set(OrderStatus) - set(ALLOWED_TRANSITIONS)
if _unmapped:
    raise RuntimeError(f"Order statuses without a transition entry: {sorted(s.value for s in _unmapped)}")

TERMINAL_STATES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)
if TERMINAL_STATES != {S.DELIVERED, S.CANCELLED}:
    raise RuntimeError(f"Unexpected terminal states: {sorted(s.value for s in TERMINAL_STATES)}")

# fields a driver may send alongside status=DELIVERED
_DRIVER_FIELDS = {"status", "status_notes", "version"}


def parse_status(value: str) -> OrderStatus:
    try:
        return OrderStatus(str(value).upper())
    except ValueError:
        raise ValidationError(f"Unknown order status: {value}")


def allowed_next(current: OrderStatus) -> FrozenSet[OrderStatus]:
    return ALLOWED_TRANSITIONS[current]


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATES


def validate_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """
    Returns False for a same-status request (idempotent no-op), True for an
    allowed edge; raises StateTransitionError for anything else.
    """
    if target == current:
        return False
    allowed = allowed_next(current)
    if target not in allowed:
        raise StateTransitionError(current.value, target.value, [s.value for s in allowed])
    return True


def authorize(order: dict, update: OrderUpdate, actor: Actor) -> None:
    """Role gating; runs before any transition-validity check."""
    if actor.role == Role.CUSTOMER:
        raise AuthError("Customers cannot update orders")
    if not actor.is_approved:
        raise AuthError("Your account is not active")
    if actor.is_staff:
        return

    # DRIVER
    extra = update.model_fields_set - _DRIVER_FIELDS
    if extra or update.status is None or update.status.upper() != S.DELIVERED.value:
        raise AuthError("Drivers may only mark their own orders as delivered")
    if order["driver_id"] != actor.id:
        raise AuthError("This order is not assigned to you")
    if order["status"] != S.OUT_FOR_DELIVERY.value:
        raise AuthError("Only orders out for delivery can be marked as delivered")


async def _fetch_for_update(order_id: str) -> dict:
    row = await database.fetch_one(
        orders.select().where(orders.c.id == order_id).with_for_update()
    )
    if not row:
        raise NotFoundError("Order not found")
    return dict(row)


def _notification_intents(order: dict, previous_driver: Optional[str], new_driver: Optional[str],
                          target: Optional[OrderStatus], status_changed: bool, driver_changed: bool):
    context = {"orderId": order["id"], "orderNumber": order["order_number"]}
    intents = []

    if status_changed:
        intents.append((order["customer_id"], "ORDER_STATUS", {**context, "status": target.value}))

    if driver_changed and new_driver:
        intents.append((new_driver, "DRIVER_ASSIGNED", context))
    elif status_changed and target == S.OUT_FOR_DELIVERY and new_driver:
        intents.append((new_driver, "DRIVER_ASSIGNED", context))

    if status_changed and target == S.CANCELLED and new_driver:
        intents.append((new_driver, "ORDER_CANCELLED_DRIVER", context))
    if driver_changed and previous_driver and previous_driver != new_driver:
        intents.append((previous_driver, "ORDER_CANCELLED_DRIVER", context))
    return intents


async def _apply(order_id: str, update: OrderUpdate, actor: Actor) -> dict:
    order = await _fetch_for_update(order_id)
    authorize(order, update, actor)

    if update.version is not None and update.version != order["version"]:
        raise ConflictError("Order was modified by someone else; reload and try again")

    fields = update.model_fields_set
    current = parse_status(order["status"])
    target = parse_status(update.status) if update.status is not None else current
    status_changed = validate_transition(current, target)

    previous_driver = order["driver_id"]
    driver_changed = "driver_id" in fields and (update.driver_id or None) != previous_driver
    new_driver = (update.driver_id or None) if driver_changed else previous_driver
    if driver_changed and (is_terminal(current) or is_terminal(target)):
        raise ValidationError("Cannot change the driver of a closed order")

    values = {}
    if status_changed:
        values["status"] = target.value
        if target == S.DELIVERED:
            values["delivered_at"] = utcnow()
    if driver_changed:
        values["driver_id"] = new_driver
    if "internal_notes" in fields and update.internal_notes != order["internal_notes"]:
        values["internal_notes"] = update.internal_notes
    if "driver_delivery_cost" in fields and update.driver_delivery_cost != order["driver_delivery_cost"]:
        values["driver_delivery_cost"] = update.driver_delivery_cost

    if not values:
        return {"order": order, "changed": False}

    now = utcnow()
    swapped = await database.fetch_val(
        orders.update()
        .where(orders.c.id == order_id)
        .where(orders.c.version == order["version"])
        .values(**values, version=order["version"] + 1, updated_at=now)
        .returning(orders.c.version)
    )
    if swapped is None:
        raise ConflictError("Order was modified by someone else; reload and try again")

    if status_changed:
        await database.execute(
            order_status_history.insert().values(
                order_id=order_id,
                status=target.value,
                notes=update.status_notes,
                changed_by=actor.id,
                created_at=now,
            )
        )

    if driver_changed:
        if new_driver:
            await allocation.assign(order, new_driver)
        else:
            await allocation.release(order)
    if status_changed and is_terminal(target) and previous_driver:
        await allocation.release(order)

    for recipient, kind, context in _notification_intents(
        order, previous_driver, new_driver, target, status_changed, driver_changed
    ):
        await outbox.enqueue("notify", {"recipient": recipient, "kind": kind, "context": context})

    if status_changed:
        action = "STATUS_CHANGE"
    elif driver_changed:
        action = "ASSIGN"
    else:
        action = "UPDATE"
    await outbox.enqueue("audit", audit.entry(
        user_id=actor.id,
        action=action,
        entity="Order",
        entity_id=order_id,
        old_data={"status": order["status"], "driverId": previous_driver, "version": order["version"]},
        new_data={**{k: v for k, v in values.items() if k != "delivered_at"}, "version": swapped},
    ))

    return {
        "order": {**order, **values, "version": swapped, "updated_at": now},
        "changed": True,
        "status_changed": status_changed,
        "previous_status": current.value,
        "previous_driver": previous_driver,
    }


async def apply_transition(order_id: str, update: OrderUpdate, actor: Actor) -> dict:
    """
    Apply a status and/or driver/field change to an order and return the
    updated order row.
    """
    result = await run_in_transaction(_apply, order_id, update, actor)
    order = result["order"]

    if not result["changed"]:
        logger.info(f"[TRACE {actor.trace_id}] Order {order_id} unchanged (no-op update)")
        return order

    if result["status_changed"]:
        metrics.STATUS_TRANSITIONS.labels(from_status=result["previous_status"], to_status=order["status"]).inc()
        logger.info(f"[TRACE {actor.trace_id}] Order {order['order_number']} {result['previous_status']} -> {order['status']} by {actor.id}")
    else:
        logger.info(f"[TRACE {actor.trace_id}] Order {order['order_number']} updated by {actor.id}")

    rooms = {"operations", f"user-{order['customer_id']}"}
    for driver_id in (order["driver_id"], result["previous_driver"]):
        if driver_id:
            rooms.add(f"driver-{driver_id}")
    await events.publish_event(
        "order.updated",
        {
            "order_id": order_id,
            "order_number": order["order_number"],
            "status": order["status"],
            "previous_status": result["previous_status"],
            "driver_id": order["driver_id"],
            "version": order["version"],
        },
        rooms=rooms,
        trace_id=actor.trace_id,
    )
    return order
