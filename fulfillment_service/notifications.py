# notifications.py
"""
Notification dispatcher and in-app inbox.

A recipient is either a user id or a role (``role:OPERATIONS``). Every
concrete recipient gets a ``notifications`` row; push goes to the user's
devices or, for roles, to the role topic. Push failures are logged and
never surface to the caller.
"""
import uuid
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, and_, func

from shared.auth import Actor, UserStatus
from .config import PUSH_BATCH_SIZE, ROLE_NOTIFICATION_FANOUT, get_logger
from .database import database, utcnow
from .models import notifications, push_subscriptions, users
from .push import PushMessage, get_push_adapter, role_topic
from . import metrics

logger = get_logger("fulfillment-service.notifications")

_ROLE_PREFIX = "role:"

STATUS_MESSAGES = {
    "CONFIRMED": "Your order has been confirmed and will be prepared shortly",
    "PREPARING": "Your order is being prepared",
    "READY": "Your order is ready for delivery",
    "OUT_FOR_DELIVERY": "Your order is on its way",
    "DELIVERED": "Your order has been delivered",
    "CANCELLED": "Your order has been cancelled",
}

TEMPLATES = {
    "ORDER_STATUS": lambda ctx: (
        "Order update",
        f"{STATUS_MESSAGES.get(ctx['status'], 'Your order status changed to ' + ctx['status'])} (#{ctx['orderNumber']})",
    ),
    "DRIVER_ASSIGNED": lambda ctx: ("New delivery", f"You have been assigned to deliver order {ctx['orderNumber']}"),
    "ORDER_CANCELLED_DRIVER": lambda ctx: ("Delivery withdrawn", f"Order {ctx['orderNumber']} is no longer assigned to you"),
    "NEW_ORDER": lambda ctx: ("New order 🛒", f"New order received: {ctx['orderNumber']}"),
    "LOW_STOCK": lambda ctx: ("Low stock alert", f"Product \"{ctx['productName']}\" is running low ({ctx['stock']} left)"),
}


def role_recipient(role: str) -> str:
    return f"{_ROLE_PREFIX}{role}"


def render(kind: str, context: dict) -> Tuple[str, str]:
    if kind not in TEMPLATES:
        raise ValueError(f"Unknown notification kind: {kind}")
    return TEMPLATES[kind](context)


def chunked(items: List[str], size: int) -> Iterable[List[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


# ------------------------- PERSISTENCE -------------------------
async def _recent_role_users(role: str) -> List[str]:
    rows = await database.fetch_all(
        select(users.c.id)
        .where(and_(users.c.role == role, users.c.status == UserStatus.APPROVED.value))
        .order_by(users.c.created_at.desc())
        .limit(ROLE_NOTIFICATION_FANOUT)
    )
    return [row["id"] for row in rows]


async def _persist(user_ids: List[str], kind: str, title: str, message: str, context: dict) -> None:
    if not user_ids:
        return
    now = utcnow()
    await database.execute_many(
        notifications.insert(),
        [
            {
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "type": kind,
                "title": title,
                "message": message,
                "data": context,
                "is_read": False,
                "created_at": now,
            }
            for user_id in user_ids
        ],
    )
    metrics.NOTIFICATIONS_SENT.labels(channel="inbox", outcome="stored").inc(len(user_ids))


# ------------------------- PUSH -------------------------
async def _push_to_user(user_id: str, message: PushMessage) -> None:
    try:
        rows = await database.fetch_all(
            select(push_subscriptions.c.token).where(push_subscriptions.c.user_id == user_id)
        )
        tokens = [row["token"] for row in rows]
        if not tokens:
            return

        adapter = get_push_adapter()
        batch_size = min(PUSH_BATCH_SIZE, adapter.max_batch_size)
        invalid: List[str] = []
        for batch in chunked(tokens, batch_size):
            result = await adapter.send_multicast(batch, message)
            invalid.extend(result.invalid_tokens)
            metrics.NOTIFICATIONS_SENT.labels(channel="push", outcome="sent").inc(result.success_count)
            metrics.NOTIFICATIONS_SENT.labels(channel="push", outcome="failed").inc(result.failure_count)

        if invalid:
            await database.execute(
                push_subscriptions.delete().where(push_subscriptions.c.token.in_(invalid))
            )
            metrics.PUSH_TOKENS_REMOVED.inc(len(invalid))
            logger.info(f"[PUSH] Removed {len(invalid)} invalid token(s) for user {user_id}")
    except Exception as e:
        metrics.NOTIFICATIONS_SENT.labels(channel="push", outcome="error").inc()
        logger.warning(f"[PUSH ERROR] user {user_id}: {e}")


async def _push_to_topic(topic: str, message: PushMessage) -> None:
    try:
        await get_push_adapter().send_to_topic(topic, message)
        metrics.NOTIFICATIONS_SENT.labels(channel="topic", outcome="sent").inc()
    except Exception as e:
        metrics.NOTIFICATIONS_SENT.labels(channel="topic", outcome="error").inc()
        logger.warning(f"[PUSH ERROR] topic {topic}: {e}")


# ------------------------- DISPATCH -------------------------
async def deliver(recipient: str, kind: str, context: dict) -> int:
    """
    Store inbox rows and push. Raises only when the rows cannot be stored,
    so the outbox can retry; returns the number of rows written.
    """
    title, body = render(kind, context)
    message = PushMessage(
        title=title,
        body=body,
        data={"type": kind, **{k: str(v) for k, v in context.items()}},
    )

    if recipient.startswith(_ROLE_PREFIX):
        role = recipient[len(_ROLE_PREFIX):]
        user_ids = await _recent_role_users(role)
        await _persist(user_ids, kind, title, body, context)
        await _push_to_topic(role_topic(role), message)
        logger.info(f"[NOTIFY] {kind} -> role {role} ({len(user_ids)} inbox rows)")
        return len(user_ids)

    await _persist([recipient], kind, title, body, context)
    await _push_to_user(recipient, message)
    logger.info(f"[NOTIFY] {kind} -> user {recipient}")
    return 1


async def notify(recipient: str, kind: str, context: dict) -> int:
    """Best-effort ``deliver``; never raises."""
    try:
        return await deliver(recipient, kind, context)
    except Exception as e:
        logger.error(f"[NOTIFY ERROR] {kind} -> {recipient}: {e}")
        return 0


# ------------------------- INBOX -------------------------
async def list_for_user(user_id: str, limit: int = 20) -> Tuple[List[dict], int]:
    rows = await database.fetch_all(
        notifications.select()
        .where(notifications.c.user_id == user_id)
        .order_by(notifications.c.created_at.desc())
        .limit(limit)
    )
    unread = await database.fetch_val(
        select(func.count()).select_from(notifications).where(
            and_(notifications.c.user_id == user_id, notifications.c.is_read == False)  # noqa: E712
        )
    )
    return [dict(row) for row in rows], unread or 0


async def mark_read(user_id: str, notification_ids: Optional[List[str]] = None) -> None:
    query = notifications.update().where(notifications.c.user_id == user_id)
    if notification_ids:
        query = query.where(notifications.c.id.in_(notification_ids))
    await database.execute(query.values(is_read=True))


async def register_device(actor: Actor, token: str) -> None:
    """Upsert a device token for the caller and subscribe it to the caller's role topic."""
    existing = await database.fetch_one(
        push_subscriptions.select().where(push_subscriptions.c.token == token)
    )
    if existing is None:
        await database.execute(
            push_subscriptions.insert().values(
                id=str(uuid.uuid4()), user_id=actor.id, token=token, created_at=utcnow()
            )
        )
    elif existing["user_id"] != actor.id:
        await database.execute(
            push_subscriptions.update()
            .where(push_subscriptions.c.token == token)
            .values(user_id=actor.id)
        )

    try:
        await get_push_adapter().subscribe_to_topic([token], role_topic(actor.role.value))
    except Exception as e:
        logger.warning(f"[PUSH ERROR] subscribe {actor.id} to {role_topic(actor.role.value)}: {e}")


async def unregister_device(actor: Actor, token: str) -> None:
    await database.execute(
        push_subscriptions.delete().where(
            and_(push_subscriptions.c.token == token, push_subscriptions.c.user_id == actor.id)
        )
    )
    try:
        await get_push_adapter().unsubscribe_from_topic([token], role_topic(actor.role.value))
    except Exception as e:
        logger.warning(f"[PUSH ERROR] unsubscribe {actor.id} from {role_topic(actor.role.value)}: {e}")
