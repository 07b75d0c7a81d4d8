# outbox.py
"""
Transactional outbox.

Side-effect intents (notifications, audit entries) are written with
``enqueue`` inside the same unit of work as the order change that caused
them. ``OutboxProcessor`` drains due rows in id order, retrying failures
with exponential backoff until ``OUTBOX_MAX_ATTEMPTS``, after which the row
is parked as DEAD. Each row is leased for ``OUTBOX_CLAIM_TIMEOUT`` before its
handler runs, so several workers can poll the same table; a worker that dies
mid-handler leaves its rows to be picked up once the lease expires.
Delivery is at-least-once.
"""
import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional

from sqlalchemy import and_

from .config import (
    OUTBOX_BACKOFF_BASE, OUTBOX_BACKOFF_CAP, OUTBOX_BATCH_SIZE, OUTBOX_CLAIM_TIMEOUT,
    OUTBOX_MAX_ATTEMPTS, OUTBOX_POLL_INTERVAL, get_logger,
)
from .database import database, utcnow
from .models import outbox
from . import audit, metrics, notifications

logger = get_logger("fulfillment-service.outbox")

PENDING = "PENDING"
DONE = "DONE"
DEAD = "DEAD"

Handler = Callable[[dict], Awaitable[object]]


async def enqueue(kind: str, payload: dict) -> int:
    """Queue an intent; call inside the caller's transaction."""
    now = utcnow()
    return await database.execute(
        outbox.insert().values(
            kind=kind,
            payload=payload,
            status=PENDING,
            attempts=0,
            next_attempt_at=now,
            created_at=now,
        )
    )


def backoff_delay(attempts: int, base: float = OUTBOX_BACKOFF_BASE, cap: float = OUTBOX_BACKOFF_CAP) -> float:
    """Seconds to wait after a failure, given the attempts made before it."""
    return min(base * (2 ** attempts), cap)


async def _handle_notify(payload: dict):
    return await notifications.deliver(payload["recipient"], payload["kind"], payload.get("context") or {})


async def _handle_audit(payload: dict):
    return await audit.record(**payload)


DEFAULT_HANDLERS: Dict[str, Handler] = {
    "notify": _handle_notify,
    "audit": _handle_audit,
}


class OutboxProcessor:
    def __init__(self, handlers: Optional[Dict[str, Handler]] = None,
                 batch_size: int = OUTBOX_BATCH_SIZE, max_attempts: int = OUTBOX_MAX_ATTEMPTS,
                 claim_timeout: float = OUTBOX_CLAIM_TIMEOUT):
        self.handlers = dict(DEFAULT_HANDLERS if handlers is None else handlers)
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.claim_timeout = claim_timeout

    async def claim(self, entry: dict, now: datetime) -> bool:
        """Lease a due row; False when another worker got to it first."""
        claimed = await database.fetch_val(
            outbox.update()
            .where(and_(
                outbox.c.id == entry["id"],
                outbox.c.status == PENDING,
                outbox.c.next_attempt_at <= now,
            ))
            .values(next_attempt_at=now + timedelta(seconds=self.claim_timeout))
            .returning(outbox.c.id)
        )
        return claimed is not None

    async def process_pending(self, limit: Optional[int] = None, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        rows = await database.fetch_all(
            outbox.select()
            .where(and_(outbox.c.status == PENDING, outbox.c.next_attempt_at <= now))
            .order_by(outbox.c.id)
            .limit(limit or self.batch_size)
        )

        counts = {"done": 0, "retried": 0, "dead": 0}
        for row in rows:
            entry = dict(row)
            if not await self.claim(entry, now):
                logger.debug(f"[OUTBOX] #{entry['id']} claimed by another worker")
                continue
            handler = self.handlers.get(entry["kind"])
            try:
                if handler is None:
                    raise LookupError(f"no handler for outbox kind '{entry['kind']}'")
                await handler(entry["payload"])
            except Exception as e:
                counts[await self._fail(entry, e, now)] += 1
                continue

            await database.execute(
                outbox.update()
                .where(outbox.c.id == entry["id"])
                .values(status=DONE, attempts=entry["attempts"] + 1, processed_at=utcnow(), last_error=None)
            )
            metrics.OUTBOX_PROCESSED.labels(kind=entry["kind"], outcome="done").inc()
            counts["done"] += 1
        return counts

    async def _fail(self, entry: dict, error: Exception, now: datetime) -> str:
        attempts = entry["attempts"] + 1
        values = {"attempts": attempts, "last_error": str(error)[:1000]}
        if attempts >= self.max_attempts:
            values.update(status=DEAD, processed_at=now)
            outcome = "dead"
            logger.error(f"[OUTBOX DEAD] #{entry['id']} {entry['kind']} after {attempts} attempts: {error}")
        else:
            delay = backoff_delay(entry["attempts"])
            values["next_attempt_at"] = now + timedelta(seconds=delay)
            outcome = "retried"
            logger.warning(f"[OUTBOX RETRY] #{entry['id']} {entry['kind']} attempt {attempts} failed, retry in {delay:.0f}s: {error}")

        await database.execute(outbox.update().where(outbox.c.id == entry["id"]).values(**values))
        metrics.OUTBOX_PROCESSED.labels(kind=entry["kind"], outcome=outcome).inc()
        return outcome

    async def run(self, poll_interval: float = OUTBOX_POLL_INTERVAL):
        logger.info(f"[OUTBOX] Worker started (every {poll_interval}s)")
        while True:
            try:
                counts = await self.process_pending()
                if any(counts.values()):
                    logger.info(f"[OUTBOX] {counts}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"[OUTBOX] Poll error: {e}")
            await asyncio.sleep(poll_interval)
