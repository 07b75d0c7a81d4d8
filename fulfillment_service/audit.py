# audit.py
import uuid
from datetime import timedelta
from typing import Any, Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy import select, func

from .config import AUDIT_RETENTION_DAYS, get_logger
from .database import database, utcnow
from .models import audit_logs

logger = get_logger("fulfillment-service.audit")


def entry(user_id: Optional[str], action: str, entity: str, entity_id: Optional[str] = None,
          old_data: Any = None, new_data: Any = None, metadata: Any = None) -> dict:
    """JSON-safe audit payload, as queued in the outbox."""
    return jsonable_encoder({
        "user_id": user_id,
        "action": action,
        "entity": entity,
        "entity_id": entity_id,
        "old_data": old_data,
        "new_data": new_data,
        "metadata": metadata,
    })


async def record(user_id: Optional[str], action: str, entity: str, entity_id: Optional[str] = None,
                 old_data: Any = None, new_data: Any = None, metadata: Any = None) -> str:
    """Insert an audit row; raises on failure."""
    payload = entry(user_id, action, entity, entity_id, old_data, new_data, metadata)
    audit_id = str(uuid.uuid4())
    await database.execute(
        audit_logs.insert().values(id=audit_id, created_at=utcnow(), **payload)
    )
    return audit_id


async def write_audit_log(**kwargs) -> Optional[str]:
    """Fire-and-forget ``record``: errors are logged, never raised."""
    try:
        return await record(**kwargs)
    except Exception as e:
        logger.error(f"[AUDIT ERROR] {kwargs.get('action')} {kwargs.get('entity')}: {e}")
        return None


async def cleanup_old_audit_logs(days_to_keep: int = AUDIT_RETENTION_DAYS) -> int:
    cutoff = utcnow() - timedelta(days=days_to_keep)
    stale = await database.fetch_val(
        select(func.count()).select_from(audit_logs).where(audit_logs.c.created_at < cutoff)
    ) or 0
    if stale:
        await database.execute(audit_logs.delete().where(audit_logs.c.created_at < cutoff))
    logger.info(f"[AUDIT] Deleted {stale} audit log(s) older than {days_to_keep} days")
    return stale
