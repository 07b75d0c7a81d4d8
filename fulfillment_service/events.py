# events.py
import asyncio
import uuid
from typing import Iterable, List, Optional

from fastapi.encoders import jsonable_encoder

from .config import SSE_QUEUE_SIZE, get_logger
from .database import utcnow
from .ws_manager import manager
from . import metrics

logger = get_logger("fulfillment-service.events")

# SSE listener queues (operations dashboards), each bounded by SSE_QUEUE_SIZE
clients: List[asyncio.Queue] = []


def new_listener() -> asyncio.Queue:
    queue: asyncio.Queue = asyncio.Queue(maxsize=SSE_QUEUE_SIZE)
    clients.append(queue)
    return queue


async def publish_event(event_type: str, data: dict, rooms: Iterable[str] = ("operations",),
                        trace_id: Optional[str] = None) -> dict:
    """
    Push an event envelope to WebSocket rooms and SSE listeners.
    Realtime delivery is best-effort; this never raises.
    """
    event_payload = jsonable_encoder({
        "type": event_type,
        "event_id": str(data.get("event_id") or uuid.uuid4()),
        "data": data,
        "trace_id": trace_id,
        "timestamp": utcnow().isoformat(),
    })
    rooms = list(rooms)

    # SSE
    for queue in list(clients):
        try:
            queue.put_nowait(event_payload)
        except asyncio.QueueFull:
            metrics.SSE_EVENTS_DROPPED.inc()
            logger.warning(f"[SSE] listener queue full, dropped {event_type}")
        except Exception as e:
            logger.warning(f"[SSE ERROR] {e}")

    # WS
    try:
        sent = await manager.broadcast(event_payload, rooms)
        logger.info(f"[EVENT] {event_type} -> {sorted(rooms)} ({sent} socket(s))")
    except Exception as e:
        logger.warning(f"[WebSocket ERROR] {e}")

    return event_payload
