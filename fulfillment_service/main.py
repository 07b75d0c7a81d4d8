# main.py
import asyncio
import json
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Body, Depends, FastAPI, Query, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from shared.auth import Actor, Role, decode_session, get_optional_user
from .config import AUDIT_RETENTION_DAYS, CORS_ORIGINS, OUTBOX_WORKER_ENABLED, get_logger
from .database import database, engine, metadata
from .errors import AuthError, FulfillmentError, InternalError
from .schemas import (
    DriverList, MarkNotificationsRead, NotificationList, OrderCreate, OrderList, OrderMessage,
    OrderResponse, OrderUpdate, PushSubscription,
)
from .state_machine import OrderStatus, apply_transition
from .ws_manager import manager
from . import allocation, audit, checkout, events, notifications, queries
from .outbox import OutboxProcessor

logger = get_logger("fulfillment-service")

AUDIT_CLEANUP_INTERVAL = 24 * 60 * 60
SSE_KEEPALIVE = 15


# ------------------------- BACKGROUND LOOPS -------------------------
async def audit_cleanup_loop():
    while True:
        try:
            await audit.cleanup_old_audit_logs(AUDIT_RETENTION_DAYS)
        except Exception as e:
            logger.warning(f"[AUDIT CLEANUP ERROR] {e}")
        await asyncio.sleep(AUDIT_CLEANUP_INTERVAL)


# ------------------------- STARTUP / SHUTDOWN -------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Connecting database...")
    await database.connect()
    metadata.create_all(engine)

    tasks = [asyncio.create_task(audit_cleanup_loop())]
    if OUTBOX_WORKER_ENABLED:
        tasks.append(asyncio.create_task(OutboxProcessor().run()))
        logger.info("🚀 Started outbox worker")
    logger.info("Startup complete.")

    yield

    for task in tasks:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    logger.info("Disconnecting database...")
    await database.disconnect()


app = FastAPI(title="Fulfillment Service", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=True,
)


# ------------------------- MIDDLEWARE -------------------------
@app.middleware("http")
async def add_trace_to_request(request: Request, call_next):
    trace_id = request.headers.get("X-Trace-Id") or str(uuid.uuid4())
    request.state.trace_id = trace_id
    response = await call_next(request)
    response.headers["X-Trace-Id"] = trace_id
    return response


# ------------------------- ERROR HANDLERS -------------------------
@app.exception_handler(FulfillmentError)
async def fulfillment_error_handler(request: Request, exc: FulfillmentError):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ())[1:])
        message = f"{field}: {first.get('msg')}" if field else first.get("msg")
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"message": message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": str(exc.detail)})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    trace_id = getattr(request.state, "trace_id", None)
    logger.exception(f"[TRACE {trace_id}] Unhandled error on {request.method} {request.url.path}: {exc}")
    return await fulfillment_error_handler(request, InternalError("Unexpected server error"))


# ------------------------- AUTH HELPERS -------------------------
async def current_user(actor: Optional[Actor] = Depends(get_optional_user)) -> Actor:
    if actor is None:
        raise AuthError.unauthenticated()
    return actor


def staff_required(actor: Actor = Depends(current_user)) -> Actor:
    if not actor.is_staff:
        raise AuthError("Operations or admin access required")
    return actor


# ------------------------- ORDERS -------------------------
@app.post("/orders", response_model=OrderMessage, status_code=201)
async def create_order(body: OrderCreate, actor: Actor = Depends(current_user)):
    order = await checkout.create_order(actor, body)
    return {"message": "Order created successfully", "order": await queries.get_order_detail(order["id"])}


@app.get("/orders", response_model=OrderList)
async def list_orders(
    page: int = 1,
    limit: int = 20,
    status: Optional[str] = None,
    actor: Actor = Depends(current_user),
):
    return await queries.list_orders(actor, page=page, limit=limit, status=status)


@app.get("/orders/stream")
async def order_stream(request: Request, actor: Actor = Depends(staff_required)):
    """Server-sent events for operations dashboards."""
    queue = events.new_listener()
    logger.info(f"[SSE] {actor.id} connected ({len(events.clients)} listeners)")

    async def event_stream():
        try:
            while not await request.is_disconnected():
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"event: {event['type']}\ndata: {json.dumps(event)}\n\n"
        finally:
            if queue in events.clients:
                events.clients.remove(queue)
            logger.info(f"[SSE] {actor.id} disconnected")

    return StreamingResponse(event_stream(), media_type="text/event-stream")


@app.get("/orders/{order_id}", response_model=OrderResponse)
async def get_order(order_id: str, actor: Actor = Depends(current_user)):
    return {"order": await queries.get_order_for(order_id, actor)}


@app.put("/orders/{order_id}", response_model=OrderMessage)
async def update_order(order_id: str, body: OrderUpdate, actor: Actor = Depends(current_user)):
    await apply_transition(order_id, body, actor)
    return {"message": "Order updated successfully", "order": await queries.get_order_detail(order_id)}


@app.post("/orders/{order_id}/deliver", response_model=OrderMessage)
async def deliver_order(order_id: str, actor: Actor = Depends(current_user)):
    if actor.role != Role.DRIVER:
        raise AuthError("Driver authorization required")
    await apply_transition(order_id, OrderUpdate(status=OrderStatus.DELIVERED.value), actor)
    return {"message": "Order delivered", "order": await queries.get_order_detail(order_id)}


# ------------------------- DRIVERS -------------------------
@app.get("/drivers", response_model=DriverList)
async def list_drivers(available: Optional[bool] = None, actor: Actor = Depends(staff_required)):
    return {"drivers": await allocation.list_drivers(available)}


# ------------------------- NOTIFICATIONS -------------------------
@app.get("/notifications", response_model=NotificationList)
async def list_notifications(limit: int = Query(20, ge=1, le=100), actor: Actor = Depends(current_user)):
    rows, unread = await notifications.list_for_user(actor.id, limit)
    return {"notifications": rows, "unread_count": unread}


@app.put("/notifications")
async def mark_notifications_read(
    body: Optional[MarkNotificationsRead] = Body(None),
    actor: Actor = Depends(current_user),
):
    await notifications.mark_read(actor.id, body.notification_ids if body else None)
    return {"message": "Notifications marked as read"}


@app.post("/push/subscribe")
async def push_subscribe(body: PushSubscription, actor: Actor = Depends(current_user)):
    await notifications.register_device(actor, body.token)
    return {"message": "Subscribed to push notifications"}


@app.delete("/push/subscribe")
async def push_unsubscribe(token: str = Query(..., min_length=1), actor: Actor = Depends(current_user)):
    await notifications.unregister_device(actor, token)
    return {"message": "Unsubscribed from push notifications"}


# ------------------------- REALTIME -------------------------
@app.websocket("/ws/orders")
async def orders_ws(websocket: WebSocket, token: Optional[str] = None):
    actor = decode_session(token)
    if actor is None:
        await websocket.close(code=1008)
        return

    rooms = [f"user-{actor.id}"]
    if actor.role == Role.DRIVER:
        rooms.append(f"driver-{actor.id}")
    if actor.is_staff:
        rooms.append("operations")

    await manager.connect(websocket, rooms)
    try:
        while True:
            msg = await websocket.receive_text()
            if msg == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        pass
    finally:
        await manager.disconnect(websocket)


# ------------------------- HEALTH / METRICS -------------------------
@app.get("/health")
async def health():
    return {"status": "ok", "service": "fulfillment-service"}


@app.get("/metrics")
def metrics_endpoint():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
