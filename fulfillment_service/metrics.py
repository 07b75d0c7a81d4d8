from prometheus_client import Counter, Gauge

ORDERS_CREATED = Counter(
    "orders_created_total",
    "Total orders created through checkout"
)

CHECKOUT_REJECTED = Counter(
    "checkout_rejected_total",
    "Checkouts rejected before commit",
    ["reason"]
)

STATUS_TRANSITIONS = Counter(
    "order_status_transitions_total",
    "Order status transitions applied",
    ["from_status", "to_status"]
)

NOTIFICATIONS_SENT = Counter(
    "notifications_sent_total",
    "Notification deliveries by channel and outcome",
    ["channel", "outcome"]
)

PUSH_TOKENS_REMOVED = Counter(
    "push_tokens_removed_total",
    "Device tokens deleted after the provider reported them invalid"
)

OUTBOX_PROCESSED = Counter(
    "outbox_processed_total",
    "Outbox entries handled by the worker",
    ["kind", "outcome"]
)

WS_CONNECTIONS = Gauge(
    "ws_connections_active",
    "Currently connected WebSocket clients"
)

SSE_EVENTS_DROPPED = Counter(
    "sse_events_dropped_total",
    "Events dropped because a server-sent events listener fell behind"
)
