from sqlalchemy import (
    Table, Column, String, Integer, Numeric, Boolean, Text, JSON, DateTime,
    ForeignKey, PrimaryKeyConstraint, Index,
)
from .database import metadata, utcnow

Money = Numeric(12, 2, asdecimal=True)

# ---------------------------------------------------------------------------
# Collaborator tables (owned by the rest of the platform, read by this core)
# ---------------------------------------------------------------------------
users = Table(
    "users",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=False),
    Column("phone", String, nullable=True),
    Column("role", String, nullable=False),
    Column("status", String, nullable=False, default="PENDING"),
    Column("is_available", Boolean, nullable=False, default=True),
    # bumped on every availability change (compare-and-swap)
    Column("version", Integer, nullable=False, default=0),
    Column("created_at", DateTime, default=utcnow),
)

addresses = Table(
    "addresses",
    metadata,
    Column("id", String, primary_key=True),
    Column("user_id", String, ForeignKey("users.id"), nullable=False, index=True),
    Column("label", String, nullable=True),
    # joins service_areas.name by value, not by key
    Column("area", String, nullable=False),
    Column("street", String, nullable=True),
    Column("building", String, nullable=True),
    Column("details", Text, nullable=True),
)

service_areas = Table(
    "service_areas",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=False, unique=True),
    Column("delivery_fee", Money, nullable=False, default=0),
    Column("min_order_amount", Money, nullable=False, default=0),
    Column("is_active", Boolean, nullable=False, default=True),
)

products = Table(
    "products",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=False),
    Column("price", Money, nullable=False),
    Column("stock", Integer, nullable=False, default=0),
    Column("track_stock", Boolean, nullable=False, default=True),
    Column("low_stock_threshold", Integer, nullable=False, default=10),
    Column("is_active", Boolean, nullable=False, default=True),
)

product_service_areas = Table(
    "product_service_areas",
    metadata,
    Column("product_id", String, ForeignKey("products.id"), nullable=False),
    Column("service_area_id", String, ForeignKey("service_areas.id"), nullable=False),
    PrimaryKeyConstraint("product_id", "service_area_id"),
)

# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------
orders = Table(
    "orders",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_number", String, nullable=False, unique=True),
    Column("status", String, nullable=False, default="PENDING"),
    Column("subtotal", Money, nullable=False),
    Column("delivery_fee", Money, nullable=False),
    Column("discount", Money, nullable=False, default=0),
    Column("total", Money, nullable=False),
    Column("notes", Text, nullable=True),
    Column("internal_notes", Text, nullable=True),
    Column("driver_delivery_cost", Money, nullable=True),
    Column("customer_id", String, ForeignKey("users.id"), nullable=False, index=True),
    Column("address_id", String, ForeignKey("addresses.id"), nullable=False),
    Column("driver_id", String, ForeignKey("users.id"), nullable=True, index=True),
    Column("version", Integer, nullable=False, default=0),
    Column("created_at", DateTime, nullable=False, default=utcnow),
    Column("updated_at", DateTime, nullable=False, default=utcnow),
    Column("delivered_at", DateTime, nullable=True),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_id", String, ForeignKey("orders.id"), nullable=False, index=True),
    Column("product_id", String, ForeignKey("products.id"), nullable=False),
    Column("quantity", Integer, nullable=False),
    # unit price snapshot taken at checkout
    Column("price", Money, nullable=False),
    Column("total", Money, nullable=False),
    Column("notes", Text, nullable=True),
)

order_status_history = Table(
    "order_status_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", String, ForeignKey("orders.id"), nullable=False),
    Column("status", String, nullable=False),
    Column("notes", Text, nullable=True),
    Column("changed_by", String, nullable=True),
    Column("created_at", DateTime, nullable=False, default=utcnow),
    Index("ix_order_status_history_order_created", "order_id", "created_at"),
)

# ---------------------------------------------------------------------------
# Driver allocations: the primary key on driver_id allows one active
# allocation per driver, the unique order_id one driver per order.
# ---------------------------------------------------------------------------
driver_allocations = Table(
    "driver_allocations",
    metadata,
    Column("driver_id", String, ForeignKey("users.id"), primary_key=True),
    Column("order_id", String, ForeignKey("orders.id"), nullable=False, unique=True),
    Column("acquired_at", DateTime, nullable=False, default=utcnow),
)

# ---------------------------------------------------------------------------
# Notifications & push subscriptions
# ---------------------------------------------------------------------------
notifications = Table(
    "notifications",
    metadata,
    Column("id", String, primary_key=True),
    Column("user_id", String, ForeignKey("users.id"), nullable=False, index=True),
    Column("type", String, nullable=False),
    Column("title", String, nullable=False),
    Column("message", String, nullable=False),
    Column("data", JSON, nullable=True),
    Column("is_read", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False, default=utcnow),
)

push_subscriptions = Table(
    "push_subscriptions",
    metadata,
    Column("id", String, primary_key=True),
    Column("user_id", String, ForeignKey("users.id"), nullable=False, index=True),
    Column("token", String, nullable=False, unique=True),
    Column("created_at", DateTime, nullable=False, default=utcnow),
)

# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------
audit_logs = Table(
    "audit_logs",
    metadata,
    Column("id", String, primary_key=True),
    Column("user_id", String, nullable=True),
    Column("action", String, nullable=False),
    Column("entity", String, nullable=False),
    Column("entity_id", String, nullable=True),
    Column("old_data", JSON, nullable=True),
    Column("new_data", JSON, nullable=True),
    Column("metadata", JSON, nullable=True),
    Column("created_at", DateTime, nullable=False, default=utcnow, index=True),
)

# ---------------------------------------------------------------------------
# Outbox: side-effect intents written in the same transaction as the change
# ---------------------------------------------------------------------------
outbox = Table(
    "outbox",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("kind", String, nullable=False),
    Column("payload", JSON, nullable=False),
    Column("status", String, nullable=False, default="PENDING"),
    Column("attempts", Integer, nullable=False, default=0),
    Column("next_attempt_at", DateTime, nullable=False, default=utcnow),
    Column("last_error", Text, nullable=True),
    Column("created_at", DateTime, nullable=False, default=utcnow),
    Column("processed_at", DateTime, nullable=True),
    Index("ix_outbox_status_next_attempt", "status", "next_attempt_at"),
)
