import os
import tempfile
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

_DB_DIR = tempfile.mkdtemp(prefix="fulfillment-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'fulfillment.db')}"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["USE_AWS"] = "false"
os.environ["OUTBOX_WORKER_ENABLED"] = "false"

from shared.auth import Actor, Role  # noqa: E402
from fulfillment_service.database import database, engine, metadata, utcnow  # noqa: E402
from fulfillment_service.models import (  # noqa: E402
    addresses, driver_allocations, order_status_history, orders, product_service_areas,
    products, push_subscriptions, service_areas, users,
)
from fulfillment_service.push import LocalPushAdapter, set_push_adapter  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def setup_db():
    metadata.create_all(engine)
    yield
    metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(autouse=True)
def run_around_tests():
    """Wipe every table after each test."""
    yield
    with engine.begin() as conn:
        for table in reversed(metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture(autouse=True)
def push():
    adapter = LocalPushAdapter()
    set_push_adapter(adapter)
    yield adapter
    set_push_adapter(None)


@pytest.fixture
async def db():
    await database.connect()
    yield database
    await database.disconnect()


class Seed:
    """Inserts fixture rows through the synchronous engine."""

    def __init__(self):
        self._clock = datetime(2026, 1, 1)

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def _insert(self, table, **values) -> dict:
        with engine.begin() as conn:
            conn.execute(table.insert().values(**values))
        return values

    def user(self, role="CUSTOMER", status="APPROVED", name=None, **overrides) -> dict:
        values = {
            "id": str(uuid.uuid4()),
            "name": name or f"{role.title()} {uuid.uuid4().hex[:4]}",
            "phone": "0100000000",
            "role": role,
            "status": status,
            "is_available": True,
            "version": 0,
            "created_at": self._tick(),
        }
        values.update(overrides)
        return self._insert(users, **values)

    def actor(self, user: dict) -> Actor:
        return Actor(id=user["id"], role=Role(user["role"]), status=user["status"])

    def area(self, name="Downtown", delivery_fee="5000", min_order_amount="0", is_active=True) -> dict:
        return self._insert(
            service_areas,
            id=str(uuid.uuid4()),
            name=name,
            delivery_fee=Decimal(delivery_fee),
            min_order_amount=Decimal(min_order_amount),
            is_active=is_active,
        )

    def address(self, user: dict, area="Downtown") -> dict:
        return self._insert(
            addresses,
            id=str(uuid.uuid4()),
            user_id=user["id"],
            label="Home",
            area=area,
            street="Main St",
            building="7",
        )

    def product(self, name="Rice 1kg", price="2000", stock=10, areas=(), track_stock=True,
                is_active=True, low_stock_threshold=0) -> dict:
        product = self._insert(
            products,
            id=str(uuid.uuid4()),
            name=name,
            price=Decimal(price),
            stock=stock,
            track_stock=track_stock,
            low_stock_threshold=low_stock_threshold,
            is_active=is_active,
        )
        for area in areas:
            self._insert(product_service_areas, product_id=product["id"], service_area_id=area["id"])
        return product

    def order(self, customer: dict, address: dict, status="PENDING", driver: dict = None, **overrides) -> dict:
        now = self._tick()
        values = {
            "id": str(uuid.uuid4()),
            "order_number": f"2601-{uuid.uuid4().hex[:6].upper()}",
            "status": status,
            "subtotal": Decimal("4000"),
            "delivery_fee": Decimal("5000"),
            "discount": Decimal("0"),
            "total": Decimal("9000"),
            "customer_id": customer["id"],
            "address_id": address["id"],
            "driver_id": driver["id"] if driver else None,
            "version": 0,
            "created_at": now,
            "updated_at": now,
        }
        values.update(overrides)
        order = self._insert(orders, **values)
        self._insert(
            order_status_history,
            order_id=order["id"], status="PENDING", notes="Order created", created_at=now,
        )
        if driver and status not in ("DELIVERED", "CANCELLED"):
            self._insert(driver_allocations, driver_id=driver["id"], order_id=order["id"], acquired_at=now)
            with engine.begin() as conn:
                conn.execute(
                    users.update().where(users.c.id == driver["id"])
                    .values(is_available=False, version=users.c.version + 1)
                )
        return order

    def push_tokens(self, user: dict, tokens) -> None:
        with engine.begin() as conn:
            conn.execute(
                push_subscriptions.insert(),
                [
                    {"id": str(uuid.uuid4()), "user_id": user["id"], "token": token, "created_at": utcnow()}
                    for token in tokens
                ],
            )

    # ---- reads ----
    def rows(self, table, *where) -> list:
        with engine.connect() as conn:
            return [dict(r._mapping) for r in conn.execute(table.select().where(*where))]

    def one(self, table, *where) -> dict:
        found = self.rows(table, *where)
        assert len(found) == 1, f"expected one {table.name} row, got {len(found)}"
        return found[0]


@pytest.fixture
def seed():
    return Seed()


@pytest.fixture
def shop(seed):
    """A deliverable area, an approved customer with an address there, and staff."""
    area = seed.area("Downtown", delivery_fee="5000")
    customer = seed.user("CUSTOMER")
    return {
        "area": area,
        "customer": customer,
        "address": seed.address(customer, area="Downtown"),
        "ops": seed.user("OPERATIONS"),
        "admin": seed.user("ADMIN"),
    }
