from itertools import product

import pytest

from shared.auth import Actor, Role
from fulfillment_service.errors import (
    AuthError, ConflictError, NotFoundError, StateTransitionError, ValidationError,
)
from fulfillment_service.models import driver_allocations, order_status_history, orders, outbox, users
from fulfillment_service.schemas import OrderUpdate
from fulfillment_service.state_machine import (
    ALLOWED_TRANSITIONS, TERMINAL_STATES, OrderStatus, allowed_next, apply_transition, authorize,
    validate_transition,
)

S = OrderStatus


def _make_order(status=S.PENDING, driver_id=None, customer_id="cust-1") -> dict:
    return {"id": "order-1", "status": status.value, "driver_id": driver_id, "customer_id": customer_id}


def _outbox(seed, kind=None):
    rows = seed.rows(outbox)
    return [r for r in rows if kind is None or r["kind"] == kind]


class TestTransitionTable:
    def test_every_status_has_an_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(OrderStatus)

    def test_terminal_states(self):
        assert TERMINAL_STATES == {S.DELIVERED, S.CANCELLED}
        for status in TERMINAL_STATES:
            assert allowed_next(status) == frozenset()

    def test_happy_path_edges(self):
        path = [S.PENDING, S.CONFIRMED, S.PREPARING, S.READY, S.OUT_FOR_DELIVERY, S.DELIVERED]
        for current, target in zip(path, path[1:]):
            assert validate_transition(current, target) is True

    def test_every_open_state_can_cancel(self):
        for status in set(OrderStatus) - TERMINAL_STATES:
            assert validate_transition(status, S.CANCELLED) is True

    @pytest.mark.parametrize("current,target", list(product(OrderStatus, OrderStatus)))
    def test_exhaustive_pairs(self, current, target):
        if current == target:
            assert validate_transition(current, target) is False
        elif target in ALLOWED_TRANSITIONS[current]:
            assert validate_transition(current, target) is True
        else:
            with pytest.raises(StateTransitionError) as exc:
                validate_transition(current, target)
            assert exc.value.allowed == sorted(s.value for s in ALLOWED_TRANSITIONS[current])
            assert exc.value.status_code == 400

    def test_error_message_names_allowed_states(self):
        with pytest.raises(StateTransitionError) as exc:
            validate_transition(S.PENDING, S.DELIVERED)
        assert "CANCELLED, CONFIRMED" in exc.value.message

    def test_error_message_for_closed_order(self):
        with pytest.raises(StateTransitionError) as exc:
            validate_transition(S.DELIVERED, S.PENDING)
        assert "closed" in exc.value.message


class TestAuthorize:
    @pytest.mark.parametrize("status", list(OrderStatus))
    def test_driver_cannot_confirm_regardless_of_status(self, status):
        driver = Actor(id="drv-1", role=Role.DRIVER)
        with pytest.raises(AuthError) as exc:
            authorize(_make_order(status, driver_id="drv-1"), OrderUpdate(status="CONFIRMED"), driver)
        assert exc.value.status_code == 403

    def test_customer_is_rejected(self):
        customer = Actor(id="cust-1", role=Role.CUSTOMER)
        with pytest.raises(AuthError):
            authorize(_make_order(), OrderUpdate(status="CANCELLED"), customer)

    def test_driver_can_deliver_own_order(self):
        driver = Actor(id="drv-1", role=Role.DRIVER)
        authorize(_make_order(S.OUT_FOR_DELIVERY, driver_id="drv-1"), OrderUpdate(status="DELIVERED"), driver)

    def test_driver_cannot_deliver_someone_elses_order(self):
        driver = Actor(id="drv-2", role=Role.DRIVER)
        with pytest.raises(AuthError):
            authorize(_make_order(S.OUT_FOR_DELIVERY, driver_id="drv-1"), OrderUpdate(status="DELIVERED"), driver)

    def test_driver_cannot_deliver_before_dispatch(self):
        driver = Actor(id="drv-1", role=Role.DRIVER)
        with pytest.raises(AuthError):
            authorize(_make_order(S.READY, driver_id="drv-1"), OrderUpdate(status="DELIVERED"), driver)

    def test_driver_cannot_touch_staff_fields(self):
        driver = Actor(id="drv-1", role=Role.DRIVER)
        update = OrderUpdate(status="DELIVERED", internalNotes="left at door")
        with pytest.raises(AuthError):
            authorize(_make_order(S.OUT_FOR_DELIVERY, driver_id="drv-1"), update, driver)

    def test_unapproved_staff_is_rejected(self):
        ops = Actor(id="ops-1", role=Role.OPERATIONS, status="SUSPENDED")
        with pytest.raises(AuthError):
            authorize(_make_order(), OrderUpdate(status="CONFIRMED"), ops)


class TestApplyTransition:
    async def test_status_change_appends_history_and_queues_side_effects(self, db, seed, shop):
        order = seed.order(shop["customer"], shop["address"])
        ops = seed.actor(shop["ops"])

        updated = await apply_transition(order["id"], OrderUpdate(status="CONFIRMED", statusNotes="ok"), ops)

        assert updated["status"] == "CONFIRMED"
        assert updated["version"] == 1
        history = seed.rows(order_status_history, order_status_history.c.order_id == order["id"])
        assert [h["status"] for h in history] == ["PENDING", "CONFIRMED"]
        assert history[-1]["notes"] == "ok"
        assert history[-1]["changed_by"] == shop["ops"]["id"]

        notify = _outbox(seed, "notify")
        assert len(notify) == 1
        assert notify[0]["payload"]["recipient"] == shop["customer"]["id"]
        assert notify[0]["payload"]["kind"] == "ORDER_STATUS"
        audit = _outbox(seed, "audit")
        assert audit[0]["payload"]["action"] == "STATUS_CHANGE"

    async def test_same_status_is_a_no_op(self, db, seed, shop):
        order = seed.order(shop["customer"], shop["address"], status="CONFIRMED")

        result = await apply_transition(order["id"], OrderUpdate(status="CONFIRMED"), seed.actor(shop["ops"]))

        assert result["version"] == 0
        assert len(seed.rows(order_status_history, order_status_history.c.order_id == order["id"])) == 1
        assert _outbox(seed) == []

    async def test_invalid_transition_changes_nothing(self, db, seed, shop):
        order = seed.order(shop["customer"], shop["address"])

        with pytest.raises(StateTransitionError):
            await apply_transition(order["id"], OrderUpdate(status="DELIVERED"), seed.actor(shop["ops"]))

        assert seed.one(orders, orders.c.id == order["id"])["status"] == "PENDING"
        assert _outbox(seed) == []

    @pytest.mark.parametrize("terminal", ["DELIVERED", "CANCELLED"])
    async def test_terminal_orders_are_final(self, db, seed, shop, terminal):
        order = seed.order(shop["customer"], shop["address"], status=terminal)
        ops = seed.actor(shop["ops"])

        for status in OrderStatus:
            if status.value == terminal:
                continue
            with pytest.raises(StateTransitionError):
                await apply_transition(order["id"], OrderUpdate(status=status.value), ops)

    async def test_delivery_stamps_timestamp_and_frees_driver(self, db, seed, shop):
        driver = seed.user("DRIVER")
        order = seed.order(shop["customer"], shop["address"], status="OUT_FOR_DELIVERY", driver=driver)

        updated = await apply_transition(order["id"], OrderUpdate(status="DELIVERED"), seed.actor(driver))

        assert updated["status"] == "DELIVERED"
        assert seed.one(orders, orders.c.id == order["id"])["delivered_at"] is not None
        assert seed.one(users, users.c.id == driver["id"])["is_available"] is True
        assert seed.rows(driver_allocations) == []

    async def test_cancel_releases_and_notifies_driver(self, db, seed, shop):
        driver = seed.user("DRIVER")
        order = seed.order(shop["customer"], shop["address"], status="READY", driver=driver)

        await apply_transition(order["id"], OrderUpdate(status="CANCELLED"), seed.actor(shop["admin"]))

        assert seed.one(users, users.c.id == driver["id"])["is_available"] is True
        kinds = {(r["payload"]["recipient"], r["payload"]["kind"]) for r in _outbox(seed, "notify")}
        assert (driver["id"], "ORDER_CANCELLED_DRIVER") in kinds
        assert (shop["customer"]["id"], "ORDER_STATUS") in kinds

    async def test_out_for_delivery_notifies_assigned_driver(self, db, seed, shop):
        driver = seed.user("DRIVER")
        order = seed.order(shop["customer"], shop["address"], status="READY", driver=driver)

        await apply_transition(order["id"], OrderUpdate(status="OUT_FOR_DELIVERY"), seed.actor(shop["ops"]))

        kinds = {(r["payload"]["recipient"], r["payload"]["kind"]) for r in _outbox(seed, "notify")}
        assert (driver["id"], "DRIVER_ASSIGNED") in kinds

    async def test_stale_version_is_rejected(self, db, seed, shop):
        order = seed.order(shop["customer"], shop["address"])
        ops = seed.actor(shop["ops"])
        await apply_transition(order["id"], OrderUpdate(status="CONFIRMED", version=0), ops)

        with pytest.raises(ConflictError) as exc:
            await apply_transition(order["id"], OrderUpdate(status="CANCELLED", version=0), ops)
        assert exc.value.status_code == 409
        assert seed.one(orders, orders.c.id == order["id"])["status"] == "CONFIRMED"

    async def test_staff_fields_without_status_change(self, db, seed, shop):
        order = seed.order(shop["customer"], shop["address"])

        updated = await apply_transition(
            order["id"],
            OrderUpdate(internalNotes="fragile", driverDeliveryCost="1500"),
            seed.actor(shop["ops"]),
        )

        assert updated["internal_notes"] == "fragile"
        assert updated["status"] == "PENDING"
        assert _outbox(seed, "notify") == []
        assert _outbox(seed, "audit")[0]["payload"]["action"] == "UPDATE"

    async def test_driver_change_on_closed_order_is_rejected(self, db, seed, shop):
        driver = seed.user("DRIVER")
        order = seed.order(shop["customer"], shop["address"], status="DELIVERED")

        with pytest.raises(ValidationError):
            await apply_transition(order["id"], OrderUpdate(driverId=driver["id"]), seed.actor(shop["ops"]))

    async def test_unknown_order(self, db, seed, shop):
        with pytest.raises(NotFoundError):
            await apply_transition("missing", OrderUpdate(status="CONFIRMED"), seed.actor(shop["ops"]))
