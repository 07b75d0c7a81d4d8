import uuid
from datetime import timedelta
from decimal import Decimal

from fulfillment_service import audit
from fulfillment_service.database import engine, utcnow
from fulfillment_service.models import audit_logs


def _make_log(days_old: int) -> str:
    log_id = str(uuid.uuid4())
    with engine.begin() as conn:
        conn.execute(audit_logs.insert().values(
            id=log_id,
            action="UPDATE",
            entity="Order",
            created_at=utcnow() - timedelta(days=days_old),
        ))
    return log_id


class TestAuditEntry:
    def test_entry_is_json_safe(self):
        payload = audit.entry("u-1", "CREATE", "Order", "o-1", new_data={"total": Decimal("9000.00")})
        assert payload["new_data"] == {"total": 9000.0}
        assert payload["old_data"] is None


class TestRecord:
    async def test_record_inserts_row(self, db, seed):
        audit_id = await audit.record("u-1", "CREATE", "Order", "o-1", new_data={"status": "PENDING"})

        row = seed.one(audit_logs)
        assert row["id"] == audit_id
        assert row["entity_id"] == "o-1"
        assert row["new_data"] == {"status": "PENDING"}

    async def test_write_audit_log_never_raises(self, db, seed):
        result = await audit.write_audit_log(user_id="u-1", action=None, entity="Order")

        assert result is None
        assert seed.rows(audit_logs) == []


class TestCleanup:
    async def test_deletes_only_expired_rows(self, db, seed):
        _make_log(days_old=120)
        _make_log(days_old=91)
        recent = _make_log(days_old=3)

        deleted = await audit.cleanup_old_audit_logs(90)

        assert deleted == 2
        assert [r["id"] for r in seed.rows(audit_logs)] == [recent]

    async def test_nothing_to_delete(self, db):
        _make_log(days_old=1)

        assert await audit.cleanup_old_audit_logs(90) == 0
