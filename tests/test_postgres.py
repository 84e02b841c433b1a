import json
from datetime import datetime, timezone

import pytest

from fraudguard.domain import (
    AssessmentCompletedEvent,
    ConfigNotFoundError,
    Decision,
    FraudAssessment,
    RiskScore,
    RuleResult,
)
from fraudguard.postgres import (
    AssessmentRepository,
    ConfigRepository,
    DbTransaction,
    DeviceRepository,
    OutboxEntry,
    OutboxRepository,
    UnitOfWork,
)

FIXED = datetime(2025, 1, 15, 10, 30, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self.rowcount = conn.rowcount

    def execute(self, query, params):
        if self.conn.error is not None:
            raise self.conn.error
        self.conn.executed.append((" ".join(query.split()), tuple(params)))

    def fetchone(self):
        return self.conn.rows[0] if self.conn.rows else None

    def fetchall(self):
        return list(self.conn.rows)

    def close(self):
        pass


class FakeConnection:
    def __init__(self, rows=(), rowcount=1, error=None):
        self.rows = list(rows)
        self.rowcount = rowcount
        self.error = error
        self.executed = []
        self.committed = False
        self.rolled_back = False
        self.closed = False

    def cursor(self):
        return FakeCursor(self)

    def commit(self):
        self.committed = True

    def rollback(self):
        self.rolled_back = True

    def close(self):
        self.closed = True


def completed(tx_id, decision=Decision.APPROVED, score=30):
    return AssessmentCompletedEvent(tx_id, decision, RiskScore(score), FIXED)


def test_unit_of_work_commit_closes_connection():
    conn = FakeConnection()
    uow = UnitOfWork(lambda: conn)
    tx = uow.begin()
    assert tx.connection is conn
    uow.commit(tx)
    assert conn.committed and conn.closed
    assert not conn.rolled_back


def test_unit_of_work_rollback():
    conn = FakeConnection()
    uow = UnitOfWork(lambda: conn)
    uow.rollback(uow.begin())
    assert conn.rolled_back and conn.closed
    assert not conn.committed


def test_unit_of_work_rejects_foreign_handle():
    uow = UnitOfWork(FakeConnection)
    with pytest.raises(TypeError):
        uow.commit(object())


def test_transaction_execute_and_query_row():
    conn = FakeConnection(rows=[(7, "x")], rowcount=3)
    tx = DbTransaction(conn)
    assert tx.execute("UPDATE t SET a = %s", 1) == 3
    assert tx.query_row("SELECT a, b FROM t") == (7, "x")
    assert conn.executed[0] == ("UPDATE t SET a = %s", (1,))


def test_save_assessment_writes_decision_and_rule_results():
    conn = FakeConnection()
    fa = FraudAssessment.create(
        "tx-1", [RuleResult.create("amount", True, 80, "critical")], FIXED
    )
    AssessmentRepository(lambda: conn).save_with_tx(DbTransaction(conn), fa)
    query, params = conn.executed[0]
    assert "INSERT INTO assessments" in query
    assert "ON CONFLICT (transaction_id)" in query
    assert params[:3] == ("tx-1", "blocked", 80)
    assert json.loads(params[3])[0]["rule_name"] == "amount"


def test_save_assessment_failure_propagates():
    conn = FakeConnection(error=RuntimeError("db down"))
    fa = FraudAssessment.create("tx-1", [RuleResult.create("r1", False, 0, "")], FIXED)
    with pytest.raises(RuntimeError, match="db down"):
        AssessmentRepository(lambda: conn).save_with_tx(DbTransaction(conn), fa)


def test_config_repository_reads_values():
    assert ConfigRepository(lambda: FakeConnection(rows=[("42",)])).get_int("test.key") == 42
    value = ConfigRepository(lambda: FakeConnection(rows=[("3.14",)])).get_float("test.float")
    assert value == pytest.approx(3.14, abs=0.001)


def test_config_repository_missing_key():
    with pytest.raises(ConfigNotFoundError):
        ConfigRepository(lambda: FakeConnection()).get_int("nonexistent")


def test_config_repository_unparsable_value():
    with pytest.raises(ValueError, match="cannot parse"):
        ConfigRepository(lambda: FakeConnection(rows=[("abc",)])).get_int("k")


def test_config_repository_load_all():
    conn = FakeConnection(rows=[("refresh.key", "100"), ("test.float", "3.14")])
    assert ConfigRepository(lambda: conn).load_all() == {
        "refresh.key": "100",
        "test.float": "3.14",
    }
    assert conn.committed and conn.closed


def test_device_repository_known_device():
    conn = FakeConnection(rows=[(True,)])
    assert DeviceRepository(lambda: conn).is_known_device("user-1", "known-device")
    assert conn.executed[0][1] == ("user-1", "known-device")


def test_device_repository_load_all_groups_by_sender():
    rows = [("user-1", "dev-a"), ("user-2", "dev-b"), ("user-1", "dev-c")]
    devices = DeviceRepository(lambda: FakeConnection(rows=rows)).load_all()
    assert devices == {"user-1": ["dev-a", "dev-c"], "user-2": ["dev-b"]}


def test_outbox_save_within_tx():
    conn = FakeConnection()
    OutboxRepository(lambda: conn).save_within_tx(DbTransaction(conn), completed("tx-outbox-1"))
    query, params = conn.executed[0]
    assert query == "INSERT INTO outbox (event_type, payload) VALUES (%s, %s)"
    assert params[0] == "assessment.completed"
    assert json.loads(params[1])["transaction_id"] == "tx-outbox-1"


def test_outbox_get_pending_maps_rows():
    row = ("id-1", "assessment.completed", '{"a": 1}', "pending", FIXED, 0, "")
    conn = FakeConnection(rows=[row])
    entries = OutboxRepository(lambda: conn).get_pending(10)
    assert entries == [
        OutboxEntry("id-1", "assessment.completed", b'{"a": 1}', "pending", FIXED, 0, "")
    ]
    query, params = conn.executed[0]
    assert "FOR UPDATE SKIP LOCKED" in query
    assert params == (10,)


def test_outbox_get_pending_decoded_jsonb_payload():
    row = ("id-1", "fraud.detected", {"transaction_id": "tx-1"}, "pending", FIXED, 2, None)
    entry = OutboxRepository(lambda: FakeConnection(rows=[row])).get_pending(10)[0]
    assert json.loads(entry.payload) == {"transaction_id": "tx-1"}
    assert entry.retry_count == 2
    assert entry.last_error == ""


def test_outbox_get_pending_empty():
    assert OutboxRepository(lambda: FakeConnection()).get_pending(10) == []


def test_outbox_mark_published():
    conn = FakeConnection()
    OutboxRepository(lambda: conn).mark_published("id-1")
    query, params = conn.executed[0]
    assert "status = 'published'" in query
    assert params == ("id-1",)


def test_outbox_mark_failed_records_error():
    conn = FakeConnection()
    OutboxRepository(lambda: conn).mark_failed("id-1", RuntimeError("nats down"))
    query, params = conn.executed[0]
    assert "retry_count = retry_count + 1" in query
    assert params == ("nats down", "id-1")


def test_outbox_mark_dead():
    conn = FakeConnection()
    OutboxRepository(lambda: conn).mark_dead("id-1")
    query, params = conn.executed[0]
    assert "status = 'dead'" in query
    assert params == ("id-1",)


def test_outbox_update_failure_rolls_back():
    conn = FakeConnection(error=RuntimeError("db down"))
    with pytest.raises(RuntimeError, match="db down"):
        OutboxRepository(lambda: conn).mark_dead("id-1")
    assert conn.rolled_back and conn.closed