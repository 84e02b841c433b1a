import logging
import uuid

import pytest
from starlette.responses import JSONResponse
from starlette.testclient import TestClient

from fraudguard.metrics import Metrics
from fraudguard.web import create_app, current_request_id


class _Handler:
    def __init__(self, fail=False):
        self.fail = fail

    async def assess_transaction(self, request):
        if self.fail:
            raise RuntimeError("boom")
        return JSONResponse({"request_id": current_request_id()}, status_code=202)


def _client(handler=None, ready=True, metrics=None, logger=None):
    app = create_app(
        handler or _Handler(),
        logger=logger,
        metrics=metrics or Metrics(),
        ready_check=lambda: ready,
    )
    return TestClient(app)


def test_health_reports_up():
    response = _client().get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "up"}


@pytest.mark.parametrize(
    ("ready", "status", "body"),
    [(True, 200, {"status": "ready"}), (False, 503, {"status": "not_ready"})],
)
def test_ready_follows_check(ready, status, body):
    response = _client(ready=ready).get("/ready")
    assert response.status_code == status
    assert response.json() == body


def test_request_id_is_echoed_and_visible_to_handler():
    response = _client().post("/v1/transactions/assess", headers={"X-Request-ID": "req-42"})
    assert response.status_code == 202
    assert response.headers["X-Request-ID"] == "req-42"
    assert response.json() == {"request_id": "req-42"}


def test_request_id_is_generated_when_missing():
    response = _client().post("/v1/transactions/assess")
    generated = response.headers["X-Request-ID"]
    assert uuid.UUID(generated).version == 4
    assert response.json()["request_id"] == generated


def test_handler_exception_becomes_internal_error():
    response = _client(handler=_Handler(fail=True)).post("/v1/transactions/assess")
    assert response.status_code == 500
    assert response.json() == {"error": "internal server error"}
    assert response.headers["X-Request-ID"]


def test_metrics_endpoint_renders_registry():
    metrics = Metrics()
    metrics.decision_made("blocked")
    response = _client(metrics=metrics).get("/metrics")
    assert response.status_code == 200
    assert 'fraud_decision_total{decision="blocked"}' in response.text
    assert response.headers["content-type"].startswith("text/plain")


def test_logging_records_completion_status(caplog):
    logger = logging.getLogger("tests.web")
    with caplog.at_level(logging.INFO, logger="tests.web"):
        _client(handler=_Handler(fail=True), logger=logger).post("/v1/transactions/assess")
    messages = [r.getMessage() for r in caplog.records if r.name == "tests.web"]
    completed = [m for m in messages if m.startswith("request completed")]
    assert len(completed) == 1
    assert "status=500" in completed[0]
    assert any(m.startswith("panic recovered") for m in messages)


def test_current_request_id_outside_request_is_empty():
    assert current_request_id() == ""