import uuid
from datetime import datetime

from starlette.testclient import TestClient

from fraudguard.txservice.domain import Money, Transaction, TransactionNotFoundError
from fraudguard.txservice.service import TransactionService
from fraudguard.txservice.web import TransactionHandler, create_app, to_response


class _MemoryRepo:
    def __init__(self):
        self.rows = {}

    def save(self, tx):
        self.rows[tx.id] = tx

    def find_by_id(self, id):
        try:
            return self.rows[id]
        except KeyError:
            raise TransactionNotFoundError(f"transaction {id} not found") from None

    def update(self, tx):
        self.rows[tx.id] = tx


class _Checker:
    def __init__(self, decision="approved", score=10, error=None):
        self.decision = decision
        self.score = score
        self.error = error

    def check(self, tx):
        if self.error is not None:
            raise self.error
        return self.decision, self.score, []


_BODY = {
    "amount": 25.0,
    "currency": "USD",
    "sender_id": "alice",
    "receiver_id": "bob",
    "device_id": "dev-1",
    "ip": "10.0.0.1",
    "lat": 41.0,
    "lng": 29.0,
    "payment_method": "card",
}


def _client(checker=None):
    service = TransactionService(_MemoryRepo(), checker or _Checker())
    return TestClient(create_app(TransactionHandler(service)))


def test_create_transaction_returns_created():
    response = _client(_Checker("approved", 17)).post("/v1/transactions", json=_BODY)
    assert response.status_code == 201
    body = response.json()
    assert uuid.UUID(body["id"]).version == 4
    assert body["status"] == "approved"
    assert body["fraud_decision"] == "approved"
    assert body["fraud_score"] == 17
    assert body["amount"] == _BODY["amount"]
    assert body["created_at"].endswith("Z")
    assert datetime.fromisoformat(body["created_at"].replace("Z", "+00:00")).tzinfo is not None


def test_create_rejects_bad_json():
    response = _client().post(
        "/v1/transactions", content=b"{not json", headers={"Content-Type": "application/json"}
    )
    assert response.status_code == 400
    assert response.json() == {"error": "invalid JSON"}


def test_create_rejects_invalid_transaction():
    response = _client().post("/v1/transactions", json={**_BODY, "receiver_id": "alice"})
    assert response.status_code == 400
    assert response.json() == {"error": "sender and receiver must differ"}


def test_create_reports_service_failure():
    client = _client(_Checker(error=ConnectionError("down")))
    response = client.post("/v1/transactions", json=_BODY)
    assert response.status_code == 500
    assert response.json() == {"error": "transaction failed"}


def test_get_transaction_round_trip_and_missing():
    client = _client()
    created = client.post("/v1/transactions", json=_BODY).json()
    fetched = client.get(f"/v1/transactions/{created['id']}")
    assert fetched.status_code == 200
    assert fetched.json() == created

    missing = client.get("/v1/transactions/missing")
    assert missing.status_code == 404
    assert missing.json() == {"error": "transaction missing not found"}


def test_complete_mfa_after_review():
    client = _client(_Checker("review", 55))
    created = client.post("/v1/transactions", json=_BODY).json()
    assert created["status"] == "review"
    response = client.post(f"/v1/transactions/{created['id']}/mfa")
    assert response.status_code == 200
    assert response.json()["status"] == "approved"


def test_complete_mfa_rejected_when_not_waiting():
    client = _client(_Checker("approved", 5))
    created = client.post("/v1/transactions", json=_BODY).json()
    response = client.post(f"/v1/transactions/{created['id']}/mfa")
    assert response.status_code == 400
    assert "not in MFA state" in response.json()["error"]


def test_health_body():
    response = _client().get("/health")
    assert response.status_code == 200
    assert response.text == '{"status":"up"}'


def test_to_response_omits_unknown_fraud_fields():
    tx = Transaction.create("tx-1", "alice", "bob", Money(3.0, "USD"))
    body = to_response(tx)
    assert "fraud_decision" not in body
    assert "fraud_score" not in body
    assert body["status"] == "created"
    assert body["id"] == "tx-1"