"""HTTP request models and the transaction assessment handler."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from fraudguard.domain import (
    Coordinate,
    FraudAssessment,
    Money,
    PaymentMethod,
    Transaction,
    ValidationError,
)
from fraudguard.ports import IdempotencyStore, UnitOfWork
from fraudguard.postgres import AssessmentRepository, OutboxRepository

FAST_PATH_TIMEOUT = 0.020
IDEMPOTENCY_HEADER = "X-Idempotency-Key"

_log = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _number(data: Mapping[str, Any], key: str) -> float:
    value = data.get(key, 0)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"field {key} must be a number")
    return float(value)


def _string(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key, "")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key} must be a string")
    return value


def _timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError("field timestamp must be a string")
    moment = datetime.fromisoformat(value)
    if moment.year == 1 and moment.month == 1 and moment.day == 1 and moment.time() == datetime.min.time():
        return None
    return moment


@dataclass(frozen=True)
class LatLng:
    lat: float = 0.0
    lng: float = 0.0


@dataclass(frozen=True)
class AssessTransactionRequest:
    id: str = ""
    amount: float = 0.0
    currency: str = ""
    sender_id: str = ""
    receiver_id: str = ""
    device_id: str = ""
    ip: str = ""
    location: LatLng = LatLng()
    timestamp: datetime | None = None
    payment_method: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> AssessTransactionRequest:
        """Decode a JSON object; raises ValueError on a malformed one."""
        if not isinstance(data, Mapping):
            raise ValueError("request body must be a JSON object")
        location = data.get("location") or {}
        if not isinstance(location, Mapping):
            raise ValueError("field location must be an object")
        return cls(
            id=_string(data, "id"),
            amount=_number(data, "amount"),
            currency=_string(data, "currency"),
            sender_id=_string(data, "sender_id"),
            receiver_id=_string(data, "receiver_id"),
            device_id=_string(data, "device_id"),
            ip=_string(data, "ip"),
            location=LatLng(_number(location, "lat"), _number(location, "lng")),
            timestamp=_timestamp(data.get("timestamp")),
            payment_method=_string(data, "payment_method"),
        )

    def validate(self) -> list[str]:
        """All validation problems, in a fixed order; empty when valid."""
        errs = []
        if not self.id:
            errs.append("id is required")
        if self.amount <= 0:
            errs.append("amount must be positive")
        if not self.currency:
            errs.append("currency is required")
        if not self.sender_id:
            errs.append("sender_id is required")
        if not self.receiver_id:
            errs.append("receiver_id is required")
        if self.sender_id and self.receiver_id and self.sender_id == self.receiver_id:
            errs.append("sender_id and receiver_id must be different")
        if self.timestamp is None:
            errs.append("timestamp is required")
        return errs


@dataclass(frozen=True)
class AssessTransactionResponse:
    transaction_id: str
    decision: str
    risk_score: int
    reasons: list[str]
    assessed_at: datetime
    fast_path: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "decision": self.decision,
            "risk_score": self.risk_score,
            "reasons": list(self.reasons) if self.reasons else None,
            "assessed_at": self.assessed_at.isoformat(),
            "fast_path": self.fast_path,
        }


@dataclass(frozen=True)
class ErrorResponse:
    error: str
    details: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.error}
        if self.details:
            body["details"] = list(self.details)
        return body


class _Assessor(Protocol):
    def assess(self, tx: Transaction) -> FraudAssessment: ...


def _error(status: int, error: str, details: list[str] | None = None) -> JSONResponse:
    return JSONResponse(ErrorResponse(error, details or []).to_dict(), status_code=status)


class AssessHandler:
    """Handles POST requests to assess a transaction on the fast path."""

    def __init__(
        self,
        assessor: _Assessor,
        uow: UnitOfWork,
        assessments: AssessmentRepository,
        outbox: OutboxRepository,
        idempotency: IdempotencyStore,
        now: Callable[[], datetime] = _utcnow,
        timeout: float = FAST_PATH_TIMEOUT,
    ) -> None:
        self._assessor = assessor
        self._uow = uow
        self._assessments = assessments
        self._outbox = outbox
        self._idempotency = idempotency
        self._now = now
        self._timeout = timeout

    async def assess_transaction(self, request: Request) -> Response:
        try:
            req = AssessTransactionRequest.from_dict(json.loads(await request.body()))
        except ValueError as exc:
            return _error(400, f"invalid JSON: {exc}")

        errs = req.validate()
        if errs:
            return _error(400, "validation failed", errs)

        key = request.headers.get(IDEMPOTENCY_HEADER, "")
        if key:
            try:
                cached = self._idempotency.get(key)
            except Exception:
                cached = None
            if cached is not None:
                return Response(
                    cached,
                    status_code=202,
                    media_type="application/json",
                    headers={"X-Idempotent-Replay": "true"},
                )

        try:
            money = Money.of(req.amount, req.currency)
        except ValidationError as exc:
            return _error(400, str(exc))
        try:
            coord = Coordinate.of(req.location.lat, req.location.lng)
        except ValidationError:
            coord = Coordinate()
        try:
            method = PaymentMethod(req.payment_method)
            tx = Transaction.create(
                req.id, money, req.sender_id, req.receiver_id, req.device_id,
                req.ip, coord, req.timestamp, method,
            )
        except ValidationError as exc:
            return _error(400, str(exc))

        try:
            assessment = await asyncio.wait_for(
                asyncio.to_thread(self._assessor.assess, tx), self._timeout
            )
        except (asyncio.TimeoutError, TimeoutError):
            pending = AssessTransactionResponse(
                transaction_id=req.id,
                decision="pending",
                risk_score=0,
                reasons=["fast path timeout, queued for async assessment"],
                assessed_at=self._now(),
                fast_path=False,
            )
            return JSONResponse(pending.to_dict(), status_code=202)
        except Exception as exc:
            _log.error("assessment failed: transaction_id=%s error=%s", req.id, exc)
            return _error(500, "assessment failed")

        try:
            await asyncio.to_thread(self.save_atomically, assessment)
        except Exception as exc:
            _log.error("persist failed: transaction_id=%s error=%s", req.id, exc)
            return _error(500, "failed to persist assessment")

        resp = AssessTransactionResponse(
            transaction_id=assessment.transaction_id,
            decision=assessment.decision.value,
            risk_score=assessment.risk_score.value,
            reasons=[r.reason for r in assessment.rule_results if r.triggered],
            assessed_at=self._now(),
            fast_path=True,
        )
        body = resp.to_dict()
        if key:
            try:
                self._idempotency.set(key, json.dumps(body).encode())
            except Exception as exc:
                _log.warning("idempotency store failed: key=%s error=%s", key, exc)
        return JSONResponse(body, status_code=202)

    def save_atomically(self, assessment: FraudAssessment) -> None:
        """Save the assessment and its outbox events in one database transaction."""
        tx = self._uow.begin()
        try:
            self._assessments.save_with_tx(tx, assessment)
            for event in assessment.events:
                self._outbox.save_within_tx(tx, event)
        except BaseException:
            self._uow.rollback(tx)
            raise
        self._uow.commit(tx)