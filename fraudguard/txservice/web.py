"""HTTP application of the transaction service."""

from __future__ import annotations

import json
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.routing import Route

from fraudguard.txservice.domain import Coordinate, Money, Transaction, TransactionError
from fraudguard.txservice.service import TransactionService


def _number(data: Mapping[str, Any], key: str) -> float:
    value = data.get(key, 0)
    if value is None:
        return 0.0
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


@dataclass(frozen=True)
class _CreateRequest:
    amount: float
    currency: str
    sender_id: str
    receiver_id: str
    device_id: str
    ip: str
    lat: float
    lng: float
    payment_method: str

    @classmethod
    def from_dict(cls, data: Any) -> _CreateRequest:
        if not isinstance(data, Mapping):
            raise ValueError("request body must be a JSON object")
        return cls(
            amount=_number(data, "amount"),
            currency=_string(data, "currency"),
            sender_id=_string(data, "sender_id"),
            receiver_id=_string(data, "receiver_id"),
            device_id=_string(data, "device_id"),
            ip=_string(data, "ip"),
            lat=_number(data, "lat"),
            lng=_number(data, "lng"),
            payment_method=_string(data, "payment_method"),
        )


def _rfc3339(moment: Any) -> str:
    text = moment.isoformat(timespec="seconds")
    return text[: -len("+00:00")] + "Z" if text.endswith("+00:00") else text


def to_response(tx: Transaction) -> dict[str, Any]:
    """JSON body describing a transaction; fraud fields only once known."""
    body: dict[str, Any] = {
        "id": tx.id,
        "status": tx.status.value,
        "amount": tx.amount.amount,
        "currency": tx.amount.currency,
        "sender_id": tx.sender_id,
        "receiver_id": tx.receiver_id,
    }
    if tx.fraud_decision is not None:
        body["fraud_decision"] = tx.fraud_decision
    if tx.fraud_score is not None:
        body["fraud_score"] = tx.fraud_score
    body["created_at"] = _rfc3339(tx.created_at)
    return body


class TransactionHandler:
    """Request handlers for creating, reading and approving transactions."""

    def __init__(self, service: TransactionService) -> None:
        self._service = service

    async def create_transaction(self, request: Request) -> Response:
        try:
            req = _CreateRequest.from_dict(json.loads(await request.body()))
        except ValueError:
            return JSONResponse({"error": "invalid JSON"}, status_code=400)

        try:
            tx = Transaction.create(
                str(uuid.uuid4()),
                req.sender_id,
                req.receiver_id,
                Money(req.amount, req.currency),
                req.device_id,
                req.ip,
                Coordinate(req.lat, req.lng),
                req.payment_method,
            )
        except TransactionError as exc:
            return JSONResponse({"error": str(exc)}, status_code=400)

        try:
            await run_in_threadpool(self._service.create_transaction, tx)
        except Exception:
            return JSONResponse({"error": "transaction failed"}, status_code=500)
        return JSONResponse(to_response(tx), status_code=201)

    async def get_transaction(self, request: Request) -> Response:
        tx_id = request.path_params["id"]
        try:
            tx = await run_in_threadpool(self._service.get_transaction, tx_id)
        except Exception as exc:
            return JSONResponse({"error": str(exc)}, status_code=404)
        return JSONResponse(to_response(tx))

    async def complete_mfa(self, request: Request) -> Response:
        tx_id = request.path_params["id"]
        try:
            await run_in_threadpool(self._service.complete_mfa, tx_id)
            tx = await run_in_threadpool(self._service.get_transaction, tx_id)
        except Exception as exc:
            return JSONResponse({"error": str(exc)}, status_code=400)
        return JSONResponse(to_response(tx))


def create_app(handler: TransactionHandler) -> Starlette:
    async def health(_: Request) -> Response:
        return PlainTextResponse('{"status":"up"}')

    return Starlette(
        routes=[
            Route("/v1/transactions", handler.create_transaction, methods=["POST"]),
            Route("/v1/transactions/{id}", handler.get_transaction, methods=["GET"]),
            Route("/v1/transactions/{id}/mfa", handler.complete_mfa, methods=["POST"]),
            Route("/health", health, methods=["GET"]),
        ]
    )