"""Transactions of the transaction service and their status lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Protocol


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionStatus(StrEnum):
    CREATED = "created"
    PENDING_FRAUD_CHECK = "pending_fraud_check"
    APPROVED = "approved"
    BLOCKED = "blocked"
    REVIEW = "review"
    PENDING_MFA = "pending_mfa"
    COMPLETED = "completed"
    FAILED = "failed"


_S = TransactionStatus
_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    _S.CREATED: frozenset({_S.PENDING_FRAUD_CHECK, _S.FAILED}),
    _S.PENDING_FRAUD_CHECK: frozenset({_S.APPROVED, _S.BLOCKED, _S.REVIEW}),
    _S.APPROVED: frozenset({_S.COMPLETED, _S.FAILED}),
    _S.BLOCKED: frozenset(),
    _S.REVIEW: frozenset({_S.PENDING_MFA, _S.BLOCKED, _S.APPROVED}),
    _S.PENDING_MFA: frozenset({_S.APPROVED, _S.BLOCKED, _S.FAILED}),
    _S.COMPLETED: frozenset(),
    _S.FAILED: frozenset(),
}

_DECISION_STATUS = {
    "approved": _S.APPROVED,
    "blocked": _S.BLOCKED,
    "review": _S.REVIEW,
}


class TransactionError(Exception):
    """Raised for an invalid transaction or an invalid status change."""


class TransactionNotFoundError(TransactionError, LookupError):
    """Raised when no transaction has the requested ID."""


@dataclass(frozen=True)
class Money:
    amount: float
    currency: str = ""


@dataclass(frozen=True)
class Coordinate:
    lat: float = 0.0
    lng: float = 0.0


@dataclass
class Transaction:
    id: str
    sender_id: str
    receiver_id: str
    amount: Money
    status: TransactionStatus = TransactionStatus.CREATED
    device_id: str = ""
    ip: str = ""
    location: Coordinate = Coordinate()
    payment_method: str = ""
    fraud_decision: str | None = None
    fraud_score: int | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def create(
        cls,
        id: str,
        sender_id: str,
        receiver_id: str,
        amount: Money,
        device_id: str = "",
        ip: str = "",
        location: Coordinate = Coordinate(),
        payment_method: str = "",
    ) -> Transaction:
        """New transaction in the created status; raises TransactionError if invalid."""
        if not id:
            raise TransactionError("transaction ID required")
        if not sender_id or not receiver_id:
            raise TransactionError("sender and receiver required")
        if sender_id == receiver_id:
            raise TransactionError("sender and receiver must differ")
        if amount.amount <= 0:
            raise TransactionError("amount must be positive")
        now = _utcnow()
        return cls(
            id=id,
            sender_id=sender_id,
            receiver_id=receiver_id,
            amount=amount,
            device_id=device_id,
            ip=ip,
            location=location,
            payment_method=str(payment_method),
            created_at=now,
            updated_at=now,
        )

    def transition_to(self, new_status: TransactionStatus | str) -> None:
        """Move to new_status if the lifecycle allows it."""
        target = TransactionStatus(new_status)
        if target not in _TRANSITIONS.get(self.status, frozenset()):
            raise TransactionError(f"invalid transition: {self.status} → {target}")
        self.status = target
        self.updated_at = _utcnow()

    def apply_fraud_decision(self, decision: str, score: int) -> None:
        """Record the fraud verdict and move to the matching status."""
        self.fraud_decision = decision
        self.fraud_score = score
        try:
            target = _DECISION_STATUS[decision]
        except KeyError:
            raise TransactionError(f"unknown fraud decision: {decision}") from None
        self.transition_to(target)


class TransactionRepository(Protocol):
    def save(self, tx: Transaction) -> None: ...

    def find_by_id(self, id: str) -> Transaction: ...

    def update(self, tx: Transaction) -> None: ...


class FraudChecker(Protocol):
    def check(self, tx: Transaction) -> tuple[str, int, list[str]]:
        """Decision, risk score and reasons for the transaction."""
        ...