"""Core fraud-detection domain: value objects, events and the assessment aggregate."""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum, StrEnum
from typing import Any, ClassVar

EARTH_RADIUS_KM = 6371.0
CRITICAL_RULE_SCORE = 80
MAX_RISK_SCORE = 100

VALID_CURRENCIES = frozenset(
    {"USD", "EUR", "GBP", "JPY", "CAD", "AUD", "CHF", "CNY", "INR", "BRL"}
)


class ValidationError(ValueError):
    """Raised when a domain value or aggregate is built from invalid input."""


class ConfigNotFoundError(LookupError):
    """Raised when a configuration key is not present."""

    def __init__(self, key: str) -> None:
        super().__init__(f"key {key!r}: config key not found")
        self.key = key


class CircuitOpenError(RuntimeError):
    """Raised when a call is rejected by an open circuit breaker."""


class Decision(StrEnum):
    APPROVED = "approved"
    BLOCKED = "blocked"
    REVIEW = "review"

    @classmethod
    def _missing_(cls, value: object) -> Decision:
        raise ValidationError(
            f"invalid decision: {value} (must be approved, blocked, or review)"
        )


class PaymentMethod(StrEnum):
    CARD = "card"
    WIRE = "wire"
    CRYPTO = "crypto"

    @classmethod
    def _missing_(cls, value: object) -> PaymentMethod:
        raise ValidationError(
            f"invalid payment method: {value} (must be card, wire, or crypto)"
        )


@dataclass(frozen=True)
class Coordinate:
    lat: float = 0.0
    lng: float = 0.0

    @classmethod
    def of(cls, lat: float, lng: float) -> Coordinate:
        """Build a coordinate, checking latitude and longitude ranges."""
        if not -90 <= lat <= 90:
            raise ValidationError(f"latitude must be between -90 and 90, got {lat:f}")
        if not -180 <= lng <= 180:
            raise ValidationError(
                f"longitude must be between -180 and 180, got {lng:f}"
            )
        return cls(lat, lng)

    def distance_km(self, other: Coordinate) -> float:
        """Great-circle distance in kilometres (haversine formula)."""
        lat1 = math.radians(self.lat)
        lat2 = math.radians(other.lat)
        d_lat = math.radians(other.lat - self.lat)
        d_lng = math.radians(other.lng - self.lng)
        a = (
            math.sin(d_lat / 2) ** 2
            + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
        )
        return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


@dataclass(frozen=True)
class Money:
    amount: float = 0.0
    currency: str = ""

    @classmethod
    def of(cls, amount: float, currency: str) -> Money:
        """Build a positive amount in a supported currency."""
        if amount <= 0:
            raise ValidationError(f"amount must be non-negative, got {amount:f}")
        if currency not in VALID_CURRENCIES:
            raise ValidationError(f"invalid currency: {currency}")
        return cls(amount, currency)


@dataclass(frozen=True)
class RiskScore:
    value: int = 0

    def __post_init__(self) -> None:
        if not 0 <= self.value <= MAX_RISK_SCORE:
            raise ValidationError(
                f"risk score must be between 0 and 100, got {self.value}"
            )

    def is_high_risk(self) -> bool:
        return self.value > 70

    def is_review(self) -> bool:
        return 40 <= self.value <= 70


@dataclass(frozen=True)
class RuleResult:
    rule_name: str
    triggered: bool
    score: int
    reason: str = ""
    fallback: bool = False

    @classmethod
    def create(
        cls, rule_name: str, triggered: bool, score: int, reason: str
    ) -> RuleResult:
        """Build a checked rule result."""
        if not rule_name:
            raise ValidationError("rule name must not be empty")
        if not 0 <= score <= 100:
            raise ValidationError(f"rule score must be between 0 and 100, got {score}")
        if triggered and not reason:
            raise ValidationError("triggered rule must have a reason")
        return cls(rule_name, triggered, score, reason)

    @classmethod
    def fallback_result(
        cls, rule_name: str, score: int, error: BaseException | str
    ) -> RuleResult:
        """Result used when a rule could not be evaluated."""
        return cls(rule_name, True, score, f"fallback: {error}", fallback=True)


@dataclass(frozen=True)
class Transaction:
    id: str = ""
    amount: Money = Money()
    sender_id: str = ""
    receiver_id: str = ""
    device_id: str = ""
    ip: str = ""
    location: Coordinate = Coordinate()
    timestamp: datetime | None = None
    payment_method: PaymentMethod | None = None

    @classmethod
    def create(
        cls,
        id: str,
        amount: Money,
        sender_id: str,
        receiver_id: str,
        device_id: str,
        ip: str,
        location: Coordinate,
        timestamp: datetime | None,
        payment_method: PaymentMethod,
    ) -> Transaction:
        """Build a checked transaction."""
        if not id:
            raise ValidationError("transaction ID must not be empty")
        if not sender_id:
            raise ValidationError("sender ID must not be empty")
        if not receiver_id:
            raise ValidationError("receiver ID must not be empty")
        if sender_id == receiver_id:
            raise ValidationError("sender and receiver must be different")
        if timestamp is None:
            raise ValidationError("timestamp must not be zero")
        return cls(
            id=id,
            amount=amount,
            sender_id=sender_id,
            receiver_id=receiver_id,
            device_id=device_id,
            ip=ip,
            location=location,
            timestamp=timestamp,
            payment_method=payment_method,
        )


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, RiskScore):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, RuleResult):
        return asdict(value)
    if isinstance(value, (list, tuple)):
        return [_encode(item) for item in value]
    return value


@dataclass(frozen=True)
class DomainEvent:
    """Base of all events raised by the domain."""

    event_name: ClassVar[str] = ""

    @property
    def occurred_at(self) -> datetime:
        return getattr(self, "timestamp")

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready representation of the event."""
        return {f.name: _encode(getattr(self, f.name)) for f in fields(self)}


@dataclass(frozen=True)
class AssessmentCompletedEvent(DomainEvent):
    event_name: ClassVar[str] = "assessment.completed"

    transaction_id: str
    decision: Decision
    risk_score: RiskScore
    timestamp: datetime

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AssessmentCompletedEvent:
        """Rebuild an event from the form produced by to_dict."""
        try:
            return cls(
                transaction_id=str(data["transaction_id"]),
                decision=Decision(data["decision"]),
                risk_score=RiskScore(int(data["risk_score"])),
                timestamp=datetime.fromisoformat(data["timestamp"]),
            )
        except ValidationError:
            raise
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"malformed assessment event: {exc}") from exc


@dataclass(frozen=True)
class FraudDetectedEvent(DomainEvent):
    event_name: ClassVar[str] = "fraud.detected"

    transaction_id: str
    risk_score: RiskScore
    rule_results: tuple[RuleResult, ...]
    timestamp: datetime


@dataclass(frozen=True)
class AssessmentUpdatedEvent(DomainEvent):
    event_name: ClassVar[str] = "assessment.updated"

    transaction_id: str
    previous_decision: Decision
    new_decision: Decision
    risk_score: RiskScore
    slow_path_rules: tuple[RuleResult, ...]
    timestamp: datetime


def compute_risk_score(results: Iterable[RuleResult]) -> RiskScore:
    """Sum the scores of triggered rules, capped at 100."""
    total = sum(r.score for r in results if r.triggered)
    return RiskScore(min(total, MAX_RISK_SCORE))


def derive_decision(score: RiskScore, results: Iterable[RuleResult]) -> Decision:
    """Decide from the total score; any critical triggered rule blocks outright."""
    if any(r.triggered and r.score >= CRITICAL_RULE_SCORE for r in results):
        return Decision.BLOCKED
    if score.is_high_risk():
        return Decision.BLOCKED
    if score.is_review():
        return Decision.REVIEW
    return Decision.APPROVED


@dataclass(frozen=True)
class FraudAssessment:
    transaction_id: str
    rule_results: tuple[RuleResult, ...]
    risk_score: RiskScore
    decision: Decision
    events: tuple[DomainEvent, ...] = field(default=(), repr=False)

    @classmethod
    def create(
        cls,
        transaction_id: str,
        rule_results: Iterable[RuleResult] | None,
        now: datetime,
    ) -> FraudAssessment:
        """Score the rule results, decide, and record the resulting events."""
        if not transaction_id:
            raise ValidationError("transaction ID must not be empty")
        results = tuple(rule_results or ())
        if not results:
            raise ValidationError("at least one rule result is required")

        score = compute_risk_score(results)
        decision = derive_decision(score, results)

        events: list[DomainEvent] = [
            AssessmentCompletedEvent(transaction_id, decision, score, now)
        ]
        if decision is Decision.BLOCKED:
            events.append(FraudDetectedEvent(transaction_id, score, results, now))

        return cls(transaction_id, results, score, decision, tuple(events))