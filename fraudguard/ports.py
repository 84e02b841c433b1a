"""Interfaces the domain and application layers depend on."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any, Protocol

from fraudguard.domain import (
    Coordinate,
    Decision,
    DomainEvent,
    RiskScore,
    RuleResult,
    Transaction,
)


class TransactionCounter(Protocol):
    def count_by_sender(self, sender_id: str, since: datetime) -> int:
        """Number of transactions by the sender since the given time."""
        ...


class DeviceRepository(Protocol):
    def is_known_device(self, sender_id: str, device_id: str) -> bool:
        """Whether the device is trusted for the sender."""
        ...


class ConfigRepository(Protocol):
    def get_float(self, key: str) -> float:
        """Float value of a configuration key."""
        ...

    def get_int(self, key: str) -> int:
        """Integer value of a configuration key."""
        ...


class ConfigSource(Protocol):
    def load_all(self) -> dict[str, str]:
        """All raw configuration values from the persistent store."""
        ...


class IdempotencyStore(Protocol):
    def get(self, key: str) -> bytes | None:
        """Stored value for the key, or None when absent."""
        ...

    def set(self, key: str, value: bytes) -> None:
        """Store the value unless the key already exists."""
        ...


class EventPublisher(Protocol):
    def publish(self, event: DomainEvent) -> None:
        """Publish a domain event to the message broker."""
        ...


class LocationRepository(Protocol):
    def get_last_location(self, sender_id: str) -> Coordinate:
        """Last known location of the sender."""
        ...


class WebhookNotifier(Protocol):
    def notify(
        self, transaction_id: str, decision: Decision, risk_score: RiskScore
    ) -> None:
        """Send a notification about a changed fraud decision."""
        ...


class Rule(Protocol):
    name: str
    fallback_score: int

    def evaluate(self, tx: Transaction) -> RuleResult:
        """Evaluate the rule; raise when the rule cannot be evaluated."""
        ...


class RuleFactory(Protocol):
    def build(self, tx: Transaction) -> Sequence[Rule]:
        """Rules to apply to the transaction."""
        ...


class RuleMetrics(Protocol):
    def rule_fallback(self, rule_name: str) -> None: ...

    def rule_triggered(self, rule_name: str) -> None: ...


class AssessmentMetrics(Protocol):
    def assessment_duration(self, seconds: float) -> None: ...

    def decision_made(self, decision: Decision) -> None: ...


class ConfigMetrics(Protocol):
    def config_refresh_success(self) -> None: ...

    def config_refresh_error(self) -> None: ...


class CircuitBreakerMetrics(Protocol):
    def circuit_breaker_state_change(
        self, name: str, from_state: str, to_state: str
    ) -> None: ...


class WorkerMetrics(Protocol):
    def worker_panic(self, worker_id: int) -> None: ...

    def worker_message_processed(self, success: bool) -> None: ...

    def worker_dlq(self, transaction_id: str) -> None: ...


class OutboxMetrics(Protocol):
    def outbox_pending(self, count: int) -> None: ...

    def outbox_published(self) -> None: ...

    def outbox_dead(self) -> None: ...


class TxHandle(Protocol):
    def execute(self, query: str, *args: Any) -> int:
        """Run a statement inside the transaction; return rows affected."""
        ...

    def query_row(self, query: str, *args: Any) -> tuple[Any, ...] | None:
        """Run a query inside the transaction; return its first row."""
        ...


class UnitOfWork(Protocol):
    def begin(self) -> TxHandle:
        """Start an atomic database transaction."""
        ...

    def commit(self, tx: TxHandle) -> None: ...

    def rollback(self, tx: TxHandle) -> None: ...