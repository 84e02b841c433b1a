"""Service metrics rendered in the Prometheus text exposition format."""

from __future__ import annotations

import bisect
import math
import threading
from collections.abc import Sequence

from fraudguard.domain import Decision


def _fmt(value: float) -> str:
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def _labels(names: Sequence[str], values: Sequence[str]) -> str:
    if not names:
        return ""
    escaped = (
        v.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n") for v in values
    )
    return "{" + ",".join(f'{n}="{v}"' for n, v in zip(names, escaped)) + "}"


class _Family:
    kind = "counter"

    def __init__(self, name: str, help_text: str, labelnames: Sequence[str] = ()) -> None:
        self.name = name
        self.help = help_text
        self.labelnames = tuple(labelnames)
        self.values: dict[tuple[str, ...], float] = {} if labelnames else {(): 0.0}

    def inc(self, *labels: str, amount: float = 1.0) -> None:
        self.values[labels] = self.values.get(labels, 0.0) + amount

    def set(self, value: float, *labels: str) -> None:
        self.values[labels] = value

    def samples(self) -> list[str]:
        return [
            f"{self.name}{_labels(self.labelnames, k)} {_fmt(v)}"
            for k, v in sorted(self.values.items())
        ]

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.help}", f"# TYPE {self.name} {self.kind}"]
        return "\n".join(lines + self.samples())


class _Gauge(_Family):
    kind = "gauge"


class _Histogram(_Family):
    kind = "histogram"

    def __init__(self, name: str, help_text: str, buckets: Sequence[float]) -> None:
        super().__init__(name, help_text)
        self.buckets = sorted(buckets)
        self.bucket_counts = [0] * len(self.buckets)
        self.total = 0.0
        self.count = 0

    def observe(self, value: float) -> None:
        index = bisect.bisect_left(self.buckets, value)
        if index < len(self.buckets):
            self.bucket_counts[index] += 1
        self.total += value
        self.count += 1

    def samples(self) -> list[str]:
        lines = []
        cumulative = 0
        for bound, n in zip(self.buckets, self.bucket_counts):
            cumulative += n
            lines.append(f'{self.name}_bucket{{le="{_fmt(bound)}"}} {cumulative}')
        lines.append(f'{self.name}_bucket{{le="+Inf"}} {self.count}')
        lines.append(f"{self.name}_sum {_fmt(self.total)}")
        lines.append(f"{self.name}_count {self.count}")
        return lines


class Metrics:
    """All fraud-detection metrics; implements every metrics port."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._assessment_duration = _Histogram(
            "fraud_assessment_duration_seconds",
            "Duration of fraud assessment in seconds.",
            [0.005, 0.01, 0.02, 0.05, 0.1],
        )
        self._rule_triggered = _Family(
            "fraud_rule_triggered_total", "Total number of triggered fraud rules.", ["rule_name"]
        )
        self._rule_fallback = _Family(
            "fraud_rule_fallback_total",
            "Total number of rule fallbacks due to errors.",
            ["rule_name"],
        )
        self._decision_total = _Family(
            "fraud_decision_total", "Total fraud decisions by type.", ["decision"]
        )
        self._config_refresh = _Family(
            "fraud_config_refresh_total", "Total config refresh attempts by status.", ["status"]
        )
        self._cb_transitions = _Family(
            "fraud_circuit_breaker_transitions",
            "Circuit breaker state transitions.",
            ["name", "from", "to"],
        )
        self._worker_panics = _Family(
            "fraud_worker_panics_total", "Total worker panics recovered."
        )
        self._worker_messages = _Family(
            "fraud_worker_messages_total",
            "Total worker messages processed by status.",
            ["success"],
        )
        self._worker_dlq = _Family(
            "fraud_worker_dlq_total", "Total messages sent to dead letter queue."
        )
        self._outbox_pending = _Gauge(
            "fraud_outbox_pending_total", "Current number of pending outbox entries in batch."
        )
        self._outbox_published = _Family(
            "fraud_outbox_published_total", "Total outbox entries successfully published."
        )
        self._outbox_dead = _Family(
            "fraud_outbox_dead_total", "Total outbox entries moved to dead letter."
        )
        self._families: list[_Family] = [
            self._assessment_duration,
            self._rule_triggered,
            self._rule_fallback,
            self._decision_total,
            self._config_refresh,
            self._cb_transitions,
            self._worker_panics,
            self._worker_messages,
            self._worker_dlq,
            self._outbox_pending,
            self._outbox_published,
            self._outbox_dead,
        ]

    def assessment_duration(self, seconds: float) -> None:
        with self._lock:
            self._assessment_duration.observe(seconds)

    def decision_made(self, decision: Decision | str) -> None:
        with self._lock:
            self._decision_total.inc(str(Decision(decision).value))

    def rule_triggered(self, rule_name: str) -> None:
        with self._lock:
            self._rule_triggered.inc(rule_name)

    def rule_fallback(self, rule_name: str) -> None:
        with self._lock:
            self._rule_fallback.inc(rule_name)

    def config_refresh_success(self) -> None:
        with self._lock:
            self._config_refresh.inc("success")

    def config_refresh_error(self) -> None:
        with self._lock:
            self._config_refresh.inc("error")

    def circuit_breaker_state_change(self, name: str, from_state: str, to_state: str) -> None:
        with self._lock:
            self._cb_transitions.inc(name, str(from_state), str(to_state))

    def worker_panic(self, worker_id: int) -> None:
        with self._lock:
            self._worker_panics.inc()

    def worker_message_processed(self, success: bool) -> None:
        with self._lock:
            self._worker_messages.inc("true" if success else "false")

    def worker_dlq(self, transaction_id: str) -> None:
        with self._lock:
            self._worker_dlq.inc()

    def outbox_pending(self, count: int) -> None:
        with self._lock:
            self._outbox_pending.set(float(count))

    def outbox_published(self) -> None:
        with self._lock:
            self._outbox_published.inc()

    def outbox_dead(self) -> None:
        with self._lock:
            self._outbox_dead.inc()

    def render(self) -> str:
        """All metrics in the Prometheus text format."""
        with self._lock:
            return "\n".join(f.render() for f in self._families) + "\n"