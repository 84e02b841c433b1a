"""Slow-path assessment: deeper rules run after the fast decision has been made."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timezone

from fraudguard.assessor import evaluate_rules
from fraudguard.domain import (
    MAX_RISK_SCORE,
    AssessmentCompletedEvent,
    AssessmentUpdatedEvent,
    Decision,
    FraudDetectedEvent,
    RiskScore,
    RuleResult,
    Transaction,
    derive_decision,
)
from fraudguard.ports import (
    ConfigRepository,
    EventPublisher,
    IdempotencyStore,
    LocationRepository,
    Rule,
    RuleMetrics,
    WebhookNotifier,
)
from fraudguard.rules import LocationRule, PatternRule

_log = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def derive_slow_path_decision(
    score: RiskScore, results: Iterable[RuleResult]
) -> Decision:
    """Decide from the combined score; a critical triggered rule blocks outright."""
    return derive_decision(score, results)


class SlowPathAssessor:
    """Re-assesses completed fast-path decisions and publishes any override."""

    def __init__(
        self,
        location_repo: LocationRepository,
        config: ConfigRepository,
        publisher: EventPublisher,
        notifier: WebhookNotifier,
        idempotency: IdempotencyStore,
        rule_metrics: RuleMetrics,
        logger: logging.Logger | None = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._location_repo = location_repo
        self._config = config
        self._publisher = publisher
        self._notifier = notifier
        self._idempotency = idempotency
        self._rule_metrics = rule_metrics
        self._logger = logger or _log
        self._now = now

    def _build_slow_rules(self) -> list[Rule]:
        cfg = self._config
        loads = (
            (cfg.get_float, "rules.location.max_distance_km", "location max distance"),
            (cfg.get_int, "rules.location.score", "location score"),
            (cfg.get_int, "rules.location.fallback_score", "location fallback score"),
            (cfg.get_int, "rules.pattern.score", "pattern score"),
            (cfg.get_int, "rules.pattern.fallback_score", "pattern fallback score"),
        )
        values = []
        for getter, key, what in loads:
            try:
                values.append(getter(key))
            except Exception as exc:
                exc.add_note(f"loading {what}")
                raise
        max_km, loc_score, loc_fallback, pattern_score, pattern_fallback = values
        return [
            LocationRule(self._location_repo, max_km, loc_score, loc_fallback),
            PatternRule(pattern_score, pattern_fallback),
        ]

    def process(self, event: AssessmentCompletedEvent) -> None:
        """Run the slow rules and publish an update when the decision changes."""
        try:
            rules = self._build_slow_rules()
        except Exception as exc:
            exc.add_note("building slow path rules")
            raise

        # Only the identifiers are known here; the full transaction is not stored.
        tx = Transaction(id=event.transaction_id, sender_id=event.transaction_id)
        results = evaluate_rules(rules, tx, self._rule_metrics)

        combined = event.risk_score.value + sum(r.score for r in results if r.triggered)
        new_score = RiskScore(min(combined, MAX_RISK_SCORE))
        new_decision = derive_slow_path_decision(new_score, results)

        if new_decision == event.decision:
            return

        tx_id = event.transaction_id
        self._logger.info(
            "slow path decision override: transaction_id=%s fast_decision=%s "
            "slow_decision=%s combined_score=%d",
            tx_id,
            event.decision.value,
            new_decision.value,
            new_score.value,
        )

        updated = AssessmentUpdatedEvent(
            transaction_id=tx_id,
            previous_decision=event.decision,
            new_decision=new_decision,
            risk_score=new_score,
            slow_path_rules=tuple(results),
            timestamp=self._now(),
        )
        try:
            self._publisher.publish(updated)
        except Exception as exc:
            self._logger.error(
                "failed to publish updated event: transaction_id=%s error=%s", tx_id, exc
            )

        if new_decision is Decision.BLOCKED:
            detected = FraudDetectedEvent(
                transaction_id=tx_id,
                risk_score=new_score,
                rule_results=tuple(results),
                timestamp=self._now(),
            )
            try:
                self._publisher.publish(detected)
            except Exception as exc:
                self._logger.error(
                    "failed to publish fraud detected event: transaction_id=%s error=%s",
                    tx_id,
                    exc,
                )

        # Later reads of this transaction see the slow-path result.
        try:
            self._idempotency.set(tx_id, new_decision.value.encode())
        except Exception as exc:
            self._logger.warning(
                "idempotency update failed: transaction_id=%s error=%s", tx_id, exc
            )

        try:
            self._notifier.notify(tx_id, new_decision, new_score)
        except Exception as exc:
            self._logger.warning(
                "webhook notification failed: transaction_id=%s error=%s", tx_id, exc
            )