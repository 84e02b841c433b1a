"""Fast-path fraud assessment: rule construction from config and evaluation."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime

from fraudguard.domain import FraudAssessment, RuleResult, Transaction
from fraudguard.ports import (
    AssessmentMetrics,
    ConfigRepository,
    DeviceRepository,
    Rule,
    RuleFactory,
    RuleMetrics,
    TransactionCounter,
)
from fraudguard.rules import AmountRule, DeviceRule, VelocityRule


class FraudRuleFactory:
    """Builds the fast-path rules from current configuration."""

    def __init__(
        self,
        counter: TransactionCounter,
        devices: DeviceRepository,
        config: ConfigRepository,
    ) -> None:
        self._counter = counter
        self._devices = devices
        self._config = config

    def _load(self, getter: Callable[[str], object], key: str, what: str):
        try:
            return getter(key)
        except Exception as exc:
            exc.add_note(f"loading {what}")
            raise

    def build(self, tx: Transaction) -> list[Rule]:
        cfg = self._config
        amount_threshold = self._load(
            cfg.get_float, "rules.amount.threshold", "amount threshold"
        )
        max_count = self._load(
            cfg.get_int, "rules.velocity.max_count", "velocity max count"
        )
        window_mins = self._load(
            cfg.get_int, "rules.velocity.window_minutes", "velocity window"
        )
        velocity_score = self._load(
            cfg.get_int, "rules.velocity.score", "velocity score"
        )
        velocity_fallback = self._load(
            cfg.get_int, "rules.velocity.fallback_score", "velocity fallback score"
        )
        amount_score = self._load(cfg.get_int, "rules.amount.score", "amount score")
        amount_critical = self._load(
            cfg.get_int, "rules.amount.critical_score", "amount critical score"
        )
        amount_fallback = self._load(
            cfg.get_int, "rules.amount.fallback_score", "amount fallback score"
        )
        device_missing = self._load(
            cfg.get_int, "rules.device.missing_score", "device missing score"
        )
        device_unknown = self._load(
            cfg.get_int, "rules.device.unknown_score", "device unknown score"
        )
        device_fallback = self._load(
            cfg.get_int, "rules.device.fallback_score", "device fallback score"
        )

        return [
            VelocityRule(
                self._counter, max_count, window_mins, velocity_score, velocity_fallback
            ),
            AmountRule(amount_threshold, amount_score, amount_critical, amount_fallback),
            DeviceRule(self._devices, device_missing, device_unknown, device_fallback),
        ]


def evaluate_rules(
    rules: Iterable[Rule], tx: Transaction, rule_metrics: RuleMetrics
) -> list[RuleResult]:
    """Evaluate every rule, substituting the fallback result for any that fails."""
    results: list[RuleResult] = []
    for rule in rules:
        try:
            result = rule.evaluate(tx)
        except Exception as exc:
            rule_metrics.rule_fallback(rule.name)
            results.append(RuleResult.fallback_result(rule.name, rule.fallback_score, exc))
            continue
        if result.triggered:
            rule_metrics.rule_triggered(rule.name)
        results.append(result)
    return results


class FraudAssessor:
    """Runs the fast-path rules against a transaction and records the outcome."""

    def __init__(
        self,
        factory: RuleFactory,
        rule_metrics: RuleMetrics,
        assessment_metrics: AssessmentMetrics,
        now: Callable[[], datetime],
    ) -> None:
        self._factory = factory
        self._rule_metrics = rule_metrics
        self._assessment_metrics = assessment_metrics
        self._now = now

    def assess(self, tx: Transaction) -> FraudAssessment:
        start = self._now()

        try:
            rules = self._factory.build(tx)
        except Exception as exc:
            exc.add_note("building rules")
            raise

        results = evaluate_rules(rules, tx, self._rule_metrics)
        assessment = FraudAssessment.create(tx.id, results, self._now())

        duration = self._now() - start
        self._assessment_metrics.assessment_duration(duration.total_seconds())
        self._assessment_metrics.decision_made(assessment.decision)
        return assessment