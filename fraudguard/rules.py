"""Fraud rules applied to transactions on the fast and slow paths."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import ClassVar

from fraudguard.domain import RuleResult, Transaction
from fraudguard.ports import DeviceRepository, LocationRepository, TransactionCounter


class RuleError(RuntimeError):
    """Raised when a rule cannot be evaluated because a dependency failed."""


@dataclass(frozen=True)
class VelocityRule:
    """Triggers when a sender makes too many transactions within a time window."""

    name: ClassVar[str] = "velocity"

    counter: TransactionCounter
    max_count: int
    window_minutes: int
    score: int
    fallback_score: int

    def evaluate(self, tx: Transaction) -> RuleResult:
        if tx.timestamp is None:
            raise RuleError("velocity rule: transaction has no timestamp")
        since = tx.timestamp - timedelta(minutes=self.window_minutes)

        try:
            count = self.counter.count_by_sender(tx.sender_id, since)
        except Exception as exc:
            raise RuleError(f"velocity rule: counting transactions: {exc}") from exc

        if count >= self.max_count:
            return RuleResult.create(
                self.name,
                True,
                self.score,
                f"sender {tx.sender_id} made {count} transactions in "
                f"{self.window_minutes} minutes (limit: {self.max_count})",
            )
        return RuleResult.create(self.name, False, 0, "")


@dataclass(frozen=True)
class AmountRule:
    """Triggers on large amounts; amounts above three times the threshold are critical."""

    name: ClassVar[str] = "amount"

    threshold: float
    score: int
    critical_score: int
    fallback_score: int

    def evaluate(self, tx: Transaction) -> RuleResult:
        amount = tx.amount.amount
        if amount > self.threshold:
            score = self.critical_score if amount > self.threshold * 3 else self.score
            return RuleResult.create(
                self.name,
                True,
                score,
                f"amount {amount:.2f} {tx.amount.currency} "
                f"exceeds threshold {self.threshold:.2f}",
            )
        return RuleResult.create(self.name, False, 0, "")


@dataclass(frozen=True)
class DeviceRule:
    """Triggers when the device is missing or not known for the sender."""

    name: ClassVar[str] = "device"

    devices: DeviceRepository
    missing_score: int
    unknown_score: int
    fallback_score: int

    def evaluate(self, tx: Transaction) -> RuleResult:
        if not tx.device_id:
            return RuleResult.create(
                self.name, True, self.missing_score, "no device ID provided"
            )

        try:
            known = self.devices.is_known_device(tx.sender_id, tx.device_id)
        except Exception as exc:
            raise RuleError(f"device rule: checking device: {exc}") from exc

        if not known:
            return RuleResult.create(
                self.name,
                True,
                self.unknown_score,
                f"device {tx.device_id} not recognized for sender {tx.sender_id}",
            )
        return RuleResult.create(self.name, False, 0, "")


@dataclass(frozen=True)
class LocationRule:
    """Triggers on impossible travel from the sender's last known location."""

    name: ClassVar[str] = "location"

    locations: LocationRepository
    max_distance_km: float
    score: int
    fallback_score: int

    def evaluate(self, tx: Transaction) -> RuleResult:
        try:
            last = self.locations.get_last_location(tx.sender_id)
        except Exception as exc:
            raise RuleError(f"location rule: getting last location: {exc}") from exc

        distance = last.distance_km(tx.location)
        if distance > self.max_distance_km:
            return RuleResult.create(
                self.name,
                True,
                self.score,
                f"impossible travel: {distance:.0f}km from last location "
                f"(limit: {self.max_distance_km:.0f}km)",
            )
        return RuleResult.create(self.name, False, 0, "")


@dataclass(frozen=True)
class PatternRule:
    """Slot for deep pattern analysis; it currently never triggers."""

    name: ClassVar[str] = "pattern"

    score: int
    fallback_score: int

    def evaluate(self, tx: Transaction) -> RuleResult:
        return RuleResult.create(self.name, False, 0, "")