"""Circuit breaking for calls to fragile dependencies."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from enum import StrEnum
from typing import TypeVar

from fraudguard.domain import CircuitOpenError
from fraudguard.ports import CircuitBreakerMetrics, DeviceRepository, TransactionCounter

_log = logging.getLogger(__name__)
T = TypeVar("T")


class BreakerState(StrEnum):
    CLOSED = "closed"
    HALF_OPEN = "half-open"
    OPEN = "open"


@dataclass
class Counts:
    """Request statistics of the breaker's current generation."""

    requests: int = 0
    total_successes: int = 0
    total_failures: int = 0
    consecutive_successes: int = 0
    consecutive_failures: int = 0

    def _success(self) -> None:
        self.total_successes += 1
        self.consecutive_successes += 1
        self.consecutive_failures = 0

    def _failure(self) -> None:
        self.total_failures += 1
        self.consecutive_failures += 1
        self.consecutive_successes = 0


class BreakerRejectedError(RuntimeError):
    """Raised when the breaker refuses a call without making it."""

    def __init__(self, name: str, state: BreakerState) -> None:
        reason = "circuit breaker is open" if state is BreakerState.OPEN else "too many requests"
        super().__init__(reason)
        self.name = name
        self.state = state


def _default_ready_to_trip(counts: Counts) -> bool:
    return counts.consecutive_failures > 5


class CircuitBreaker:
    """Closed, open and half-open breaker with a cyclic counting interval."""

    def __init__(
        self,
        name: str,
        max_requests: int = 1,
        interval: float = 0.0,
        timeout: float = 60.0,
        ready_to_trip: Callable[[Counts], bool] | None = None,
        on_state_change: Callable[[str, BreakerState, BreakerState], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._max_requests = max_requests if max_requests > 0 else 1
        self._interval = interval if interval > 0 else 0.0
        self._timeout = timeout if timeout > 0 else 60.0
        self._ready_to_trip = ready_to_trip or _default_ready_to_trip
        self._on_state_change = on_state_change
        self._clock = clock
        self._lock = threading.RLock()
        self._state = BreakerState.CLOSED
        self._generation = 0
        self._counts = Counts()
        self._expiry: float | None = None
        self._new_generation(clock())

    def _new_generation(self, now: float) -> None:
        self._generation += 1
        self._counts = Counts()
        if self._state is BreakerState.CLOSED:
            self._expiry = now + self._interval if self._interval else None
        elif self._state is BreakerState.OPEN:
            self._expiry = now + self._timeout
        else:
            self._expiry = None

    def _set_state(self, state: BreakerState, now: float) -> None:
        if self._state is state:
            return
        previous = self._state
        self._state = state
        self._new_generation(now)
        if self._on_state_change is not None:
            self._on_state_change(self.name, previous, state)

    def _current(self, now: float) -> tuple[BreakerState, int]:
        expired = self._expiry is not None and self._expiry < now
        if self._state is BreakerState.CLOSED and expired:
            self._new_generation(now)
        elif self._state is BreakerState.OPEN and expired:
            self._set_state(BreakerState.HALF_OPEN, now)
        return self._state, self._generation

    def state(self) -> BreakerState:
        with self._lock:
            return self._current(self._clock())[0]

    def _before_request(self) -> int:
        with self._lock:
            state, generation = self._current(self._clock())
            if state is BreakerState.OPEN:
                raise BreakerRejectedError(self.name, state)
            if state is BreakerState.HALF_OPEN and self._counts.requests >= self._max_requests:
                raise BreakerRejectedError(self.name, state)
            self._counts.requests += 1
            return generation

    def _after_request(self, before: int, success: bool) -> None:
        with self._lock:
            now = self._clock()
            state, generation = self._current(now)
            if generation != before:
                return
            if success:
                self._counts._success()
                if (
                    state is BreakerState.HALF_OPEN
                    and self._counts.consecutive_successes >= self._max_requests
                ):
                    self._set_state(BreakerState.CLOSED, now)
            elif state is BreakerState.HALF_OPEN:
                self._set_state(BreakerState.OPEN, now)
            else:
                self._counts._failure()
                if self._ready_to_trip(replace(self._counts)):
                    self._set_state(BreakerState.OPEN, now)

    def execute(self, func: Callable[[], T]) -> T:
        """Call func through the breaker; any exception counts as a failure."""
        generation = self._before_request()
        try:
            result = func()
        except BaseException:
            self._after_request(generation, False)
            raise
        self._after_request(generation, True)
        return result


def new_breaker(name: str, metrics: CircuitBreakerMetrics) -> CircuitBreaker:
    """Breaker that opens when more than half of at least 20 requests fail."""

    def ready_to_trip(counts: Counts) -> bool:
        if counts.requests < 20:
            return False
        return counts.total_failures / counts.requests > 0.5

    def on_state_change(breaker: str, from_state: BreakerState, to_state: BreakerState) -> None:
        _log.warning("circuit breaker %s: %s → %s", breaker, from_state.value, to_state.value)
        metrics.circuit_breaker_state_change(breaker, from_state.value, to_state.value)

    return CircuitBreaker(
        name,
        max_requests=3,
        interval=10.0,
        timeout=5.0,
        ready_to_trip=ready_to_trip,
        on_state_change=on_state_change,
    )


def _guarded(breaker: CircuitBreaker, func: Callable[[], T]) -> T:
    try:
        return breaker.execute(func)
    except BreakerRejectedError as exc:
        raise CircuitOpenError(f"circuit breaker is open: {exc}") from exc


class CircuitBreakerTransactionCounter:
    """Transaction counter guarded by a circuit breaker."""

    def __init__(self, inner: TransactionCounter, metrics: CircuitBreakerMetrics) -> None:
        self._inner = inner
        self._breaker = new_breaker("transaction-counter", metrics)

    def count_by_sender(self, sender_id: str, since: datetime) -> int:
        return _guarded(self._breaker, lambda: self._inner.count_by_sender(sender_id, since))


class CircuitBreakerDeviceRepository:
    """Device repository guarded by a circuit breaker."""

    def __init__(self, inner: DeviceRepository, metrics: CircuitBreakerMetrics) -> None:
        self._inner = inner
        self._breaker = new_breaker("device-repository", metrics)

    def is_known_device(self, sender_id: str, device_id: str) -> bool:
        return _guarded(
            self._breaker, lambda: self._inner.is_known_device(sender_id, device_id)
        )