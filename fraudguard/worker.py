"""Pool that runs slow-path assessments for consumed events."""

from __future__ import annotations

import logging
import threading
from typing import Protocol

from fraudguard.domain import AssessmentCompletedEvent
from fraudguard.messaging import MessageHandler
from fraudguard.ports import WorkerMetrics

_log = logging.getLogger(__name__)

# Exceptions that indicate a bug rather than an expected processing failure.
_PANIC_TYPES = (
    AssertionError,
    AttributeError,
    IndexError,
    NameError,
    RecursionError,
    TypeError,
    ZeroDivisionError,
)


class _Consumer(Protocol):
    def subscribe(self, handler: MessageHandler) -> None: ...

    def drain(self) -> None: ...


class _Assessor(Protocol):
    def process(self, event: AssessmentCompletedEvent) -> None: ...


class WorkerPool:
    """Subscribes to completed assessments and hands each to the slow-path assessor."""

    def __init__(
        self,
        num_workers: int,
        consumer: _Consumer,
        assessor: _Assessor,
        metrics: WorkerMetrics,
        logger: logging.Logger | None = None,
    ) -> None:
        self._num_workers = num_workers
        self._consumer = consumer
        self._assessor = assessor
        self._metrics = metrics
        self._logger = logger or _log
        self._stopped = threading.Event()
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        try:
            self._consumer.subscribe(self.process)
        except Exception as exc:
            exc.add_note("subscribing consumer")
            raise

        self._logger.info("worker pool started: num_workers=%d", self._num_workers)
        self._stopped.clear()
        self._threads = [
            threading.Thread(
                target=self._run_worker, args=(worker_id,), name=f"fraud-worker-{worker_id}",
                daemon=True,
            )
            for worker_id in range(self._num_workers)
        ]
        for thread in self._threads:
            thread.start()

    def _run_worker(self, worker_id: int) -> None:
        self._logger.info("worker started: worker_id=%d", worker_id)
        self._stopped.wait()
        self._logger.info("worker stopping: worker_id=%d", worker_id)

    def process(self, event: AssessmentCompletedEvent) -> None:
        """Assess one event; programming errors are reported as panics."""
        try:
            self._assessor.process(event)
        except _PANIC_TYPES as exc:
            self._logger.error(
                "worker panic recovered: transaction_id=%s panic=%s",
                event.transaction_id,
                exc,
            )
            self._metrics.worker_panic(0)
            raise RuntimeError(f"panic: {exc}") from exc
        except Exception:
            self._metrics.worker_message_processed(False)
            raise
        self._metrics.worker_message_processed(True)

    def shutdown(self) -> None:
        """Drain the subscription and wait for the workers to stop."""
        self._logger.info("draining worker pool")
        try:
            self._consumer.drain()
        except Exception as exc:
            self._logger.error("consumer drain failed: error=%s", exc)

        self._stopped.set()
        for thread in self._threads:
            thread.join()
        self._threads = []
        self._logger.info("worker pool stopped")