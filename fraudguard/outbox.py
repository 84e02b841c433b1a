"""Relays stored outbox entries to the message broker."""

from __future__ import annotations

import logging
import threading
from typing import Protocol

from fraudguard.messaging import SUBJECT_DLQ, SUBJECT_PREFIX
from fraudguard.ports import OutboxMetrics
from fraudguard.postgres import OutboxEntry, OutboxRepository

OUTBOX_BATCH_SIZE = 100
OUTBOX_MAX_RETRIES = 3

_log = logging.getLogger(__name__)


class _Broker(Protocol):
    def publish(self, subject: str, data: bytes) -> None: ...


class OutboxPoller:
    """Publishes pending outbox entries, retrying and dead-lettering failures.

    Used as a context manager it polls in a background thread until the block exits.
    """

    def __init__(
        self,
        outbox: OutboxRepository,
        conn: _Broker,
        metrics: OutboxMetrics,
        logger: logging.Logger | None = None,
        interval: float = 1.0,
    ) -> None:
        self._outbox = outbox
        self._conn = conn
        self._metrics = metrics
        self._logger = logger or _log
        self._interval = interval
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    def __enter__(self) -> OutboxPoller:
        self._stopped.clear()
        self._thread = threading.Thread(target=self.run, name="outbox-poller", daemon=True)
        self._thread.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._stopped.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def run(self) -> None:
        """Poll every interval until the poller is stopped."""
        self._logger.info("outbox poller started")
        while not self._stopped.wait(self._interval):
            self.poll()
        self._logger.info("outbox poller stopping")

    def poll(self) -> None:
        """Process one batch of pending entries."""
        try:
            entries = self._outbox.get_pending(OUTBOX_BATCH_SIZE)
        except Exception as exc:
            self._logger.error("outbox poll failed: error=%s", exc)
            return
        if not entries:
            return

        self._metrics.outbox_pending(len(entries))
        for entry in entries:
            self.process_entry(entry)

    def process_entry(self, entry: OutboxEntry) -> None:
        if entry.retry_count >= OUTBOX_MAX_RETRIES:
            self._handle_dead(entry)
            return

        subject = f"{SUBJECT_PREFIX}.{entry.event_type}"
        try:
            self._conn.publish(subject, entry.payload)
        except Exception as exc:
            self._logger.warning(
                "outbox publish failed: outbox_id=%s event_type=%s error=%s",
                entry.id,
                entry.event_type,
                exc,
            )
            try:
                self._outbox.mark_failed(entry.id, exc)
            except Exception as mark_exc:
                self._logger.error(
                    "outbox mark failed failed: outbox_id=%s error=%s", entry.id, mark_exc
                )
            return

        try:
            self._outbox.mark_published(entry.id)
        except Exception as exc:
            self._logger.error(
                "outbox mark published failed: outbox_id=%s error=%s", entry.id, exc
            )
            return

        self._metrics.outbox_published()

    def _handle_dead(self, entry: OutboxEntry) -> None:
        try:
            self._conn.publish(SUBJECT_DLQ, entry.payload)
        except Exception as exc:
            self._logger.error("outbox DLQ publish failed: outbox_id=%s error=%s", entry.id, exc)

        try:
            self._outbox.mark_dead(entry.id)
        except Exception as exc:
            self._logger.error("outbox mark dead failed: outbox_id=%s error=%s", entry.id, exc)
            return

        self._logger.warning(
            "outbox entry moved to DLQ: outbox_id=%s event_type=%s retry_count=%d",
            entry.id,
            entry.event_type,
            entry.retry_count,
        )
        self._metrics.outbox_dead()