"""Publishing domain events to, and consuming them from, the message broker."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Any, Protocol

from fraudguard.domain import AssessmentCompletedEvent, DomainEvent, ValidationError

SUBJECT_PREFIX = "fraud.assessment"
SUBJECT_COMPLETED = "fraud.assessment.assessment.completed"
SUBJECT_DLQ = "fraud.assessment.dlq"
QUEUE_GROUP = "fraud-workers"
MAX_REDELIVERY = 3
REDELIVERY_HEADER = "Nats-Num-Delivered"

_log = logging.getLogger(__name__)
_LEADING_INT = re.compile(r"\s*([+-]?\d+)")

MessageHandler = Callable[[AssessmentCompletedEvent], None]


class _Subscription(Protocol):
    def drain(self) -> None: ...


class _Message(Protocol):
    subject: str
    data: bytes
    header: Mapping[str, str] | None
    sub: object | None

    def ack(self) -> None: ...

    def nak(self) -> None: ...


class _Connection(Protocol):
    def publish(self, subject: str, data: bytes) -> None: ...

    def queue_subscribe(
        self, subject: str, queue: str, callback: Callable[[Any], None]
    ) -> _Subscription: ...


class Publisher:
    """Publishes domain events as JSON under fraud.assessment.<event name>."""

    def __init__(self, conn: _Connection, logger: logging.Logger | None = None) -> None:
        self._conn = conn
        self._logger = logger or _log

    def publish(self, event: DomainEvent) -> None:
        try:
            data = json.dumps(event.to_dict()).encode()
        except (TypeError, ValueError) as exc:
            exc.add_note(f"marshaling event {event.event_name}")
            raise

        subject = f"{SUBJECT_PREFIX}.{event.event_name}"
        try:
            self._conn.publish(subject, data)
        except Exception as exc:
            self._logger.error(
                "publish failed: subject=%s event=%s error=%s",
                subject,
                event.event_name,
                exc,
            )
            exc.add_note(f"publishing to {subject}")
            raise
        self._logger.debug("event published: subject=%s event=%s", subject, event.event_name)


def redelivery_count(msg: _Message) -> int:
    """Delivery count from the message header, or 0 when absent or unreadable."""
    header = msg.header
    if not header:
        return 0
    value = header.get(REDELIVERY_HEADER) or ""
    match = _LEADING_INT.match(value)
    return int(match.group(1)) if match else 0


class Consumer:
    """Consumes completed assessments in a queue group, with a dead-letter queue."""

    def __init__(self, conn: _Connection, logger: logging.Logger | None = None) -> None:
        self._conn = conn
        self._logger = logger or _log
        self._sub: _Subscription | None = None

    def subscribe(self, handler: MessageHandler) -> None:
        try:
            self._sub = self._conn.queue_subscribe(
                SUBJECT_COMPLETED, QUEUE_GROUP, lambda msg: self.handle_message(msg, handler)
            )
        except Exception as exc:
            exc.add_note(f"subscribing to {SUBJECT_COMPLETED}")
            raise

    def handle_message(self, msg: _Message, handler: MessageHandler) -> None:
        """Decode, hand to the handler, then ack, nak or dead-letter the message."""
        try:
            event = AssessmentCompletedEvent.from_dict(json.loads(msg.data))
        except (ValueError, TypeError, AttributeError, ValidationError) as exc:
            self._logger.error(
                "failed to unmarshal event: subject=%s error=%s", msg.subject, exc
            )
            self._send_to_dlq(msg, "unmarshal_error", exc)
            return

        count = redelivery_count(msg)
        try:
            handler(event)
        except Exception as exc:
            self._logger.warning(
                "message processing failed: transaction_id=%s redelivery_count=%d error=%s",
                event.transaction_id,
                count,
                exc,
            )
            if count >= MAX_REDELIVERY:
                self._send_to_dlq(msg, "max_redelivery", exc)
                return
            if msg.sub is not None:
                msg.nak()
            return

        msg.ack()

    def _send_to_dlq(self, msg: _Message, reason: str, error: BaseException) -> None:
        payload = json.dumps(
            {
                "original_subject": msg.subject,
                "original_data": bytes(msg.data).decode("utf-8", errors="replace"),
                "reason": reason,
                "error": str(error),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        ).encode()
        try:
            self._conn.publish(SUBJECT_DLQ, payload)
        except Exception as exc:
            self._logger.error("failed to publish to DLQ: error=%s", exc)
        msg.ack()  # stop redelivery of the original

    def drain(self) -> None:
        if self._sub is not None:
            self._sub.drain()