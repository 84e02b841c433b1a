import threading
from datetime import datetime, timezone

from fraudguard.messaging import SUBJECT_COMPLETED, SUBJECT_DLQ
from fraudguard.outbox import OutboxPoller
from fraudguard.postgres import OutboxEntry

FIXED = datetime(2025, 1, 15, 10, 30, tzinfo=timezone.utc)


def entry(entry_id, event_type="assessment.completed", retry_count=0):
    return OutboxEntry(entry_id, event_type, b'{"k": 1}', "pending", FIXED, retry_count)


class FakeOutbox:
    def __init__(self, batches=(), error=None, mark_published_error=None):
        self.batches = list(batches)
        self.error = error
        self.mark_published_error = mark_published_error
        self.limits = []
        self.published = []
        self.failed = []
        self.dead = []
        self.polled = threading.Event()

    def get_pending(self, limit):
        self.limits.append(limit)
        self.polled.set()
        if self.error is not None:
            raise self.error
        return self.batches.pop(0) if self.batches else []

    def mark_published(self, entry_id):
        if self.mark_published_error is not None:
            raise self.mark_published_error
        self.published.append(entry_id)

    def mark_failed(self, entry_id, error):
        self.failed.append((entry_id, str(error)))

    def mark_dead(self, entry_id):
        self.dead.append(entry_id)


class FakeBroker:
    def __init__(self, error=None):
        self.error = error
        self.messages = []

    def publish(self, subject, data):
        self.messages.append((subject, data))
        if self.error is not None:
            raise self.error


class FakeMetrics:
    def __init__(self):
        self.pending = []
        self.published = 0
        self.dead = 0

    def outbox_pending(self, count):
        self.pending.append(count)

    def outbox_published(self):
        self.published += 1

    def outbox_dead(self):
        self.dead += 1


def test_process_entry_publishes_and_marks():
    outbox, broker, metrics = FakeOutbox(), FakeBroker(), FakeMetrics()
    OutboxPoller(outbox, broker, metrics).process_entry(entry("e1"))
    assert broker.messages == [(SUBJECT_COMPLETED, b'{"k": 1}')]
    assert outbox.published == ["e1"]
    assert metrics.published == 1


def test_process_entry_publish_failure_marks_failed():
    outbox, metrics = FakeOutbox(), FakeMetrics()
    broker = FakeBroker(error=RuntimeError("nats down"))
    OutboxPoller(outbox, broker, metrics).process_entry(entry("e1"))
    assert outbox.failed == [("e1", "nats down")]
    assert outbox.published == []
    assert metrics.published == 0


def test_process_entry_at_max_retries_goes_to_dlq():
    outbox, broker, metrics = FakeOutbox(), FakeBroker(), FakeMetrics()
    OutboxPoller(outbox, broker, metrics).process_entry(entry("e1", retry_count=3))
    assert broker.messages == [(SUBJECT_DLQ, b'{"k": 1}')]
    assert outbox.dead == ["e1"]
    assert metrics.dead == 1
    assert outbox.published == []


def test_process_entry_below_max_retries_is_published():
    outbox, broker, metrics = FakeOutbox(), FakeBroker(), FakeMetrics()
    OutboxPoller(outbox, broker, metrics).process_entry(entry("e1", retry_count=2))
    assert outbox.published == ["e1"]
    assert outbox.dead == []


def test_mark_published_failure_skips_metric():
    outbox = FakeOutbox(mark_published_error=RuntimeError("db down"))
    metrics = FakeMetrics()
    OutboxPoller(outbox, FakeBroker(), metrics).process_entry(entry("e1"))
    assert metrics.published == 0


def test_poll_processes_batch():
    batch = [entry("e1"), entry("e2", event_type="fraud.detected")]
    outbox, broker, metrics = FakeOutbox([batch]), FakeBroker(), FakeMetrics()
    OutboxPoller(outbox, broker, metrics).poll()
    assert outbox.limits == [100]
    assert metrics.pending == [len(batch)]
    assert [subject for subject, _ in broker.messages] == [
        SUBJECT_COMPLETED,
        "fraud.assessment.fraud.detected",
    ]
    assert outbox.published == ["e1", "e2"]


def test_poll_empty_batch_reports_nothing():
    outbox, metrics = FakeOutbox(), FakeMetrics()
    OutboxPoller(outbox, FakeBroker(), metrics).poll()
    assert metrics.pending == []


def test_poll_error_is_contained():
    outbox = FakeOutbox(error=RuntimeError("db down"))
    broker, metrics = FakeBroker(), FakeMetrics()
    OutboxPoller(outbox, broker, metrics).poll()
    assert broker.messages == []
    assert metrics.pending == []


def test_run_in_background_until_exit():
    outbox, broker, metrics = FakeOutbox([[entry("e1")]]), FakeBroker(), FakeMetrics()
    with OutboxPoller(outbox, broker, metrics, interval=0.01):
        assert outbox.polled.wait(2)
    assert outbox.published == ["e1"]
    assert broker.messages[0][0] == SUBJECT_COMPLETED