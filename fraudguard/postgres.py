"""PostgreSQL repositories, the unit of work and the transactional outbox store.

Every repository takes ``connect``, a callable returning a new DB-API
connection whose driver uses the ``%s`` parameter style.
"""

from __future__ import annotations

import json
import re
from collections import defaultdict
from collections.abc import Callable, Iterator
from contextlib import closing, contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from fraudguard.domain import ConfigNotFoundError, DomainEvent, FraudAssessment
from fraudguard.ports import TxHandle

Connect = Callable[[], Any]

_INT_RE = re.compile(r"[+-]?\d+")


@contextmanager
def _session(connect: Connect) -> Iterator[Any]:
    """Connection that commits on success, rolls back on error and is always closed."""
    conn = connect()
    try:
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


def _run(conn: Any, query: str, args: tuple[Any, ...]) -> Any:
    cursor = conn.cursor()
    cursor.execute(query, args)
    return cursor


def _fetch_one(connect: Connect, query: str, *args: Any) -> tuple[Any, ...] | None:
    with _session(connect) as conn, closing(_run(conn, query, args)) as cursor:
        row = cursor.fetchone()
    return tuple(row) if row is not None else None


def _fetch_all(connect: Connect, query: str, *args: Any) -> list[tuple[Any, ...]]:
    with _session(connect) as conn, closing(_run(conn, query, args)) as cursor:
        return [tuple(row) for row in cursor.fetchall()]


def _execute(connect: Connect, query: str, *args: Any) -> int:
    with _session(connect) as conn, closing(_run(conn, query, args)) as cursor:
        return cursor.rowcount


class DbTransaction:
    """An open database transaction on a connection of its own."""

    def __init__(self, connection: Any) -> None:
        self.connection = connection

    def execute(self, query: str, *args: Any) -> int:
        with closing(_run(self.connection, query, args)) as cursor:
            return cursor.rowcount

    def query_row(self, query: str, *args: Any) -> tuple[Any, ...] | None:
        with closing(_run(self.connection, query, args)) as cursor:
            row = cursor.fetchone()
        return tuple(row) if row is not None else None


def _connection_of(tx: TxHandle) -> Any:
    if not isinstance(tx, DbTransaction):
        raise TypeError(f"unsupported transaction handle: {type(tx).__name__}")
    return tx.connection


class UnitOfWork:
    """Begins, commits and rolls back atomic database transactions."""

    def __init__(self, connect: Connect) -> None:
        self._connect = connect

    def begin(self) -> DbTransaction:
        try:
            return DbTransaction(self._connect())
        except Exception as exc:
            exc.add_note("beginning transaction")
            raise

    def commit(self, tx: TxHandle) -> None:
        conn = _connection_of(tx)
        try:
            conn.commit()
        finally:
            conn.close()

    def rollback(self, tx: TxHandle) -> None:
        conn = _connection_of(tx)
        try:
            conn.rollback()
        finally:
            conn.close()


class AssessmentRepository:
    """Stores fraud assessments, replacing any earlier one for the transaction."""

    _UPSERT = """
        INSERT INTO assessments (transaction_id, decision, risk_score, rule_results)
        VALUES (%s, %s, %s, %s)
        ON CONFLICT (transaction_id) DO UPDATE SET
            decision = EXCLUDED.decision,
            risk_score = EXCLUDED.risk_score,
            rule_results = EXCLUDED.rule_results"""

    def __init__(self, connect: Connect) -> None:
        self._connect = connect

    def save_with_tx(self, tx: TxHandle, assessment: FraudAssessment) -> None:
        rule_results = json.dumps([asdict(r) for r in assessment.rule_results])
        try:
            tx.execute(
                self._UPSERT,
                assessment.transaction_id,
                assessment.decision.value,
                assessment.risk_score.value,
                rule_results,
            )
        except Exception as exc:
            exc.add_note(f"saving assessment {assessment.transaction_id}")
            raise


class ConfigRepository:
    """Rule configuration read straight from the config table."""

    def __init__(self, connect: Connect) -> None:
        self._connect = connect

    def _get_value(self, key: str) -> str:
        try:
            row = _fetch_one(self._connect, "SELECT value FROM config WHERE key = %s", key)
        except Exception as exc:
            exc.add_note(f"querying config key {key}")
            raise
        if row is None:
            raise ConfigNotFoundError(key)
        return str(row[0])

    def get_float(self, key: str) -> float:
        val = self._get_value(key)
        try:
            if val != val.strip() or "_" in val:
                raise ValueError(val)
            return float(val)
        except ValueError:
            raise ValueError(f"config key {key}: cannot parse {val!r} as float") from None

    def get_int(self, key: str) -> int:
        val = self._get_value(key)
        if not _INT_RE.fullmatch(val):
            raise ValueError(f"config key {key}: cannot parse {val!r} as int")
        return int(val)

    def load_all(self) -> dict[str, str]:
        try:
            rows = _fetch_all(self._connect, "SELECT key, value FROM config")
        except Exception as exc:
            exc.add_note("querying all config")
            raise
        return {str(key): str(value) for key, value in rows}


class DeviceRepository:
    """Known devices per sender, read from the known_devices table."""

    def __init__(self, connect: Connect) -> None:
        self._connect = connect

    def is_known_device(self, sender_id: str, device_id: str) -> bool:
        try:
            row = _fetch_one(
                self._connect,
                "SELECT EXISTS(SELECT 1 FROM known_devices "
                "WHERE sender_id = %s AND device_id = %s)",
                sender_id,
                device_id,
            )
        except Exception as exc:
            exc.add_note("querying known_devices")
            raise
        return bool(row and row[0])

    def load_all(self) -> dict[str, list[str]]:
        """All known devices grouped by sender."""
        try:
            rows = _fetch_all(self._connect, "SELECT sender_id, device_id FROM known_devices")
        except Exception as exc:
            exc.add_note("querying all known_devices")
            raise
        devices: defaultdict[str, list[str]] = defaultdict(list)
        for sender_id, device_id in rows:
            devices[sender_id].append(device_id)
        return dict(devices)


@dataclass(frozen=True)
class OutboxEntry:
    id: str
    event_type: str
    payload: bytes
    status: str
    created_at: datetime
    retry_count: int = 0
    last_error: str = ""


def _as_bytes(payload: Any) -> bytes:
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)
    if isinstance(payload, str):
        return payload.encode()
    # Drivers may decode JSONB columns into Python objects.
    return json.dumps(payload).encode()


class OutboxRepository:
    """Events waiting to be published, stored in the same transaction as their cause."""

    _PENDING = """
        SELECT id, event_type, payload, status, created_at, retry_count, COALESCE(last_error, '')
        FROM outbox
        WHERE status = 'pending'
        ORDER BY created_at ASC
        LIMIT %s
        FOR UPDATE SKIP LOCKED"""

    def __init__(self, connect: Connect) -> None:
        self._connect = connect

    def save_within_tx(self, tx: TxHandle, event: DomainEvent) -> None:
        try:
            payload = json.dumps(event.to_dict())
        except (TypeError, ValueError) as exc:
            exc.add_note(f"marshaling event {event.event_name}")
            raise
        try:
            tx.execute(
                "INSERT INTO outbox (event_type, payload) VALUES (%s, %s)",
                event.event_name,
                payload,
            )
        except Exception as exc:
            exc.add_note("inserting outbox entry")
            raise

    def get_pending(self, limit: int) -> list[OutboxEntry]:
        try:
            rows = _fetch_all(self._connect, self._PENDING, limit)
        except Exception as exc:
            exc.add_note("querying pending outbox entries")
            raise
        return [
            OutboxEntry(
                id=str(entry_id),
                event_type=event_type,
                payload=_as_bytes(payload),
                status=status,
                created_at=created_at,
                retry_count=int(retry_count),
                last_error=last_error or "",
            )
            for entry_id, event_type, payload, status, created_at, retry_count, last_error in rows
        ]

    def _update(self, query: str, id: str, what: str, *args: Any) -> None:
        try:
            _execute(self._connect, query, id, *args)
        except Exception as exc:
            exc.add_note(f"marking outbox entry {id} as {what}")
            raise

    def mark_published(self, id: str) -> None:
        self._update(
            "UPDATE outbox SET status = 'published', published_at = NOW() WHERE id = %s",
            id,
            "published",
        )

    def mark_failed(self, id: str, error: BaseException | str) -> None:
        self._update(
            "UPDATE outbox SET retry_count = retry_count + 1, last_error = %s WHERE id = %s",
            str(error),
            "failed",
            id,
        )

    def mark_dead(self, id: str) -> None:
        self._update("UPDATE outbox SET status = 'dead' WHERE id = %s", id, "dead")