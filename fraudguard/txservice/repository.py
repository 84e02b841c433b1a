"""PostgreSQL storage for transaction-service transactions.

The repository takes ``connect``, a callable returning a new DB-API
connection whose driver uses the ``%s`` parameter style.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import closing, contextmanager
from datetime import datetime
from typing import Any

from fraudguard.txservice.domain import (
    Coordinate,
    Money,
    Transaction,
    TransactionNotFoundError,
    TransactionStatus,
)

Connect = Callable[[], Any]


@contextmanager
def _cursor(connect: Connect) -> Iterator[Any]:
    conn = connect()
    try:
        with closing(conn.cursor()) as cursor:
            yield cursor
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class PostgresTransactionRepository:
    """Saves, loads and updates transactions in the transactions table."""

    _INSERT = """
        INSERT INTO transactions (id, sender_id, receiver_id, amount, currency, status,
            device_id, ip, lat, lng, payment_method, created_at, updated_at)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)"""

    _SELECT = """
        SELECT id, sender_id, receiver_id, amount, currency, status, device_id, ip, lat, lng,
            payment_method, fraud_decision, fraud_score, created_at, updated_at
        FROM transactions WHERE id = %s"""

    _UPDATE = """
        UPDATE transactions SET status = %s, fraud_decision = %s, fraud_score = %s,
            updated_at = %s
        WHERE id = %s"""

    def __init__(self, connect: Connect) -> None:
        self._connect = connect

    def save(self, tx: Transaction) -> None:
        args = (
            tx.id, tx.sender_id, tx.receiver_id,
            tx.amount.amount, tx.amount.currency,
            tx.status.value, tx.device_id, tx.ip,
            tx.location.lat, tx.location.lng,
            str(tx.payment_method),
            tx.created_at, tx.updated_at,
        )
        try:
            with _cursor(self._connect) as cursor:
                cursor.execute(self._INSERT, args)
        except Exception as exc:
            exc.add_note(f"saving transaction {tx.id}")
            raise

    def find_by_id(self, id: str) -> Transaction:
        try:
            with _cursor(self._connect) as cursor:
                cursor.execute(self._SELECT, (id,))
                row = cursor.fetchone()
        except Exception as exc:
            exc.add_note(f"querying transaction {id}")
            raise
        if row is None:
            raise TransactionNotFoundError(f"transaction {id} not found")

        (
            tx_id, sender_id, receiver_id, amount, currency, status, device_id, ip,
            lat, lng, payment_method, fraud_decision, fraud_score, created_at, updated_at,
        ) = tuple(row)
        return Transaction(
            id=tx_id,
            sender_id=sender_id,
            receiver_id=receiver_id,
            amount=Money(float(amount), currency),
            status=TransactionStatus(status),
            device_id=device_id or "",
            ip=ip or "",
            location=Coordinate(float(lat), float(lng)),
            payment_method=payment_method or "",
            fraud_decision=fraud_decision,
            fraud_score=int(fraud_score) if fraud_score is not None else None,
            created_at=_as_datetime(created_at),
            updated_at=_as_datetime(updated_at),
        )

    def update(self, tx: Transaction) -> None:
        args = (tx.status.value, tx.fraud_decision, tx.fraud_score, tx.updated_at, tx.id)
        try:
            with _cursor(self._connect) as cursor:
                cursor.execute(self._UPDATE, args)
        except Exception as exc:
            exc.add_note(f"updating transaction {tx.id}")
            raise