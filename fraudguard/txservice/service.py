"""Application service that creates transactions and runs them through fraud checks."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from fraudguard.txservice.domain import (
    FraudChecker,
    Transaction,
    TransactionError,
    TransactionRepository,
    TransactionStatus,
)


@contextmanager
def _noted(note: str) -> Iterator[None]:
    try:
        yield
    except Exception as exc:
        exc.add_note(note)
        raise


class TransactionService:
    """Creates transactions, applies fraud verdicts and completes MFA."""

    def __init__(self, repo: TransactionRepository, fraud: FraudChecker) -> None:
        self._repo = repo
        self._fraud = fraud

    def create_transaction(self, tx: Transaction) -> None:
        """Store the transaction, check it for fraud and store the outcome."""
        with _noted("saving transaction"):
            self._repo.save(tx)
        with _noted("transitioning to pending"):
            tx.transition_to(TransactionStatus.PENDING_FRAUD_CHECK)
        with _noted("updating status"):
            self._repo.update(tx)
        with _noted("fraud check"):
            decision, score, _reasons = self._fraud.check(tx)
        with _noted("applying fraud decision"):
            tx.apply_fraud_decision(decision, score)
        with _noted("updating after fraud"):
            self._repo.update(tx)

    def get_transaction(self, id: str) -> Transaction:
        return self._repo.find_by_id(id)

    def complete_mfa(self, id: str) -> None:
        """Approve a transaction that was waiting for MFA or review."""
        tx = self._repo.find_by_id(id)
        if tx.status not in (TransactionStatus.PENDING_MFA, TransactionStatus.REVIEW):
            raise TransactionError(f"transaction {id} not in MFA state (current: {tx.status})")
        with _noted("approving after MFA"):
            tx.transition_to(TransactionStatus.APPROVED)
        self._repo.update(tx)