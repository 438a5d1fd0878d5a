"""
Match ledger and transaction status state machine.

Matches are never updated in place except to mark them superseded, so the
``matches`` table is an append-only log with at most one active row per
transaction. Every status change is appended to ``status_history``.
"""
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from .exceptions import (
    DuplicateMatchError, EventAlreadySettledError, InvalidStatusTransitionError,
    RecordNotFoundError,
)
from .logging_config import get_logger, log_match_created
from .models import (
    MATCHED_STATES, Match, StatusChange, Transaction, TransactionStatus, utc_now,
)
from .storage import ReconStore

logger = get_logger("ledger")

S = TransactionStatus

ALLOWED_TRANSITIONS = {
    S.UNMATCHED: {S.MATCHED, S.PARTIALLY_MATCHED, S.MANUAL_MATCH, S.DISPUTED, S.IGNORED},
    S.MATCHED: {S.UNMATCHED, S.DISPUTED, S.IGNORED},
    S.PARTIALLY_MATCHED: {S.UNMATCHED, S.DISPUTED, S.IGNORED},
    S.MANUAL_MATCH: {S.UNMATCHED, S.DISPUTED, S.IGNORED},
    S.DISPUTED: {S.UNMATCHED, S.MATCHED, S.PARTIALLY_MATCHED, S.MANUAL_MATCH, S.IGNORED},
    S.IGNORED: {S.UNMATCHED},
}


def is_allowed(from_status: TransactionStatus, to_status: TransactionStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, set())


class MatchLedger:
    """Records matches and enforces the transaction status state machine."""

    def __init__(self, store: ReconStore):
        self.store = store

    def check_transition(self, transaction: Transaction, to_status: TransactionStatus):
        """Raise before anything is written if the move is not allowed."""
        if not is_allowed(transaction.status, to_status):
            raise InvalidStatusTransitionError(
                transaction.id, transaction.status.value, to_status.value
            )

    def load(self, transaction_id: str, conn: Connection = None) -> Transaction:
        transaction = self.store.get_transaction(transaction_id, conn)
        if transaction is None:
            raise RecordNotFoundError("transactions", transaction_id)
        return transaction

    def transition(
        self,
        conn: Connection,
        transaction: Transaction,
        to_status: TransactionStatus,
        actor: str,
        reason: Optional[str] = None,
        match_id: Optional[str] = None,
        variance_amount: Optional[Decimal] = None
    ) -> StatusChange:
        """
        Move ``transaction`` to ``to_status`` inside the caller's database transaction.

        The update is conditional on the status the caller read, so a
        concurrent change surfaces as InvalidStatusTransitionError instead
        of being overwritten.
        """
        self.check_transition(transaction, to_status)

        if variance_amount is None:
            variance_amount = Decimal("0") if to_status in (S.UNMATCHED, S.IGNORED, S.MATCHED, S.MANUAL_MATCH) \
                else transaction.variance_amount

        if not self.store.compare_and_set_status(
            transaction.id, transaction.status, to_status, variance_amount, conn
        ):
            current = self.store.get_transaction(transaction.id, conn)
            current_status = current.status.value if current else "MISSING"
            raise InvalidStatusTransitionError(transaction.id, current_status, to_status.value)

        change = StatusChange(
            transaction_id=transaction.id,
            from_status=transaction.status,
            to_status=to_status,
            actor=actor,
            reason=reason,
            match_id=match_id,
        )
        self.store.insert_status_change(change, conn)

        transaction.status = to_status
        transaction.variance_amount = variance_amount
        return change

    def record_match(
        self,
        conn: Connection,
        transaction: Transaction,
        match: Match,
        actor: str,
        reason: Optional[str] = None,
        to_status: Optional[TransactionStatus] = None
    ) -> Match:
        """Insert a new active match and move the transaction to the status it implies."""
        to_status = to_status or match.implied_status()
        if to_status not in MATCHED_STATES:
            raise InvalidStatusTransitionError(transaction.id, transaction.status.value, to_status.value)
        self.check_transition(transaction, to_status)

        existing = self.store.get_active_match(transaction.id, conn)
        if existing is not None:
            raise DuplicateMatchError(transaction.id, existing.id)
        if match.event_id and not match.event_allows_partial:
            if self.store.actively_matched_event_ids([match.event_id], conn):
                raise EventAlreadySettledError(match.event_id, transaction.id)

        try:
            self.store.insert_match(match, conn)
        except IntegrityError:
            raise DuplicateMatchError(transaction.id)

        self.transition(
            conn, transaction, to_status, actor,
            reason=reason, match_id=match.id, variance_amount=match.variance
        )
        log_match_created(logger, transaction.id, match.event_id, match.confidence.value, match.rule_id)
        return match

    def supersede_active(
        self,
        conn: Connection,
        transaction_id: str,
        superseded_by: Optional[str] = None
    ) -> Optional[Match]:
        """End the active match of a transaction, if any."""
        match = self.store.get_active_match(transaction_id, conn)
        if match is None:
            return None
        now = utc_now()
        if self.store.supersede_match(match.id, now, superseded_by, conn):
            match.superseded_at = now
            match.superseded_by = superseded_by
            logger.debug(f"Superseded match {match.id} on txn {transaction_id}")
        return match

    def active_match(self, transaction_id: str) -> Optional[Match]:
        return self.store.get_active_match(transaction_id)

    def history(self, transaction_id: str) -> List[Match]:
        """All matches ever recorded for a transaction, oldest first."""
        return self.store.list_matches(transaction_id)

    def status_history(self, transaction_id: str) -> List[StatusChange]:
        return self.store.list_status_changes(transaction_id)
