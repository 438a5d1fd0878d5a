"""
Human exception and dispute handling.

Every action is validated against the status state machine before any
write, and writes its audit entry in the same database transaction as
the status change it describes.
"""
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.engine import Connection

from .exceptions import (
    EventAlreadySettledError, InvalidStatusTransitionError, ReasonRequiredError,
    RecordNotFoundError, ValidationError,
)
from .feeds import ExpectedEventsFeed
from .ledger import MatchLedger
from .logging_config import get_logger, log_exception_action
from .models import (
    MATCHED_STATES, AuditAction, AuditEntry, ConfidenceTier, Match, MatchSuggestion,
    Transaction, TransactionStatus,
)
from .notifier import MatchNotifier
from .rules import amount_variance
from .storage import ReconStore

logger = get_logger("exception_handler")

S = TransactionStatus


class ExceptionHandler:
    """Manual match, unmatch, dispute, ignore, reopen and dispute resolution."""

    def __init__(
        self,
        store: ReconStore,
        feed: ExpectedEventsFeed,
        ledger: Optional[MatchLedger] = None,
        notifier: Optional[MatchNotifier] = None
    ):
        self.store = store
        self.feed = feed
        self.ledger = ledger or MatchLedger(store)
        self.notifier = notifier or MatchNotifier(store, feed)

    def manual_match(
        self,
        transaction_id: str,
        event_id: Optional[str],
        actor: str,
        reason: Optional[str] = None,
        memo: Optional[str] = None
    ) -> Match:
        """
        Link a transaction to an event (or to a memo) by hand.

        Allowed from UNMATCHED or DISPUTED. A disputed match is superseded
        by the new MANUAL one.
        """
        self._require_actor(actor)

        event = None
        if event_id:
            event = self.feed.get_event(event_id)
            if event is None:
                raise RecordNotFoundError("expected_events", event_id)
            if event.fully_matched and not event.allows_partial_settlements:
                raise EventAlreadySettledError(event_id, transaction_id)
        elif not (_present(memo) or _present(reason)):
            raise ReasonRequiredError(transaction_id, "manually match without an event")

        with self.store.transaction() as conn:
            transaction = self.ledger.load(transaction_id, conn)
            from_status = transaction.status
            if from_status not in (S.UNMATCHED, S.DISPUTED):
                raise InvalidStatusTransitionError(transaction_id, from_status.value, S.MANUAL_MATCH.value)

            match = Match(
                transaction_id=transaction.id,
                event_id=event.id if event else None,
                confidence=ConfidenceTier.MANUAL,
                actor=actor,
                score=1.0,
                matched_amount=transaction.absolute_amount,
                variance=amount_variance(transaction, event) if event else Decimal("0"),
                memo=memo or reason,
                event_entity_type=event.entity_type if event else None,
                event_entity_id=event.entity_id if event else None,
                event_amount=event.expected_amount if event else None,
                event_date=event.expected_date if event else None,
                event_allows_partial=event.allows_partial_settlements if event else False,
            )

            if from_status == S.DISPUTED:
                self.ledger.supersede_active(conn, transaction.id, superseded_by=match.id)
            self.ledger.record_match(conn, transaction, match, actor, reason=reason, to_status=S.MANUAL_MATCH)
            self._audit(conn, transaction, AuditAction.MANUAL_MATCH, actor, reason, from_status, match.id)

        log_exception_action(logger, "manual_match", transaction_id, actor, from_status.value, S.MANUAL_MATCH.value)
        if event is not None:
            self.notifier.notify(match)
        return match

    def unmatch(self, transaction_id: str, actor: str, reason: Optional[str] = None) -> Transaction:
        """Supersede the active match and return the transaction to UNMATCHED."""
        self._require_actor(actor)

        with self.store.transaction() as conn:
            transaction = self.ledger.load(transaction_id, conn)
            from_status = transaction.status
            if from_status not in MATCHED_STATES and from_status != S.DISPUTED:
                raise InvalidStatusTransitionError(transaction_id, from_status.value, S.UNMATCHED.value)

            active = self.store.get_active_match(transaction_id, conn)
            if active is not None and active.confidence == ConfidenceTier.HIGH and not _present(reason):
                raise ReasonRequiredError(transaction_id, "unmatch a HIGH confidence match on")

            self.ledger.supersede_active(conn, transaction_id)
            self.ledger.transition(
                conn, transaction, S.UNMATCHED, actor, reason=reason,
                match_id=active.id if active else None
            )
            self._audit(conn, transaction, AuditAction.UNMATCH, actor, reason, from_status,
                        active.id if active else None)

        log_exception_action(logger, "unmatch", transaction_id, actor, from_status.value, S.UNMATCHED.value)
        return transaction

    def mark_disputed(self, transaction_id: str, actor: str, reason: str) -> Transaction:
        """Flag a transaction as disputed. Any active match is kept so it can be upheld."""
        self._require_actor(actor)
        if not _present(reason):
            raise ReasonRequiredError(transaction_id, "dispute")

        with self.store.transaction() as conn:
            transaction = self.ledger.load(transaction_id, conn)
            from_status = transaction.status
            active = self.store.get_active_match(transaction_id, conn)
            self.ledger.transition(
                conn, transaction, S.DISPUTED, actor, reason=reason,
                match_id=active.id if active else None
            )
            self._audit(conn, transaction, AuditAction.DISPUTE, actor, reason, from_status,
                        active.id if active else None)

        log_exception_action(logger, "dispute", transaction_id, actor, from_status.value, S.DISPUTED.value)
        return transaction

    def ignore(self, transaction_id: str, actor: str, reason: Optional[str] = None) -> Transaction:
        """Exclude a transaction from reconciliation, superseding any active match."""
        self._require_actor(actor)

        with self.store.transaction() as conn:
            transaction = self.ledger.load(transaction_id, conn)
            from_status = transaction.status
            self.ledger.check_transition(transaction, S.IGNORED)
            superseded = self.ledger.supersede_active(conn, transaction_id)
            self.ledger.transition(
                conn, transaction, S.IGNORED, actor, reason=reason,
                match_id=superseded.id if superseded else None
            )
            self._audit(conn, transaction, AuditAction.IGNORE, actor, reason, from_status,
                        superseded.id if superseded else None)

        log_exception_action(logger, "ignore", transaction_id, actor, from_status.value, S.IGNORED.value)
        return transaction

    def reopen(self, transaction_id: str, actor: str, reason: Optional[str] = None) -> Transaction:
        """Bring an IGNORED transaction back to UNMATCHED."""
        self._require_actor(actor)

        with self.store.transaction() as conn:
            transaction = self.ledger.load(transaction_id, conn)
            from_status = transaction.status
            if from_status != S.IGNORED:
                raise InvalidStatusTransitionError(transaction_id, from_status.value, S.UNMATCHED.value)
            self.ledger.transition(conn, transaction, S.UNMATCHED, actor, reason=reason)
            self._audit(conn, transaction, AuditAction.REOPEN, actor, reason, from_status, None)

        log_exception_action(logger, "reopen", transaction_id, actor, from_status.value, S.UNMATCHED.value)
        return transaction

    def resolve_dispute(self, transaction_id: str, actor: str, reason: str, uphold: bool) -> Transaction:
        """
        Close a dispute.

        Upholding keeps the match and restores the status it implies
        (UNMATCHED if there is none). Rejecting supersedes the match and
        returns the transaction to UNMATCHED.
        """
        self._require_actor(actor)
        if not _present(reason):
            raise ReasonRequiredError(transaction_id, "resolve the dispute on")

        with self.store.transaction() as conn:
            transaction = self.ledger.load(transaction_id, conn)
            from_status = transaction.status
            if from_status != S.DISPUTED:
                raise InvalidStatusTransitionError(transaction_id, from_status.value, "RESOLVED")

            active = self.store.get_active_match(transaction_id, conn)
            if uphold and active is not None:
                to_status = active.implied_status()
                variance = active.variance
            else:
                to_status = S.UNMATCHED
                variance = Decimal("0")
                if active is not None:
                    self.ledger.supersede_active(conn, transaction_id)

            self.ledger.transition(
                conn, transaction, to_status, actor, reason=reason,
                match_id=active.id if active else None, variance_amount=variance
            )
            self._audit(conn, transaction, AuditAction.RESOLVE_DISPUTE, actor, reason, from_status,
                        active.id if active else None)

        log_exception_action(logger, "resolve_dispute", transaction_id, actor, from_status.value, to_status.value)
        return transaction

    def suggestions(self, transaction_id: str) -> List[MatchSuggestion]:
        """Ambiguous candidates recorded by the matcher, best first."""
        if self.store.get_transaction(transaction_id) is None:
            raise RecordNotFoundError("transactions", transaction_id)
        return self.store.list_suggestions(transaction_id)

    def audit_trail(self, transaction_id: str) -> List[AuditEntry]:
        return self.store.list_audit_entries(transaction_id)

    def _audit(
        self,
        conn: Connection,
        transaction: Transaction,
        action: AuditAction,
        actor: str,
        reason: Optional[str],
        from_status: TransactionStatus,
        match_id: Optional[str]
    ):
        self.store.insert_audit_entry(AuditEntry(
            transaction_id=transaction.id,
            action=action,
            actor=actor,
            reason=reason,
            from_status=from_status,
            to_status=transaction.status,
            match_id=match_id,
        ), conn)

    @staticmethod
    def _require_actor(actor: str):
        if not _present(actor):
            raise ValidationError("actor", str(actor), "an actor is required")


def _present(value: Optional[str]) -> bool:
    return bool(value and value.strip())
