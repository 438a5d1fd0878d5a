"""
Tests for manual exception and dispute handling.
"""
import pytest
from datetime import date
from decimal import Decimal
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from recon_engine.exceptions import (
    EventAlreadySettledError, InvalidStatusTransitionError, ReasonRequiredError,
    RecordNotFoundError, ValidationError,
)
from recon_engine.models import AuditAction, ConfidenceTier, ExpectedEvent, TransactionStatus

S = TransactionStatus


@pytest.fixture
def deposit(service, feed, bank_account):
    """An unexplained bank deposit with an unrelated open event E1."""
    feed.add_events([ExpectedEvent(id="E1", expected_amount=Decimal("1000"), expected_date=date(2024, 3, 10),
                                   entity_type="lease", entity_id="RENT-2003", account_id=bank_account.id)])
    service.import_statement(bank_account.id, [
        {"date": "2024-03-25", "amount": "990", "description": "CASH DEPOSIT"},
    ])
    return service.list_transactions(bank_account.id)[0]


class TestUnmatch:
    """Tests for removing matches."""

    def test_high_confidence_needs_reason(self, service, matched_invoice):
        """Test HIGH matches cannot be undone silently."""
        with pytest.raises(ReasonRequiredError):
            service.unmatch(matched_invoice.id, actor="jane.doe")
        with pytest.raises(ReasonRequiredError):
            service.unmatch(matched_invoice.id, actor="jane.doe", reason="   ")
        assert service.get_transaction(matched_invoice.id).status == S.MATCHED

    def test_unmatch_with_reason(self, service, matched_invoice):
        txn = service.unmatch(matched_invoice.id, actor="jane.doe", reason="receipt belongs to INV-78")

        assert txn.status == S.UNMATCHED
        detail = service.transaction_detail(matched_invoice.id)
        assert detail.active_match is None
        assert len(detail.matches) == 1
        assert detail.matches[0].superseded_at is not None
        assert [h.to_status for h in detail.status_history] == [S.MATCHED, S.UNMATCHED]

        audit = detail.audit_trail[-1]
        assert audit.action == AuditAction.UNMATCH
        assert audit.actor == "jane.doe"
        assert audit.from_status == S.MATCHED
        assert audit.to_status == S.UNMATCHED
        assert audit.reason == "receipt belongs to INV-78"

    def test_unmatch_unmatched_line(self, service, deposit):
        with pytest.raises(InvalidStatusTransitionError):
            service.unmatch(deposit.id, actor="jane.doe", reason="nothing to undo")

    def test_rematch_to_settled_event_refused(self, service, matched_invoice):
        """Test the feed still reports INV-77 settled after a local unmatch."""
        service.unmatch(matched_invoice.id, actor="jane.doe", reason="checking")
        with pytest.raises(EventAlreadySettledError):
            service.manual_match(matched_invoice.id, "INV-77", actor="jane.doe")


class TestManualMatch:
    """Tests for matching by hand."""

    def test_match_to_event(self, service, feed, deposit):
        """Test a manual match records the variance and settles the event."""
        match = service.manual_match(deposit.id, "E1", actor="jane.doe", reason="tenant confirmed by phone")

        assert match.confidence == ConfidenceTier.MANUAL
        assert match.variance == Decimal("-10")
        assert match.event_entity_id == "RENT-2003"
        assert match.actor == "jane.doe"

        txn = service.get_transaction(deposit.id)
        assert txn.status == S.MANUAL_MATCH
        assert txn.variance_amount == Decimal("-10")
        assert feed.get_event("E1").fully_matched

    def test_match_to_memo(self, service, deposit):
        """Test a line can be explained without an event."""
        match = service.manual_match(deposit.id, None, actor="jane.doe", memo="Deposit for parking bay 12")

        assert match.event_id is None
        assert match.memo == "Deposit for parking bay 12"
        assert service.get_transaction(deposit.id).status == S.MANUAL_MATCH

    def test_memo_or_reason_required_without_event(self, service, deposit):
        with pytest.raises(ReasonRequiredError):
            service.manual_match(deposit.id, None, actor="jane.doe")

    def test_unknown_event(self, service, deposit):
        with pytest.raises(RecordNotFoundError):
            service.manual_match(deposit.id, "NOPE", actor="jane.doe")
        assert service.get_transaction(deposit.id).status == S.UNMATCHED

    def test_already_matched_line(self, service, matched_invoice):
        with pytest.raises(InvalidStatusTransitionError):
            service.manual_match(matched_invoice.id, None, actor="jane.doe", memo="override")

    def test_unknown_transaction(self, service):
        with pytest.raises(RecordNotFoundError):
            service.manual_match("missing", None, actor="jane.doe", memo="x")

    def test_actor_required(self, service, deposit):
        with pytest.raises(ValidationError):
            service.manual_match(deposit.id, "E1", actor=" ")


class TestDisputes:
    """Tests for disputing and resolving."""

    def test_dispute_keeps_match(self, service, matched_invoice):
        txn = service.mark_disputed(matched_invoice.id, actor="jane.doe", reason="tenant says paid twice")

        assert txn.status == S.DISPUTED
        assert service.ledger.active_match(matched_invoice.id) is not None

    def test_dispute_needs_reason(self, service, matched_invoice):
        with pytest.raises(ReasonRequiredError):
            service.mark_disputed(matched_invoice.id, actor="jane.doe", reason="")

    def test_uphold_restores_status(self, service, matched_invoice):
        """Test upholding a disputed auto match brings back MATCHED."""
        service.mark_disputed(matched_invoice.id, actor="jane.doe", reason="tenant says paid twice")
        txn = service.resolve_dispute(matched_invoice.id, actor="john.smith", reason="statement checked",
                                      uphold=True)

        assert txn.status == S.MATCHED
        assert service.ledger.active_match(matched_invoice.id).event_id == "INV-77"

    def test_reject_removes_match(self, service, matched_invoice):
        service.mark_disputed(matched_invoice.id, actor="jane.doe", reason="wrong tenant")
        txn = service.resolve_dispute(matched_invoice.id, actor="john.smith", reason="confirmed wrong",
                                      uphold=False)

        assert txn.status == S.UNMATCHED
        assert service.ledger.active_match(matched_invoice.id) is None

        audit = service.transaction_detail(matched_invoice.id).audit_trail
        assert [a.action for a in audit] == [AuditAction.DISPUTE, AuditAction.RESOLVE_DISPUTE]

    def test_uphold_without_match(self, service, deposit):
        service.mark_disputed(deposit.id, actor="jane.doe", reason="unknown depositor")
        txn = service.resolve_dispute(deposit.id, actor="jane.doe", reason="still unknown", uphold=True)
        assert txn.status == S.UNMATCHED

    def test_resolve_needs_dispute(self, service, matched_invoice):
        with pytest.raises(InvalidStatusTransitionError):
            service.resolve_dispute(matched_invoice.id, actor="jane.doe", reason="n/a", uphold=True)

    def test_manual_match_replaces_disputed_match(self, service, feed, matched_invoice, invoice_event):
        """Test a disputed line can be pointed at the right event."""
        feed.add_events([ExpectedEvent(id="INV-78", expected_amount=Decimal("5000"),
                                       expected_date=date(2024, 1, 16), account_id="A1")])
        service.mark_disputed(matched_invoice.id, actor="jane.doe", reason="paid for INV-78")
        new_match = service.manual_match(matched_invoice.id, "INV-78", actor="jane.doe", reason="paid for INV-78")

        history = service.ledger.history(matched_invoice.id)
        assert len(history) == 2
        assert history[0].superseded_by == new_match.id
        assert service.ledger.active_match(matched_invoice.id).id == new_match.id
        assert service.get_transaction(matched_invoice.id).status == S.MANUAL_MATCH


class TestIgnoreAndReopen:
    """Tests for excluding lines from reconciliation."""

    def test_ignore_matched_line(self, service, matched_invoice):
        txn = service.ignore(matched_invoice.id, actor="jane.doe", reason="test payment")

        assert txn.status == S.IGNORED
        assert service.ledger.active_match(matched_invoice.id) is None

    def test_ignored_line_cannot_be_unmatched(self, service, deposit):
        service.ignore(deposit.id, actor="jane.doe")
        with pytest.raises(InvalidStatusTransitionError):
            service.unmatch(deposit.id, actor="jane.doe", reason="undo")

    def test_reopen(self, service, deposit):
        service.ignore(deposit.id, actor="jane.doe")
        txn = service.reopen(deposit.id, actor="jane.doe", reason="needs a look")

        assert txn.status == S.UNMATCHED
        actions = [a.action for a in service.transaction_detail(deposit.id).audit_trail]
        assert actions == [AuditAction.IGNORE, AuditAction.REOPEN]

    def test_reopen_needs_ignored(self, service, deposit):
        with pytest.raises(InvalidStatusTransitionError):
            service.reopen(deposit.id, actor="jane.doe")

    def test_ignore_twice(self, service, deposit):
        service.ignore(deposit.id, actor="jane.doe")
        with pytest.raises(InvalidStatusTransitionError):
            service.ignore(deposit.id, actor="jane.doe")


class TestSuggestions:
    """Tests for reading suggestions."""

    def test_unknown_transaction(self, service):
        with pytest.raises(RecordNotFoundError):
            service.suggestions("missing")

    def test_no_suggestions(self, service, deposit):
        assert service.suggestions(deposit.id) == []
