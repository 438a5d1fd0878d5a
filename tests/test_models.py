"""
Tests for data models.
"""
import pytest
from datetime import date, timedelta
from decimal import Decimal
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from recon_engine.models import (
    BatchStatus, CancellationToken, ConfidenceTier, DateWindow, Direction, ExpectedEvent,
    ImportBatch, Match, MatchRule, MatchingPassResult, RuleKind, RuleSet, Transaction,
    TransactionStatus, compute_fingerprint,
)


class TestFingerprint:
    """Tests for transaction fingerprints."""

    def test_same_inputs_same_fingerprint(self):
        """Test fingerprint is stable."""
        a = compute_fingerprint("A1", date(2024, 1, 15), Decimal("5000"), "QA123XYZ")
        b = compute_fingerprint("A1", date(2024, 1, 15), Decimal("5000"), "QA123XYZ")
        assert a == b
        assert len(a) == 64

    def test_reference_case_and_whitespace_ignored(self):
        """Test references are normalized before hashing."""
        a = compute_fingerprint("A1", date(2024, 1, 15), Decimal("5000"), "QA123XYZ")
        b = compute_fingerprint("A1", date(2024, 1, 15), Decimal("5000"), "  qa123xyz ")
        assert a == b

    def test_amount_scale_ignored(self):
        """Test 5000 and 5000.00 hash the same."""
        a = compute_fingerprint("A1", date(2024, 1, 15), Decimal("5000"), None)
        b = compute_fingerprint("A1", date(2024, 1, 15), Decimal("5000.00"), None)
        assert a == b

    def test_account_scopes_fingerprint(self):
        """Test the same line on two accounts differs."""
        a = compute_fingerprint("A1", date(2024, 1, 15), Decimal("5000"), "QA123XYZ")
        b = compute_fingerprint("B1", date(2024, 1, 15), Decimal("5000"), "QA123XYZ")
        assert a != b


class TestTransaction:
    """Tests for Transaction model."""

    def test_absolute_amount(self):
        """Test debits report a positive magnitude."""
        txn = Transaction(amount=Decimal("-1200.00"), direction=Direction.DEBIT)
        assert txn.absolute_amount == Decimal("1200.00")
        assert not txn.is_credit()

    def test_search_text_joins_reference_and_description(self):
        """Test search text combines both fields."""
        txn = Transaction(reference="FT123", description="RTGS RENT-2001")
        assert txn.search_text() == "FT123 RTGS RENT-2001"

    def test_default_status_unmatched(self):
        """Test new transactions start unmatched."""
        assert Transaction().status == TransactionStatus.UNMATCHED


class TestMatchRule:
    """Tests for MatchRule model."""

    def test_confidence_defaults_from_kind(self):
        """Test each kind carries its own default confidence."""
        assert MatchRule(kind=RuleKind.EXACT_AMOUNT_DATE).confidence == ConfidenceTier.HIGH
        assert MatchRule(kind=RuleKind.FUZZY_TOLERANT).confidence == ConfidenceTier.LOW

    def test_explicit_confidence_kept(self):
        """Test an explicit confidence overrides the default."""
        rule = MatchRule(kind=RuleKind.FUZZY_TOLERANT, confidence=ConfidenceTier.MEDIUM)
        assert rule.confidence == ConfidenceTier.MEDIUM

    def test_tolerance_is_larger_of_absolute_and_percent(self):
        """Test tolerance picks the larger bound."""
        rule = MatchRule(amount_tolerance=Decimal("5"), amount_tolerance_percent=Decimal("1"))
        assert rule.tolerance_for(Decimal("100")) == Decimal("5")
        assert rule.tolerance_for(Decimal("10000")) == Decimal("100")


class TestRuleSet:
    """Tests for RuleSet snapshots."""

    def test_orders_by_priority_then_id(self):
        """Test evaluation order."""
        rules = [
            MatchRule(id="b", priority=20),
            MatchRule(id="a", priority=20),
            MatchRule(id="c", priority=10),
        ]
        assert [r.id for r in RuleSet.from_rules(rules)] == ["c", "a", "b"]

    def test_inactive_rules_excluded(self):
        """Test inactive rules are left out."""
        rules = [MatchRule(id="a"), MatchRule(id="b", is_active=False)]
        rule_set = RuleSet.from_rules(rules)
        assert len(rule_set) == 1

    def test_version_tracks_content(self):
        """Test the version changes only when a rule changes."""
        first = RuleSet.from_rules([MatchRule(id="a", priority=10)])
        same = RuleSet.from_rules([MatchRule(id="a", priority=10)])
        changed = RuleSet.from_rules([MatchRule(id="a", priority=11)])
        assert first.version == same.version
        assert first.version != changed.version


class TestExpectedEvent:
    """Tests for ExpectedEvent model."""

    def test_from_dict(self):
        """Test loading an event from a feed payload."""
        event = ExpectedEvent.from_dict({
            "id": "INV-77",
            "expected_amount": "5000.00",
            "expected_date": "2024-01-15",
            "entity_type": "invoice",
            "entity_id": "INV-77",
            "receipt_id": "QA123XYZ",
            "direction": "credit",
        })
        assert event.expected_amount == Decimal("5000.00")
        assert event.expected_date == date(2024, 1, 15)
        assert event.direction == Direction.CREDIT
        assert not event.fully_matched
        assert not event.allows_partial_settlements

    def test_to_dict_round_trips_identity(self):
        """Test serialized events load back equal."""
        event = ExpectedEvent(id="E1", expected_amount=Decimal("10.50"), expected_date=date(2024, 1, 1))
        assert ExpectedEvent.from_dict(event.to_dict()) == event


class TestMatch:
    """Tests for Match model."""

    def test_implied_status(self):
        """Test the status a match stands for."""
        assert Match(confidence=ConfidenceTier.HIGH).implied_status() == TransactionStatus.MATCHED
        assert Match(confidence=ConfidenceTier.LOW, variance=Decimal("-2")).implied_status() == \
            TransactionStatus.PARTIALLY_MATCHED
        assert Match(confidence=ConfidenceTier.MANUAL, variance=Decimal("-2")).implied_status() == \
            TransactionStatus.MANUAL_MATCH

    def test_active_until_superseded(self):
        """Test is_active flag."""
        match = Match()
        assert match.is_active


class TestSupportTypes:
    """Tests for small helper types."""

    def test_date_window(self):
        """Test window bounds are inclusive."""
        window = DateWindow.around(date(2024, 1, 15), 7, 7)
        assert window.contains(date(2024, 1, 8))
        assert window.contains(date(2024, 1, 22))
        assert not window.contains(date(2024, 1, 23))

    def test_date_window_clamped_to_calendar(self):
        low = DateWindow.around(date.min + timedelta(days=1), 7, 7)
        assert low.start == date.min
        assert low.end == date(1, 1, 9)

        high = DateWindow.around(date.max, 7, 7)
        assert high.start == date.max - timedelta(days=7)
        assert high.end == date.max

    def test_batch_is_final(self):
        """Test only COMPLETED and FAILED batches are final."""
        assert not ImportBatch(status=BatchStatus.PROCESSING).is_final
        assert ImportBatch(status=BatchStatus.COMPLETED).is_final

    def test_cancellation_token(self):
        """Test cancel flips the flag."""
        token = CancellationToken()
        assert not token.cancelled
        token.cancel()
        assert token.cancelled

    def test_pass_result_processed_count(self):
        """Test processed count adds the disjoint outcomes."""
        result = MatchingPassResult(matched_count=3, partially_matched_count=1, ambiguous_count=2,
                                    unmatched_count=4, skipped_count=1)
        assert result.processed_count == 10
        assert result.processing_time_seconds == 0.0
