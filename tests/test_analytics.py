"""
Tests for reconciliation analytics and reports.
"""
import json
import pytest
from datetime import date
from decimal import Decimal
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from openpyxl import load_workbook

from recon_engine.analytics import aging_bucket
from recon_engine.exceptions import RecordNotFoundError
from recon_engine.models import ExpectedEvent, TransactionStatus

AS_OF = date(2024, 3, 31)


@pytest.fixture
def reconciled_bank(service, feed, bank_account):
    """
    Bank account as of 2024-03-31:
    one matched line, three unmatched lines of different ages and one ignored line.
    """
    feed.add_events([ExpectedEvent(id="E1", expected_amount=Decimal("1000"), expected_date=date(2024, 3, 30),
                                   account_id=bank_account.id)])
    service.import_statement(bank_account.id, [
        {"date": "2024-02-15", "amount": "1000", "description": "CASH DEPOSIT"},
        {"date": "2024-03-20", "amount": "500", "description": "CASH DEPOSIT"},
        {"date": "2024-03-28", "amount": "-200", "description": "LEDGER FEE"},
        {"date": "2024-03-25", "amount": "300", "description": "TEST CREDIT"},
        {"date": "2024-03-30", "amount": "1000", "description": "RTGS PAYMENT"},
    ])
    test_credit = next(t for t in service.list_transactions(bank_account.id) if t.description == "TEST CREDIT")
    service.ignore(test_credit.id, actor="jane.doe", reason="bank test transfer")
    service.run_matching_pass(bank_account.id)
    return bank_account


class TestAgingBucket:
    """Tests for aging bucket boundaries."""

    def test_boundaries(self):
        assert aging_bucket(0) == "0-7"
        assert aging_bucket(7) == "0-7"
        assert aging_bucket(8) == "8-30"
        assert aging_bucket(30) == "8-30"
        assert aging_bucket(31) == "30+"


class TestSummary:
    """Tests for the per-account summary."""

    def test_counts_and_rate(self, service, reconciled_bank):
        """Test the match rate is taken over every line, ignored ones included."""
        summary = service.summary(reconciled_bank.id, as_of=AS_OF)

        assert summary.total_transactions == 5
        assert summary.counts_by_status["MATCHED"] == 1
        assert summary.counts_by_status["UNMATCHED"] == 3
        assert summary.counts_by_status["IGNORED"] == 1
        assert summary.match_rate == 0.2
        assert summary.auto_matched_count == 1
        assert summary.manual_matched_count == 0

    def test_aging_and_amounts(self, service, reconciled_bank):
        summary = service.summary(reconciled_bank.id, as_of=AS_OF)

        assert summary.aging_buckets == {"0-7": 1, "8-30": 1, "30+": 1}
        assert summary.unmatched_amount == Decimal("1700")
        assert summary.total_debits == Decimal("200")
        assert summary.total_credits == Decimal("2800")
        assert summary.as_of.date() == AS_OF

    def test_manual_match_counted(self, service, reconciled_bank):
        fee = service.list_transactions(reconciled_bank.id, TransactionStatus.UNMATCHED)[-1]
        service.manual_match(fee.id, None, actor="jane.doe", memo="monthly ledger fee")
        summary = service.summary(reconciled_bank.id, as_of=AS_OF)

        assert summary.manual_matched_count == 1
        assert summary.match_rate == 0.4

    def test_ignored_line_lowers_rate(self, service, matched_invoice, mpesa_account):
        service.import_statement(mpesa_account.id, [
            {"date": "2024-01-20", "amount": "10", "description": "TEST TRANSFER"},
        ])
        test_line = service.list_transactions(mpesa_account.id, TransactionStatus.UNMATCHED)[0]
        service.ignore(test_line.id, actor="jane.doe")

        summary = service.summary(mpesa_account.id)
        assert summary.total_transactions == 2
        assert summary.match_rate == 0.5

    def test_empty_account(self, service, mpesa_account):
        summary = service.summary(mpesa_account.id)
        assert summary.total_transactions == 0
        assert summary.match_rate == 0.0

    def test_unknown_account(self, service):
        with pytest.raises(RecordNotFoundError):
            service.summary("missing")

    def test_portfolio(self, service, reconciled_bank, mpesa_account):
        portfolio = service.portfolio(as_of=AS_OF)
        assert set(portfolio) == {reconciled_bank.id, mpesa_account.id}
        assert portfolio[reconciled_bank.id].total_transactions == 5


class TestUnmatchedFrame:
    """Tests for the unmatched aging frame."""

    def test_oldest_first(self, service, reconciled_bank):
        frame = service.analytics.unmatched_frame(reconciled_bank.id, as_of=AS_OF)

        assert len(frame) == 3
        assert list(frame["days_unmatched"]) == [45, 11, 3]
        assert list(frame["aging_bucket"]) == ["30+", "8-30", "0-7"]

    def test_empty_frame(self, service, mpesa_account):
        frame = service.analytics.unmatched_frame(mpesa_account.id)
        assert frame.empty
        assert "aging_bucket" in frame.columns


class TestReports:
    """Tests for report files."""

    def test_excel_and_json_written(self, service, reconciled_bank):
        paths = service.generate_reports(reconciled_bank.id, as_of=AS_OF)

        assert set(paths) == {"excel", "json"}
        assert paths["excel"].exists()

        workbook = load_workbook(paths["excel"])
        assert workbook.sheetnames == ["Summary", "Matches", "Unmatched"]

        with open(paths["json"]) as f:
            report = json.load(f)
        assert report["account"]["id"] == reconciled_bank.id
        assert report["summary"]["match_rate"] == 0.2
        assert len(report["matches"]) == 1
        assert len(report["unmatched"]) == 3

    def test_single_format(self, service, reconciled_bank):
        paths = service.generate_reports(reconciled_bank.id, formats=("json",), as_of=AS_OF)
        assert list(paths) == ["json"]
