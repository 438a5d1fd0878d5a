"""
Tests for statement import.
"""
import pytest
import threading
from datetime import date
from decimal import Decimal
import sys
import os

from sqlalchemy.exc import OperationalError

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from recon_engine.exceptions import ImportFailedError, RecordNotFoundError, ValidationError
from recon_engine.models import (
    BatchStatus, CancellationToken, Channel, SourceFormat, TransactionStatus,
)


def statement_rows(count=10, bad_row=None):
    """Rows dated 2024-01-01 onwards; ``bad_row`` (1-based) gets a non-numeric amount."""
    rows = []
    for i in range(1, count + 1):
        rows.append({
            "date": f"2024-01-{i:02d}",
            "amount": "abc" if i == bad_row else f"{1000 + i}.00",
            "reference": f"QA{i:03d}XYZ",
            "description": f"Pay Bill from 2547000000{i:02d} - TENANT {i}",
        })
    return rows


class TestImportStatement:
    """Tests for importing rows."""

    def test_bad_row_counted_not_raised(self, service, mpesa_account):
        """Test a 10-row statement with a bad row 4."""
        batch = service.import_statement(mpesa_account.id, statement_rows(bad_row=4))

        assert batch.status == BatchStatus.COMPLETED
        assert (batch.total, batch.succeeded, batch.failed, batch.duplicate) == (10, 9, 1, 0)
        assert batch.processed == 10
        assert len(batch.errors) == 1
        assert batch.errors[0].row_number == 4
        assert batch.errors[0].field == "amount"

        transactions = service.list_transactions(mpesa_account.id)
        assert len(transactions) == 9
        assert all(t.status == TransactionStatus.UNMATCHED for t in transactions)
        assert all(t.batch_id == batch.id for t in transactions)

    def test_reimport_is_idempotent(self, service, mpesa_account):
        """Test importing the same statement twice stores nothing new."""
        service.import_statement(mpesa_account.id, statement_rows(bad_row=4))
        second = service.import_statement(mpesa_account.id, statement_rows(bad_row=4))

        assert (second.succeeded, second.failed, second.duplicate) == (0, 1, 9)
        assert len(service.list_transactions(mpesa_account.id)) == 9

    def test_duplicate_within_one_batch(self, service, mpesa_account):
        """Test a row repeated inside a file counts once."""
        rows = statement_rows(count=2)
        batch = service.import_statement(mpesa_account.id, rows + [dict(rows[0])])
        assert (batch.succeeded, batch.duplicate) == (2, 1)

    def test_same_line_on_two_accounts(self, service, mpesa_account, bank_account):
        """Test fingerprints are scoped to the account."""
        rows = statement_rows(count=1)
        service.import_statement(mpesa_account.id, rows)
        batch = service.import_statement(bank_account.id, rows)
        assert batch.succeeded == 1

    def test_batch_persisted_with_errors(self, service, store, mpesa_account):
        """Test the stored batch carries counters, period and row errors."""
        batch = service.import_statement(mpesa_account.id, statement_rows(bad_row=4), file_name="jan.csv")
        stored = store.get_batch(batch.id)

        assert stored.status == BatchStatus.COMPLETED
        assert stored.file_name == "jan.csv"
        assert stored.date_from == date(2024, 1, 1)
        assert stored.date_to == date(2024, 1, 10)
        assert stored.errors[0].row_number == 4
        assert stored.completed_at is not None

    def test_transaction_fields(self, service, mpesa_account):
        """Test parsed values land on the transaction."""
        service.import_statement(mpesa_account.id, statement_rows(count=1))
        txn = service.list_transactions(mpesa_account.id)[0]

        assert txn.amount == Decimal("1001.00")
        assert txn.reference == "QA001XYZ"
        assert txn.channel == Channel.MOBILE_MONEY
        assert txn.raw_data["reference"] == "QA001XYZ"

    def test_cancelled_import(self, service, mpesa_account):
        """Test a cancelled import ends FAILED without storing rows."""
        token = CancellationToken()
        token.cancel()
        batch = service.import_statement(mpesa_account.id, statement_rows(), cancel_token=token)

        assert batch.status == BatchStatus.FAILED
        assert batch.error_message == "cancelled"
        assert batch.processed == 0
        assert service.list_transactions(mpesa_account.id) == []

    def test_non_mapping_row(self, service, mpesa_account):
        """Test a row that is not a mapping is a row failure."""
        batch = service.import_statement(mpesa_account.id, [["2024-01-01", "100"]])
        assert batch.failed == 1


class TestImportFailures:
    """Tests for rows and storage errors that must not leave a batch open."""

    def test_oversized_amount_is_row_error(self, service, mpesa_account):
        rows = statement_rows(count=3)
        rows[1]["amount"] = "1e30"

        batch = service.import_statement(mpesa_account.id, rows)

        assert batch.status == BatchStatus.COMPLETED
        assert (batch.processed, batch.succeeded, batch.failed) == (3, 2, 1)
        assert batch.errors[0].row_number == 2

    def test_storage_error_fails_batch(self, service, store, mpesa_account, monkeypatch):
        """Test a database error marks the stored batch FAILED and raises."""
        def broken_insert(txn, conn=None):
            raise OperationalError("INSERT INTO transactions", {}, Exception("disk I/O error"))

        monkeypatch.setattr(store, "insert_transaction", broken_insert)

        with pytest.raises(ImportFailedError):
            service.import_statement(mpesa_account.id, statement_rows(count=3))

        stored = store.list_batches(mpesa_account.id)
        assert len(stored) == 1
        assert stored[0].status == BatchStatus.FAILED
        assert "disk I/O error" in stored[0].error_message
        assert stored[0].completed_at is not None

    def test_unexpected_error_fails_batch(self, service, store, mpesa_account, monkeypatch):
        """Test any other error still closes the batch before propagating."""
        def explode(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(service.importer, "_apply_row", explode)

        with pytest.raises(RuntimeError):
            service.import_statement(mpesa_account.id, statement_rows(count=3))

        stored = store.list_batches(mpesa_account.id)[0]
        assert stored.status == BatchStatus.FAILED
        assert "boom" in stored.error_message

    def test_concurrent_imports_store_each_row_once(self, service, store, mpesa_account):
        """Test two simultaneous imports of the same rows never store a line twice."""
        rows = statement_rows(count=20)
        start = threading.Barrier(2)
        batches, errors = [], []

        def run():
            start.wait()
            try:
                batches.append(service.import_statement(mpesa_account.id, [dict(r) for r in rows]))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=run) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(store.list_transactions(mpesa_account.id)) == 20
        assert sum(b.succeeded for b in batches) == 20
        assert sum(b.succeeded + b.duplicate for b in batches) == 40


class TestImportGuards:
    """Tests for account and format validation."""

    def test_unknown_account(self, service):
        with pytest.raises(RecordNotFoundError):
            service.import_statement("missing", statement_rows(count=1))

    def test_inactive_account(self, service, mpesa_account):
        service.set_account_active(mpesa_account.id, False)
        with pytest.raises(ValidationError):
            service.import_statement(mpesa_account.id, statement_rows(count=1))

    def test_unknown_source_format(self, service, mpesa_account):
        with pytest.raises(ValidationError):
            service.import_statement(mpesa_account.id, statement_rows(count=1), source_format="PDF")


class TestImportFile:
    """Tests for importing files."""

    def test_mpesa_file(self, service, mpesa_account, mpesa_csv_file):
        """Test an M-PESA export, including its failed row."""
        batch = service.import_file(mpesa_account.id, mpesa_csv_file)

        assert batch.source_format == SourceFormat.MPESA
        assert batch.file_name == "mpesa_statement.csv"
        assert (batch.total, batch.succeeded, batch.failed) == (3, 2, 1)

        amounts = sorted(t.amount for t in service.list_transactions(mpesa_account.id))
        assert amounts == [Decimal("-1200.00"), Decimal("5000.00")]
