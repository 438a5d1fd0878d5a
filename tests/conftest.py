"""
Pytest fixtures for reconciliation engine tests.
"""
import pytest
from datetime import date
from decimal import Decimal
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from recon_engine.config import Config, FeedConfig, ImportConfig, MatchingConfig
from recon_engine.feeds import InMemoryExpectedEventsFeed
from recon_engine.models import Channel, Direction, ExpectedEvent
from recon_engine.reconciler import ReconciliationService
from recon_engine.storage import ReconStore


@pytest.fixture
def test_config(tmp_path):
    """Configuration pinned to defaults, independent of the environment."""
    return Config(
        matching=MatchingConfig(
            partial_tolerance_amount=Decimal("10"),
            partial_tolerance_percent=Decimal("0"),
            lookback_days=7,
            lookahead_days=7,
            lock_ttl_seconds=900,
            max_suggestions=5,
        ),
        importer=ImportConfig(workers=2, dayfirst=True),
        feed=FeedConfig(base_url="", token="", timeout=5, notify_max_attempts=3),
        database_url=f"sqlite:///{tmp_path / 'recon.db'}",
        rules_file=None,
        reports_dir=tmp_path / "reports",
    )


@pytest.fixture
def store(test_config):
    """A fresh SQLite database per test."""
    store = ReconStore(test_config.database_url)
    store.create_schema()
    yield store
    store.close()


@pytest.fixture
def feed():
    """Empty in-memory expected events feed."""
    return InMemoryExpectedEventsFeed()


@pytest.fixture
def service(store, feed, test_config):
    """Reconciliation service with default rules seeded."""
    return ReconciliationService(store=store, feed=feed, cfg=test_config)


@pytest.fixture
def mpesa_account(service):
    """Mobile-money account with a fixed id."""
    return service.create_account(
        "M-PESA Paybill 522522", Channel.MOBILE_MONEY, provider="Safaricom", account_id="A1"
    )


@pytest.fixture
def bank_account(service):
    """Bank account with a fixed id."""
    return service.create_account("Equity Operating", Channel.BANK, provider="Equity Bank", account_id="B1")


@pytest.fixture
def invoice_event():
    """Invoice INV-77 expecting 5000 on 2024-01-15, paid with receipt QA123XYZ."""
    return ExpectedEvent(
        id="INV-77",
        expected_amount=Decimal("5000"),
        expected_date=date(2024, 1, 15),
        entity_type="invoice",
        entity_id="INV-77",
        account_id="A1",
        reference="INV-77",
        receipt_id="QA123XYZ",
        direction=Direction.CREDIT,
        counterparty="Grace Wanjiku",
    )


@pytest.fixture
def invoice_payment_row():
    """Statement row paying INV-77."""
    return {
        "date": "2024-01-15",
        "amount": "5000.00",
        "reference": "QA123XYZ",
        "description": "Pay Bill from 254712345678 - GRACE WANJIKU Acc. INV-77",
    }


@pytest.fixture
def matched_invoice(service, feed, mpesa_account, invoice_event, invoice_payment_row):
    """INV-77 paid and auto-matched with HIGH confidence. Returns the transaction."""
    feed.add_events([invoice_event])
    service.import_statement(mpesa_account.id, [invoice_payment_row])
    service.run_matching_pass(mpesa_account.id)
    return service.list_transactions(mpesa_account.id)[0]


@pytest.fixture
def mpesa_csv_file(tmp_path):
    """A Safaricom statement export."""
    content = """Receipt No.,Completion Time,Details,Transaction Status,Paid In,Withdrawn,Balance
QA123XYZ,2024-01-15 10:23:11,Pay Bill from 254712345678 - GRACE WANJIKU Acc. INV-77,Completed,"5,000.00",,"12,500.00"
QB456ABC,2024-01-16 08:01:45,Customer Transfer to 254700111222 - PETER OTIENO,Completed,,"1,200.00","11,300.00"
QC789DEF,2024-01-16 09:14:02,Pay Bill from 254733444555 - AMINA HASSAN Acc. INV-78,Failed,"3,000.00",,"11,300.00"
"""
    path = tmp_path / "mpesa_statement.csv"
    path.write_text(content)
    return path
