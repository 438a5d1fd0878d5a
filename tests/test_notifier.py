"""
Tests for match notifications to the expected events feed.
"""
import pytest
from decimal import Decimal
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from recon_engine.exceptions import EventAlreadySettledError, FeedError
from recon_engine.feeds import InMemoryExpectedEventsFeed
from recon_engine.models import Channel, Match, NotificationStatus, TransactionStatus
from recon_engine.reconciler import ReconciliationService


class FlakyFeed(InMemoryExpectedEventsFeed):
    """Feed whose first ``failures`` mark-matched calls fail."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures

    def mark_matched(self, event_id, transaction_id, amount=None):
        if self.failures > 0:
            self.failures -= 1
            raise FeedError("connection reset", status_code=503, event_id=event_id)
        super().mark_matched(event_id, transaction_id, amount)


class SettledElsewhereFeed(InMemoryExpectedEventsFeed):
    """Feed that reports every event as already settled when told about a match."""

    def mark_matched(self, event_id, transaction_id, amount=None):
        raise EventAlreadySettledError(event_id, transaction_id)


def matched_service(store, test_config, feed, invoice_event, invoice_payment_row):
    """Service over ``feed`` with INV-77 paid and one matching pass run."""
    service = ReconciliationService(store=store, feed=feed, cfg=test_config)
    account = service.create_account("M-PESA Paybill 522522", Channel.MOBILE_MONEY, account_id="A1")
    feed.add_events([invoice_event])
    service.import_statement(account.id, [invoice_payment_row])
    result = service.run_matching_pass(account.id)
    return service, result


class TestDeliveryFailure:
    """Tests for a feed that is temporarily unreachable."""

    def test_match_kept_and_queued(self, store, test_config, invoice_event, invoice_payment_row):
        """Test a failed notification never undoes the match."""
        feed = FlakyFeed(failures=1)
        service, result = matched_service(store, test_config, feed, invoice_event, invoice_payment_row)

        assert result.matched_count == 1
        assert result.notification_failures == 1
        assert service.list_transactions("A1")[0].status == TransactionStatus.MATCHED

        pending = store.list_notifications(NotificationStatus.PENDING)
        assert len(pending) == 1
        assert pending[0].event_id == "INV-77"
        assert pending[0].attempts == 1
        assert "connection reset" in pending[0].last_error

    def test_retry_delivers(self, store, test_config, invoice_event, invoice_payment_row):
        feed = FlakyFeed(failures=1)
        service, _ = matched_service(store, test_config, feed, invoice_event, invoice_payment_row)

        counts = service.retry_notifications()

        assert counts["delivered"] == 1
        assert store.notification_counts() == {"DELIVERED": 1}
        txn = service.list_transactions("A1")[0]
        assert feed.matched_by["INV-77"] == [txn.id]

    def test_next_pass_retries_first(self, store, test_config, invoice_event, invoice_payment_row):
        feed = FlakyFeed(failures=1)
        service, _ = matched_service(store, test_config, feed, invoice_event, invoice_payment_row)

        service.run_matching_pass("A1")

        assert store.notification_counts() == {"DELIVERED": 1}

    def test_abandoned_after_max_attempts(self, store, test_config, invoice_event, invoice_payment_row):
        """Test the outbox gives up after NOTIFY_MAX_ATTEMPTS."""
        feed = FlakyFeed(failures=10)
        service, _ = matched_service(store, test_config, feed, invoice_event, invoice_payment_row)

        assert service.retry_notifications()["pending"] == 1
        assert service.retry_notifications()["abandoned"] == 1

        abandoned = store.list_notifications(NotificationStatus.ABANDONED)
        assert len(abandoned) == 1
        assert abandoned[0].attempts == test_config.feed.notify_max_attempts
        assert store.list_notifications(NotificationStatus.PENDING) == []
        assert service.list_transactions("A1")[0].status == TransactionStatus.MATCHED

    def test_skipped_once_unmatched(self, store, test_config, invoice_event, invoice_payment_row):
        """Test a queued notification is dropped when its match is gone."""
        feed = FlakyFeed(failures=1)
        service, _ = matched_service(store, test_config, feed, invoice_event, invoice_payment_row)
        txn = service.list_transactions("A1")[0]
        service.unmatch(txn.id, actor="jane.doe", reason="wrong invoice")

        counts = service.retry_notifications()

        assert counts["skipped"] == 1
        assert "INV-77" not in feed.matched_by


class TestSettlementConflict:
    """Tests for events settled by someone else."""

    def test_conflict_flags_line(self, store, test_config, invoice_event, invoice_payment_row):
        """Test the match stays and the line is flagged for review."""
        service, result = matched_service(store, test_config, SettledElsewhereFeed(),
                                          invoice_event, invoice_payment_row)

        assert result.matched_count == 1
        assert result.notification_failures == 1

        txn = service.list_transactions("A1")[0]
        assert txn.status == TransactionStatus.MATCHED
        assert txn.requires_attention
        assert store.notification_counts() == {"CONFLICT": 1}


class TestNotify:
    """Tests for the notifier itself."""

    def test_memo_match_needs_no_call(self, service):
        assert service.notifier.notify(Match(transaction_id="T1", event_id=None))

    def test_unknown_event_queued(self, service, store):
        match = Match(transaction_id="T1", event_id="NOPE", matched_amount=Decimal("10"))
        assert not service.notifier.notify(match)
        assert store.notification_counts() == {"PENDING": 1}
