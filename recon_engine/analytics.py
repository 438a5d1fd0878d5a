"""Reconciliation health metrics per account."""
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Optional, Union

import pandas as pd

from .exceptions import RecordNotFoundError
from .logging_config import get_logger
from .models import (
    MATCHED_STATES, Direction, ReconciliationSummary, TransactionStatus, utc_now,
)
from .storage import ReconStore

logger = get_logger("analytics")

AGING_BUCKETS = ("0-7", "8-30", "30+")


def aging_bucket(days: int) -> str:
    """Bucket label for an unmatched line that is ``days`` old."""
    if days <= 7:
        return "0-7"
    if days <= 30:
        return "8-30"
    return "30+"


def _as_of_date(as_of: Optional[Union[date, datetime]]) -> date:
    if as_of is None:
        return utc_now().date()
    if isinstance(as_of, datetime):
        return as_of.date()
    return as_of


class ReconciliationAnalytics:
    """Read-only reporting over transactions and matches."""

    def __init__(self, store: ReconStore):
        self.store = store

    def summary(
        self,
        account_id: str,
        as_of: Optional[Union[date, datetime]] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None
    ) -> ReconciliationSummary:
        """
        Compute the reconciliation summary of one account.

        ``match_rate`` counts MATCHED, PARTIALLY_MATCHED and MANUAL_MATCH
        lines over all lines of the account, IGNORED included.
        ``date_from`` and ``date_to`` limit the lines to a transaction date range.
        """
        if self.store.get_account(account_id) is None:
            raise RecordNotFoundError("accounts", account_id)

        today = _as_of_date(as_of)
        transactions = self.store.list_transactions(account_id, date_from=date_from, date_to=date_to)

        counts = {status.value: 0 for status in TransactionStatus}
        aging = {bucket: 0 for bucket in AGING_BUCKETS}
        total_variance = Decimal("0")
        unmatched_amount = Decimal("0")
        total_credits = Decimal("0")
        total_debits = Decimal("0")

        for txn in transactions:
            counts[txn.status.value] += 1

            if txn.direction == Direction.CREDIT:
                total_credits += txn.absolute_amount
            else:
                total_debits += txn.absolute_amount

            if txn.status == TransactionStatus.UNMATCHED:
                aging[aging_bucket((today - txn.transaction_date).days)] += 1
                unmatched_amount += txn.absolute_amount
            elif txn.status in (TransactionStatus.PARTIALLY_MATCHED, TransactionStatus.DISPUTED):
                total_variance += abs(txn.variance_amount)

        matched = sum(counts[s.value] for s in MATCHED_STATES)

        return ReconciliationSummary(
            account_id=account_id,
            as_of=datetime.combine(today, datetime.min.time()) if as_of is not None else utc_now(),
            total_transactions=len(transactions),
            counts_by_status=counts,
            match_rate=round(matched / len(transactions), 4) if transactions else 0.0,
            aging_buckets=aging,
            total_variance=total_variance,
            unmatched_amount=unmatched_amount,
            total_credits=total_credits,
            total_debits=total_debits,
            auto_matched_count=counts[TransactionStatus.MATCHED.value]
            + counts[TransactionStatus.PARTIALLY_MATCHED.value],
            manual_matched_count=counts[TransactionStatus.MANUAL_MATCH.value],
        )

    def portfolio(self, as_of: Optional[Union[date, datetime]] = None) -> Dict[str, ReconciliationSummary]:
        """Summaries for every active account, keyed by account id."""
        return {
            account.id: self.summary(account.id, as_of)
            for account in self.store.list_accounts(active_only=True)
        }

    def unmatched_frame(self, account_id: str, as_of: Optional[Union[date, datetime]] = None) -> pd.DataFrame:
        """Unmatched lines with their age, oldest first."""
        today = _as_of_date(as_of)
        rows = []
        for txn in self.store.list_transactions(account_id, status=TransactionStatus.UNMATCHED):
            days = (today - txn.transaction_date).days
            rows.append({
                "id": txn.id,
                "transaction_date": txn.transaction_date,
                "reference": txn.reference,
                "description": txn.description,
                "counterparty": txn.counterparty,
                "direction": txn.direction.value,
                "amount": float(txn.amount),
                "days_unmatched": days,
                "aging_bucket": aging_bucket(days),
                "requires_attention": txn.requires_attention,
            })

        columns = [
            "id", "transaction_date", "reference", "description", "counterparty",
            "direction", "amount", "days_unmatched", "aging_bucket", "requires_attention",
        ]
        df = pd.DataFrame(rows, columns=columns)
        if not df.empty:
            df = df.sort_values(["days_unmatched", "id"], ascending=[False, True]).reset_index(drop=True)
        return df
