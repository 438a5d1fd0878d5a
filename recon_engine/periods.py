"""
Reconciliation periods.

A period closes a date range of one account against the balance printed
on the bank or provider statement. The opening balance carries over from
the last closed period; the closing balance adds the net movement of the
lines dated inside the range.
"""
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from .analytics import ReconciliationAnalytics
from .exceptions import RecordNotFoundError, ValidationError
from .logging_config import get_logger
from .models import MATCHED_STATES, PeriodStatus, ReconciliationPeriod, TransactionStatus, utc_now
from .storage import ReconStore

logger = get_logger("periods")


class PeriodManager:
    """Start, refresh, complete and review reconciliation periods."""

    def __init__(self, store: ReconStore, analytics: Optional[ReconciliationAnalytics] = None):
        self.store = store
        self.analytics = analytics or ReconciliationAnalytics(store)

    def start_period(
        self,
        account_id: str,
        start_date: date,
        end_date: date,
        statement_balance: Decimal,
        name: Optional[str] = None,
        notes: Optional[str] = None
    ) -> ReconciliationPeriod:
        """
        Open an IN_PROGRESS period and snapshot its counts.

        The opening balance is the closing balance of the latest COMPLETED
        or REVIEWED period that ends before ``start_date``, else zero.
        """
        if self.store.get_account(account_id) is None:
            raise RecordNotFoundError("accounts", account_id)
        if end_date < start_date:
            raise ValidationError("end_date", end_date.isoformat(), "must not be before start_date")

        previous = self.store.last_closed_period(account_id, start_date)
        period = ReconciliationPeriod(
            account_id=account_id,
            name=name or f"{start_date.isoformat()} to {end_date.isoformat()}",
            start_date=start_date,
            end_date=end_date,
            opening_balance=previous.closing_balance if previous else Decimal("0"),
            statement_balance=_money(statement_balance),
            notes=notes,
        )
        self._snapshot(period)

        try:
            self.store.insert_period(period)
        except IntegrityError:
            raise ValidationError(
                "period", period.name, "a period with this date range already exists for the account"
            )

        logger.info(
            f"Started period {period.name} for account {account_id} "
            f"(opening {period.opening_balance}, closing {period.closing_balance}, "
            f"difference {period.difference})"
        )
        return period

    def get_period(self, period_id: str) -> ReconciliationPeriod:
        period = self.store.get_period(period_id)
        if period is None:
            raise RecordNotFoundError("reconciliation_periods", period_id)
        return period

    def list_periods(self, account_id: str) -> List[ReconciliationPeriod]:
        if self.store.get_account(account_id) is None:
            raise RecordNotFoundError("accounts", account_id)
        return self.store.list_periods(account_id)

    def refresh_period(self, period_id: str) -> ReconciliationPeriod:
        """Recompute the snapshot of an IN_PROGRESS period."""
        period = self.get_period(period_id)
        self._require_status(period, PeriodStatus.IN_PROGRESS, "refresh")
        self._snapshot(period)
        period.updated_at = utc_now()
        self.store.update_period(period)
        return period

    def complete_period(self, period_id: str, actor: str, notes: Optional[str] = None) -> ReconciliationPeriod:
        """Take a final snapshot and mark the period COMPLETED."""
        _require_actor(actor)
        period = self.get_period(period_id)
        self._require_status(period, PeriodStatus.IN_PROGRESS, "complete")

        self._snapshot(period)
        now = utc_now()
        period.status = PeriodStatus.COMPLETED
        period.reconciled_by = actor.strip()
        period.reconciled_at = now
        period.updated_at = now
        if notes:
            period.notes = notes
        self.store.update_period(period)

        logger.info(f"Period {period.name} of account {period.account_id} completed by {period.reconciled_by}")
        if not period.is_balanced:
            logger.warning(
                f"Period {period.name} of account {period.account_id} closed with "
                f"difference {period.difference}"
            )
        return period

    def review_period(self, period_id: str, actor: str) -> ReconciliationPeriod:
        """Sign off a COMPLETED period."""
        _require_actor(actor)
        period = self.get_period(period_id)
        self._require_status(period, PeriodStatus.COMPLETED, "review")

        now = utc_now()
        period.status = PeriodStatus.REVIEWED
        period.reviewed_by = actor.strip()
        period.reviewed_at = now
        period.updated_at = now
        self.store.update_period(period)

        logger.info(f"Period {period.name} of account {period.account_id} reviewed by {period.reviewed_by}")
        return period

    def _snapshot(self, period: ReconciliationPeriod):
        summary = self.analytics.summary(
            period.account_id, date_from=period.start_date, date_to=period.end_date
        )
        counts = summary.counts_by_status
        period.total_transactions = summary.total_transactions
        period.matched_transactions = sum(counts[s.value] for s in MATCHED_STATES)
        period.unmatched_transactions = counts[TransactionStatus.UNMATCHED.value]
        period.total_variance = summary.total_variance
        period.closing_balance = period.opening_balance + summary.total_credits - summary.total_debits

    @staticmethod
    def _require_status(period: ReconciliationPeriod, expected: PeriodStatus, action: str):
        if period.status != expected:
            raise ValidationError(
                "status", period.status.value, f"cannot {action} a period that is not {expected.value}"
            )


def _money(value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError("statement_balance", str(value), "must be a number")
    if not amount.is_finite() or abs(amount) >= Decimal("1e13"):
        raise ValidationError("statement_balance", str(value), "is out of range")
    return amount.quantize(Decimal("0.01"))


def _require_actor(actor: str):
    if not (actor and actor.strip()):
        raise ValidationError("actor", str(actor), "an actor is required")
