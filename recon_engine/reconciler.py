"""
Main reconciliation service.

Wires the components together behind one facade used by the CLI, the
HTTP API and the demo:
1. Import statements
2. Run matching passes against the expected events feed
3. Handle exceptions and disputes
4. Report reconciliation health
5. Close reconciliation periods against statement balances
"""
import random
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from .analytics import ReconciliationAnalytics
from .config import Config, config
from .exception_handler import ExceptionHandler
from .exceptions import RecordNotFoundError, ValidationError
from .feeds import ExpectedEventsFeed, HttpExpectedEventsFeed, InMemoryExpectedEventsFeed
from .importer import StatementImporter
from .ledger import MatchLedger
from .logging_config import get_logger
from .matching_engine import MatchingEngine
from .models import (
    Account, AuditEntry, CancellationToken, Channel, Direction, ExpectedEvent, ImportBatch,
    Match, MatchSuggestion, MatchingPassResult, ReconciliationPeriod, ReconciliationSummary, RuleSet,
    SourceFormat, StatusChange, Transaction, TransactionStatus,
)
from .notifier import MatchNotifier
from .periods import PeriodManager
from .reporting import ReportGenerator
from .rules import RuleStore
from .statement_parser import StatementParser
from .storage import ReconStore

logger = get_logger("reconciler")


@dataclass
class TransactionDetail:
    """A transaction with its full match and status history."""
    transaction: Transaction
    active_match: Optional[Match] = None
    matches: List[Match] = field(default_factory=list)
    status_history: List[StatusChange] = field(default_factory=list)
    audit_trail: List[AuditEntry] = field(default_factory=list)
    suggestions: List[MatchSuggestion] = field(default_factory=list)


def build_feed(cfg: Optional[Config] = None) -> ExpectedEventsFeed:
    """HTTP feed when EVENTS_FEED_URL is set, otherwise an empty in-memory feed."""
    cfg = cfg or config
    if cfg.feed.is_configured():
        return HttpExpectedEventsFeed(cfg.feed)
    return InMemoryExpectedEventsFeed()


class ReconciliationService:
    """
    Facade over the reconciliation engine.

    Usage:
        service = ReconciliationService.from_config()
        account = service.create_account("M-PESA Paybill", Channel.MOBILE_MONEY, provider="Safaricom")
        service.import_file(account.id, "statement.csv")
        result = service.run_matching_pass(account.id)
    """

    def __init__(
        self,
        store: Optional[ReconStore] = None,
        feed: Optional[ExpectedEventsFeed] = None,
        cfg: Optional[Config] = None
    ):
        self.config = cfg or config
        self.store = store or ReconStore(self.config.database_url)
        self.store.create_schema()
        self.feed = feed if feed is not None else build_feed(self.config)

        self.rules = RuleStore(self.store)
        self.ledger = MatchLedger(self.store)
        self.notifier = MatchNotifier(self.store, self.feed, self.config.feed)
        self.importer = StatementImporter(
            self.store, StatementParser(self.config.importer.dayfirst), self.config.importer
        )
        self.matching_engine = MatchingEngine(
            self.store, self.feed, self.rules, self.ledger, self.notifier, self.config.matching
        )
        self.exceptions = ExceptionHandler(self.store, self.feed, self.ledger, self.notifier)
        self.analytics = ReconciliationAnalytics(self.store)
        self.periods = PeriodManager(self.store, self.analytics)
        self._report_generator: Optional[ReportGenerator] = None

        if not self.rules.all_rules():
            self.rules.seed_defaults()
        if self.config.rules_file:
            self.rules.load_yaml(self.config.rules_file)

    @classmethod
    def from_config(cls, cfg: Optional[Config] = None, events_file: Optional[Path] = None) -> "ReconciliationService":
        """Build a service from configuration, optionally preloading an events file."""
        cfg = cfg or config
        feed = build_feed(cfg)
        if events_file:
            if not isinstance(feed, InMemoryExpectedEventsFeed):
                raise ValidationError("events_file", str(events_file),
                                      "an events file cannot be combined with EVENTS_FEED_URL")
            feed.load_events_file(events_file)
        return cls(feed=feed, cfg=cfg)

    @property
    def report_generator(self) -> ReportGenerator:
        if self._report_generator is None:
            self._report_generator = ReportGenerator(self.config.reports_dir)
        return self._report_generator

    # ============== Accounts ==============

    def create_account(
        self,
        name: str,
        channel: Union[Channel, str],
        provider: str = "",
        is_primary: bool = False,
        currency: str = "KES",
        account_id: Optional[str] = None
    ) -> Account:
        if not name or not name.strip():
            raise ValidationError("name", str(name), "account name is required")
        if not isinstance(channel, Channel):
            try:
                channel = Channel(str(channel).upper())
            except ValueError:
                raise ValidationError("channel", str(channel), f"must be one of {[c.value for c in Channel]}")

        account = Account(
            name=name.strip(),
            channel=channel,
            provider=provider,
            is_primary=is_primary,
            currency=currency.upper(),
        )
        if account_id:
            account.id = account_id
        self.store.insert_account(account)
        logger.info(f"Created account {account.id} ({account.name}, {account.channel.value})")
        return account

    def get_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise RecordNotFoundError("accounts", account_id)
        return account

    def list_accounts(self, active_only: bool = False) -> List[Account]:
        return self.store.list_accounts(active_only)

    def set_account_active(self, account_id: str, is_active: bool) -> Account:
        if not self.store.set_account_active(account_id, is_active):
            raise RecordNotFoundError("accounts", account_id)
        return self.get_account(account_id)

    # ============== Import & matching ==============

    def import_statement(
        self,
        account_id: str,
        rows: Iterable[Dict[str, Any]],
        source_format: Union[SourceFormat, str] = SourceFormat.API,
        file_name: Optional[str] = None,
        imported_by: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> ImportBatch:
        return self.importer.import_statement(
            account_id, rows,
            source_format=source_format,
            file_name=file_name,
            imported_by=imported_by,
            cancel_token=cancel_token,
        )

    def import_file(
        self,
        account_id: str,
        file_path: Path,
        source_format: Optional[Union[SourceFormat, str]] = None,
        imported_by: Optional[str] = None
    ) -> ImportBatch:
        return self.importer.import_file(account_id, file_path, source_format, imported_by)

    def list_batches(self, account_id: str, limit: int = 50) -> List[ImportBatch]:
        return self.store.list_batches(account_id, limit)

    def run_matching_pass(
        self,
        account_id: str,
        rule_set: Optional[RuleSet] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> MatchingPassResult:
        """Retry queued notifications, then match the account's unmatched lines."""
        self.notifier.retry_pending()
        return self.matching_engine.run_matching_pass(account_id, rule_set, cancel_token)

    def retry_notifications(self, limit: int = 100) -> Dict[str, int]:
        return self.notifier.retry_pending(limit)

    # ============== Transactions ==============

    def get_transaction(self, transaction_id: str) -> Transaction:
        transaction = self.store.get_transaction(transaction_id)
        if transaction is None:
            raise RecordNotFoundError("transactions", transaction_id)
        return transaction

    def list_transactions(
        self,
        account_id: str,
        status: Optional[TransactionStatus] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[Transaction]:
        self.get_account(account_id)
        return self.store.list_transactions(account_id, status, limit, offset)

    def transaction_detail(self, transaction_id: str) -> TransactionDetail:
        transaction = self.get_transaction(transaction_id)
        return TransactionDetail(
            transaction=transaction,
            active_match=self.ledger.active_match(transaction_id),
            matches=self.ledger.history(transaction_id),
            status_history=self.ledger.status_history(transaction_id),
            audit_trail=self.exceptions.audit_trail(transaction_id),
            suggestions=self.store.list_suggestions(transaction_id),
        )

    # ============== Exception handling ==============

    def manual_match(self, transaction_id: str, event_id: Optional[str], actor: str,
                     reason: Optional[str] = None, memo: Optional[str] = None) -> Match:
        return self.exceptions.manual_match(transaction_id, event_id, actor, reason, memo)

    def unmatch(self, transaction_id: str, actor: str, reason: Optional[str] = None) -> Transaction:
        return self.exceptions.unmatch(transaction_id, actor, reason)

    def mark_disputed(self, transaction_id: str, actor: str, reason: str) -> Transaction:
        return self.exceptions.mark_disputed(transaction_id, actor, reason)

    def ignore(self, transaction_id: str, actor: str, reason: Optional[str] = None) -> Transaction:
        return self.exceptions.ignore(transaction_id, actor, reason)

    def reopen(self, transaction_id: str, actor: str, reason: Optional[str] = None) -> Transaction:
        return self.exceptions.reopen(transaction_id, actor, reason)

    def resolve_dispute(self, transaction_id: str, actor: str, reason: str, uphold: bool) -> Transaction:
        return self.exceptions.resolve_dispute(transaction_id, actor, reason, uphold)

    def suggestions(self, transaction_id: str) -> List[MatchSuggestion]:
        return self.exceptions.suggestions(transaction_id)

    # ============== Reporting ==============

    def summary(self, account_id: str, as_of: Optional[date] = None) -> ReconciliationSummary:
        return self.analytics.summary(account_id, as_of)

    def portfolio(self, as_of: Optional[date] = None) -> Dict[str, ReconciliationSummary]:
        return self.analytics.portfolio(as_of)

    def generate_reports(
        self,
        account_id: str,
        formats: Iterable[str] = ("excel", "json"),
        as_of: Optional[date] = None
    ) -> Dict[str, Path]:
        account = self.get_account(account_id)
        summary = self.analytics.summary(account_id, as_of)
        matches = self.store.active_matches_for_account(account_id)
        unmatched = self.analytics.unmatched_frame(account_id, as_of)

        report_paths = {}
        if "excel" in formats:
            report_paths["excel"] = self.report_generator.generate_excel_report(
                account, summary, matches, unmatched
            )
        if "json" in formats:
            report_paths["json"] = self.report_generator.generate_json_report(
                account, summary, matches, unmatched
            )
        return report_paths

    # ============== Reconciliation periods ==============

    def start_period(
        self,
        account_id: str,
        start_date: date,
        end_date: date,
        statement_balance: Decimal,
        name: Optional[str] = None,
        notes: Optional[str] = None
    ) -> ReconciliationPeriod:
        return self.periods.start_period(account_id, start_date, end_date, statement_balance, name, notes)

    def list_periods(self, account_id: str) -> List[ReconciliationPeriod]:
        return self.periods.list_periods(account_id)

    def get_period(self, period_id: str) -> ReconciliationPeriod:
        return self.periods.get_period(period_id)

    def refresh_period(self, period_id: str) -> ReconciliationPeriod:
        return self.periods.refresh_period(period_id)

    def complete_period(self, period_id: str, actor: str, notes: Optional[str] = None) -> ReconciliationPeriod:
        return self.periods.complete_period(period_id, actor, notes)

    def review_period(self, period_id: str, actor: str) -> ReconciliationPeriod:
        return self.periods.review_period(period_id, actor)

    def close(self):
        """Release database connections."""
        self.store.close()


def create_sample_data(service: ReconciliationService, seed: int = 7,
                       as_of: Optional[date] = None) -> Dict[str, Any]:
    """
    Populate a service with a mobile-money and a bank account, expected
    rent invoices, and statements that settle most of them.

    Some payments are short by a few shillings (partial), some invoices are
    never paid, and a few statement lines have nothing to match.
    """
    rng = random.Random(seed)
    today = as_of or date.today()

    mpesa = service.create_account("M-PESA Paybill 522522", Channel.MOBILE_MONEY,
                                   provider="Safaricom", is_primary=True)
    bank = service.create_account("Equity Operating Account", Channel.BANK, provider="Equity Bank")

    tenants = [
        "Grace Wanjiku", "Peter Otieno", "Amina Hassan", "John Kamau", "Mercy Achieng",
        "David Mwangi", "Faith Njeri", "Brian Kiprop", "Lucy Wambui", "Samuel Mutua",
        "Esther Chebet", "Kevin Omondi",
    ]
    rents = [Decimal("15000"), Decimal("22500"), Decimal("30000"), Decimal("45000"), Decimal("8000")]

    events: List[ExpectedEvent] = []
    mpesa_rows: List[Dict[str, str]] = []
    bank_rows: List[Dict[str, str]] = []

    for i, tenant in enumerate(tenants):
        # Due dates three days apart so no two events share a day
        due = today - timedelta(days=3 * i + 2)
        rent = rng.choice(rents)
        phone = f"2547{rng.randint(10000000, 99999999)}"

        if i % 2 == 0:
            invoice = f"INV-{1000 + i}"
            receipt = f"Q{chr(65 + i)}{rng.randint(1000000, 9999999)}XZ"
            events.append(ExpectedEvent(
                id=f"evt-{invoice}", expected_amount=rent, expected_date=due,
                entity_type="invoice", entity_id=invoice, account_id=mpesa.id,
                reference=invoice, receipt_id=receipt, direction=Direction.CREDIT,
                counterparty=tenant,
            ))
            if i % 6 == 4:
                continue  # never paid
            paid = rent - Decimal("5") if i % 4 == 2 else rent
            mpesa_rows.append({
                "Receipt No.": receipt,
                "Completion Time": f"{due.isoformat()} {rng.randint(8, 20):02d}:{rng.randint(0, 59):02d}:00",
                "Details": f"Pay Bill from {phone} - {tenant.upper()} Acc. {invoice}",
                "Transaction Status": "Completed",
                "Paid In": f"{paid:,.2f}",
                "Withdrawn": "",
                "Balance": "",
            })
        else:
            lease = f"RENT-{2000 + i}"
            events.append(ExpectedEvent(
                id=f"evt-{lease}", expected_amount=rent, expected_date=due,
                entity_type="lease", entity_id=lease, account_id=bank.id,
                reference=lease, direction=Direction.CREDIT, counterparty=tenant,
            ))
            if i % 6 == 5:
                continue  # never paid
            bank_rows.append({
                "Date": (due + timedelta(days=1)).strftime("%d/%m/%Y"),
                "Narration": f"RTGS {tenant.upper()} {lease}",
                "Reference": f"FT{rng.randint(10000000, 99999999)}",
                "Credit": f"{rent:,.2f}",
                "Debit": "",
            })

    # Lines nobody expected, plus one the provider reports as failed
    mpesa_rows.append({
        "Receipt No.": f"QZ{rng.randint(1000000, 9999999)}AB",
        "Completion Time": f"{(today - timedelta(days=40)).isoformat()} 09:15:00",
        "Details": "Customer Transfer from 254700000000 - UNKNOWN PAYER",
        "Transaction Status": "Completed",
        "Paid In": "1,250.00",
        "Withdrawn": "",
        "Balance": "",
    })
    mpesa_rows.append({
        "Receipt No.": f"QY{rng.randint(1000000, 9999999)}CD",
        "Completion Time": f"{(today - timedelta(days=3)).isoformat()} 11:00:00",
        "Details": "Pay Bill reversal",
        "Transaction Status": "Failed",
        "Paid In": "3,000.00",
        "Withdrawn": "",
        "Balance": "",
    })
    bank_rows.append({
        "Date": (today - timedelta(days=10)).strftime("%d/%m/%Y"),
        "Narration": "LEDGER FEE",
        "Reference": f"CHG{rng.randint(100000, 999999)}",
        "Credit": "",
        "Debit": "350.00",
    })

    if isinstance(service.feed, InMemoryExpectedEventsFeed):
        service.feed.add_events(events)

    batches = [
        service.import_statement(mpesa.id, mpesa_rows, SourceFormat.MPESA, file_name="mpesa_sample.csv"),
        service.import_statement(bank.id, bank_rows, SourceFormat.CSV, file_name="bank_sample.csv"),
    ]

    return {"accounts": [mpesa, bank], "events": events, "batches": batches}
