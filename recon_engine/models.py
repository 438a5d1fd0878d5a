"""Data models for statement reconciliation."""
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Dict, Tuple
import hashlib
import json
import threading
import uuid


SYSTEM_ACTOR = "system"


def utc_now() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Channel(Enum):
    """Statement channel of an account."""
    BANK = "BANK"
    MOBILE_MONEY = "MOBILE_MONEY"


class Direction(Enum):
    """Money flow direction, from the account holder's point of view."""
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class TransactionStatus(Enum):
    """Reconciliation status of a statement line."""
    UNMATCHED = "UNMATCHED"
    MATCHED = "MATCHED"
    PARTIALLY_MATCHED = "PARTIALLY_MATCHED"
    MANUAL_MATCH = "MANUAL_MATCH"
    DISPUTED = "DISPUTED"
    IGNORED = "IGNORED"


# Statuses that require exactly one active match
MATCHED_STATES = frozenset({
    TransactionStatus.MATCHED,
    TransactionStatus.PARTIALLY_MATCHED,
    TransactionStatus.MANUAL_MATCH,
})


class ConfidenceTier(Enum):
    """How much trust a match deserves."""
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    MANUAL = "MANUAL"


class RuleKind(Enum):
    """Predicate family of a match rule."""
    EXACT_AMOUNT_DATE = "EXACT_AMOUNT_DATE"
    REFERENCE_PATTERN = "REFERENCE_PATTERN"
    CHANNEL_RECEIPT_ID = "CHANNEL_RECEIPT_ID"
    FUZZY_TOLERANT = "FUZZY_TOLERANT"


DEFAULT_CONFIDENCE = {
    RuleKind.EXACT_AMOUNT_DATE: ConfidenceTier.HIGH,
    RuleKind.CHANNEL_RECEIPT_ID: ConfidenceTier.HIGH,
    RuleKind.REFERENCE_PATTERN: ConfidenceTier.MEDIUM,
    RuleKind.FUZZY_TOLERANT: ConfidenceTier.LOW,
}


class SourceFormat(Enum):
    """Where an import batch came from."""
    CSV = "CSV"
    EXCEL = "EXCEL"
    MPESA = "MPESA"
    API = "API"
    MANUAL = "MANUAL"


class BatchStatus(Enum):
    """Import batch lifecycle."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class AuditAction(Enum):
    """Human actions recorded in the audit log."""
    MANUAL_MATCH = "MANUAL_MATCH"
    UNMATCH = "UNMATCH"
    DISPUTE = "DISPUTE"
    IGNORE = "IGNORE"
    REOPEN = "REOPEN"
    RESOLVE_DISPUTE = "RESOLVE_DISPUTE"


class PeriodStatus(Enum):
    """Lifecycle of a reconciliation period."""
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    REVIEWED = "REVIEWED"


class NotificationStatus(Enum):
    """Delivery state of a mark-matched call to the events feed."""
    PENDING = "PENDING"
    DELIVERED = "DELIVERED"
    CONFLICT = "CONFLICT"
    ABANDONED = "ABANDONED"


def compute_fingerprint(account_id: str, transaction_date: date, amount: Decimal,
                        reference: Optional[str]) -> str:
    """
    Stable identity of a statement line within an account.

    Two rows with the same account, date, signed amount and reference
    are the same transaction no matter which file they arrived in.
    """
    normalized_amount = Decimal(amount).quantize(Decimal("0.01"))
    normalized_reference = (reference or "").strip().upper()
    raw = f"{account_id}|{transaction_date.isoformat()}|{normalized_amount}|{normalized_reference}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass
class Account:
    """A bank or mobile-money account whose statements get reconciled."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    channel: Channel = Channel.BANK
    provider: str = ""
    is_primary: bool = False
    is_active: bool = True
    currency: str = "KES"
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class ImportRowError:
    """A single rejected row within a batch."""
    row_number: int
    reason: str
    field: Optional[str] = None

    def to_dict(self) -> dict:
        return {"row_number": self.row_number, "reason": self.reason, "field": self.field}


@dataclass
class ImportBatch:
    """One statement upload and its row outcome counters."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    account_id: str = ""
    source_format: SourceFormat = SourceFormat.API
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    duplicate: int = 0
    status: BatchStatus = BatchStatus.PENDING
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    errors: List[ImportRowError] = field(default_factory=list)
    error_message: Optional[str] = None
    imported_by: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)

    @property
    def is_final(self) -> bool:
        return self.status in (BatchStatus.COMPLETED, BatchStatus.FAILED)


@dataclass
class Transaction:
    """A statement line from a bank or mobile-money export."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    account_id: str = ""
    batch_id: Optional[str] = None
    transaction_date: date = None
    value_date: Optional[date] = None
    reference: Optional[str] = None
    description: str = ""
    amount: Decimal = Decimal("0")
    direction: Direction = Direction.CREDIT
    counterparty: Optional[str] = None
    channel: Channel = Channel.BANK
    fingerprint: str = ""
    status: TransactionStatus = TransactionStatus.UNMATCHED
    variance_amount: Decimal = Decimal("0")
    requires_attention: bool = False
    raw_data: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def absolute_amount(self) -> Decimal:
        return abs(self.amount)

    def is_credit(self) -> bool:
        return self.direction == Direction.CREDIT

    def search_text(self) -> str:
        """Reference and description joined for pattern lookups."""
        return " ".join(part for part in (self.reference, self.description) if part)


@dataclass
class MatchRule:
    """A single matching rule."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    priority: int = 100
    kind: RuleKind = RuleKind.EXACT_AMOUNT_DATE
    amount_tolerance: Decimal = Decimal("0")
    amount_tolerance_percent: Decimal = Decimal("0")
    date_window_days: int = 0
    confidence: Optional[ConfidenceTier] = None
    reference_pattern: Optional[str] = None
    description_keywords: List[str] = field(default_factory=list)
    payer_keywords: List[str] = field(default_factory=list)
    entity_type: Optional[str] = None
    channel: Optional[Channel] = None
    description: str = ""
    is_active: bool = True

    def __post_init__(self):
        if self.confidence is None:
            self.confidence = DEFAULT_CONFIDENCE[self.kind]

    def tolerance_for(self, amount: Decimal) -> Decimal:
        """Effective absolute tolerance, the larger of absolute and percent."""
        percent_tolerance = abs(amount) * self.amount_tolerance_percent / Decimal("100")
        return max(self.amount_tolerance, percent_tolerance)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "priority": self.priority,
            "kind": self.kind.value,
            "amount_tolerance": str(self.amount_tolerance),
            "amount_tolerance_percent": str(self.amount_tolerance_percent),
            "date_window_days": self.date_window_days,
            "confidence": self.confidence.value,
            "reference_pattern": self.reference_pattern,
            "description_keywords": list(self.description_keywords),
            "payer_keywords": list(self.payer_keywords),
            "entity_type": self.entity_type,
            "channel": self.channel.value if self.channel else None,
            "description": self.description,
            "is_active": self.is_active,
        }


@dataclass(frozen=True)
class RuleSet:
    """Immutable, versioned snapshot of the active rules used by one matching pass."""
    rules: Tuple[MatchRule, ...] = ()
    version: str = ""

    @classmethod
    def from_rules(cls, rules: List[MatchRule]) -> "RuleSet":
        ordered = tuple(sorted(
            (r for r in rules if r.is_active),
            key=lambda r: (r.priority, r.id)
        ))
        payload = json.dumps([r.to_dict() for r in ordered], sort_keys=True)
        version = hashlib.sha256(payload.encode("utf-8")).hexdigest()[:12]
        return cls(rules=ordered, version=version)

    def __iter__(self):
        return iter(self.rules)

    def __len__(self):
        return len(self.rules)


@dataclass(frozen=True)
class ExpectedEvent:
    """An internal financial event expected to appear on a statement."""
    id: str
    expected_amount: Decimal
    expected_date: date
    entity_type: str = ""
    entity_id: str = ""
    fully_matched: bool = False
    account_id: Optional[str] = None
    reference: Optional[str] = None
    receipt_id: Optional[str] = None
    direction: Optional[Direction] = None
    counterparty: Optional[str] = None
    allows_partial_settlements: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "ExpectedEvent":
        expected_date = data["expected_date"]
        if isinstance(expected_date, str):
            expected_date = date.fromisoformat(expected_date[:10])
        elif isinstance(expected_date, datetime):
            expected_date = expected_date.date()
        direction = data.get("direction")
        return cls(
            id=str(data["id"]),
            expected_amount=Decimal(str(data["expected_amount"])),
            expected_date=expected_date,
            entity_type=data.get("entity_type") or "",
            entity_id=str(data.get("entity_id") or ""),
            fully_matched=bool(data.get("fully_matched", False)),
            account_id=data.get("account_id"),
            reference=data.get("reference"),
            receipt_id=data.get("receipt_id"),
            direction=Direction(direction.upper()) if direction else None,
            counterparty=data.get("counterparty"),
            allows_partial_settlements=bool(data.get("allows_partial_settlements", False)),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "expected_amount": str(self.expected_amount),
            "expected_date": self.expected_date.isoformat(),
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "fully_matched": self.fully_matched,
            "account_id": self.account_id,
            "reference": self.reference,
            "receipt_id": self.receipt_id,
            "direction": self.direction.value if self.direction else None,
            "counterparty": self.counterparty,
            "allows_partial_settlements": self.allows_partial_settlements,
        }


@dataclass
class DateWindow:
    """Inclusive date range used to query expected events."""
    start: date
    end: date

    @classmethod
    def around(cls, day: date, lookback_days: int, lookahead_days: int) -> "DateWindow":
        # Clamped to the representable calendar
        start = day - timedelta(days=min(lookback_days, (day - date.min).days))
        end = day + timedelta(days=min(lookahead_days, (date.max - day).days))
        return cls(start, end)

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


@dataclass
class Match:
    """Link between a transaction and an expected event (or a manual memo)."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    transaction_id: str = ""
    event_id: Optional[str] = None
    confidence: ConfidenceTier = ConfidenceTier.MANUAL
    rule_id: Optional[str] = None
    rule_set_version: Optional[str] = None
    actor: str = SYSTEM_ACTOR
    score: float = 0.0
    matched_amount: Decimal = Decimal("0")
    variance: Decimal = Decimal("0")
    memo: Optional[str] = None

    # Snapshot of the event at match time
    event_entity_type: Optional[str] = None
    event_entity_id: Optional[str] = None
    event_amount: Optional[Decimal] = None
    event_date: Optional[date] = None
    event_allows_partial: bool = False

    created_at: datetime = field(default_factory=utc_now)
    superseded_at: Optional[datetime] = None
    superseded_by: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.superseded_at is None

    def implied_status(self) -> TransactionStatus:
        """Transaction status this match stands for."""
        if self.confidence == ConfidenceTier.MANUAL:
            return TransactionStatus.MANUAL_MATCH
        if self.variance != 0:
            return TransactionStatus.PARTIALLY_MATCHED
        return TransactionStatus.MATCHED


@dataclass
class MatchSuggestion:
    """An ambiguous candidate kept for human review."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    transaction_id: str = ""
    event_id: str = ""
    rule_id: Optional[str] = None
    score: float = 0.0
    reasons: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class AuditEntry:
    """Record of a human action on a transaction."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    transaction_id: str = ""
    action: AuditAction = AuditAction.MANUAL_MATCH
    actor: str = ""
    reason: Optional[str] = None
    from_status: Optional[TransactionStatus] = None
    to_status: Optional[TransactionStatus] = None
    match_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class StatusChange:
    """One row of a transaction's status history."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    transaction_id: str = ""
    from_status: Optional[TransactionStatus] = None
    to_status: TransactionStatus = TransactionStatus.UNMATCHED
    actor: str = SYSTEM_ACTOR
    reason: Optional[str] = None
    match_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class PendingNotification:
    """Outbox row for a mark-matched call that has not reached the feed."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    match_id: str = ""
    event_id: str = ""
    transaction_id: str = ""
    status: NotificationStatus = NotificationStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)


@dataclass
class MatchingPassResult:
    """Outcome counters of one matching pass."""
    account_id: str = ""
    rule_set_version: str = ""
    matched_count: int = 0
    partially_matched_count: int = 0
    ambiguous_count: int = 0
    unmatched_count: int = 0
    skipped_count: int = 0
    notification_failures: int = 0
    cancelled: bool = False
    started_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    @property
    def processed_count(self) -> int:
        return self.matched_count + self.ambiguous_count + self.unmatched_count + self.skipped_count

    @property
    def processing_time_seconds(self) -> float:
        if not self.completed_at:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()


@dataclass
class ReconciliationSummary:
    """Point-in-time reconciliation health of one account."""
    account_id: str = ""
    as_of: datetime = field(default_factory=utc_now)
    total_transactions: int = 0
    counts_by_status: Dict[str, int] = field(default_factory=dict)
    match_rate: float = 0.0
    aging_buckets: Dict[str, int] = field(default_factory=lambda: {"0-7": 0, "8-30": 0, "30+": 0})
    total_variance: Decimal = Decimal("0")
    unmatched_amount: Decimal = Decimal("0")
    total_credits: Decimal = Decimal("0")
    total_debits: Decimal = Decimal("0")
    auto_matched_count: int = 0
    manual_matched_count: int = 0

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "as_of": self.as_of.isoformat(),
            "total_transactions": self.total_transactions,
            "counts_by_status": dict(self.counts_by_status),
            "match_rate": self.match_rate,
            "aging_buckets": dict(self.aging_buckets),
            "total_variance": str(self.total_variance),
            "unmatched_amount": str(self.unmatched_amount),
            "total_credits": str(self.total_credits),
            "total_debits": str(self.total_debits),
            "auto_matched_count": self.auto_matched_count,
            "manual_matched_count": self.manual_matched_count,
        }


@dataclass
class ReconciliationPeriod:
    """A date range of one account reconciled against its statement balance."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    account_id: str = ""
    name: str = ""
    start_date: date = None
    end_date: date = None
    opening_balance: Decimal = Decimal("0")
    closing_balance: Decimal = Decimal("0")
    statement_balance: Decimal = Decimal("0")
    status: PeriodStatus = PeriodStatus.IN_PROGRESS
    total_transactions: int = 0
    matched_transactions: int = 0
    unmatched_transactions: int = 0
    total_variance: Decimal = Decimal("0")
    notes: Optional[str] = None
    reconciled_by: Optional[str] = None
    reconciled_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def difference(self) -> Decimal:
        """Statement balance less the computed closing balance."""
        return self.statement_balance - self.closing_balance

    @property
    def is_balanced(self) -> bool:
        return self.difference == 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "name": self.name,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "opening_balance": str(self.opening_balance),
            "closing_balance": str(self.closing_balance),
            "statement_balance": str(self.statement_balance),
            "difference": str(self.difference),
            "status": self.status.value,
            "total_transactions": self.total_transactions,
            "matched_transactions": self.matched_transactions,
            "unmatched_transactions": self.unmatched_transactions,
            "total_variance": str(self.total_variance),
            "notes": self.notes,
            "reconciled_by": self.reconciled_by,
            "reconciled_at": self.reconciled_at.isoformat() if self.reconciled_at else None,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
        }


class CancellationToken:
    """Cooperative cancellation flag checked between rows and transactions."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
