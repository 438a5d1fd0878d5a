"""
Persistence layer for the reconciliation engine.

Tables are declared with SQLAlchemy Core. The invariants that must hold
under concurrency live in the schema itself:

- ``transactions`` is unique on ``(account_id, fingerprint)`` so that
  check-and-insert during import is a single atomic statement.
- ``matches`` carries partial unique indexes: one active match per
  transaction, and one active match per expected event unless the event
  allows partial settlements.
- ``matching_locks`` holds one row per account while a matching pass runs.
- ``reconciliation_periods`` is unique on ``(account_id, start_date, end_date)``.
"""
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, Iterator, List, Optional, Set

from sqlalchemy import (
    JSON, Boolean, CheckConstraint, Column, Date, DateTime, ForeignKey, Index, Integer,
    MetaData, Numeric, String, Table, Text, UniqueConstraint,
    and_, create_engine, delete, false, func, insert, select, update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from .config import config
from .logging_config import get_logger
from .models import (
    Account, AuditAction, AuditEntry, BatchStatus, Channel, ConfidenceTier,
    Direction, ImportBatch, ImportRowError, Match, MatchRule, MatchSuggestion,
    NotificationStatus, PendingNotification, PeriodStatus, ReconciliationPeriod, RuleKind,
    SourceFormat, StatusChange, Transaction, TransactionStatus, utc_now,
)

logger = get_logger("storage")

MONEY = Numeric(15, 2)

metadata = MetaData()

accounts = Table(
    "accounts", metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("channel", String(20), nullable=False),
    Column("provider", String(100), nullable=False, default=""),
    Column("is_primary", Boolean, nullable=False, default=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("currency", String(3), nullable=False, default="KES"),
    Column("created_at", DateTime, nullable=False),
)

import_batches = Table(
    "import_batches", metadata,
    Column("id", String(36), primary_key=True),
    Column("account_id", String(36), ForeignKey("accounts.id"), nullable=False),
    Column("source_format", String(20), nullable=False),
    Column("file_name", String(255)),
    Column("file_size", Integer),
    Column("total", Integer, nullable=False, default=0),
    Column("processed", Integer, nullable=False, default=0),
    Column("succeeded", Integer, nullable=False, default=0),
    Column("failed", Integer, nullable=False, default=0),
    Column("duplicate", Integer, nullable=False, default=0),
    Column("status", String(20), nullable=False),
    Column("date_from", Date),
    Column("date_to", Date),
    Column("errors", JSON),
    Column("error_message", Text),
    Column("imported_by", String(100)),
    Column("started_at", DateTime),
    Column("completed_at", DateTime),
    Column("created_at", DateTime, nullable=False),
)

transactions = Table(
    "transactions", metadata,
    Column("id", String(36), primary_key=True),
    Column("account_id", String(36), ForeignKey("accounts.id"), nullable=False),
    Column("batch_id", String(36), ForeignKey("import_batches.id")),
    Column("transaction_date", Date, nullable=False),
    Column("value_date", Date),
    Column("reference", String(255)),
    Column("description", Text, nullable=False, default=""),
    Column("amount", MONEY, nullable=False),
    Column("direction", String(10), nullable=False),
    Column("counterparty", String(255)),
    Column("channel", String(20), nullable=False),
    Column("fingerprint", String(64), nullable=False),
    Column("status", String(20), nullable=False),
    Column("variance_amount", MONEY, nullable=False, default=0),
    Column("requires_attention", Boolean, nullable=False, default=False),
    Column("raw_data", JSON),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    UniqueConstraint("account_id", "fingerprint", name="uq_transactions_account_fingerprint"),
    Index("ix_transactions_account_status_date", "account_id", "status", "transaction_date"),
)

match_rules = Table(
    "match_rules", metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(100), nullable=False),
    Column("priority", Integer, nullable=False),
    Column("kind", String(30), nullable=False),
    Column("amount_tolerance", MONEY, nullable=False, default=0),
    Column("amount_tolerance_percent", Numeric(5, 2), nullable=False, default=0),
    Column("date_window_days", Integer, nullable=False, default=0),
    Column("confidence", String(10), nullable=False),
    Column("reference_pattern", String(255)),
    Column("description_keywords", JSON),
    Column("payer_keywords", JSON),
    Column("entity_type", String(50)),
    Column("channel", String(20)),
    Column("description", Text, nullable=False, default=""),
    Column("is_active", Boolean, nullable=False, default=True),
)

matches = Table(
    "matches", metadata,
    Column("id", String(36), primary_key=True),
    Column("transaction_id", String(36), ForeignKey("transactions.id"), nullable=False),
    Column("event_id", String(64)),
    Column("confidence", String(10), nullable=False),
    Column("rule_id", String(36)),
    Column("rule_set_version", String(32)),
    Column("actor", String(100), nullable=False),
    Column("score", Numeric(5, 4), nullable=False, default=0),
    Column("matched_amount", MONEY, nullable=False, default=0),
    Column("variance", MONEY, nullable=False, default=0),
    Column("memo", Text),
    Column("event_entity_type", String(50)),
    Column("event_entity_id", String(64)),
    Column("event_amount", MONEY),
    Column("event_date", Date),
    Column("event_allows_partial", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False),
    Column("superseded_at", DateTime),
    Column("superseded_by", String(36)),
)

Index(
    "uq_matches_active_transaction",
    matches.c.transaction_id,
    unique=True,
    sqlite_where=matches.c.superseded_at.is_(None),
    postgresql_where=matches.c.superseded_at.is_(None),
)

_single_settlement = and_(
    matches.c.superseded_at.is_(None),
    matches.c.event_allows_partial == false(),
)
Index(
    "uq_matches_active_event",
    matches.c.event_id,
    unique=True,
    sqlite_where=_single_settlement,
    postgresql_where=_single_settlement,
)

audit_log = Table(
    "audit_log", metadata,
    Column("id", String(36), primary_key=True),
    Column("transaction_id", String(36), ForeignKey("transactions.id"), nullable=False),
    Column("action", String(20), nullable=False),
    Column("actor", String(100), nullable=False),
    Column("reason", Text),
    Column("from_status", String(20)),
    Column("to_status", String(20)),
    Column("match_id", String(36)),
    Column("created_at", DateTime, nullable=False),
)

status_history = Table(
    "status_history", metadata,
    Column("id", String(36), primary_key=True),
    Column("transaction_id", String(36), ForeignKey("transactions.id"), nullable=False),
    Column("from_status", String(20)),
    Column("to_status", String(20), nullable=False),
    Column("actor", String(100), nullable=False),
    Column("reason", Text),
    Column("match_id", String(36)),
    Column("created_at", DateTime, nullable=False),
)

match_suggestions = Table(
    "match_suggestions", metadata,
    Column("id", String(36), primary_key=True),
    Column("transaction_id", String(36), ForeignKey("transactions.id"), nullable=False),
    Column("event_id", String(64), nullable=False),
    Column("rule_id", String(36)),
    Column("score", Numeric(5, 4), nullable=False, default=0),
    Column("reasons", JSON),
    Column("created_at", DateTime, nullable=False),
)

pending_notifications = Table(
    "pending_notifications", metadata,
    Column("id", String(36), primary_key=True),
    Column("match_id", String(36), nullable=False),
    Column("event_id", String(64), nullable=False),
    Column("transaction_id", String(36), nullable=False),
    Column("status", String(20), nullable=False),
    Column("attempts", Integer, nullable=False, default=0),
    Column("last_error", Text),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
)

reconciliation_periods = Table(
    "reconciliation_periods", metadata,
    Column("id", String(36), primary_key=True),
    Column("account_id", String(36), ForeignKey("accounts.id"), nullable=False),
    Column("name", String(100), nullable=False),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date, nullable=False),
    Column("opening_balance", MONEY, nullable=False, default=0),
    Column("closing_balance", MONEY, nullable=False, default=0),
    Column("statement_balance", MONEY, nullable=False, default=0),
    Column("status", String(20), nullable=False),
    Column("total_transactions", Integer, nullable=False, default=0),
    Column("matched_transactions", Integer, nullable=False, default=0),
    Column("unmatched_transactions", Integer, nullable=False, default=0),
    Column("total_variance", MONEY, nullable=False, default=0),
    Column("notes", Text),
    Column("reconciled_by", String(100)),
    Column("reconciled_at", DateTime),
    Column("reviewed_by", String(100)),
    Column("reviewed_at", DateTime),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    CheckConstraint("end_date >= start_date", name="ck_periods_date_order"),
    UniqueConstraint("account_id", "start_date", "end_date", name="uq_periods_account_range"),
)

matching_locks = Table(
    "matching_locks", metadata,
    Column("account_id", String(36), primary_key=True),
    Column("owner", String(36), nullable=False),
    Column("acquired_at", DateTime, nullable=False),
)


def _enum_value(member) -> Optional[str]:
    return member.value if member is not None else None


def _decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    return value if isinstance(value, Decimal) else Decimal(str(value))


class ReconStore:
    """
    Thin data-access layer over the reconciliation tables.

    Every method accepts an optional ``conn``. When given, the statement
    joins the caller's transaction; otherwise it runs in its own.
    """

    def __init__(self, database_url: Optional[str] = None, engine: Optional[Engine] = None):
        self.database_url = database_url or config.database_url
        self.engine = engine or self._create_engine(self.database_url)

    @staticmethod
    def _create_engine(database_url: str) -> Engine:
        if database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": 30}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                return create_engine(database_url, connect_args=connect_args, poolclass=StaticPool)
            return create_engine(database_url, connect_args=connect_args)
        return create_engine(database_url, pool_pre_ping=True)

    def create_schema(self):
        """Create all tables and indexes if they do not exist."""
        metadata.create_all(self.engine)
        logger.debug(f"Schema ready on {self.engine.url.render_as_string(hide_password=True)}")

    def close(self):
        self.engine.dispose()

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Open a database transaction that commits on success."""
        with self.engine.begin() as conn:
            yield conn

    @contextmanager
    def _connect(self, conn: Optional[Connection] = None) -> Iterator[Connection]:
        if conn is not None:
            yield conn
        else:
            with self.engine.begin() as own:
                yield own

    # ============== Accounts ==============

    def insert_account(self, account: Account, conn: Connection = None):
        with self._connect(conn) as c:
            c.execute(insert(accounts).values(
                id=account.id,
                name=account.name,
                channel=account.channel.value,
                provider=account.provider,
                is_primary=account.is_primary,
                is_active=account.is_active,
                currency=account.currency,
                created_at=account.created_at,
            ))

    def get_account(self, account_id: str, conn: Connection = None) -> Optional[Account]:
        with self._connect(conn) as c:
            row = c.execute(select(accounts).where(accounts.c.id == account_id)).first()
        return self._row_to_account(row) if row else None

    def list_accounts(self, active_only: bool = False) -> List[Account]:
        query = select(accounts).order_by(accounts.c.created_at, accounts.c.id)
        if active_only:
            query = query.where(accounts.c.is_active.is_(True))
        with self._connect() as c:
            return [self._row_to_account(r) for r in c.execute(query)]

    def set_account_active(self, account_id: str, is_active: bool) -> bool:
        with self._connect() as c:
            result = c.execute(
                update(accounts).where(accounts.c.id == account_id).values(is_active=is_active)
            )
        return result.rowcount == 1

    @staticmethod
    def _row_to_account(row) -> Account:
        return Account(
            id=row.id,
            name=row.name,
            channel=Channel(row.channel),
            provider=row.provider,
            is_primary=bool(row.is_primary),
            is_active=bool(row.is_active),
            currency=row.currency,
            created_at=row.created_at,
        )

    # ============== Import batches ==============

    def _batch_values(self, batch: ImportBatch) -> dict:
        return dict(
            account_id=batch.account_id,
            source_format=batch.source_format.value,
            file_name=batch.file_name,
            file_size=batch.file_size,
            total=batch.total,
            processed=batch.processed,
            succeeded=batch.succeeded,
            failed=batch.failed,
            duplicate=batch.duplicate,
            status=batch.status.value,
            date_from=batch.date_from,
            date_to=batch.date_to,
            errors=[e.to_dict() for e in batch.errors],
            error_message=batch.error_message,
            imported_by=batch.imported_by,
            started_at=batch.started_at,
            completed_at=batch.completed_at,
            created_at=batch.created_at,
        )

    def insert_batch(self, batch: ImportBatch, conn: Connection = None):
        with self._connect(conn) as c:
            c.execute(insert(import_batches).values(id=batch.id, **self._batch_values(batch)))

    def update_batch(self, batch: ImportBatch, conn: Connection = None):
        with self._connect(conn) as c:
            c.execute(
                update(import_batches)
                .where(import_batches.c.id == batch.id)
                .values(**self._batch_values(batch))
            )

    def get_batch(self, batch_id: str) -> Optional[ImportBatch]:
        with self._connect() as c:
            row = c.execute(select(import_batches).where(import_batches.c.id == batch_id)).first()
        return self._row_to_batch(row) if row else None

    def list_batches(self, account_id: str, limit: int = 50) -> List[ImportBatch]:
        query = (
            select(import_batches)
            .where(import_batches.c.account_id == account_id)
            .order_by(import_batches.c.created_at.desc())
            .limit(limit)
        )
        with self._connect() as c:
            return [self._row_to_batch(r) for r in c.execute(query)]

    @staticmethod
    def _row_to_batch(row) -> ImportBatch:
        return ImportBatch(
            id=row.id,
            account_id=row.account_id,
            source_format=SourceFormat(row.source_format),
            file_name=row.file_name,
            file_size=row.file_size,
            total=row.total,
            processed=row.processed,
            succeeded=row.succeeded,
            failed=row.failed,
            duplicate=row.duplicate,
            status=BatchStatus(row.status),
            date_from=row.date_from,
            date_to=row.date_to,
            errors=[ImportRowError(**e) for e in (row.errors or [])],
            error_message=row.error_message,
            imported_by=row.imported_by,
            started_at=row.started_at,
            completed_at=row.completed_at,
            created_at=row.created_at,
        )

    # ============== Transactions ==============

    def insert_transaction(self, txn: Transaction, conn: Connection = None):
        """Insert a statement line. Raises IntegrityError on a duplicate fingerprint."""
        with self._connect(conn) as c:
            c.execute(insert(transactions).values(
                id=txn.id,
                account_id=txn.account_id,
                batch_id=txn.batch_id,
                transaction_date=txn.transaction_date,
                value_date=txn.value_date,
                reference=txn.reference,
                description=txn.description,
                amount=txn.amount,
                direction=txn.direction.value,
                counterparty=txn.counterparty,
                channel=txn.channel.value,
                fingerprint=txn.fingerprint,
                status=txn.status.value,
                variance_amount=txn.variance_amount,
                requires_attention=txn.requires_attention,
                raw_data=txn.raw_data,
                created_at=txn.created_at,
                updated_at=txn.updated_at,
            ))

    def get_transaction(self, transaction_id: str, conn: Connection = None) -> Optional[Transaction]:
        with self._connect(conn) as c:
            row = c.execute(select(transactions).where(transactions.c.id == transaction_id)).first()
        return self._row_to_transaction(row) if row else None

    def list_transactions(
        self,
        account_id: str,
        status: Optional[TransactionStatus] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None
    ) -> List[Transaction]:
        """Transactions of an account, oldest first by ``(transaction_date, id)``."""
        query = (
            select(transactions)
            .where(transactions.c.account_id == account_id)
            .order_by(transactions.c.transaction_date, transactions.c.id)
        )
        if status is not None:
            query = query.where(transactions.c.status == status.value)
        if date_from is not None:
            query = query.where(transactions.c.transaction_date >= date_from)
        if date_to is not None:
            query = query.where(transactions.c.transaction_date <= date_to)
        if limit is not None:
            query = query.limit(limit).offset(offset)
        with self._connect() as c:
            return [self._row_to_transaction(r) for r in c.execute(query)]

    def compare_and_set_status(
        self,
        transaction_id: str,
        expected: TransactionStatus,
        new_status: TransactionStatus,
        variance_amount: Decimal,
        conn: Connection
    ) -> bool:
        """Move a transaction to ``new_status`` only if it is still in ``expected``."""
        result = conn.execute(
            update(transactions)
            .where(and_(
                transactions.c.id == transaction_id,
                transactions.c.status == expected.value,
            ))
            .values(status=new_status.value, variance_amount=variance_amount, updated_at=utc_now())
        )
        return result.rowcount == 1

    def set_requires_attention(self, transaction_id: str, flag: bool = True, conn: Connection = None):
        with self._connect(conn) as c:
            c.execute(
                update(transactions)
                .where(transactions.c.id == transaction_id)
                .values(requires_attention=flag, updated_at=utc_now())
            )

    @staticmethod
    def _row_to_transaction(row) -> Transaction:
        return Transaction(
            id=row.id,
            account_id=row.account_id,
            batch_id=row.batch_id,
            transaction_date=row.transaction_date,
            value_date=row.value_date,
            reference=row.reference,
            description=row.description or "",
            amount=_decimal(row.amount),
            direction=Direction(row.direction),
            counterparty=row.counterparty,
            channel=Channel(row.channel),
            fingerprint=row.fingerprint,
            status=TransactionStatus(row.status),
            variance_amount=_decimal(row.variance_amount),
            requires_attention=bool(row.requires_attention),
            raw_data=row.raw_data or {},
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    # ============== Rules ==============

    def upsert_rule(self, rule: MatchRule, conn: Connection = None):
        values = dict(
            name=rule.name,
            priority=rule.priority,
            kind=rule.kind.value,
            amount_tolerance=rule.amount_tolerance,
            amount_tolerance_percent=rule.amount_tolerance_percent,
            date_window_days=rule.date_window_days,
            confidence=rule.confidence.value,
            reference_pattern=rule.reference_pattern,
            description_keywords=list(rule.description_keywords),
            payer_keywords=list(rule.payer_keywords),
            entity_type=rule.entity_type,
            channel=_enum_value(rule.channel),
            description=rule.description,
            is_active=rule.is_active,
        )
        with self._connect(conn) as c:
            result = c.execute(update(match_rules).where(match_rules.c.id == rule.id).values(**values))
            if result.rowcount == 0:
                c.execute(insert(match_rules).values(id=rule.id, **values))

    def get_rule(self, rule_id: str) -> Optional[MatchRule]:
        with self._connect() as c:
            row = c.execute(select(match_rules).where(match_rules.c.id == rule_id)).first()
        return self._row_to_rule(row) if row else None

    def list_rules(self, active_only: bool = False) -> List[MatchRule]:
        query = select(match_rules).order_by(match_rules.c.priority, match_rules.c.id)
        if active_only:
            query = query.where(match_rules.c.is_active.is_(True))
        with self._connect() as c:
            return [self._row_to_rule(r) for r in c.execute(query)]

    def set_rule_active(self, rule_id: str, is_active: bool) -> bool:
        with self._connect() as c:
            result = c.execute(
                update(match_rules).where(match_rules.c.id == rule_id).values(is_active=is_active)
            )
        return result.rowcount == 1

    @staticmethod
    def _row_to_rule(row) -> MatchRule:
        return MatchRule(
            id=row.id,
            name=row.name,
            priority=row.priority,
            kind=RuleKind(row.kind),
            amount_tolerance=_decimal(row.amount_tolerance),
            amount_tolerance_percent=_decimal(row.amount_tolerance_percent),
            date_window_days=row.date_window_days,
            confidence=ConfidenceTier(row.confidence),
            reference_pattern=row.reference_pattern,
            description_keywords=list(row.description_keywords or []),
            payer_keywords=list(row.payer_keywords or []),
            entity_type=row.entity_type,
            channel=Channel(row.channel) if row.channel else None,
            description=row.description or "",
            is_active=bool(row.is_active),
        )

    # ============== Matches ==============

    def insert_match(self, match: Match, conn: Connection):
        conn.execute(insert(matches).values(
            id=match.id,
            transaction_id=match.transaction_id,
            event_id=match.event_id,
            confidence=match.confidence.value,
            rule_id=match.rule_id,
            rule_set_version=match.rule_set_version,
            actor=match.actor,
            score=Decimal(str(round(match.score, 4))),
            matched_amount=match.matched_amount,
            variance=match.variance,
            memo=match.memo,
            event_entity_type=match.event_entity_type,
            event_entity_id=match.event_entity_id,
            event_amount=match.event_amount,
            event_date=match.event_date,
            event_allows_partial=match.event_allows_partial,
            created_at=match.created_at,
            superseded_at=match.superseded_at,
            superseded_by=match.superseded_by,
        ))

    def get_match(self, match_id: str, conn: Connection = None) -> Optional[Match]:
        with self._connect(conn) as c:
            row = c.execute(select(matches).where(matches.c.id == match_id)).first()
        return self._row_to_match(row) if row else None

    def get_active_match(self, transaction_id: str, conn: Connection = None) -> Optional[Match]:
        with self._connect(conn) as c:
            row = c.execute(
                select(matches).where(and_(
                    matches.c.transaction_id == transaction_id,
                    matches.c.superseded_at.is_(None),
                ))
            ).first()
        return self._row_to_match(row) if row else None

    def list_matches(self, transaction_id: str) -> List[Match]:
        """Full match log of a transaction, active and superseded."""
        query = (
            select(matches)
            .where(matches.c.transaction_id == transaction_id)
            .order_by(matches.c.created_at, matches.c.id)
        )
        with self._connect() as c:
            return [self._row_to_match(r) for r in c.execute(query)]

    def actively_matched_event_ids(self, event_ids: Iterable[str], conn: Connection = None) -> Set[str]:
        """Subset of ``event_ids`` that already have an active match."""
        event_ids = list(event_ids)
        if not event_ids:
            return set()
        with self._connect(conn) as c:
            rows = c.execute(
                select(matches.c.event_id).where(and_(
                    matches.c.event_id.in_(event_ids),
                    matches.c.superseded_at.is_(None),
                ))
            )
            return {r.event_id for r in rows}

    def supersede_match(
        self,
        match_id: str,
        superseded_at: datetime,
        superseded_by: Optional[str],
        conn: Connection
    ) -> bool:
        result = conn.execute(
            update(matches)
            .where(and_(matches.c.id == match_id, matches.c.superseded_at.is_(None)))
            .values(superseded_at=superseded_at, superseded_by=superseded_by)
        )
        return result.rowcount == 1

    @staticmethod
    def _row_to_match(row) -> Match:
        return Match(
            id=row.id,
            transaction_id=row.transaction_id,
            event_id=row.event_id,
            confidence=ConfidenceTier(row.confidence),
            rule_id=row.rule_id,
            rule_set_version=row.rule_set_version,
            actor=row.actor,
            score=float(row.score or 0),
            matched_amount=_decimal(row.matched_amount),
            variance=_decimal(row.variance),
            memo=row.memo,
            event_entity_type=row.event_entity_type,
            event_entity_id=row.event_entity_id,
            event_amount=_decimal(row.event_amount) if row.event_amount is not None else None,
            event_date=row.event_date,
            event_allows_partial=bool(row.event_allows_partial),
            created_at=row.created_at,
            superseded_at=row.superseded_at,
            superseded_by=row.superseded_by,
        )

    # ============== Status history & audit log ==============

    def insert_status_change(self, change: StatusChange, conn: Connection):
        conn.execute(insert(status_history).values(
            id=change.id,
            transaction_id=change.transaction_id,
            from_status=_enum_value(change.from_status),
            to_status=change.to_status.value,
            actor=change.actor,
            reason=change.reason,
            match_id=change.match_id,
            created_at=change.created_at,
        ))

    def list_status_changes(self, transaction_id: str) -> List[StatusChange]:
        query = (
            select(status_history)
            .where(status_history.c.transaction_id == transaction_id)
            .order_by(status_history.c.created_at, status_history.c.id)
        )
        with self._connect() as c:
            return [
                StatusChange(
                    id=r.id,
                    transaction_id=r.transaction_id,
                    from_status=TransactionStatus(r.from_status) if r.from_status else None,
                    to_status=TransactionStatus(r.to_status),
                    actor=r.actor,
                    reason=r.reason,
                    match_id=r.match_id,
                    created_at=r.created_at,
                )
                for r in c.execute(query)
            ]

    def insert_audit_entry(self, entry: AuditEntry, conn: Connection):
        conn.execute(insert(audit_log).values(
            id=entry.id,
            transaction_id=entry.transaction_id,
            action=entry.action.value,
            actor=entry.actor,
            reason=entry.reason,
            from_status=_enum_value(entry.from_status),
            to_status=_enum_value(entry.to_status),
            match_id=entry.match_id,
            created_at=entry.created_at,
        ))

    def list_audit_entries(self, transaction_id: Optional[str] = None, limit: int = 200) -> List[AuditEntry]:
        query = select(audit_log).order_by(audit_log.c.created_at, audit_log.c.id).limit(limit)
        if transaction_id:
            query = query.where(audit_log.c.transaction_id == transaction_id)
        with self._connect() as c:
            return [
                AuditEntry(
                    id=r.id,
                    transaction_id=r.transaction_id,
                    action=AuditAction(r.action),
                    actor=r.actor,
                    reason=r.reason,
                    from_status=TransactionStatus(r.from_status) if r.from_status else None,
                    to_status=TransactionStatus(r.to_status) if r.to_status else None,
                    match_id=r.match_id,
                    created_at=r.created_at,
                )
                for r in c.execute(query)
            ]

    # ============== Suggestions ==============

    def replace_suggestions(self, transaction_id: str, suggestions: List[MatchSuggestion],
                            conn: Connection = None):
        with self._connect(conn) as c:
            c.execute(delete(match_suggestions).where(match_suggestions.c.transaction_id == transaction_id))
            for s in suggestions:
                c.execute(insert(match_suggestions).values(
                    id=s.id,
                    transaction_id=s.transaction_id,
                    event_id=s.event_id,
                    rule_id=s.rule_id,
                    score=Decimal(str(round(s.score, 4))),
                    reasons=s.reasons,
                    created_at=s.created_at,
                ))

    def list_suggestions(self, transaction_id: str) -> List[MatchSuggestion]:
        query = (
            select(match_suggestions)
            .where(match_suggestions.c.transaction_id == transaction_id)
            .order_by(match_suggestions.c.score.desc(), match_suggestions.c.event_id)
        )
        with self._connect() as c:
            return [
                MatchSuggestion(
                    id=r.id,
                    transaction_id=r.transaction_id,
                    event_id=r.event_id,
                    rule_id=r.rule_id,
                    score=float(r.score or 0),
                    reasons=list(r.reasons or []),
                    created_at=r.created_at,
                )
                for r in c.execute(query)
            ]

    # ============== Notification outbox ==============

    def insert_notification(self, notification: PendingNotification, conn: Connection = None):
        with self._connect(conn) as c:
            c.execute(insert(pending_notifications).values(
                id=notification.id,
                match_id=notification.match_id,
                event_id=notification.event_id,
                transaction_id=notification.transaction_id,
                status=notification.status.value,
                attempts=notification.attempts,
                last_error=notification.last_error,
                created_at=notification.created_at,
                updated_at=notification.updated_at,
            ))

    def update_notification(self, notification: PendingNotification, conn: Connection = None):
        with self._connect(conn) as c:
            c.execute(
                update(pending_notifications)
                .where(pending_notifications.c.id == notification.id)
                .values(
                    status=notification.status.value,
                    attempts=notification.attempts,
                    last_error=notification.last_error,
                    updated_at=utc_now(),
                )
            )

    def list_notifications(self, status: Optional[NotificationStatus] = None,
                           limit: int = 100) -> List[PendingNotification]:
        query = (
            select(pending_notifications)
            .order_by(pending_notifications.c.created_at, pending_notifications.c.id)
            .limit(limit)
        )
        if status is not None:
            query = query.where(pending_notifications.c.status == status.value)
        with self._connect() as c:
            return [
                PendingNotification(
                    id=r.id,
                    match_id=r.match_id,
                    event_id=r.event_id,
                    transaction_id=r.transaction_id,
                    status=NotificationStatus(r.status),
                    attempts=r.attempts,
                    last_error=r.last_error,
                    created_at=r.created_at,
                    updated_at=r.updated_at,
                )
                for r in c.execute(query)
            ]

    def notification_counts(self) -> Dict[str, int]:
        with self._connect() as c:
            rows = c.execute(
                select(pending_notifications.c.status, func.count())
                .group_by(pending_notifications.c.status)
            )
            return {status: count for status, count in rows}

    # ============== Matching locks ==============

    def acquire_lock(self, account_id: str, owner: str, ttl_seconds: int) -> bool:
        """
        Take the per-account matching lock.

        The lock is a row keyed by account id, so two concurrent inserts
        cannot both succeed. A lock older than ``ttl_seconds`` is stale
        and may be taken over.
        """
        now = utc_now()
        try:
            with self._connect() as c:
                c.execute(insert(matching_locks).values(
                    account_id=account_id, owner=owner, acquired_at=now
                ))
            return True
        except IntegrityError:
            pass

        try:
            with self._connect() as c:
                row = c.execute(
                    select(matching_locks).where(matching_locks.c.account_id == account_id)
                ).first()
                if row is None:
                    c.execute(insert(matching_locks).values(
                        account_id=account_id, owner=owner, acquired_at=now
                    ))
                    return True
                if row.acquired_at > now - timedelta(seconds=ttl_seconds):
                    return False
                result = c.execute(
                    update(matching_locks)
                    .where(and_(
                        matching_locks.c.account_id == account_id,
                        matching_locks.c.owner == row.owner,
                    ))
                    .values(owner=owner, acquired_at=now)
                )
        except IntegrityError:
            # Another pass inserted the lock between our two statements
            return False

        if result.rowcount == 1:
            logger.warning(f"Took over stale matching lock on account {account_id} from {row.owner}")
            return True
        return False

    def release_lock(self, account_id: str, owner: str):
        with self._connect() as c:
            c.execute(delete(matching_locks).where(and_(
                matching_locks.c.account_id == account_id,
                matching_locks.c.owner == owner,
            )))

    # ============== Reconciliation periods ==============

    def _period_values(self, period: ReconciliationPeriod) -> dict:
        return dict(
            account_id=period.account_id,
            name=period.name,
            start_date=period.start_date,
            end_date=period.end_date,
            opening_balance=period.opening_balance,
            closing_balance=period.closing_balance,
            statement_balance=period.statement_balance,
            status=period.status.value,
            total_transactions=period.total_transactions,
            matched_transactions=period.matched_transactions,
            unmatched_transactions=period.unmatched_transactions,
            total_variance=period.total_variance,
            notes=period.notes,
            reconciled_by=period.reconciled_by,
            reconciled_at=period.reconciled_at,
            reviewed_by=period.reviewed_by,
            reviewed_at=period.reviewed_at,
            created_at=period.created_at,
            updated_at=period.updated_at,
        )

    def insert_period(self, period: ReconciliationPeriod, conn: Connection = None):
        """Insert a period. Raises IntegrityError when the account already has this range."""
        with self._connect(conn) as c:
            c.execute(insert(reconciliation_periods).values(id=period.id, **self._period_values(period)))

    def update_period(self, period: ReconciliationPeriod, conn: Connection = None):
        with self._connect(conn) as c:
            c.execute(
                update(reconciliation_periods)
                .where(reconciliation_periods.c.id == period.id)
                .values(**self._period_values(period))
            )

    def get_period(self, period_id: str, conn: Connection = None) -> Optional[ReconciliationPeriod]:
        with self._connect(conn) as c:
            row = c.execute(
                select(reconciliation_periods).where(reconciliation_periods.c.id == period_id)
            ).first()
        return self._row_to_period(row) if row else None

    def list_periods(self, account_id: str) -> List[ReconciliationPeriod]:
        """Periods of an account, latest first."""
        query = (
            select(reconciliation_periods)
            .where(reconciliation_periods.c.account_id == account_id)
            .order_by(reconciliation_periods.c.end_date.desc(), reconciliation_periods.c.start_date.desc())
        )
        with self._connect() as c:
            return [self._row_to_period(r) for r in c.execute(query)]

    def last_closed_period(self, account_id: str, before: date,
                           conn: Connection = None) -> Optional[ReconciliationPeriod]:
        """Latest COMPLETED or REVIEWED period ending before ``before``."""
        query = (
            select(reconciliation_periods)
            .where(and_(
                reconciliation_periods.c.account_id == account_id,
                reconciliation_periods.c.end_date < before,
                reconciliation_periods.c.status.in_(
                    [PeriodStatus.COMPLETED.value, PeriodStatus.REVIEWED.value]
                ),
            ))
            .order_by(reconciliation_periods.c.end_date.desc())
            .limit(1)
        )
        with self._connect(conn) as c:
            row = c.execute(query).first()
        return self._row_to_period(row) if row else None

    @staticmethod
    def _row_to_period(row) -> ReconciliationPeriod:
        return ReconciliationPeriod(
            id=row.id,
            account_id=row.account_id,
            name=row.name,
            start_date=row.start_date,
            end_date=row.end_date,
            opening_balance=_decimal(row.opening_balance),
            closing_balance=_decimal(row.closing_balance),
            statement_balance=_decimal(row.statement_balance),
            status=PeriodStatus(row.status),
            total_transactions=row.total_transactions,
            matched_transactions=row.matched_transactions,
            unmatched_transactions=row.unmatched_transactions,
            total_variance=_decimal(row.total_variance),
            notes=row.notes,
            reconciled_by=row.reconciled_by,
            reconciled_at=row.reconciled_at,
            reviewed_by=row.reviewed_by,
            reviewed_at=row.reviewed_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    # ============== Reporting helpers ==============

    def status_counts(self, account_id: str) -> Dict[str, int]:
        with self._connect() as c:
            rows = c.execute(
                select(transactions.c.status, func.count())
                .where(transactions.c.account_id == account_id)
                .group_by(transactions.c.status)
            )
            return {status: count for status, count in rows}

    def active_matches_for_account(self, account_id: str) -> List[Match]:
        query = (
            select(matches)
            .join(transactions, transactions.c.id == matches.c.transaction_id)
            .where(and_(
                transactions.c.account_id == account_id,
                matches.c.superseded_at.is_(None),
            ))
            .order_by(matches.c.created_at, matches.c.id)
        )
        with self._connect() as c:
            return [self._row_to_match(r) for r in c.execute(query)]
