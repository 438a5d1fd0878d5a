"""
FastAPI backend for the statement reconciliation engine.

Provides REST API endpoints for:
- Managing accounts
- Importing statements
- Running matching passes
- Handling exceptions and disputes
- Reconciliation summaries
- Reconciliation periods

Features:
- Structured request logging
- Engine errors mapped to 404 / 409 / 422 responses
"""
from fastapi import FastAPI, HTTPException, Query, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any
from datetime import date
from decimal import Decimal
import os
import time

from . import __version__
from .config import config
from .exceptions import (
    ConfigurationError, DataError, DuplicateMatchError, EventAlreadySettledError, FeedError,
    ImportFailedError, InvalidStatusTransitionError, MatchingPassInProgressError,
    ReasonRequiredError, ReconEngineError, RecordNotFoundError,
)
from .logging_config import setup_logging, log_api_request, log_error
from .models import (
    Account, AuditEntry, ImportBatch, Match, MatchSuggestion, MatchingPassResult,
    StatusChange, Transaction, TransactionStatus,
)
from .reconciler import ReconciliationService, TransactionDetail

# Setup logging
logger = setup_logging(level=os.environ.get("LOG_LEVEL", "INFO"))

app = FastAPI(
    title="Statement Reconciliation API",
    description="API for reconciling bank and mobile-money statements against expected events",
    version=__version__
)

# CORS for frontend
ALLOWED_ORIGINS = os.environ.get(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173,http://127.0.0.1:5173"
).split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    """Log request timing."""
    client_ip = request.client.host if request.client else "unknown"

    start_time = time.time()
    response = await call_next(request)
    duration_ms = (time.time() - start_time) * 1000

    log_api_request(
        logger,
        request.method,
        str(request.url.path),
        response.status_code,
        duration_ms,
        client_ip
    )

    return response


# Errors checked in order; subclasses before their bases
ERROR_STATUS_CODES = [
    (RecordNotFoundError, 404),
    (ReasonRequiredError, 422),
    (DataError, 422),
    (MatchingPassInProgressError, 409),
    (DuplicateMatchError, 409),
    (EventAlreadySettledError, 409),
    (InvalidStatusTransitionError, 409),
    (FeedError, 502),
    (ImportFailedError, 500),
    (ConfigurationError, 500),
]


@app.exception_handler(ReconEngineError)
async def engine_error_handler(request: Request, exc: ReconEngineError):
    status_code = 500
    for error_type, code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            status_code = code
            break

    if status_code >= 500:
        log_error(logger, exc, request.url.path)

    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "code": exc.code, "details": exc.details}
    )


# Global instance (lazy loaded)
_service: Optional[ReconciliationService] = None


def get_service() -> ReconciliationService:
    global _service
    if _service is None:
        _service = ReconciliationService.from_config()
    return _service


# ============== Pydantic Models ==============

class AccountCreate(BaseModel):
    name: str
    channel: str = "BANK"
    provider: str = ""
    is_primary: bool = False
    currency: str = "KES"


class AccountUpdate(BaseModel):
    is_active: bool


class AccountResponse(BaseModel):
    id: str
    name: str
    channel: str
    provider: str
    is_primary: bool
    is_active: bool
    currency: str
    created_at: str


class StatementImportRequest(BaseModel):
    rows: List[Dict[str, Any]]
    source_format: str = "API"
    file_name: Optional[str] = None
    imported_by: Optional[str] = None


class RowErrorResponse(BaseModel):
    row_number: int
    reason: str
    field: Optional[str] = None


class BatchResponse(BaseModel):
    id: str
    account_id: str
    status: str
    source_format: str
    file_name: Optional[str] = None
    total: int
    processed: int
    succeeded: int
    failed: int
    duplicate: int
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    errors: List[RowErrorResponse] = []
    error_message: Optional[str] = None


class MatchingPassResponse(BaseModel):
    account_id: str
    rule_set_version: str
    matched_count: int
    partially_matched_count: int
    ambiguous_count: int
    unmatched_count: int
    skipped_count: int
    notification_failures: int
    cancelled: bool
    processing_time_seconds: float


class TransactionResponse(BaseModel):
    id: str
    account_id: str
    batch_id: Optional[str] = None
    transaction_date: str
    reference: Optional[str] = None
    description: str
    amount: str
    direction: str
    counterparty: Optional[str] = None
    channel: str
    status: str
    variance_amount: str
    requires_attention: bool


class MatchResponse(BaseModel):
    id: str
    transaction_id: str
    event_id: Optional[str] = None
    confidence: str
    rule_id: Optional[str] = None
    rule_set_version: Optional[str] = None
    actor: str
    score: float
    matched_amount: str
    variance: str
    memo: Optional[str] = None
    event_entity_type: Optional[str] = None
    event_entity_id: Optional[str] = None
    created_at: str
    superseded_at: Optional[str] = None
    superseded_by: Optional[str] = None


class SuggestionResponse(BaseModel):
    event_id: str
    rule_id: Optional[str] = None
    score: float
    reasons: List[str] = []


class StatusChangeResponse(BaseModel):
    from_status: Optional[str] = None
    to_status: str
    actor: str
    reason: Optional[str] = None
    match_id: Optional[str] = None
    created_at: str


class AuditEntryResponse(BaseModel):
    action: str
    actor: str
    reason: Optional[str] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    match_id: Optional[str] = None
    created_at: str


class TransactionDetailResponse(BaseModel):
    transaction: TransactionResponse
    active_match: Optional[MatchResponse] = None
    matches: List[MatchResponse] = []
    status_history: List[StatusChangeResponse] = []
    audit_trail: List[AuditEntryResponse] = []
    suggestions: List[SuggestionResponse] = []


class ActionRequest(BaseModel):
    actor: str = Field(..., min_length=1)
    reason: Optional[str] = None


class ManualMatchRequest(ActionRequest):
    event_id: Optional[str] = None
    memo: Optional[str] = None


class ResolveDisputeRequest(ActionRequest):
    uphold: bool = True


class PeriodCreate(BaseModel):
    start_date: date
    end_date: date
    statement_balance: Decimal
    name: Optional[str] = None
    notes: Optional[str] = None


class PeriodActionRequest(BaseModel):
    actor: str = Field(..., min_length=1)
    notes: Optional[str] = None


class ConfigStatus(BaseModel):
    feed_configured: bool
    database_url: str
    partial_tolerance_amount: str
    partial_tolerance_percent: str
    lookback_days: int
    lookahead_days: int
    dayfirst: bool


# ============== Converters ==============

def _account_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        name=account.name,
        channel=account.channel.value,
        provider=account.provider,
        is_primary=account.is_primary,
        is_active=account.is_active,
        currency=account.currency,
        created_at=account.created_at.isoformat(),
    )


def _batch_response(batch: ImportBatch) -> BatchResponse:
    return BatchResponse(
        id=batch.id,
        account_id=batch.account_id,
        status=batch.status.value,
        source_format=batch.source_format.value,
        file_name=batch.file_name,
        total=batch.total,
        processed=batch.processed,
        succeeded=batch.succeeded,
        failed=batch.failed,
        duplicate=batch.duplicate,
        date_from=batch.date_from.isoformat() if batch.date_from else None,
        date_to=batch.date_to.isoformat() if batch.date_to else None,
        errors=[RowErrorResponse(**e.to_dict()) for e in batch.errors],
        error_message=batch.error_message,
    )


def _pass_response(result: MatchingPassResult) -> MatchingPassResponse:
    return MatchingPassResponse(
        account_id=result.account_id,
        rule_set_version=result.rule_set_version,
        matched_count=result.matched_count,
        partially_matched_count=result.partially_matched_count,
        ambiguous_count=result.ambiguous_count,
        unmatched_count=result.unmatched_count,
        skipped_count=result.skipped_count,
        notification_failures=result.notification_failures,
        cancelled=result.cancelled,
        processing_time_seconds=result.processing_time_seconds,
    )


def _transaction_response(txn: Transaction) -> TransactionResponse:
    return TransactionResponse(
        id=txn.id,
        account_id=txn.account_id,
        batch_id=txn.batch_id,
        transaction_date=txn.transaction_date.isoformat(),
        reference=txn.reference,
        description=txn.description,
        amount=str(txn.amount),
        direction=txn.direction.value,
        counterparty=txn.counterparty,
        channel=txn.channel.value,
        status=txn.status.value,
        variance_amount=str(txn.variance_amount),
        requires_attention=txn.requires_attention,
    )


def _match_response(match: Match) -> MatchResponse:
    return MatchResponse(
        id=match.id,
        transaction_id=match.transaction_id,
        event_id=match.event_id,
        confidence=match.confidence.value,
        rule_id=match.rule_id,
        rule_set_version=match.rule_set_version,
        actor=match.actor,
        score=match.score,
        matched_amount=str(match.matched_amount),
        variance=str(match.variance),
        memo=match.memo,
        event_entity_type=match.event_entity_type,
        event_entity_id=match.event_entity_id,
        created_at=match.created_at.isoformat(),
        superseded_at=match.superseded_at.isoformat() if match.superseded_at else None,
        superseded_by=match.superseded_by,
    )


def _suggestion_response(suggestion: MatchSuggestion) -> SuggestionResponse:
    return SuggestionResponse(
        event_id=suggestion.event_id,
        rule_id=suggestion.rule_id,
        score=suggestion.score,
        reasons=suggestion.reasons,
    )


def _status_change_response(change: StatusChange) -> StatusChangeResponse:
    return StatusChangeResponse(
        from_status=change.from_status.value if change.from_status else None,
        to_status=change.to_status.value,
        actor=change.actor,
        reason=change.reason,
        match_id=change.match_id,
        created_at=change.created_at.isoformat(),
    )


def _audit_response(entry: AuditEntry) -> AuditEntryResponse:
    return AuditEntryResponse(
        action=entry.action.value,
        actor=entry.actor,
        reason=entry.reason,
        from_status=entry.from_status.value if entry.from_status else None,
        to_status=entry.to_status.value if entry.to_status else None,
        match_id=entry.match_id,
        created_at=entry.created_at.isoformat(),
    )


def _detail_response(detail: TransactionDetail) -> TransactionDetailResponse:
    return TransactionDetailResponse(
        transaction=_transaction_response(detail.transaction),
        active_match=_match_response(detail.active_match) if detail.active_match else None,
        matches=[_match_response(m) for m in detail.matches],
        status_history=[_status_change_response(c) for c in detail.status_history],
        audit_trail=[_audit_response(a) for a in detail.audit_trail],
        suggestions=[_suggestion_response(s) for s in detail.suggestions],
    )


# ============== API Endpoints ==============

@app.get("/")
async def root():
    return {
        "name": "Statement Reconciliation API",
        "version": __version__,
        "status": "running",
        "docs": "/docs",
    }


@app.get("/api/status", response_model=ConfigStatus)
async def get_status():
    """Get current configuration status."""
    return ConfigStatus(
        feed_configured=config.feed.is_configured(),
        database_url=config.database_url,
        partial_tolerance_amount=str(config.matching.partial_tolerance_amount),
        partial_tolerance_percent=str(config.matching.partial_tolerance_percent),
        lookback_days=config.matching.lookback_days,
        lookahead_days=config.matching.lookahead_days,
        dayfirst=config.importer.dayfirst,
    )


# ------------ Account Endpoints ------------

@app.post("/api/accounts", response_model=AccountResponse, status_code=201)
def create_account(request: AccountCreate, service: ReconciliationService = Depends(get_service)):
    """Register a bank or mobile-money account."""
    account = service.create_account(
        request.name,
        request.channel,
        provider=request.provider,
        is_primary=request.is_primary,
        currency=request.currency,
    )
    return _account_response(account)


@app.get("/api/accounts", response_model=List[AccountResponse])
def list_accounts(
    active_only: bool = Query(False, description="Only active accounts"),
    service: ReconciliationService = Depends(get_service)
):
    return [_account_response(a) for a in service.list_accounts(active_only)]


@app.get("/api/accounts/{account_id}", response_model=AccountResponse)
def get_account(account_id: str, service: ReconciliationService = Depends(get_service)):
    return _account_response(service.get_account(account_id))


@app.patch("/api/accounts/{account_id}", response_model=AccountResponse)
def update_account(account_id: str, request: AccountUpdate,
                   service: ReconciliationService = Depends(get_service)):
    """Activate or deactivate an account."""
    return _account_response(service.set_account_active(account_id, request.is_active))


# ------------ Import & Matching Endpoints ------------

@app.post("/api/accounts/{account_id}/statements", response_model=BatchResponse, status_code=201)
def import_statement(account_id: str, request: StatementImportRequest,
                     service: ReconciliationService = Depends(get_service)):
    """
    Import statement rows for an account.

    Rejected and duplicate rows are reported on the batch, not as errors.
    """
    batch = service.import_statement(
        account_id,
        request.rows,
        source_format=request.source_format,
        file_name=request.file_name,
        imported_by=request.imported_by,
    )
    return _batch_response(batch)


@app.get("/api/accounts/{account_id}/batches", response_model=List[BatchResponse])
def list_batches(
    account_id: str,
    limit: int = Query(50, ge=1, le=500),
    service: ReconciliationService = Depends(get_service)
):
    service.get_account(account_id)
    return [_batch_response(b) for b in service.list_batches(account_id, limit)]


@app.post("/api/accounts/{account_id}/match", response_model=MatchingPassResponse)
def run_matching_pass(account_id: str, service: ReconciliationService = Depends(get_service)):
    """Run a matching pass. Returns 409 while another pass holds the account."""
    return _pass_response(service.run_matching_pass(account_id))


@app.get("/api/accounts/{account_id}/summary")
def get_summary(account_id: str, service: ReconciliationService = Depends(get_service)):
    """Reconciliation health of an account."""
    return service.summary(account_id).to_dict()


@app.get("/api/accounts/{account_id}/transactions", response_model=List[TransactionResponse])
def list_transactions(
    account_id: str,
    status: Optional[str] = Query(None, description="Filter by status"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    service: ReconciliationService = Depends(get_service)
):
    status_filter = None
    if status:
        try:
            status_filter = TransactionStatus(status.upper())
        except ValueError:
            raise HTTPException(status_code=422, detail=f"Unknown status: {status}")
    rows = service.list_transactions(account_id, status_filter, limit, offset)
    return [_transaction_response(t) for t in rows]


# ------------ Transaction & Exception Endpoints ------------

@app.get("/api/transactions/{transaction_id}", response_model=TransactionDetailResponse)
def get_transaction(transaction_id: str, service: ReconciliationService = Depends(get_service)):
    """A transaction with its matches, status history, audit trail and suggestions."""
    return _detail_response(service.transaction_detail(transaction_id))


@app.get("/api/transactions/{transaction_id}/suggestions", response_model=List[SuggestionResponse])
def get_suggestions(transaction_id: str, service: ReconciliationService = Depends(get_service)):
    return [_suggestion_response(s) for s in service.suggestions(transaction_id)]


@app.post("/api/transactions/{transaction_id}/manual-match", response_model=MatchResponse)
def manual_match(transaction_id: str, request: ManualMatchRequest,
                 service: ReconciliationService = Depends(get_service)):
    match = service.manual_match(
        transaction_id, request.event_id, request.actor, reason=request.reason, memo=request.memo
    )
    return _match_response(match)


@app.post("/api/transactions/{transaction_id}/unmatch", response_model=TransactionResponse)
def unmatch(transaction_id: str, request: ActionRequest,
            service: ReconciliationService = Depends(get_service)):
    return _transaction_response(service.unmatch(transaction_id, request.actor, request.reason))


@app.post("/api/transactions/{transaction_id}/dispute", response_model=TransactionResponse)
def dispute(transaction_id: str, request: ActionRequest,
            service: ReconciliationService = Depends(get_service)):
    return _transaction_response(service.mark_disputed(transaction_id, request.actor, request.reason))


@app.post("/api/transactions/{transaction_id}/ignore", response_model=TransactionResponse)
def ignore(transaction_id: str, request: ActionRequest,
           service: ReconciliationService = Depends(get_service)):
    return _transaction_response(service.ignore(transaction_id, request.actor, request.reason))


@app.post("/api/transactions/{transaction_id}/reopen", response_model=TransactionResponse)
def reopen(transaction_id: str, request: ActionRequest,
           service: ReconciliationService = Depends(get_service)):
    return _transaction_response(service.reopen(transaction_id, request.actor, request.reason))


@app.post("/api/transactions/{transaction_id}/resolve", response_model=TransactionResponse)
def resolve_dispute(transaction_id: str, request: ResolveDisputeRequest,
                    service: ReconciliationService = Depends(get_service)):
    transaction = service.resolve_dispute(transaction_id, request.actor, request.reason, request.uphold)
    return _transaction_response(transaction)


# ------------ Period Endpoints ------------

@app.post("/api/accounts/{account_id}/periods", status_code=201)
def start_period(account_id: str, request: PeriodCreate,
                 service: ReconciliationService = Depends(get_service)):
    """Open a reconciliation period. Returns 422 when the range already exists."""
    period = service.start_period(
        account_id,
        request.start_date,
        request.end_date,
        request.statement_balance,
        name=request.name,
        notes=request.notes,
    )
    return period.to_dict()


@app.get("/api/accounts/{account_id}/periods")
def list_periods(account_id: str, service: ReconciliationService = Depends(get_service)):
    return [p.to_dict() for p in service.list_periods(account_id)]


@app.get("/api/periods/{period_id}")
def get_period(period_id: str, service: ReconciliationService = Depends(get_service)):
    return service.get_period(period_id).to_dict()


@app.post("/api/periods/{period_id}/refresh")
def refresh_period(period_id: str, service: ReconciliationService = Depends(get_service)):
    """Recompute the counts and closing balance of an in-progress period."""
    return service.refresh_period(period_id).to_dict()


@app.post("/api/periods/{period_id}/complete")
def complete_period(period_id: str, request: PeriodActionRequest,
                    service: ReconciliationService = Depends(get_service)):
    return service.complete_period(period_id, request.actor, request.notes).to_dict()


@app.post("/api/periods/{period_id}/review")
def review_period(period_id: str, request: PeriodActionRequest,
                  service: ReconciliationService = Depends(get_service)):
    return service.review_period(period_id, request.actor).to_dict()
