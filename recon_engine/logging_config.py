"""
Structured logging configuration for the reconciliation engine.
"""
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
import json
from typing import Any, Dict


class JSONFormatter(logging.Formatter):
    """Format log records as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add extra fields
        if hasattr(record, "extra_data"):
            log_data.update(record.extra_data)

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO",
    log_file: str = None,
    json_format: bool = False
) -> logging.Logger:
    """
    Set up logging configuration.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for log output
        json_format: Use JSON formatting for structured logs

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger("recon_engine")
    logger.setLevel(getattr(logging, level.upper()))

    # Clear existing handlers
    logger.handlers.clear()

    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(funcName)s:%(lineno)d | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str = None) -> logging.Logger:
    """Get a logger instance."""
    if name:
        return logging.getLogger(f"recon_engine.{name}")
    return logging.getLogger("recon_engine")


# Convenience functions for structured logging
def log_import_start(logger: logging.Logger, batch_id: str, account_id: str, row_count: int):
    """Log statement import start with context."""
    logger.info(
        f"Starting import {batch_id[:8]}... | account={account_id} | rows={row_count}",
        extra={"extra_data": {
            "event": "import_start",
            "batch_id": batch_id,
            "account_id": account_id,
            "row_count": row_count
        }}
    )


def log_import_complete(
    logger: logging.Logger,
    batch_id: str,
    status: str,
    succeeded: int,
    failed: int,
    duplicate: int,
    duration_seconds: float
):
    """Log import completion with row counts."""
    logger.info(
        f"Import {status.lower()} {batch_id[:8]}... | succeeded={succeeded} | failed={failed} | "
        f"duplicate={duplicate} | time={duration_seconds:.2f}s",
        extra={"extra_data": {
            "event": "import_complete",
            "batch_id": batch_id,
            "status": status,
            "succeeded": succeeded,
            "failed": failed,
            "duplicate": duplicate,
            "duration_seconds": duration_seconds
        }}
    )


def log_row_failed(logger: logging.Logger, batch_id: str, row_number: int, reason: str):
    """Log a statement row that could not be parsed."""
    logger.warning(
        f"Row {row_number} rejected in batch {batch_id[:8]}...: {reason}",
        extra={"extra_data": {
            "event": "import_row_failed",
            "batch_id": batch_id,
            "row_number": row_number,
            "reason": reason
        }}
    )


def log_matching_pass_start(
    logger: logging.Logger,
    account_id: str,
    transaction_count: int,
    rule_set_version: str
):
    """Log matching pass start with context."""
    logger.info(
        f"Starting matching pass | account={account_id} | unmatched={transaction_count} | "
        f"rules={rule_set_version}",
        extra={"extra_data": {
            "event": "matching_pass_start",
            "account_id": account_id,
            "transaction_count": transaction_count,
            "rule_set_version": rule_set_version
        }}
    )


def log_matching_pass_complete(
    logger: logging.Logger,
    account_id: str,
    matched: int,
    ambiguous: int,
    unmatched: int,
    cancelled: bool,
    duration_seconds: float
):
    """Log matching pass completion with counts."""
    logger.info(
        f"Matching pass {'cancelled' if cancelled else 'complete'} | account={account_id} | "
        f"matched={matched} | ambiguous={ambiguous} | unmatched={unmatched} | "
        f"time={duration_seconds:.2f}s",
        extra={"extra_data": {
            "event": "matching_pass_complete",
            "account_id": account_id,
            "matched_count": matched,
            "ambiguous_count": ambiguous,
            "unmatched_count": unmatched,
            "cancelled": cancelled,
            "duration_seconds": duration_seconds
        }}
    )


def log_match_created(
    logger: logging.Logger,
    transaction_id: str,
    event_id: str,
    confidence: str,
    rule_id: str = None
):
    """Log a new match."""
    logger.debug(
        f"Match created: txn={transaction_id} -> event={event_id} | confidence={confidence}",
        extra={"extra_data": {
            "event": "match_created",
            "transaction_id": transaction_id,
            "event_id": event_id,
            "confidence": confidence,
            "rule_id": rule_id
        }}
    )


def log_exception_action(
    logger: logging.Logger,
    action: str,
    transaction_id: str,
    actor: str,
    from_status: str,
    to_status: str
):
    """Log a manual exception handling action."""
    logger.info(
        f"{action}: txn={transaction_id} | {from_status} -> {to_status} | actor={actor}",
        extra={"extra_data": {
            "event": "exception_action",
            "action": action,
            "transaction_id": transaction_id,
            "actor": actor,
            "from_status": from_status,
            "to_status": to_status
        }}
    )


def log_notification_failed(logger: logging.Logger, event_id: str, transaction_id: str, reason: str):
    """Log a failed back-reference notification to the events feed."""
    logger.warning(
        f"Could not mark event {event_id} matched by txn {transaction_id}: {reason}",
        extra={"extra_data": {
            "event": "notification_failed",
            "event_id": event_id,
            "transaction_id": transaction_id,
            "reason": reason
        }}
    )


def log_api_request(
    logger: logging.Logger,
    method: str,
    path: str,
    status_code: int,
    duration_ms: float,
    client_ip: str = None
):
    """Log API request."""
    logger.info(
        f"{method} {path} | status={status_code} | time={duration_ms:.0f}ms",
        extra={"extra_data": {
            "event": "api_request",
            "method": method,
            "path": path,
            "status_code": status_code,
            "duration_ms": duration_ms,
            "client_ip": client_ip
        }}
    )


def log_error(
    logger: logging.Logger,
    error: Exception,
    context: str = None,
    extra: Dict[str, Any] = None
):
    """Log an error with context."""
    extra_data = {"event": "error", "error_type": type(error).__name__}
    if context:
        extra_data["context"] = context
    if extra:
        extra_data.update(extra)

    logger.error(
        f"Error: {error} | context={context or 'none'}",
        exc_info=True,
        extra={"extra_data": extra_data}
    )
