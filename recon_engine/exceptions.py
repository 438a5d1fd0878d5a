"""
Custom exceptions for the reconciliation engine.

Provides structured error handling with specific exception types
for different error scenarios.
"""


class ReconEngineError(Exception):
    """Base exception for reconciliation engine errors."""

    def __init__(self, message: str, code: str = None, details: dict = None):
        self.message = message
        self.code = code or "RECON_ENGINE_ERROR"
        self.details = details or {}
        super().__init__(self.message)


# ============== Configuration Errors ==============

class ConfigurationError(ReconEngineError):
    """Error in configuration settings."""

    def __init__(self, message: str, setting: str = None):
        super().__init__(
            message,
            code="CONFIG_ERROR",
            details={"setting": setting}
        )


# ============== Data Errors ==============

class DataError(ReconEngineError):
    """Error in data processing."""

    def __init__(self, message: str, field: str = None, value: str = None):
        super().__init__(
            message,
            code="DATA_ERROR",
            details={"field": field, "value": value}
        )


class ParseError(DataError):
    """A statement row could not be parsed."""

    def __init__(self, reason: str, field: str = None, value: str = None, line: int = None):
        message = "Failed to parse row"
        if line:
            message += f" {line}"
        message += f": {reason}"

        super().__init__(message, field=field, value=value)
        self.code = "PARSE_ERROR"
        self.reason = reason
        self.details["line"] = line


class ValidationError(DataError):
    """Data validation error."""

    def __init__(self, field: str, value: str, constraint: str):
        super().__init__(
            f"Validation failed for {field}: {constraint}",
            field=field,
            value=value
        )
        self.code = "VALIDATION_ERROR"
        self.details["constraint"] = constraint


# ============== Import Errors ==============

class ImportFailedError(ReconEngineError):
    """Unrecoverable failure affecting a whole import batch."""

    def __init__(self, batch_id: str, reason: str):
        super().__init__(
            f"Import batch {batch_id} failed: {reason}",
            code="IMPORT_FAILED",
            details={"batch_id": batch_id}
        )


# ============== Matching Errors ==============

class MatchingError(ReconEngineError):
    """Error during transaction matching."""

    def __init__(self, message: str, transaction_id: str = None, event_id: str = None):
        super().__init__(
            message,
            code="MATCHING_ERROR",
            details={"transaction_id": transaction_id, "event_id": event_id}
        )


class DuplicateMatchError(MatchingError):
    """Transaction already has an active match."""

    def __init__(self, transaction_id: str, existing_match_id: str = None):
        super().__init__(
            f"Transaction {transaction_id} already has active match {existing_match_id}",
            transaction_id=transaction_id
        )
        self.code = "DUPLICATE_MATCH"
        self.details["existing_match_id"] = existing_match_id


class EventAlreadySettledError(MatchingError):
    """Expected event is already fully matched."""

    def __init__(self, event_id: str, transaction_id: str = None):
        super().__init__(
            f"Expected event {event_id} is already settled",
            transaction_id=transaction_id,
            event_id=event_id
        )
        self.code = "EVENT_ALREADY_SETTLED"


class InvalidStatusTransitionError(MatchingError):
    """Requested status change is not allowed by the state machine."""

    def __init__(self, transaction_id: str, from_status: str, to_status: str):
        super().__init__(
            f"Transaction {transaction_id} cannot move from {from_status} to {to_status}",
            transaction_id=transaction_id
        )
        self.code = "INVALID_STATUS_TRANSITION"
        self.details["from_status"] = from_status
        self.details["to_status"] = to_status


class ReasonRequiredError(MatchingError):
    """A reason must be supplied for this action."""

    def __init__(self, transaction_id: str, action: str):
        super().__init__(
            f"A reason is required to {action} transaction {transaction_id}",
            transaction_id=transaction_id
        )
        self.code = "REASON_REQUIRED"
        self.details["action"] = action


class MatchingPassInProgressError(MatchingError):
    """Another matching pass already holds the account lock."""

    def __init__(self, account_id: str):
        super().__init__(f"A matching pass is already running for account {account_id}")
        self.code = "MATCHING_PASS_IN_PROGRESS"
        self.details["account_id"] = account_id


# ============== API Errors ==============

class APIError(ReconEngineError):
    """Error from external API."""

    def __init__(self, service: str, message: str, status_code: int = None):
        super().__init__(
            f"{service} API error: {message}",
            code="API_ERROR",
            details={"service": service, "status_code": status_code}
        )


class FeedError(APIError):
    """Expected events feed could not be reached or rejected the call."""

    def __init__(self, message: str, status_code: int = None, event_id: str = None):
        super().__init__("Expected events feed", message, status_code)
        self.code = "FEED_ERROR"
        self.details["event_id"] = event_id


# ============== Database Errors ==============

class DatabaseError(ReconEngineError):
    """Database operation error."""

    def __init__(self, operation: str, message: str):
        super().__init__(
            f"Database {operation} failed: {message}",
            code="DATABASE_ERROR",
            details={"operation": operation}
        )


class RecordNotFoundError(DatabaseError):
    """Record not found in database."""

    def __init__(self, table: str, record_id: str):
        super().__init__(
            "query",
            f"Record {record_id} not found in {table}"
        )
        self.code = "RECORD_NOT_FOUND"
        self.details["table"] = table
        self.details["record_id"] = record_id
