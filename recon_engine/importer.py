"""Statement importer: turns raw statement rows into deduplicated transactions."""
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .config import ImportConfig, config
from .exceptions import ImportFailedError, ParseError, RecordNotFoundError, ValidationError
from .logging_config import (
    get_logger, log_error, log_import_complete, log_import_start, log_row_failed,
)
from .models import (
    Account, BatchStatus, CancellationToken, ImportBatch, ImportRowError, SourceFormat,
    Transaction, TransactionStatus, compute_fingerprint, utc_now,
)
from .statement_parser import ParsedRow, StatementParser
from .storage import ReconStore

logger = get_logger("importer")


class StatementImporter:
    """
    Imports statement rows for one account into an ImportBatch.

    Rows are parsed in a bounded thread pool. Inserts run one at a time and
    rely on the ``(account_id, fingerprint)`` unique constraint, so a row
    already seen in an earlier import is counted as a duplicate rather
    than stored twice.
    """

    def __init__(
        self,
        store: ReconStore,
        parser: Optional[StatementParser] = None,
        cfg: Optional[ImportConfig] = None
    ):
        self.store = store
        self.parser = parser or StatementParser()
        self.config = cfg or config.importer

    def import_statement(
        self,
        account_id: str,
        rows: Iterable[Dict[str, Any]],
        source_format: Union[SourceFormat, str] = SourceFormat.API,
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
        imported_by: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> ImportBatch:
        """
        Import raw rows for an account.

        Row failures and duplicates are counted on the batch and never
        raised. The batch ends COMPLETED even when some rows failed.

        Raises:
            RecordNotFoundError: unknown account
            ValidationError: inactive account or unknown source format
            ImportFailedError: storage failed mid-batch; the batch is FAILED
        """
        account = self._active_account(account_id)
        source_format = self._coerce_format(source_format)
        rows = list(rows)

        batch = ImportBatch(
            account_id=account.id,
            source_format=source_format,
            file_name=file_name,
            file_size=file_size,
            total=len(rows),
            imported_by=imported_by,
        )
        self.store.insert_batch(batch)

        batch.status = BatchStatus.PROCESSING
        batch.started_at = utc_now()
        self.store.update_batch(batch)

        start = time.time()
        log_import_start(logger, batch.id, account.id, batch.total)

        try:
            for line, outcome in self._parse_rows(rows):
                if cancel_token is not None and cancel_token.cancelled:
                    batch.status = BatchStatus.FAILED
                    batch.error_message = "cancelled"
                    logger.warning(f"Import {batch.id} cancelled after {batch.processed} rows")
                    break
                self._apply_row(account, batch, line, outcome)
                batch.processed += 1
        except SQLAlchemyError as e:
            self._fail_batch(batch, str(e))
            log_error(logger, e, context="import_statement", extra={"batch_id": batch.id})
            raise ImportFailedError(batch.id, str(e))
        except Exception as e:
            self._fail_batch(batch, f"{type(e).__name__}: {e}")
            log_error(logger, e, context="import_statement", extra={"batch_id": batch.id})
            raise

        if batch.status != BatchStatus.FAILED:
            batch.status = BatchStatus.COMPLETED
        batch.completed_at = utc_now()
        self.store.update_batch(batch)

        log_import_complete(
            logger, batch.id, batch.status.value,
            succeeded=batch.succeeded,
            failed=batch.failed,
            duplicate=batch.duplicate,
            duration_seconds=time.time() - start
        )
        return batch

    def import_file(
        self,
        account_id: str,
        file_path: Path,
        source_format: Optional[Union[SourceFormat, str]] = None,
        imported_by: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> ImportBatch:
        """Read a CSV, Excel or M-PESA export and import its rows."""
        file_path = Path(file_path)
        fmt = self._coerce_format(source_format) if source_format else None
        rows, detected = self.parser.read_file(file_path, fmt)
        return self.import_statement(
            account_id,
            rows,
            source_format=detected,
            file_name=file_path.name,
            file_size=file_path.stat().st_size,
            imported_by=imported_by,
            cancel_token=cancel_token,
        )

    def _active_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise RecordNotFoundError("accounts", account_id)
        if not account.is_active:
            raise ValidationError("account_id", account_id, "account is inactive")
        return account

    @staticmethod
    def _coerce_format(source_format: Union[SourceFormat, str]) -> SourceFormat:
        if isinstance(source_format, SourceFormat):
            return source_format
        try:
            return SourceFormat(str(source_format).upper())
        except ValueError:
            raise ValidationError("source_format", str(source_format),
                                  f"must be one of {[f.value for f in SourceFormat]}")

    def _parse_rows(self, rows: list):
        """Parse rows concurrently, yielding ``(line, ParsedRow | ParseError)`` in input order."""
        workers = max(1, self.config.workers)
        with ThreadPoolExecutor(max_workers=workers) as executor:
            yield from executor.map(self._safe_parse, enumerate(rows, start=1))

    def _safe_parse(self, numbered_row: Tuple[int, Any]) -> Tuple[int, Union[ParsedRow, ParseError]]:
        line, row = numbered_row
        if not isinstance(row, dict):
            return line, ParseError("row is not a mapping of column to value", line=line)
        try:
            return line, self.parser.parse_row(row, line=line)
        except ParseError as e:
            return line, e
        except (ArithmeticError, ValueError, TypeError) as e:
            return line, ParseError(f"unreadable row ({type(e).__name__}: {e})", line=line)

    def _apply_row(self, account: Account, batch: ImportBatch, line: int,
                   outcome: Union[ParsedRow, ParseError]):
        if isinstance(outcome, ParseError):
            batch.failed += 1
            batch.errors.append(ImportRowError(
                row_number=line, reason=outcome.reason, field=outcome.details.get("field")
            ))
            log_row_failed(logger, batch.id, line, outcome.reason)
            return

        self._extend_dates(batch, outcome)
        transaction = self._to_transaction(account, batch, outcome)
        try:
            self.store.insert_transaction(transaction)
        except IntegrityError:
            batch.duplicate += 1
            logger.debug(f"Row {line} duplicates fingerprint {transaction.fingerprint[:12]}")
            return
        batch.succeeded += 1

    @staticmethod
    def _extend_dates(batch: ImportBatch, parsed: ParsedRow):
        day = parsed.transaction_date
        if batch.date_from is None or day < batch.date_from:
            batch.date_from = day
        if batch.date_to is None or day > batch.date_to:
            batch.date_to = day

    @staticmethod
    def _to_transaction(account: Account, batch: ImportBatch, parsed: ParsedRow) -> Transaction:
        return Transaction(
            account_id=account.id,
            batch_id=batch.id,
            transaction_date=parsed.transaction_date,
            value_date=parsed.value_date,
            reference=parsed.reference,
            description=parsed.description,
            amount=parsed.amount,
            direction=parsed.direction,
            counterparty=parsed.counterparty,
            channel=parsed.channel or account.channel,
            fingerprint=compute_fingerprint(
                account.id, parsed.transaction_date, parsed.amount, parsed.reference
            ),
            status=TransactionStatus.UNMATCHED,
            raw_data=parsed.raw_data,
        )

    def _fail_batch(self, batch: ImportBatch, reason: str):
        batch.status = BatchStatus.FAILED
        batch.error_message = reason
        batch.completed_at = utc_now()
        try:
            self.store.update_batch(batch)
        except SQLAlchemyError:
            logger.exception(f"Could not record failure of batch {batch.id}")
