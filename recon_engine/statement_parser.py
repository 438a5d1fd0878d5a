"""Statement file reader and row normalizer for bank and M-PESA exports."""
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd
from dateutil import parser as date_parser

from .config import config
from .exceptions import DataError, ParseError
from .logging_config import get_logger
from .models import Channel, Direction, SourceFormat

logger = get_logger("statement_parser")

# Amounts are stored as NUMERIC(15, 2)
MAX_AMOUNT = Decimal("1e13")


@dataclass
class ParsedRow:
    """A statement row reduced to the fields the importer needs."""
    transaction_date: date
    amount: Decimal
    direction: Direction
    reference: Optional[str] = None
    description: str = ""
    counterparty: Optional[str] = None
    value_date: Optional[date] = None
    channel: Optional[Channel] = None
    raw_data: Dict[str, str] = field(default_factory=dict)


class StatementParser:
    """
    Parser for statement rows.

    Supports:
    - Bank CSV and Excel exports with a signed amount column
    - Exports with separate credit/debit columns
    - Safaricom M-PESA statements (Receipt No., Completion Time, Paid In, Withdrawn)
    """

    # Normalized column name -> standard field. First alias found wins.
    COLUMN_MAPPINGS = {
        "date": ["date", "transaction_date", "trans_date", "posting_date", "completion_time", "txn_date"],
        "value_date": ["value_date", "val_date"],
        "amount": ["amount", "transaction_amount", "amount_kes", "value"],
        "credit": ["credit", "paid_in", "deposit", "money_in"],
        "debit": ["debit", "withdrawn", "withdrawal", "money_out"],
        "reference": [
            "reference", "ref", "transaction_ref", "receipt_no", "receipt_number", "receipt",
            "reference_number", "trace_number",
        ],
        "description": ["description", "details", "narration", "narrative", "memo", "particulars"],
        "counterparty": ["counterparty", "payer", "payee", "payer_details", "payee_details", "name", "other_party"],
        "direction": ["direction", "dr_cr", "cr_dr", "transaction_type", "type"],
        "channel": ["channel"],
        "transaction_status": ["transaction_status"],
    }

    CREDIT_MARKERS = {"cr", "c", "credit", "in", "paid_in", "deposit", "receipt"}
    DEBIT_MARKERS = {"dr", "d", "debit", "out", "withdrawn", "withdrawal", "payment"}

    # Formats that cannot be confused between day-first and month-first
    UNAMBIGUOUS_FORMATS = [
        "%Y-%m-%d",
        "%Y-%m-%d %H:%M:%S",
        "%Y-%m-%dT%H:%M:%S",
        "%Y%m%d%H%M%S",  # M-PESA API timestamps
        "%Y%m%d",
        "%d %b %Y",
        "%d-%b-%Y",
        "%b %d, %Y",
        "%B %d, %Y",
    ]
    DAYFIRST_FORMATS = ["%d/%m/%Y", "%d/%m/%Y %H:%M:%S", "%d/%m/%y", "%d-%m-%Y", "%d.%m.%Y"]
    MONTHFIRST_FORMATS = ["%m/%d/%Y", "%m/%d/%Y %H:%M:%S", "%m/%d/%y", "%m-%d-%Y"]

    # Counterparty hints inside M-PESA and bank narratives
    COUNTERPARTY_PATTERNS = [
        r"(?:transfer|payment|received)\s+from\s+(?:\d{6,}\s*-\s*)?([A-Za-z][A-Za-z\s&.'-]{2,60})",
        r"(?:transfer|payment|paid)\s+to\s+(?:\d{6,}\s*-\s*)?([A-Za-z][A-Za-z\s&.'-]{2,60})",
        r"\b(?:from|to|by)[:\s]+([A-Z][A-Za-z\s&.'-]{2,60})$",
    ]

    MPESA_SIGNATURE = {"receipt_no", "completion_time"}

    def __init__(self, dayfirst: Optional[bool] = None):
        self.dayfirst = config.importer.dayfirst if dayfirst is None else dayfirst
        if self.dayfirst:
            self.date_formats = self.UNAMBIGUOUS_FORMATS + self.DAYFIRST_FORMATS + self.MONTHFIRST_FORMATS
        else:
            self.date_formats = self.UNAMBIGUOUS_FORMATS + self.MONTHFIRST_FORMATS + self.DAYFIRST_FORMATS

    # ============== Files ==============

    def read_file(
        self,
        file_path: Path,
        source_format: Optional[SourceFormat] = None
    ) -> Tuple[List[Dict[str, str]], SourceFormat]:
        """
        Read a statement file into raw rows.

        Every cell is read as a string so that amounts and references keep
        their original formatting until row parsing.

        Returns:
            The raw rows and the detected source format
        """
        file_path = Path(file_path)
        if not file_path.exists():
            raise DataError(f"File not found: {file_path}", field="file", value=str(file_path))

        suffix = file_path.suffix.lower()
        if suffix in (".xlsx", ".xls"):
            df = self._read_excel(file_path)
            detected = SourceFormat.EXCEL
        elif suffix in (".csv", ".txt", ""):
            df = self._read_csv(file_path)
            detected = SourceFormat.CSV
        else:
            raise DataError(f"Unsupported file format: {suffix}", field="file", value=file_path.name)

        normalized = {self.normalize_column_name(c) for c in df.columns}
        if self.MPESA_SIGNATURE <= normalized:
            detected = SourceFormat.MPESA

        rows = df.to_dict(orient="records")
        logger.info(f"Read {len(rows)} rows from {file_path.name} ({detected.value})")
        return rows, source_format or detected

    def _read_csv(self, file_path: Path) -> pd.DataFrame:
        for encoding in ["utf-8", "utf-8-sig", "latin-1"]:
            try:
                return pd.read_csv(file_path, dtype=str, keep_default_na=False, encoding=encoding)
            except UnicodeDecodeError:
                continue
            except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
                raise DataError(f"Failed to parse CSV: {e}", field="file", value=file_path.name)
        raise DataError("Could not decode CSV file with any supported encoding", field="file",
                        value=file_path.name)

    def _read_excel(self, file_path: Path) -> pd.DataFrame:
        try:
            return pd.read_excel(file_path, dtype=str, keep_default_na=False)
        except (ValueError, OSError) as e:
            raise DataError(f"Failed to parse Excel file: {e}", field="file", value=file_path.name)

    # ============== Rows ==============

    def parse_row(self, row: Dict[str, Any], line: Optional[int] = None) -> ParsedRow:
        """
        Convert one raw statement row into a ParsedRow.

        Raises:
            ParseError: when the date or amount is missing or unreadable,
                the amount is zero, or the provider reports the row as not
                completed
        """
        normalized = {self.normalize_column_name(k): v for k, v in row.items()}
        column_map = self._map_columns(normalized.keys())

        status_value = self._text(normalized, column_map, "transaction_status")
        if status_value and status_value.lower() != "completed":
            raise ParseError(f"transaction status is {status_value}", field="transaction_status",
                             value=status_value, line=line)

        if "date" not in column_map:
            raise ParseError("missing date", field="date", line=line)
        transaction_date = self._parse_date(normalized[column_map["date"]], line=line)

        value_date = None
        value_date_raw = self._text(normalized, column_map, "value_date")
        if value_date_raw:
            value_date = self._parse_date(value_date_raw, line=line)

        amount, direction = self._resolve_amount(normalized, column_map, line)

        description = self._normalize_description(self._text(normalized, column_map, "description"))
        reference = self._text(normalized, column_map, "reference") or None
        counterparty = self._text(normalized, column_map, "counterparty") or self._extract_counterparty(description)

        channel = None
        channel_raw = self._text(normalized, column_map, "channel")
        if channel_raw:
            try:
                channel = Channel(channel_raw.upper().replace(" ", "_").replace("-", "_"))
            except ValueError:
                raise ParseError(f"unknown channel {channel_raw}", field="channel", value=channel_raw, line=line)

        return ParsedRow(
            transaction_date=transaction_date,
            value_date=value_date,
            amount=amount,
            direction=direction,
            reference=reference,
            description=description,
            counterparty=counterparty,
            channel=channel,
            raw_data={str(k): "" if v is None else str(v) for k, v in row.items()},
        )

    def _resolve_amount(self, normalized: Dict[str, Any], column_map: Dict[str, str],
                        line: Optional[int]) -> Tuple[Decimal, Direction]:
        """Signed amount and direction from either a single amount column or credit/debit columns."""
        amount_raw = self._text(normalized, column_map, "amount")
        credit_raw = self._text(normalized, column_map, "credit")
        debit_raw = self._text(normalized, column_map, "debit")

        if amount_raw:
            amount = self._parse_amount(amount_raw, "amount", line)
            marker = self._text(normalized, column_map, "direction").lower().replace(" ", "_")
            if marker in self.CREDIT_MARKERS:
                amount = abs(amount)
            elif marker in self.DEBIT_MARKERS:
                amount = -abs(amount)
        elif credit_raw or debit_raw:
            credit = abs(self._parse_amount(credit_raw, "credit", line)) if credit_raw else Decimal("0")
            debit = abs(self._parse_amount(debit_raw, "debit", line)) if debit_raw else Decimal("0")
            amount = credit - debit
        else:
            raise ParseError("missing amount", field="amount", line=line)

        if amount == 0:
            raise ParseError("amount must be non-zero", field="amount", value="0", line=line)

        direction = Direction.CREDIT if amount > 0 else Direction.DEBIT
        return amount, direction

    @staticmethod
    def normalize_column_name(name: Any) -> str:
        """Normalize column name for matching, e.g. 'Receipt No.' -> 'receipt_no'."""
        return re.sub(r"[^a-z0-9]+", "_", str(name).lower()).strip("_")

    def _map_columns(self, columns) -> Dict[str, str]:
        """Map normalized columns to standard fields."""
        available = set(columns)
        mapping = {}
        for standard_field, variations in self.COLUMN_MAPPINGS.items():
            for variation in variations:
                if variation in available and variation not in mapping.values():
                    mapping[standard_field] = variation
                    break
        return mapping

    @staticmethod
    def _text(normalized: Dict[str, Any], column_map: Dict[str, str], standard_field: str) -> str:
        column = column_map.get(standard_field)
        if column is None:
            return ""
        value = normalized.get(column)
        if value is None:
            return ""
        if isinstance(value, float) and pd.isna(value):
            return ""
        return str(value).strip()

    def _parse_date(self, value: Any, line: Optional[int] = None) -> date:
        """Parse date from explicit formats first, then dateutil."""
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value

        value_str = "" if value is None else str(value).strip()
        if not value_str:
            raise ParseError("missing date", field="date", line=line)

        for fmt in self.date_formats:
            try:
                return datetime.strptime(value_str, fmt).date()
            except ValueError:
                continue

        try:
            return date_parser.parse(value_str, dayfirst=self.dayfirst).date()
        except (ValueError, OverflowError):
            raise ParseError(f"unreadable date {value_str!r}", field="date", value=value_str, line=line)

    def _parse_amount(self, value: Any, field_name: str = "amount", line: Optional[int] = None) -> Decimal:
        """Parse amount, accepting currency symbols, thousands separators and accounting parentheses."""
        if isinstance(value, (Decimal, int, float)) and not isinstance(value, bool):
            return self._to_cents(Decimal(str(value)), value, field_name, line)

        value_str = str(value).strip()

        # Remove currency symbols, codes and whitespace
        value_str = re.sub(r"(?i)\b(kes|ksh|kshs|usd|ugx|tzs)\b\.?", "", value_str)
        value_str = re.sub(r"[$€£¥\s]", "", value_str)

        # Handle parentheses for negative (accounting format)
        if value_str.startswith("(") and value_str.endswith(")"):
            value_str = "-" + value_str[1:-1]

        value_str = value_str.replace(",", "")

        try:
            amount = Decimal(value_str)
        except InvalidOperation:
            raise ParseError(f"non-numeric {field_name} {value!r}", field=field_name, value=str(value), line=line)
        return self._to_cents(amount, value, field_name, line)

    @staticmethod
    def _to_cents(amount: Decimal, value: Any, field_name: str, line: Optional[int]) -> Decimal:
        if not amount.is_finite():
            raise ParseError(f"non-numeric {field_name} {value!r}", field=field_name, value=str(value), line=line)
        try:
            cents = amount.quantize(Decimal("0.01"))
        except InvalidOperation:
            cents = None
        if cents is None or abs(cents) >= MAX_AMOUNT:
            raise ParseError(f"{field_name} {value!r} is out of range", field=field_name, value=str(value), line=line)
        return cents

    def _extract_counterparty(self, description: str) -> Optional[str]:
        """Pull a payer or payee name out of a narrative."""
        for pattern in self.COUNTERPARTY_PATTERNS:
            match = re.search(pattern, description, re.IGNORECASE)
            if match:
                name = re.sub(r"\s+", " ", match.group(1)).strip(".,- ")
                if len(name) > 2:
                    return name
        return None

    def _normalize_description(self, description: str) -> str:
        """Collapse whitespace in a narrative."""
        return " ".join(description.split())
