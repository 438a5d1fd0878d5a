"""
Reconciliation reporting and export functionality.

Generates:
- Excel workbooks with summary, matches and unmatched aging sheets
- JSON reports for downstream systems
"""
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
import json

import pandas as pd
from openpyxl import Workbook
from openpyxl.styles import Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from .config import config
from .logging_config import get_logger
from .models import Account, ConfidenceTier, Match, ReconciliationSummary

logger = get_logger("reporting")


class ReportGenerator:
    """Generates reconciliation reports in various formats."""

    # Excel styling
    HEADER_FILL = PatternFill(start_color="366092", end_color="366092", fill_type="solid")
    HEADER_FONT = Font(bold=True, color="FFFFFF")
    MATCHED_FILL = PatternFill(start_color="C6EFCE", end_color="C6EFCE", fill_type="solid")
    EXCEPTION_FILL = PatternFill(start_color="FFC7CE", end_color="FFC7CE", fill_type="solid")
    WARNING_FILL = PatternFill(start_color="FFEB9C", end_color="FFEB9C", fill_type="solid")
    BORDER = Border(
        left=Side(style='thin'),
        right=Side(style='thin'),
        top=Side(style='thin'),
        bottom=Side(style='thin')
    )
    MONEY_FORMAT = '#,##0.00'

    def __init__(self, output_dir: Optional[Path] = None):
        self.output_dir = Path(output_dir or config.reports_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def generate_excel_report(
        self,
        account: Account,
        summary: ReconciliationSummary,
        matches: List[Match],
        unmatched: pd.DataFrame,
        filename: Optional[str] = None
    ) -> Path:
        """Generate an Excel reconciliation workbook for one account."""
        wb = Workbook()
        wb.remove(wb.active)

        self._create_summary_sheet(wb, account, summary)
        self._create_matches_sheet(wb, matches)
        self._create_unmatched_sheet(wb, unmatched)

        if not filename:
            filename = f"reconciliation_{account.id[:8]}_{summary.as_of.strftime('%Y%m%d')}.xlsx"

        output_path = self.output_dir / filename
        wb.save(output_path)
        logger.info(f"Excel report written to {output_path}")
        return output_path

    def _write_headers(self, ws, headers: List[str]):
        for col, header in enumerate(headers, start=1):
            cell = ws.cell(row=1, column=col, value=header)
            cell.fill = self.HEADER_FILL
            cell.font = self.HEADER_FONT
            cell.border = self.BORDER

    def _create_summary_sheet(self, wb: Workbook, account: Account, summary: ReconciliationSummary):
        """Create summary dashboard sheet."""
        ws = wb.create_sheet("Summary", 0)

        ws["A1"] = "Statement Reconciliation Summary"
        ws["A1"].font = Font(bold=True, size=16)
        ws.merge_cells("A1:D1")

        ws["A3"] = "Account:"
        ws["B3"] = f"{account.name} ({account.channel.value}, {account.provider})"
        ws["A4"] = "As Of:"
        ws["B4"] = summary.as_of.strftime("%Y-%m-%d %H:%M:%S")
        ws["A5"] = "Match Rate:"
        ws["B5"] = f"{summary.match_rate:.1%}"

        ws["A7"] = "Transactions by Status"
        ws["A7"].font = Font(bold=True, size=12)
        row = 8
        for status, count in summary.counts_by_status.items():
            ws[f"A{row}"] = status
            ws[f"B{row}"] = count
            row += 1

        row += 1
        ws[f"A{row}"] = "Unmatched Aging (days)"
        ws[f"A{row}"].font = Font(bold=True, size=12)
        for bucket, count in summary.aging_buckets.items():
            row += 1
            ws[f"A{row}"] = bucket
            ws[f"B{row}"] = count
            if bucket == "30+" and count:
                ws[f"B{row}"].fill = self.EXCEPTION_FILL

        row += 2
        ws[f"A{row}"] = "Amount Summary"
        ws[f"A{row}"].font = Font(bold=True, size=12)
        amount_data = [
            ("Total Credits", summary.total_credits),
            ("Total Debits", summary.total_debits),
            ("Unmatched Amount", summary.unmatched_amount),
            ("Total Variance", summary.total_variance),
        ]
        for label, value in amount_data:
            row += 1
            ws[f"A{row}"] = label
            ws[f"B{row}"] = float(value)
            ws[f"B{row}"].number_format = self.MONEY_FORMAT

        ws.column_dimensions["A"].width = 25
        ws.column_dimensions["B"].width = 40

    def _create_matches_sheet(self, wb: Workbook, matches: List[Match]):
        """Create sheet of active matches."""
        ws = wb.create_sheet("Matches")

        headers = [
            "Match ID", "Transaction ID", "Event ID", "Entity", "Confidence", "Score",
            "Matched Amount", "Event Amount", "Variance", "Actor", "Created",
        ]
        self._write_headers(ws, headers)

        for row_num, match in enumerate(matches, start=2):
            entity = f"{match.event_entity_type or ''} {match.event_entity_id or ''}".strip()
            row_data = [
                match.id[:8],
                match.transaction_id[:8],
                match.event_id or "",
                entity or (match.memo or "")[:40],
                match.confidence.value,
                f"{match.score:.0%}",
                float(match.matched_amount),
                float(match.event_amount) if match.event_amount is not None else None,
                float(match.variance),
                match.actor,
                match.created_at.strftime("%Y-%m-%d %H:%M"),
            ]

            for col, value in enumerate(row_data, start=1):
                cell = ws.cell(row=row_num, column=col, value=value)
                cell.border = self.BORDER

                if col == 5:
                    if match.confidence == ConfidenceTier.HIGH:
                        cell.fill = self.MATCHED_FILL
                    elif match.confidence == ConfidenceTier.LOW:
                        cell.fill = self.WARNING_FILL

            for col in (7, 8, 9):
                ws.cell(row=row_num, column=col).number_format = self.MONEY_FORMAT
            if match.variance != 0:
                ws.cell(row=row_num, column=9).fill = self.WARNING_FILL

        for col in range(1, len(headers) + 1):
            ws.column_dimensions[get_column_letter(col)].width = 16

    def _create_unmatched_sheet(self, wb: Workbook, unmatched: pd.DataFrame):
        """Create sheet of unmatched lines with their age."""
        ws = wb.create_sheet("Unmatched")

        headers = ["Date", "Reference", "Description", "Counterparty", "Amount", "Days", "Bucket", "Attention"]
        self._write_headers(ws, headers)

        for row_num, record in enumerate(unmatched.to_dict(orient="records"), start=2):
            row_data = [
                record["transaction_date"],
                record["reference"],
                (record["description"] or "")[:60],
                record["counterparty"],
                record["amount"],
                record["days_unmatched"],
                record["aging_bucket"],
                "yes" if record["requires_attention"] else "",
            ]
            for col, value in enumerate(row_data, start=1):
                cell = ws.cell(row=row_num, column=col, value=value)
                cell.border = self.BORDER
            ws.cell(row=row_num, column=5).number_format = self.MONEY_FORMAT
            if record["aging_bucket"] == "30+":
                ws.cell(row=row_num, column=7).fill = self.EXCEPTION_FILL

        widths = [12, 18, 50, 25, 14, 8, 8, 10]
        for col, width in enumerate(widths, start=1):
            ws.column_dimensions[get_column_letter(col)].width = width

    def generate_json_report(
        self,
        account: Account,
        summary: ReconciliationSummary,
        matches: List[Match],
        unmatched: pd.DataFrame,
        filename: Optional[str] = None
    ) -> Path:
        """Generate JSON report for API consumption or further processing."""
        report_data = {
            "generated_at": datetime.now().isoformat(),
            "account": {
                "id": account.id,
                "name": account.name,
                "channel": account.channel.value,
                "provider": account.provider,
                "currency": account.currency,
            },
            "summary": summary.to_dict(),
            "matches": [self._match_to_dict(m) for m in matches],
            "unmatched": [
                {**record, "transaction_date": record["transaction_date"].isoformat()}
                for record in unmatched.to_dict(orient="records")
            ],
        }

        if not filename:
            filename = f"reconciliation_{account.id[:8]}_{summary.as_of.strftime('%Y%m%d')}.json"

        output_path = self.output_dir / filename
        with open(output_path, "w") as f:
            json.dump(report_data, f, indent=2, default=str)

        logger.info(f"JSON report written to {output_path}")
        return output_path

    def _match_to_dict(self, match: Match) -> Dict[str, Any]:
        return {
            "id": match.id,
            "transaction_id": match.transaction_id,
            "event_id": match.event_id,
            "event_entity_type": match.event_entity_type,
            "event_entity_id": match.event_entity_id,
            "confidence": match.confidence.value,
            "rule_id": match.rule_id,
            "score": match.score,
            "matched_amount": str(match.matched_amount),
            "variance": str(match.variance),
            "actor": match.actor,
            "memo": match.memo,
            "created_at": match.created_at.isoformat(),
        }
