#!/usr/bin/env python3
"""
Demo script to showcase the statement reconciliation engine.

Run this script to see the engine in action with sample data.
"""
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from recon_engine.models import TransactionStatus
from recon_engine.reconciler import ReconciliationService, create_sample_data
from recon_engine.storage import ReconStore

from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich import box


console = Console()


def main():
    console.print(Panel.fit(
        "[bold blue]Statement Reconciliation Engine - Demo[/bold blue]\n"
        "[dim]M-PESA and bank statements matched against expected rent invoices[/dim]",
        border_style="blue"
    ))

    # In-memory database so the demo leaves nothing behind
    service = ReconciliationService(store=ReconStore("sqlite:///:memory:"))

    console.print("\n[cyan]Generating sample data...[/cyan]")
    data = create_sample_data(service)

    console.print(f"  • Expected events: {len(data['events'])}")
    for batch in data["batches"]:
        console.print(
            f"  • {batch.file_name}: {batch.succeeded} imported, "
            f"{batch.failed} rejected, {batch.duplicate} duplicates"
        )
        for error in batch.errors:
            console.print(f"      [red]row {error.row_number}[/red]: {error.reason}")

    console.print("\n[cyan]Running matching passes...[/cyan]")
    for account in data["accounts"]:
        result = service.run_matching_pass(account.id)
        console.print(
            f"  • {account.name}: {result.matched_count} matched "
            f"({result.partially_matched_count} partial), {result.ambiguous_count} ambiguous, "
            f"{result.unmatched_count} unmatched"
        )

    mpesa = data["accounts"][0]
    display_matches(service, mpesa.id)
    display_unmatched(service, mpesa.id)

    # Exception handling walkthrough
    unmatched = service.list_transactions(mpesa.id, TransactionStatus.UNMATCHED)
    if unmatched:
        txn = unmatched[0]
        console.print(f"\n[cyan]Resolving unexplained payment {txn.reference}...[/cyan]")
        service.manual_match(txn.id, None, actor="demo.user", memo="Deposit from walk-in tenant, receipt 0042")
        detail = service.transaction_detail(txn.id)
        for change in detail.status_history:
            from_status = change.from_status.value if change.from_status else "-"
            console.print(f"  {from_status} → {change.to_status.value} by {change.actor}")

    for account in data["accounts"]:
        display_summary(account.name, service.summary(account.id))

    reports = service.generate_reports(mpesa.id)
    console.print("\n[bold green]Reports Generated:[/bold green]")
    for fmt, path in reports.items():
        console.print(f"  [cyan]{fmt.upper()}:[/cyan] {path}")

    service.close()

    console.print("\n[bold green]Demo complete![/bold green]")
    console.print("\nTo run with your own data:")
    console.print("  1. Copy .env.example to .env and configure the events feed")
    console.print("  2. Run: recon add-account 'M-PESA Paybill' --channel MOBILE_MONEY")
    console.print("  3. Run: recon import <account-id> your_statement.csv && recon match <account-id>")


def display_matches(service, account_id):
    """Display active matches of an account."""
    matches = service.store.active_matches_for_account(account_id)
    if not matches:
        return

    table = Table(title="\nMatches", box=box.ROUNDED)
    table.add_column("Event", style="cyan")
    table.add_column("Confidence")
    table.add_column("Rule")
    table.add_column("Amount", justify="right")
    table.add_column("Variance", justify="right")

    for match in matches[:10]:
        conf_color = {"HIGH": "green", "MEDIUM": "yellow"}.get(match.confidence.value, "red")
        table.add_row(
            match.event_id or "",
            f"[{conf_color}]{match.confidence.value}[/{conf_color}]",
            match.rule_id or "",
            f"{match.matched_amount:,.2f}",
            f"{match.variance:,.2f}",
        )

    console.print(table)


def display_unmatched(service, account_id):
    """Display unmatched lines with their age."""
    frame = service.analytics.unmatched_frame(account_id)
    if frame.empty:
        console.print("\n[green]✓ Everything matched![/green]")
        return

    table = Table(title="\nUnmatched Lines", box=box.ROUNDED)
    table.add_column("Date")
    table.add_column("Reference", style="cyan")
    table.add_column("Description")
    table.add_column("Amount", justify="right")
    table.add_column("Age")

    for record in frame.to_dict(orient="records"):
        table.add_row(
            str(record["transaction_date"]),
            record["reference"] or "",
            (record["description"] or "")[:45],
            f"{record['amount']:,.2f}",
            record["aging_bucket"],
        )

    console.print(table)


def display_summary(name, summary):
    """Display reconciliation summary."""
    table = Table(title=f"\nReconciliation Summary: {name}", box=box.ROUNDED)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Transactions", str(summary.total_transactions))
    table.add_row("Auto Matched", f"[green]{summary.auto_matched_count}[/green]")
    table.add_row("Manually Matched", f"[green]{summary.manual_matched_count}[/green]")
    table.add_row("Partial", f"[yellow]{summary.counts_by_status.get('PARTIALLY_MATCHED', 0)}[/yellow]")
    table.add_row("Unmatched", f"[red]{summary.counts_by_status.get('UNMATCHED', 0)}[/red]")
    table.add_row("", "")
    table.add_row("Match Rate", f"[bold]{summary.match_rate:.1%}[/bold]")
    table.add_row("Unmatched Amount", f"{summary.unmatched_amount:,.2f}")

    console.print(table)


if __name__ == "__main__":
    main()
