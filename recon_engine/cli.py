"""
Command-line interface for the statement reconciliation engine.
"""
import sys
from functools import wraps
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich import box

from . import __version__
from .config import config
from .exceptions import ReconEngineError
from .logging_config import setup_logging
from .models import Channel
from .reconciler import ReconciliationService, create_sample_data
from .storage import ReconStore


console = Console()

STATUS_COLORS = {
    "MATCHED": "green",
    "MANUAL_MATCH": "green",
    "PARTIALLY_MATCHED": "yellow",
    "UNMATCHED": "red",
    "DISPUTED": "magenta",
    "IGNORED": "dim",
}


def _service(ctx: click.Context) -> ReconciliationService:
    return ReconciliationService.from_config(events_file=ctx.obj.get("events_file"))


def handle_errors(func):
    """Print engine errors in red and exit non-zero instead of dumping a traceback."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ReconEngineError as e:
            console.print(f"[red]Error ({e.code}): {e.message}[/red]")
            sys.exit(1)
    return wrapper


@click.group()
@click.version_option(version=__version__)
@click.option("--events-file", "-E", type=click.Path(exists=True, path_type=Path),
              help="JSON or YAML file of expected events for the in-memory feed")
@click.option("--log-level", default="WARNING", help="Log level (DEBUG, INFO, WARNING, ERROR)")
@click.pass_context
def cli(ctx, events_file, log_level):
    """
    Statement Reconciliation Engine

    Imports bank and M-PESA statements, matches them against expected
    receivables and payables, and tracks exceptions until resolved.
    """
    setup_logging(level=log_level)
    ctx.ensure_object(dict)
    ctx.obj["events_file"] = events_file


# ============== Setup ==============

@cli.command("init-db")
@click.pass_context
@handle_errors
def init_db(ctx):
    """Create tables and seed the default matching rules."""
    service = _service(ctx)
    rules = service.rules.all_rules()
    console.print(f"[green]Database ready at {config.database_url}[/green] ({len(rules)} rules)")
    service.close()


@cli.command("add-account")
@click.argument("name")
@click.option("--channel", "-c", type=click.Choice([c.value for c in Channel], case_sensitive=False),
              default=Channel.BANK.value, help="Account channel")
@click.option("--provider", "-p", default="", help="Bank or mobile-money provider")
@click.option("--currency", default="KES", help="Account currency")
@click.option("--primary", is_flag=True, help="Mark as the primary account")
@click.pass_context
@handle_errors
def add_account(ctx, name, channel, provider, currency, primary):
    """Register a bank or mobile-money account."""
    service = _service(ctx)
    account = service.create_account(name, channel, provider=provider, is_primary=primary, currency=currency)
    console.print(f"[green]Created account {account.id}[/green] ({account.name}, {account.channel.value})")
    service.close()


@cli.command()
@click.option("--all", "show_all", is_flag=True, help="Include inactive accounts")
@click.pass_context
@handle_errors
def accounts(ctx, show_all):
    """List accounts."""
    service = _service(ctx)
    rows = service.list_accounts(active_only=not show_all)

    if not rows:
        console.print("[yellow]No accounts found. Add one with 'recon add-account'.[/yellow]")
        service.close()
        return

    table = Table(title="Accounts", box=box.ROUNDED)
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Channel")
    table.add_column("Provider")
    table.add_column("Currency")
    table.add_column("Active")

    for account in rows:
        table.add_row(
            account.id,
            account.name + (" *" if account.is_primary else ""),
            account.channel.value,
            account.provider,
            account.currency,
            "yes" if account.is_active else "[dim]no[/dim]",
        )

    console.print(table)
    service.close()


# ============== Rules ==============

@cli.command()
@click.pass_context
@handle_errors
def rules(ctx):
    """Show matching rules in evaluation order."""
    service = _service(ctx)
    snapshot = service.rules.snapshot()

    table = Table(title=f"Matching Rules (version {snapshot.version})", box=box.ROUNDED)
    table.add_column("Priority", justify="right")
    table.add_column("ID", style="cyan")
    table.add_column("Kind")
    table.add_column("Confidence")
    table.add_column("Tolerance", justify="right")
    table.add_column("Window", justify="right")
    table.add_column("Keywords")
    table.add_column("Active")

    for rule in service.rules.all_rules():
        tolerance = f"{rule.amount_tolerance:,.2f}"
        if rule.amount_tolerance_percent:
            tolerance += f" / {rule.amount_tolerance_percent}%"
        table.add_row(
            str(rule.priority),
            rule.id,
            rule.kind.value,
            rule.confidence.value,
            tolerance,
            f"{rule.date_window_days}d",
            ", ".join(rule.description_keywords + rule.payer_keywords),
            "yes" if rule.is_active else "[dim]no[/dim]",
        )

    console.print(table)
    service.close()


@cli.command("load-rules")
@click.argument("rules_file", type=click.Path(exists=True, path_type=Path))
@click.pass_context
@handle_errors
def load_rules(ctx, rules_file):
    """Create or update matching rules from a YAML file."""
    service = _service(ctx)
    loaded = service.rules.load_yaml(rules_file)
    console.print(f"[green]Loaded {len(loaded)} rules from {rules_file}[/green]")
    service.close()


# ============== Import & matching ==============

@cli.command("import")
@click.argument("account_id")
@click.argument("statement_file", type=click.Path(exists=True, path_type=Path))
@click.option("--format", "-f", "source_format", default=None, help="Override detected format (CSV, EXCEL, MPESA)")
@click.option("--actor", default=None, help="Who is importing")
@click.pass_context
@handle_errors
def import_statement(ctx, account_id, statement_file, source_format, actor):
    """
    Import a statement file into an account.

    Examples:
        recon import 3f2a... mpesa_march.csv
        recon import 3f2a... equity.xlsx --format EXCEL
    """
    service = _service(ctx)

    with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"), console=console) as progress:
        progress.add_task(f"Importing {statement_file.name}...", total=None)
        batch = service.import_file(account_id, statement_file, source_format, imported_by=actor)

    table = Table(title=f"Import {batch.id[:8]}", box=box.ROUNDED)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Status", batch.status.value)
    table.add_row("Format", batch.source_format.value)
    table.add_row("Rows", str(batch.total))
    table.add_row("Imported", f"[green]{batch.succeeded}[/green]")
    table.add_row("Duplicates", f"[yellow]{batch.duplicate}[/yellow]")
    table.add_row("Failed", f"[red]{batch.failed}[/red]")
    if batch.date_from:
        table.add_row("Period", f"{batch.date_from} to {batch.date_to}")
    console.print(table)

    if batch.errors:
        console.print("\n[bold red]Rejected rows:[/bold red]")
        for error in batch.errors[:20]:
            console.print(f"  [red]•[/red] row {error.row_number}: {error.reason}")
        if len(batch.errors) > 20:
            console.print(f"  ... and {len(batch.errors) - 20} more")

    service.close()


@cli.command()
@click.argument("account_id")
@click.pass_context
@handle_errors
def match(ctx, account_id):
    """Run a matching pass over an account's unmatched lines."""
    service = _service(ctx)

    with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"), console=console) as progress:
        progress.add_task("Matching...", total=None)
        result = service.run_matching_pass(account_id)

    _display_pass_result(result)
    service.close()


@cli.command()
@click.argument("transaction_id")
@click.pass_context
@handle_errors
def suggestions(ctx, transaction_id):
    """Show candidate events for an ambiguous transaction."""
    service = _service(ctx)
    rows = service.suggestions(transaction_id)

    if not rows:
        console.print("[yellow]No suggestions recorded for this transaction.[/yellow]")
        service.close()
        return

    table = Table(title="Suggestions", box=box.ROUNDED)
    table.add_column("Event", style="cyan")
    table.add_column("Rule")
    table.add_column("Score", justify="right")
    table.add_column("Reasons")
    for suggestion in rows:
        table.add_row(
            suggestion.event_id,
            suggestion.rule_id or "",
            f"{suggestion.score:.0%}",
            "; ".join(suggestion.reasons),
        )

    console.print(table)
    service.close()


# ============== Exception handling ==============

@cli.command("manual-match")
@click.argument("transaction_id")
@click.option("--event", "-e", "event_id", default=None, help="Expected event ID")
@click.option("--actor", "-a", required=True, help="Who is matching")
@click.option("--reason", "-r", default=None, help="Why")
@click.option("--memo", "-m", default=None, help="Memo when there is no event to match")
@click.pass_context
@handle_errors
def manual_match(ctx, transaction_id, event_id, actor, reason, memo):
    """Match a transaction by hand."""
    service = _service(ctx)
    result = service.manual_match(transaction_id, event_id, actor, reason=reason, memo=memo)
    target = result.event_id or f"memo '{result.memo}'"
    console.print(f"[green]Transaction {transaction_id} matched to {target}[/green] (variance {result.variance:,.2f})")
    service.close()


@cli.command()
@click.argument("transaction_id")
@click.option("--actor", "-a", required=True, help="Who is unmatching")
@click.option("--reason", "-r", default=None, help="Required for HIGH confidence matches")
@click.pass_context
@handle_errors
def unmatch(ctx, transaction_id, actor, reason):
    """Undo the active match of a transaction."""
    service = _service(ctx)
    transaction = service.unmatch(transaction_id, actor, reason)
    console.print(f"[green]Transaction {transaction.id} is {transaction.status.value}[/green]")
    service.close()


@cli.command()
@click.argument("transaction_id")
@click.option("--actor", "-a", required=True, help="Who raised the dispute")
@click.option("--reason", "-r", required=True, help="Dispute reason")
@click.pass_context
@handle_errors
def dispute(ctx, transaction_id, actor, reason):
    """Mark a transaction as disputed."""
    service = _service(ctx)
    transaction = service.mark_disputed(transaction_id, actor, reason)
    console.print(f"[magenta]Transaction {transaction.id} is DISPUTED[/magenta]")
    service.close()


@cli.command()
@click.argument("transaction_id")
@click.option("--actor", "-a", required=True, help="Who is ignoring")
@click.option("--reason", "-r", default=None, help="Why")
@click.pass_context
@handle_errors
def ignore(ctx, transaction_id, actor, reason):
    """Exclude a transaction from reconciliation."""
    service = _service(ctx)
    transaction = service.ignore(transaction_id, actor, reason)
    console.print(f"[green]Transaction {transaction.id} is {transaction.status.value}[/green]")
    service.close()


@cli.command()
@click.argument("transaction_id")
@click.option("--actor", "-a", required=True, help="Who is reopening")
@click.option("--reason", "-r", default=None, help="Why")
@click.pass_context
@handle_errors
def reopen(ctx, transaction_id, actor, reason):
    """Return an ignored transaction to UNMATCHED."""
    service = _service(ctx)
    transaction = service.reopen(transaction_id, actor, reason)
    console.print(f"[green]Transaction {transaction.id} is {transaction.status.value}[/green]")
    service.close()


@cli.command()
@click.argument("transaction_id")
@click.option("--actor", "-a", required=True, help="Who resolved the dispute")
@click.option("--reason", "-r", required=True, help="Resolution notes")
@click.option("--uphold/--reject", default=True, help="Keep the disputed match or drop it")
@click.pass_context
@handle_errors
def resolve(ctx, transaction_id, actor, reason, uphold):
    """Resolve a disputed transaction."""
    service = _service(ctx)
    transaction = service.resolve_dispute(transaction_id, actor, reason, uphold)
    console.print(f"[green]Dispute resolved: transaction {transaction.id} is {transaction.status.value}[/green]")
    service.close()


@cli.command()
@click.argument("transaction_id")
@click.pass_context
@handle_errors
def history(ctx, transaction_id):
    """Show a transaction with its match and status history."""
    service = _service(ctx)
    detail = service.transaction_detail(transaction_id)
    txn = detail.transaction

    color = STATUS_COLORS.get(txn.status.value, "white")
    console.print(Panel(
        f"[bold]{txn.transaction_date}[/bold]  {txn.direction.value} {txn.amount:,.2f}\n"
        f"Reference: {txn.reference or '-'}\n"
        f"{txn.description}\n"
        f"Status: [{color}]{txn.status.value}[/{color}]"
        + ("  [red](requires attention)[/red]" if txn.requires_attention else ""),
        title=f"Transaction {txn.id}"
    ))

    if detail.matches:
        table = Table(title="Matches", box=box.SIMPLE)
        table.add_column("Created")
        table.add_column("Event", style="cyan")
        table.add_column("Confidence")
        table.add_column("Rule")
        table.add_column("Variance", justify="right")
        table.add_column("Active")
        for m in detail.matches:
            table.add_row(
                m.created_at.strftime("%Y-%m-%d %H:%M"),
                m.event_id or f"memo: {m.memo or ''}",
                m.confidence.value,
                m.rule_id or "",
                f"{m.variance:,.2f}",
                "yes" if m.is_active else "[dim]superseded[/dim]",
            )
        console.print(table)

    table = Table(title="Status History", box=box.SIMPLE)
    table.add_column("When")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Actor")
    table.add_column("Reason")
    for change in detail.status_history:
        table.add_row(
            change.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            change.from_status.value if change.from_status else "",
            change.to_status.value,
            change.actor,
            change.reason or "",
        )
    console.print(table)
    service.close()


# ============== Reporting ==============

@cli.command()
@click.argument("account_id", required=False)
@click.option("--as-of", type=click.DateTime(formats=["%Y-%m-%d"]), help="Age unmatched lines as of (YYYY-MM-DD)")
@click.pass_context
@handle_errors
def summary(ctx, account_id, as_of):
    """Show reconciliation health for one account or all active accounts."""
    service = _service(ctx)
    as_of_date = as_of.date() if as_of else None

    if account_id:
        _display_summary(service.get_account(account_id).name, service.summary(account_id, as_of_date))
    else:
        accounts_by_id = {a.id: a for a in service.list_accounts(active_only=True)}
        for acc_id, account_summary in service.portfolio(as_of_date).items():
            _display_summary(accounts_by_id[acc_id].name, account_summary)

    service.close()


@cli.command()
@click.argument("account_id")
@click.option("--format", "-f", "formats", multiple=True, default=["excel", "json"], help="Report formats (excel, json)")
@click.option("--as-of", type=click.DateTime(formats=["%Y-%m-%d"]), help="Age unmatched lines as of (YYYY-MM-DD)")
@click.pass_context
@handle_errors
def report(ctx, account_id, formats, as_of):
    """Write reconciliation reports for an account."""
    service = _service(ctx)
    paths = service.generate_reports(account_id, formats, as_of.date() if as_of else None)

    console.print("\n[bold green]Reports Generated:[/bold green]")
    for fmt, path in paths.items():
        console.print(f"  {fmt.upper()}: {path}")
    service.close()


# ============== Periods ==============

@cli.command("period-start")
@click.argument("account_id")
@click.option("--from", "start", required=True, type=click.DateTime(formats=["%Y-%m-%d"]), help="First day (YYYY-MM-DD)")
@click.option("--to", "end", required=True, type=click.DateTime(formats=["%Y-%m-%d"]), help="Last day (YYYY-MM-DD)")
@click.option("--statement-balance", "-b", required=True, help="Closing balance printed on the statement")
@click.option("--name", default=None, help="Period name (defaults to the date range)")
@click.option("--notes", default=None, help="Notes")
@click.pass_context
@handle_errors
def period_start(ctx, account_id, start, end, statement_balance, name, notes):
    """Open a reconciliation period for an account."""
    service = _service(ctx)
    period = service.start_period(account_id, start.date(), end.date(), statement_balance, name=name, notes=notes)
    console.print(f"[green]Started period {period.name}[/green] ({period.id})")
    _display_period(period)
    service.close()


@cli.command()
@click.argument("account_id")
@click.pass_context
@handle_errors
def periods(ctx, account_id):
    """List reconciliation periods of an account."""
    service = _service(ctx)
    rows = service.list_periods(account_id)

    if not rows:
        console.print("[yellow]No periods yet. Open one with 'recon period-start'.[/yellow]")
        service.close()
        return

    table = Table(title="Periods", box=box.ROUNDED)
    table.add_column("ID", style="cyan")
    table.add_column("Period")
    table.add_column("Status")
    table.add_column("Closing", justify="right")
    table.add_column("Statement", justify="right")
    table.add_column("Difference", justify="right")

    for period in rows:
        color = "green" if period.is_balanced else "red"
        table.add_row(
            period.id,
            period.name,
            period.status.value,
            f"{period.closing_balance:,.2f}",
            f"{period.statement_balance:,.2f}",
            f"[{color}]{period.difference:,.2f}[/{color}]",
        )

    console.print(table)
    service.close()


@cli.command("period-complete")
@click.argument("period_id")
@click.option("--actor", "-a", required=True, help="Who reconciled the period")
@click.option("--notes", default=None, help="Closing notes")
@click.pass_context
@handle_errors
def period_complete(ctx, period_id, actor, notes):
    """Close an in-progress period."""
    service = _service(ctx)
    period = service.complete_period(period_id, actor, notes)
    console.print(f"[green]Period {period.name} is {period.status.value}[/green]")
    _display_period(period)
    service.close()


@cli.command("period-review")
@click.argument("period_id")
@click.option("--actor", "-a", required=True, help="Who reviewed the period")
@click.pass_context
@handle_errors
def period_review(ctx, period_id, actor):
    """Sign off a completed period."""
    service = _service(ctx)
    period = service.review_period(period_id, actor)
    console.print(f"[green]Period {period.name} is {period.status.value}[/green]")
    service.close()


# ============== Operations ==============

@cli.command("notify-retry")
@click.option("--limit", "-n", default=100, help="Maximum notifications to retry")
@click.pass_context
@handle_errors
def notify_retry(ctx, limit):
    """Retry match notifications the events feed did not accept."""
    service = _service(ctx)
    counts = service.retry_notifications(limit)

    table = Table(title="Notification Retry", box=box.SIMPLE)
    table.add_column("Outcome", style="cyan")
    table.add_column("Count", justify="right")
    for outcome, count in counts.items():
        table.add_row(outcome, str(count))
    console.print(table)
    service.close()


@cli.command()
@click.pass_context
@handle_errors
def status(ctx):
    """Show configuration status."""
    console.print("\n[bold]Configuration Status[/bold]\n")

    table = Table(show_header=False, box=box.SIMPLE)
    table.add_column("Setting", style="cyan")
    table.add_column("Status")

    feed_ok = config.feed.is_configured()
    table.add_row(
        "Expected Events Feed",
        f"[green]{config.feed.base_url}[/green]" if feed_ok else "[yellow]In-memory (no EVENTS_FEED_URL)[/yellow]"
    )
    table.add_row("Database", config.database_url)
    table.add_row("Rules File", str(config.rules_file) if config.rules_file else "[dim]defaults[/dim]")
    table.add_row("Partial Tolerance", f"{config.matching.partial_tolerance_amount:,.2f} / "
                                       f"{config.matching.partial_tolerance_percent}%")
    table.add_row("Candidate Window", f"-{config.matching.lookback_days} / +{config.matching.lookahead_days} days")
    table.add_row("Day-first Dates", "yes" if config.importer.dayfirst else "no")
    table.add_row("Import Workers", str(config.importer.workers))
    table.add_row("Reports Directory", str(config.reports_dir))

    console.print(table)

    service = _service(ctx)
    counts = service.store.notification_counts()
    if counts:
        console.print("\n[bold]Notification Outbox[/bold]")
        for outcome, count in counts.items():
            console.print(f"  {outcome}: {count}")
    service.close()


@cli.command()
@click.option("--reports/--no-reports", default=False, help="Also write Excel and JSON reports")
def demo(reports):
    """Run the engine end to end on generated sample data (in-memory database)."""
    console.print(Panel.fit(
        "[bold blue]Statement Reconciliation Engine[/bold blue]\n"
        "Sample M-PESA and bank statements",
        border_style="blue"
    ))

    service = ReconciliationService(store=ReconStore("sqlite:///:memory:"))
    data = create_sample_data(service)

    for batch in data["batches"]:
        console.print(f"  Imported {batch.file_name}: {batch.succeeded} lines, {batch.failed} rejected")

    for account in data["accounts"]:
        result = service.run_matching_pass(account.id)
        console.print(f"\n[bold]{account.name}[/bold]")
        _display_pass_result(result)
        _display_summary(account.name, service.summary(account.id))

        if reports:
            for fmt, path in service.generate_reports(account.id).items():
                console.print(f"  {fmt.upper()}: {path}")

    service.close()


def _display_pass_result(result):
    """Display matching pass counters."""
    table = Table(title=f"Matching Pass (rules {result.rule_set_version})", box=box.ROUNDED)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Matched", f"[green]{result.matched_count}[/green]")
    table.add_row("  of which partial", f"[yellow]{result.partially_matched_count}[/yellow]")
    table.add_row("Ambiguous", f"[magenta]{result.ambiguous_count}[/magenta]")
    table.add_row("Unmatched", f"[red]{result.unmatched_count}[/red]")
    table.add_row("Skipped", str(result.skipped_count))
    if result.notification_failures:
        table.add_row("Notification Failures", f"[red]{result.notification_failures}[/red]")
    if result.cancelled:
        table.add_row("Cancelled", "[red]yes[/red]")
    table.add_row("Processing Time", f"{result.processing_time_seconds:.2f}s")

    console.print(table)


def _display_summary(name, account_summary):
    """Display reconciliation summary."""
    table = Table(title=f"Reconciliation Summary: {name}", box=box.ROUNDED)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Transactions", str(account_summary.total_transactions))
    for status_name, count in account_summary.counts_by_status.items():
        if count:
            color = STATUS_COLORS.get(status_name, "white")
            table.add_row(status_name.replace("_", " ").title(), f"[{color}]{count}[/{color}]")
    table.add_row("", "")
    table.add_row("Match Rate", f"[bold]{account_summary.match_rate:.1%}[/bold]")
    for bucket, count in account_summary.aging_buckets.items():
        table.add_row(f"Unmatched {bucket} days", str(count))
    table.add_row("", "")
    table.add_row("Credits", f"{account_summary.total_credits:,.2f}")
    table.add_row("Debits", f"{account_summary.total_debits:,.2f}")
    table.add_row("Unmatched Amount", f"[yellow]{account_summary.unmatched_amount:,.2f}[/yellow]")
    table.add_row("Total Variance", f"{account_summary.total_variance:,.2f}")

    console.print(table)


def _display_period(period):
    """Display a reconciliation period."""
    table = Table(title=f"Period: {period.name}", box=box.ROUNDED)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Status", period.status.value)
    table.add_row("Transactions", str(period.total_transactions))
    table.add_row("Matched", f"[green]{period.matched_transactions}[/green]")
    table.add_row("Unmatched", f"[red]{period.unmatched_transactions}[/red]")
    table.add_row("", "")
    table.add_row("Opening Balance", f"{period.opening_balance:,.2f}")
    table.add_row("Closing Balance", f"{period.closing_balance:,.2f}")
    table.add_row("Statement Balance", f"{period.statement_balance:,.2f}")
    color = "green" if period.is_balanced else "red"
    table.add_row("Difference", f"[{color}]{period.difference:,.2f}[/{color}]")
    table.add_row("Total Variance", f"{period.total_variance:,.2f}")

    console.print(table)


def main():
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
