"""
CLI interface for the token ledger.

Provides command-line access to balances, consumption and admin operations.
"""

import logging
import sys
from datetime import datetime
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from token_ledger.config.loader import load_ledger_config
from token_ledger.core.admin import ResetRequest
from token_ledger.core.consumption import ConsumeOptions
from token_ledger.core.errors import LedgerError
from token_ledger.service import TokenService, build_service, format_usage_description
from token_ledger.storage.db import DEFAULT_DB_PATH

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: str = typer.Option(
        DEFAULT_DB_PATH, "--db", envvar="TOKEN_LEDGER_DB", help="Path to the ledger database"
    ),
    config: Optional[str] = typer.Option(
        None, "--config", "-c", envvar="TOKEN_LEDGER_CONFIG", help="Path to YAML config"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Token Ledger CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )
    ctx.obj = {"db": db, "config": config}
    if ctx.invoked_subcommand is None:
        console.print("Token Ledger - Use --help to see available commands")


def _service(ctx: typer.Context) -> TokenService:
    try:
        config = load_ledger_config(ctx.obj["config"])
        return build_service(ctx.obj["db"], config)
    except Exception as e:
        console.print(f"[red]Error loading ledger:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _finish(result) -> None:
    if result.success:
        sys.exit(EXIT_CODE_PASS)
    console.print(f"[red]✗[/] {result.error}")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def init(ctx: typer.Context):
    """Initialize the ledger database."""
    _service(ctx)
    console.print("[green]✓[/] Database initialized successfully")
    sys.exit(EXIT_CODE_PASS)


@app.command("open-account")
def open_account(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="Account owner"),
    balance: int = typer.Option(0, "--balance", "-b", help="Opening balance"),
):
    """Create a token account."""
    service = _service(ctx)
    try:
        service.open_account(user_id, balance)
    except ValueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Opened account {user_id} with {balance} tokens")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def balance(ctx: typer.Context, user_id: str = typer.Argument(..., help="Account owner")):
    """Show a user's token balance."""
    account = _service(ctx).get_token_balance(user_id)
    if account is None:
        console.print(f"[red]✗[/] User not found: {user_id}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"{account.user_id}: [bold]{account.balance:,}[/] tokens "
                  f"(updated {account.updated_at:%Y-%m-%d %H:%M:%S})")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def consume(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="Account owner"),
    feature: str = typer.Argument(..., help="Feature, e.g. siterank"),
    action: str = typer.Argument(..., help="Action, e.g. domain_analysis"),
    batch_size: int = typer.Option(1, "--batch-size", "-n", help="Number of items"),
):
    """Consume tokens for a feature action."""
    service = _service(ctx)
    try:
        result = service.consume_tokens(
            user_id, feature, action, ConsumeOptions(batch_size=batch_size)
        )
    except LedgerError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if result.success:
        console.print(f"[green]✓[/] Consumed {result.tokens_consumed} tokens, "
                      f"new balance {result.new_balance}")
        if result.batch_id:
            console.print(f"Batch: {result.batch_id}")
    _finish(result)


@app.command()
def add(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="Account owner"),
    amount: int = typer.Argument(..., help="Tokens to add"),
    actor: str = typer.Option(..., "--actor", "-a", help="Acting admin"),
    reason: str = typer.Option("Admin grant", "--reason", "-r"),
    token_type: str = typer.Option("BONUS", "--type", "-t", help="SUBSCRIPTION, PURCHASED, BONUS or ACTIVITY"),
):
    """Add tokens to an account (requires users:write)."""
    service = _service(ctx)
    try:
        result = service.add_tokens(user_id, amount, reason, actor, token_type)
    except LedgerError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    if result.success:
        console.print(f"[green]✓[/] New balance {result.new_balance}")
    _finish(result)


@app.command()
def reset(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="Account owner"),
    new_balance: int = typer.Argument(..., help="Balance to set"),
    actor: str = typer.Option(..., "--actor", "-a", help="Acting admin"),
    reason: str = typer.Option("Admin reset", "--reason", "-r"),
):
    """Overwrite an account balance (requires users:write)."""
    service = _service(ctx)
    try:
        result = service.reset_token_balance(
            ResetRequest(user_id=user_id, new_balance=new_balance, reason=reason, reset_by=actor)
        )
    except LedgerError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    if result.success:
        console.print(f"[green]✓[/] Balance of {user_id} set to {result.new_balance}")
    _finish(result)


@app.command("batch-reset")
def batch_reset(
    ctx: typer.Context,
    user_ids: List[str] = typer.Argument(..., help="Accounts to reset"),
    new_balance: int = typer.Option(..., "--balance", "-b", help="Balance to set"),
    actor: str = typer.Option(..., "--actor", "-a", help="Acting admin"),
    reason: str = typer.Option("Batch reset", "--reason", "-r"),
):
    """Reset many balances (requires users:admin)."""
    service = _service(ctx)
    try:
        result = service.batch_reset_tokens(user_ids, new_balance, reason, actor)
    except LedgerError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"Updated: {result.updated}")
    if result.failed:
        console.print(f"[yellow]Failed:[/] {', '.join(result.failed)}")
    if result.error:
        console.print(f"[red]✗[/] {result.error}")
    sys.exit(EXIT_CODE_PASS if result.success else EXIT_CODE_FAIL)


@app.command()
def history(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="Account owner"),
    feature: Optional[str] = typer.Option(None, "--feature", "-f", help="Filter by feature"),
    page: int = typer.Option(1, "--page", "-p"),
    limit: int = typer.Option(20, "--limit", "-l"),
):
    """List a user's usage records, newest first."""
    service = _service(ctx)
    try:
        result = service.get_user_token_history(user_id, feature=feature, page=page, limit=limit)
    except LedgerError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Token usage for {user_id} (page {result.page}/{max(result.total_pages, 1)})")
    table.add_column("Time")
    table.add_column("Feature")
    table.add_column("Operation")
    table.add_column("Tokens", justify="right")
    table.add_column("Items", justify="right")
    table.add_column("Batch")
    for record in result.records:
        table.add_row(
            f"{record.created_at:%Y-%m-%d %H:%M:%S}",
            record.feature.value,
            record.operation,
            str(record.tokens_consumed),
            str(record.item_count),
            record.batch_id or "",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def batch(
    ctx: typer.Context,
    batch_id: str = typer.Argument(..., help="Batch id"),
    user_id: str = typer.Argument(..., help="Account owner"),
):
    """Show the per-operation breakdown of a batch."""
    details = _service(ctx).get_batch_operation_details(batch_id, user_id)
    if details is None:
        console.print(f"[red]✗[/] Batch not found: {batch_id}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"\n[bold]Batch:[/bold] {details.batch_id}")
    console.print(f"Feature: {details.feature.value} / {details.operation}")
    console.print(f"Total tokens: {details.total_tokens_consumed} over {details.operation_count} operations")
    table = Table()
    table.add_column("#", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Description")
    for op in details.operations:
        table.add_row(str(op["index"] + 1), str(op["tokens_consumed"]), op["description"])
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def stats(ctx: typer.Context, user_id: str = typer.Argument(..., help="Account owner")):
    """Summarize a user's consumption."""
    service = _service(ctx)
    usage = service.get_user_usage_stats(user_id)

    console.print(f"\n[bold]Token usage for {user_id}[/bold]")
    console.print("-" * 40)
    console.print(f"Total tokens: {usage.total_tokens:,}")
    console.print(f"Total operations: {usage.total_operations:,}")
    console.print(f"Batches: {usage.batch_count} (avg size {usage.avg_batch_size:.1f})")

    table = Table()
    table.add_column("Feature")
    table.add_column("Tokens", justify="right")
    table.add_column("Operations", justify="right")
    for name, feature_usage in sorted(usage.by_feature.items()):
        table.add_row(name, str(feature_usage.tokens), str(feature_usage.operations))
    console.print(table)

    recent = service.get_user_token_history(user_id, limit=5)
    for record in recent.records:
        console.print(f"  {format_usage_description(record)}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def transactions(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="Account owner"),
    source: Optional[str] = typer.Option(None, "--source", "-s", help="Filter by journal source"),
    page: int = typer.Option(1, "--page", "-p"),
    limit: int = typer.Option(20, "--limit", "-l"),
):
    """List a user's credit and debit journal, newest first."""
    service = _service(ctx)
    try:
        result = service.get_user_transactions(user_id, page=page, limit=limit, source=source)
    except LedgerError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Token journal for {user_id} (page {result.page}/{max(result.total_pages, 1)})")
    table.add_column("Time")
    table.add_column("Source")
    table.add_column("Amount", justify="right")
    table.add_column("Before", justify="right")
    table.add_column("After", justify="right")
    for entry in result.transactions:
        table.add_row(
            f"{entry.created_at:%Y-%m-%d %H:%M:%S}",
            entry.source,
            f"{entry.amount:+d}",
            str(entry.balance_before),
            str(entry.balance_after),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("balance-history")
def balance_history(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="Account owner"),
    days: int = typer.Option(30, "--days", "-d", help="Number of days up to today"),
):
    """Show a user's closing balance per day."""
    service = _service(ctx)
    try:
        points = service.get_balance_history(user_id, days=days)
    except LedgerError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Daily balance for {user_id}")
    table.add_column("Date")
    table.add_column("Balance", justify="right")
    table.add_column("Change", justify="right")
    for point in points:
        table.add_row(point.date, str(point.balance), f"{point.change:+d}")
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("system-stats")
def system_stats(
    ctx: typer.Context,
    start: Optional[datetime] = typer.Option(None, "--start", help="Include usage from (UTC)"),
    end: Optional[datetime] = typer.Option(None, "--end", help="Include usage until (UTC)"),
    top: int = typer.Option(10, "--top", help="Number of features and users to rank"),
):
    """Summarize consumption across all users."""
    summary = _service(ctx).get_system_token_stats(start, end, top)

    console.print("\n[bold]System token usage[/bold]")
    console.print("-" * 40)
    console.print(f"Users: {summary.total_users:,}")
    console.print(f"Total consumed: {summary.total_consumed:,}")
    console.print(f"Average per user: {summary.average_per_user:.1f}")

    features = Table(title="Top features")
    features.add_column("Feature")
    features.add_column("Tokens", justify="right")
    for name, used in summary.top_features:
        features.add_row(name, str(used))
    console.print(features)

    users = Table(title="Top users")
    users.add_column("User")
    users.add_column("Tokens", justify="right")
    for user_id, used in summary.top_users:
        users.add_row(user_id, str(used))
    console.print(users)
    sys.exit(EXIT_CODE_PASS)


@app.command("low-balance")
def low_balance(
    ctx: typer.Context,
    threshold: int = typer.Option(10, "--threshold", "-t", help="Balance at or below which to list"),
):
    """List accounts running low on tokens."""
    users = _service(ctx).get_low_balance_users(threshold)
    if not users:
        console.print("[dim]No accounts at or below threshold.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Accounts with <= {threshold} tokens")
    table.add_column("User")
    table.add_column("Balance", justify="right")
    table.add_column("Last used")
    for user in users:
        table.add_row(
            user.user_id,
            str(user.balance),
            f"{user.last_used:%Y-%m-%d %H:%M}" if user.last_used else "never",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
