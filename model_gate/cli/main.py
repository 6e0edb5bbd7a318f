"""
CLI interface for Model Gate.

Provides command-line access to decisions, the approval queue, the usage
ledger and policy maintenance.
"""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from model_gate.config.loader import PolicySnapshot, load_policy
from model_gate.config.maintenance import rewrite_policy_file
from model_gate.core.approvals import ApprovalQueue
from model_gate.core.decision import (
    Allowed,
    DecisionEngine,
    Failed,
    PendingApproval,
    Rejected,
    RunRequest,
    Substituted,
)
from model_gate.core.errors import ConfigurationError, ModelGateError
from model_gate.core.ledger import UsageLedger, month_key
from model_gate.storage.db import DEFAULT_DB_PATH
from model_gate.storage.models import ApprovalRecord
from model_gate.storage.repository import (
    SqliteApprovalStore,
    SqliteUsageStore,
    initialize_schema,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1
EXIT_CODE_PENDING = 2  # Deferred to a human approver

DB_OPTION = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the SQLite database")
CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to a YAML or JSON policy file")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _load_policy(config: Optional[str]) -> PolicySnapshot:
    return load_policy(config) if config else PolicySnapshot()


def _build_engine(db_path: str, policy: PolicySnapshot) -> DecisionEngine:
    return DecisionEngine(
        ledger=UsageLedger(SqliteUsageStore(db_path)),
        queue=ApprovalQueue(SqliteApprovalStore(db_path)),
        policy=policy
    )


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
):
    """Model Gate CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True
    )
    if ctx.invoked_subcommand is None:
        console.print("Model Gate - Use --help to see available commands")


@app.command()
def init(db: str = DB_OPTION):
    """Initialize the Model Gate database."""
    try:
        initialize_schema(db)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except ModelGateError as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def check(
    agent: str = typer.Option(..., "--agent", "-a", help="Agent identity"),
    model: str = typer.Option(..., "--model", "-m", help="Requested model"),
    prompt: str = typer.Option("", "--prompt", "-p", help="Prompt text"),
    prompt_file: Optional[Path] = typer.Option(None, "--prompt-file", help="Read the prompt from a file"),
    max_output: int = typer.Option(0, "--max-output", help="Declared maximum output tokens"),
    premium: bool = typer.Option(False, "--premium", help="Request premium use of a blocked model"),
    config: Optional[str] = CONFIG_OPTION,
    db: str = DB_OPTION
):
    """
    Decide whether a model run may proceed.

    Allowed and substituted runs are charged to the usage ledger. Runs above
    the approval threshold are queued for a human.
    """
    try:
        policy = _load_policy(config)
        if prompt_file is not None:
            prompt = prompt_file.read_text(encoding='utf-8')
        request = RunRequest(
            agent_id=agent,
            requested_model=model,
            prompt_text=prompt,
            declared_max_output_tokens=max_output,
            premium_requested=premium
        )
        outcome = _build_engine(db, policy).decide(request, _now())
    except (ModelGateError, ValueError, OSError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    currency = policy.currency
    if isinstance(outcome, Allowed):
        console.print(f"[green]ALLOWED[/] {outcome.model} "
                      f"(estimated {_format_currency(outcome.estimate.amount, currency)})")
        if outcome.warning:
            console.print(f"[yellow]Warning:[/] {outcome.warning}")
        sys.exit(EXIT_CODE_PASS)
    if isinstance(outcome, Substituted):
        console.print(f"[cyan]SUBSTITUTED[/] {outcome.from_model} -> {outcome.to_model} "
                      f"(estimated {_format_currency(outcome.estimate.amount, currency)})")
        if outcome.warning:
            console.print(f"[yellow]Warning:[/] {outcome.warning}")
        sys.exit(EXIT_CODE_PASS)
    if isinstance(outcome, PendingApproval):
        console.print(f"[yellow]PENDING APPROVAL[/] {outcome.request_id}: {outcome.detail}")
        sys.exit(EXIT_CODE_PENDING)
    if isinstance(outcome, Rejected):
        console.print(f"[red]REJECTED[/] ({outcome.reason.value}) {outcome.detail}")
        if outcome.suggested_fallback:
            console.print(f"Suggested fallback: {outcome.suggested_fallback}")
        sys.exit(EXIT_CODE_FAIL)
    if isinstance(outcome, Failed):
        suffix = " (safe to retry)" if outcome.retryable else ""
        console.print(f"[red]FAILED[/] {outcome.detail}{suffix}")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def approvals(
    status: str = typer.Option("pending", "--status", "-s", help="pending, approved or rejected"),
    db: str = DB_OPTION
):
    """List approval records."""
    statuses = ("pending", "approved", "rejected")
    if status not in statuses:
        console.print(f"[red]Error:[/] status must be one of: {list(statuses)}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        queue = ApprovalQueue(SqliteApprovalStore(db))
        listings = {
            "pending": queue.list_pending,
            "approved": queue.list_approved,
            "rejected": queue.list_rejected,
        }
        records = listings[status]()
    except ModelGateError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not records:
        console.print(f"[dim]No {status} approvals.[/]")
        sys.exit(EXIT_CODE_PASS)
    _display_approvals(records, status)


@app.command()
def approve(
    approval_id: str = typer.Argument(..., help="Approval id"),
    reviewer: str = typer.Option(..., "--reviewer", "-r", help="Who is approving"),
    note: str = typer.Option("", "--note", help="Review note"),
    db: str = DB_OPTION
):
    """Approve a queued run and charge it to the ledger."""
    _resolve(approval_id, True, reviewer, note, db)


@app.command()
def reject(
    approval_id: str = typer.Argument(..., help="Approval id"),
    reviewer: str = typer.Option(..., "--reviewer", "-r", help="Who is rejecting"),
    note: str = typer.Option("", "--note", help="Review note"),
    db: str = DB_OPTION
):
    """Reject a queued run."""
    _resolve(approval_id, False, reviewer, note, db)


def _resolve(approval_id: str, approved: bool, reviewer: str, note: str, db: str) -> None:
    try:
        record = _build_engine(db, PolicySnapshot()).resolve_approval(
            approval_id, approved, reviewer, _now(), note
        )
    except ModelGateError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] {record.id} {record.disposition.value} by {record.reviewer}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def usage(
    period: Optional[str] = typer.Option(None, "--period", help="Period key, YYYY-MM or YYYY-MM-DD (default: this month)"),
    config: Optional[str] = CONFIG_OPTION,
    db: str = DB_OPTION
):
    """Show committed usage for a period."""
    try:
        currency = _load_policy(config).currency
        ledger = UsageLedger(SqliteUsageStore(db))
        key = period or month_key(_now())
        records = ledger.records(key)
        total = ledger.current_period_total(key)
    except ModelGateError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"\n[bold]Usage for {key}[/bold]")
    console.print("-" * 40)
    if not records:
        console.print("\n[dim]No usage recorded.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table()
    table.add_column("Agent")
    table.add_column("Runs", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("By model")
    for record in records:
        by_model = ", ".join(
            f"{model}={_format_currency(cost, currency)}"
            for model, cost in sorted(record.cost_by_model.items())
        )
        table.add_row(
            record.agent_id,
            str(record.run_count),
            str(record.total_tokens),
            _format_currency(record.total_cost, currency),
            by_model
        )
    console.print(table)
    console.print(f"Total: {_format_currency(total, currency)}")


@app.command("override-models")
def override_models(
    path: Path = typer.Argument(..., help="Policy file to rewrite"),
    prune: bool = typer.Option(False, "--prune", help="Also remove expired block entries")
):
    """Move agents off currently blocked models, writing a backup first."""
    try:
        report = rewrite_policy_file(path, _now(), prune=prune)
    except ConfigurationError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not report.changed:
        console.print("No changes required. All blocked dates passed or no blocked models present.")
        sys.exit(EXIT_CODE_PASS)

    console.print(f"Backup written to {report.backup_path}")
    for override in report.overrides:
        console.print(f"Overriding {override.target} model {override.from_model} -> "
                      f"{override.to_model} (blocked until {override.blocked_until.isoformat()})")
    for model in report.pruned:
        console.print(f"Pruned expired block for {model}")
    console.print(f"Config updated at {path}")


def _format_currency(amount, currency: str = "USD") -> str:
    """Format currency with proper symbols and formatting."""
    symbol = "$" if currency == "USD" else f"{currency} "
    return f"{symbol}{abs(amount):,.4f}"


def _display_approvals(records: List[ApprovalRecord], status: str) -> None:
    table = Table(title=f"{status.capitalize()} approvals")
    table.add_column("Id")
    table.add_column("Created")
    table.add_column("Agent")
    table.add_column("Model")
    table.add_column("Estimate", justify="right")
    table.add_column("Reason")
    if status != "pending":
        table.add_column("Reviewer")
    for record in records:
        row = [
            record.id,
            record.created_at.strftime("%Y-%m-%d %H:%M"),
            record.agent_id,
            record.requested_model,
            _format_currency(record.estimate.amount),
            record.reason,
        ]
        if status != "pending":
            row.append(record.reviewer or "")
        table.add_row(*row)
    console.print(table)


if __name__ == "__main__":
    app()
