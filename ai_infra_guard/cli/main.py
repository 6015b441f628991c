"""
CLI interface for AI infrastructure.

Provides command-line access to cost reports, usage analytics and
feature flag management.
"""

import logging
import sqlite3
import sys
from datetime import datetime
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from ai_infra_guard.config.loader import load_infra_config
from ai_infra_guard.core.cost_tracker import CostTracker
from ai_infra_guard.core.feature_flags import FeatureFlagEvaluator
from ai_infra_guard.storage.db import DEFAULT_DB_PATH
from ai_infra_guard.storage.repository import (
    CostTrackingRepository,
    FeatureFlagRepository,
    initialize_schema,
)

app = typer.Typer()
flags_app = typer.Typer(help="Manage feature flags.")
app.add_typer(flags_app, name="flags")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1
EXIT_CODE_DISABLED = 2  # `flags check` when the flag is off

_state = {"db_path": DEFAULT_DB_PATH}


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(None, "--db", help="Path to SQLite database"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
):
    """AI infrastructure guard CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    _state["db_path"] = DEFAULT_DB_PATH
    if config:
        try:
            _state["db_path"] = load_infra_config(config).db_path
        except Exception as e:
            console.print(f"[red]Error loading config:[/] {str(e)}")
            sys.exit(EXIT_CODE_FAIL)
    if db:
        _state["db_path"] = db
    if ctx.invoked_subcommand is None:
        console.print("AI Infra Guard - Use --help to see available commands")


@app.command()
def init():
    """Initialize the database."""
    try:
        initialize_schema(_state["db_path"])
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _format_currency(amount: float) -> str:
    """Format currency; sub-cent amounts keep four decimals."""
    if 0 < abs(amount) < 0.01:
        return f"${amount:,.4f}"
    return f"${amount:,.2f}"


def _no_data_hint() -> None:
    console.print("\n[bold yellow]No AI usage data found[/]")
    console.print("\nRun `ai-infra-guard init` to initialize the database, then route")
    console.print("AI calls through the SDK with cost tracking enabled.\n")


@app.command()
def costs(
    organization: str = typer.Option(..., "--org", "-o", help="Organization id"),
    start: Optional[datetime] = typer.Option(None, "--start", help="Inclusive start date"),
    end: Optional[datetime] = typer.Option(None, "--end", help="Inclusive end date")
):
    """Show cost totals for an organization by provider and feature."""
    tracker = CostTracker(CostTrackingRepository(_state["db_path"]))
    try:
        summary = tracker.get_cost_summary(organization, start, end)
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            _no_data_hint()
            sys.exit(EXIT_CODE_PASS)
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"\n[bold]AI Cost Summary[/bold] - {organization}")
    console.print("-" * 40)
    console.print(f"Total cost: {_format_currency(summary.total_cost)}")
    console.print(f"Total tokens: {summary.total_tokens:,}")

    for title, breakdown in (("Provider", summary.by_provider), ("Feature", summary.by_feature)):
        if not breakdown:
            continue
        table = Table(title=f"By {title.lower()}")
        table.add_column(title)
        table.add_column("Cost", justify="right")
        table.add_column("Tokens", justify="right")
        for name, totals in sorted(breakdown.items()):
            table.add_row(name, _format_currency(totals.cost), f"{totals.tokens:,}")
        console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def usage(
    organization: Optional[str] = typer.Option(None, "--org", "-o", help="Organization id"),
    feature: Optional[str] = typer.Option(None, "--feature", "-f", help="Feature filter"),
    start: Optional[datetime] = typer.Option(None, "--start", help="Inclusive start date"),
    end: Optional[datetime] = typer.Option(None, "--end", help="Inclusive end date")
):
    """Show usage analytics grouped by feature, provider and model."""
    tracker = CostTracker(CostTrackingRepository(_state["db_path"]))
    try:
        rows = tracker.get_usage_analytics(organization, feature, start, end)
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            _no_data_hint()
            sys.exit(EXIT_CODE_PASS)
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not rows:
        _no_data_hint()
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="AI Usage Analytics")
    for column in ("Feature", "Provider", "Model", "Requests", "OK", "Failed",
                   "Avg ms", "Cost", "Tokens"):
        table.add_column(column)
    for row in rows:
        table.add_row(
            row.feature,
            row.provider,
            row.model,
            str(row.request_count),
            str(row.success_count),
            str(row.failure_count),
            f"{row.average_response_time:,.0f}",
            _format_currency(row.total_cost),
            f"{row.total_tokens:,}"
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


def _evaluator() -> FeatureFlagEvaluator:
    initialize_schema(_state["db_path"])
    return FeatureFlagEvaluator(FeatureFlagRepository(_state["db_path"]))


@flags_app.command("list")
def list_flags():
    """List all feature flags."""
    flags = _evaluator().list_feature_flags()
    if not flags:
        console.print("[dim]No feature flags defined.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Feature Flags")
    for column in ("Name", "Enabled", "Rollout", "Users", "Organizations"):
        table.add_column(column)
    for flag in flags:
        table.add_row(
            flag.name,
            "[green]yes[/]" if flag.enabled else "[red]no[/]",
            "-" if flag.rollout_percentage is None else f"{flag.rollout_percentage}%",
            str(len(flag.target_users)),
            str(len(flag.target_organizations))
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@flags_app.command("set")
def set_flag(
    name: str = typer.Argument(..., help="Flag name"),
    enabled: bool = typer.Option(True, "--enable/--disable", help="Turn the flag on or off"),
    rollout: Optional[int] = typer.Option(None, "--rollout", "-r", help="Rollout percentage 0-100"),
    users: Optional[List[str]] = typer.Option(None, "--user", "-u", help="Target user id"),
    organizations: Optional[List[str]] = typer.Option(None, "--org", "-o", help="Target organization id")
):
    """Create or update a feature flag."""
    changes = {"enabled": enabled}
    if rollout is not None:
        changes["rollout_percentage"] = rollout
    if users:
        changes["target_users"] = list(users)
    if organizations:
        changes["target_organizations"] = list(organizations)

    try:
        flag = _evaluator().set_feature_flag(name, **changes)
    except ValueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    state = "[green]enabled[/]" if flag.enabled else "[red]disabled[/]"
    console.print(f"[green]✓[/] Feature flag {flag.name} {state}")
    sys.exit(EXIT_CODE_PASS)


@flags_app.command("check")
def check_flag(
    name: str = typer.Argument(..., help="Flag name"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="User id"),
    organization: Optional[str] = typer.Option(None, "--org", "-o", help="Organization id")
):
    """Evaluate a flag; exits 0 when enabled, 2 when disabled."""
    if _evaluator().is_feature_enabled(name, user, organization):
        console.print(f"{name}: [green]enabled[/]")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"{name}: [red]disabled[/]")
    sys.exit(EXIT_CODE_DISABLED)


if __name__ == "__main__":
    app()
