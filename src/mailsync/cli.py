"""Command-line interface for the mail sync engine.

Provides commands for configuration validation, database setup, manual
sync/learning/reconciliation runs, status, and the server.

Exit codes: 0 when a run fully succeeds, 1 on partial or total failure.

Usage:
    python -m mailsync validate-config
    python -m mailsync sync --account-id acc-1 --force-full
    python -m mailsync learn --signalled-only
    python -m mailsync serve
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
from rich.console import Console
from rich.table import Table

from mailsync.config import CONFIG_PATH_ENV, validate_config_file
from mailsync.core.logging import configure_logging

if TYPE_CHECKING:
    from mailsync.engine.dedup import ReconcileReport
    from mailsync.engine.learning import LearningReport
    from mailsync.engine.orchestrator import SyncReport
    from mailsync.runtime import Services

console = Console()


async def _init_services(config_path: Path | None) -> Services:
    """Load config and build services.

    Prints actionable error messages and calls sys.exit(1) on failure.
    """
    from mailsync.config import load_config
    from mailsync.core.errors import ConfigLoadError, ConfigValidationError, DatabaseError
    from mailsync.runtime import build_services

    try:
        config = load_config(config_path)
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Copy config/config.yaml.example to config/config.yaml and adjust it."
        )
        sys.exit(1)

    try:
        return await build_services(config)
    except (DatabaseError, ConfigValidationError) as e:
        console.print(f"[red]Startup error:[/red] {e}")
        sys.exit(1)


def _run(coro: Any) -> None:
    """Run an async command body and exit with its success flag."""
    try:
        ok = asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)
    sys.exit(0 if ok else 1)


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    envvar=CONFIG_PATH_ENV,
    help="Path to config file (default: config/config.yaml)",
)
@click.pass_context
def cli(ctx: click.Context, debug: bool, config_path: Path | None) -> None:
    """Mail sync engine - multi-provider sync, dedup and incremental learning."""
    log_level = "DEBUG" if debug else "INFO"
    # Use human-readable output for CLI, JSON for server
    configure_logging(log_level=log_level, json_output=False)
    ctx.obj = {"config_path": config_path}


@cli.command("validate-config")
@click.pass_context
def validate_config(ctx: click.Context) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    Reports specific errors for invalid fields.
    """
    config_path = ctx.obj["config_path"]
    console.print(f"Validating config: [cyan]{config_path or 'config/config.yaml'}[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the SQLite database and all tables."""
    _run(_run_init_db(ctx.obj["config_path"]))


async def _run_init_db(config_path: Path | None) -> bool:
    from mailsync.db.models import verify_schema

    services = await _init_services(config_path)
    ok = await verify_schema(services.store.db_path)
    if ok:
        console.print(f"[green]✓[/green] Database ready at {services.store.db_path}")
    else:
        console.print(f"[red]✗[/red] Schema incomplete at {services.store.db_path}")
    return ok


@cli.command("sync")
@click.option("--account-id", default=None, help="Sync only this account")
@click.option(
    "--force-full",
    is_flag=True,
    help="Clear the account's cursor and fetch a bounded full window",
)
@click.pass_context
def sync(ctx: click.Context, account_id: str | None, force_full: bool) -> None:
    """Sync one account or every active account, then process new mail."""
    if force_full and not account_id:
        raise click.UsageError("--force-full requires --account-id")
    _run(_run_sync(ctx.obj["config_path"], account_id, force_full))


async def _run_sync(config_path: Path | None, account_id: str | None, force_full: bool) -> bool:
    services = await _init_services(config_path)

    if account_id:
        report = await services.orchestrator.sync_account(account_id, force_full=force_full)
    else:
        report = await services.orchestrator.sync_all_active_accounts()

    _print_sync_report(report)

    if services.handoff is not None and services.handoff.depth:
        results = await services.handoff.drain()
        failed = sum(r.failed for r in results)
        succeeded = sum(r.succeeded for r in results)
        console.print(f"  AI processing: {succeeded} succeeded, {failed} failed")

    return report.success


@cli.command("learn")
@click.option(
    "--signalled-only",
    is_flag=True,
    help="Only evaluate users with a pending learning signal",
)
@click.pass_context
def learn(ctx: click.Context, signalled_only: bool) -> None:
    """Run the learning scheduler now."""
    _run(_run_learn(ctx.obj["config_path"], signalled_only))


async def _run_learn(config_path: Path | None, signalled_only: bool) -> bool:
    services = await _init_services(config_path)
    if services.learning is None:
        console.print("[red]No AI layer configured[/red] (plugins.ai_layer); learning disabled.")
        return False

    if signalled_only:
        report = await services.learning.run_signalled_learning()
    else:
        report = await services.learning.run_weekly_learning()

    _print_learning_report(report)
    return report.success


@cli.command("reconcile")
@click.option("--account-id", default=None, help="Reconcile only this account")
@click.pass_context
def reconcile(ctx: click.Context, account_id: str | None) -> None:
    """Purge stored duplicate messages, keeping the first-seen copy."""
    _run(_run_reconcile(ctx.obj["config_path"], account_id))


async def _run_reconcile(config_path: Path | None, account_id: str | None) -> bool:
    services = await _init_services(config_path)
    report = await services.dedup.reconcile_all([account_id] if account_id else None)
    _print_reconcile_report(report)
    return report.success


@cli.command("status")
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show counts, last run times and accounts needing re-auth."""
    _run(_run_status(ctx.obj["config_path"]))


async def _run_status(config_path: Path | None) -> bool:
    services = await _init_services(config_path)
    snapshot = await services.status()

    table = Table(title="Mail Sync Status")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for key, value in snapshot["stats"].items():
        table.add_row(key.replace("_", " "), str(value))
    for key, value in snapshot["last_runs"].items():
        table.add_row(key.replace("_", " "), value or "never")
    table.add_row("pending learning signals", str(snapshot["pending_learning_signals"]))
    table.add_row("providers", ", ".join(snapshot["providers"]) or "none")
    table.add_row("ai layer", "configured" if snapshot["ai_layer_configured"] else "missing")
    console.print(table)

    if snapshot["accounts_needing_reauth"]:
        console.print(
            "[yellow]Accounts needing re-authentication:[/yellow] "
            + ", ".join(snapshot["accounts_needing_reauth"])
        )
    return True


@cli.command("serve")
@click.option(
    "--host",
    default="127.0.0.1",
    help="Host to bind to (default: localhost only for security)",
)
@click.option(
    "--port",
    default=8000,
    type=int,
    help="Port to bind to",
)
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Start the job scheduler and HTTP trigger API.

    Runs recurring sync, learning and reconciliation jobs plus the AI
    handoff worker for the lifetime of the server.
    """
    import os

    import uvicorn

    from mailsync.web.app import create_app

    if host == "0.0.0.0":  # noqa: S104
        console.print(
            "[yellow]Warning:[/yellow] Binding to 0.0.0.0 exposes the server to the network.\n"
            "The trigger API has no authentication. Use 127.0.0.1 for local-only access."
        )

    config_path = ctx.obj["config_path"]
    if config_path:
        # The lifespan reads the config path from the environment
        os.environ[CONFIG_PATH_ENV] = str(config_path)

    configure_logging(log_level="INFO", json_output=True)

    app = create_app()
    console.print(f"Starting server on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run(app, host=host, port=port, log_level="info")


# ---------------------------------------------------------------------------
# Report rendering
# ---------------------------------------------------------------------------


def _status_style(status: str) -> str:
    return {"succeeded": "green", "processed": "green", "skipped": "yellow"}.get(status, "red")


def _print_sync_report(report: SyncReport) -> None:
    console.print(f"\n[bold]Sync Summary[/bold] (run {report.run_id[:8]}...)")
    console.print(f"  Duration:     {report.duration_ms}ms")
    console.print(f"  Attempted:    {report.attempted}")
    console.print(f"  Succeeded:    {report.succeeded}")
    console.print(f"  Failed:       {report.failed}")
    console.print(f"  Skipped:      {report.skipped}")
    console.print(f"  New messages: {report.new_messages}")
    console.print(f"  Duplicates:   {report.duplicates}")

    if not report.accounts:
        return

    table = Table()
    table.add_column("Account")
    table.add_column("Status")
    table.add_column("Mode")
    table.add_column("New", justify="right")
    table.add_column("Dupes", justify="right")
    table.add_column("Error")
    for r in report.accounts:
        style = _status_style(r.status)
        table.add_row(
            r.account_id,
            f"[{style}]{r.status}[/{style}]",
            r.mode or "-",
            str(r.new_messages),
            str(r.duplicates),
            r.error or "",
        )
    console.print(table)


def _print_learning_report(report: LearningReport) -> None:
    console.print(f"\n[bold]Learning Summary[/bold] (run {report.run_id[:8]}..., {report.trigger})")
    console.print(f"  Considered:       {report.considered}")
    console.print(f"  Processed:        {report.processed}")
    console.print(f"  Skipped:          {report.skipped}")
    console.print(f"  Failed:           {report.failed}")
    console.print(f"  Patterns created: {report.patterns_created}")
    console.print(f"  Patterns updated: {report.patterns_updated}")

    if not report.users:
        return

    table = Table()
    table.add_column("User")
    table.add_column("Status")
    table.add_column("New mail", justify="right")
    table.add_column("Created", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Note")
    for r in report.users:
        style = _status_style(r.status)
        table.add_row(
            r.user_id,
            f"[{style}]{r.status}[/{style}]",
            str(r.new_messages),
            str(r.patterns_created),
            str(r.patterns_updated),
            r.error or r.reason or "",
        )
    console.print(table)


def _print_reconcile_report(report: ReconcileReport) -> None:
    console.print(f"\n[bold]Reconciliation Summary[/bold] (run {report.run_id[:8]}...)")
    console.print(f"  Accounts processed: {report.accounts_processed}")
    console.print(f"  Accounts failed:    {report.accounts_failed}")
    console.print(f"  Duplicate groups:   {report.duplicate_groups}")
    console.print(f"  Messages deleted:   {report.messages_deleted}")
    console.print(f"  Content deleted:    {report.content_deleted}")
    for r in report.accounts:
        if r.error:
            console.print(f"  [red]✗[/red] {r.account_id}: {r.error}")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
