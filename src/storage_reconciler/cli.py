"""CLI for the storage reconciler.

Commands:
    init-db                  - Create database tables
    audit                    - Read-only reconciliation report
    cleanup                  - Dry-run (default) or execute garbage collection
    usage                    - Ledger-derived storage usage
"""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from storage_reconciler import __version__
from storage_reconciler.clients.blob_store import build_blob_store
from storage_reconciler.config import settings
from storage_reconciler.db import async_session_factory, init_db
from storage_reconciler.exceptions import StorageReconcilerError
from storage_reconciler.models.enums import DiscrepancyKind, ExecutionMode
from storage_reconciler.reconciliation.schemas import (
    CleanupOutcome,
    ExecutionResult,
    ReconciliationReport,
)
from storage_reconciler.services.storage_audit import AuditScope, StorageAuditService
from storage_reconciler.services.usage_ledger import UsageLedger
from storage_reconciler.utils.units import format_bytes

app = typer.Typer(
    name="storage-reconciler",
    help="Storage reconciler: audit and clean up blob storage against the portfolio database",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

PrefixOption = Annotated[
    list[str] | None,
    typer.Option("--prefix", "-p", help="Key prefix to cover (repeatable). Default: whole store"),
]
OwnerOption = Annotated[
    str | None, typer.Option("--owner", help="Limit to one user's photo/ and profile/ keys")
]
JsonOption = Annotated[bool, typer.Option("--json", help="Print the payload as JSON")]


def run_async(coro):
    """Run an async coroutine in sync context."""
    return asyncio.run(coro)


def configure_logging(level: str) -> None:
    """Route log records through rich on stderr."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False, rich_tracebacks=True)],
        force=True,
    )


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")] = False,
):
    """Configure logging for every command."""
    configure_logging("DEBUG" if verbose else settings.log_level)


def resolve_scope(prefixes: list[str] | None, owner: str | None) -> AuditScope:
    """Build the audit scope from CLI options. --owner and --prefix combine."""
    scope_prefixes = list(prefixes or [])
    if owner:
        scope_prefixes.extend(AuditScope.for_owner(owner).prefixes)
    return AuditScope.from_prefixes(scope_prefixes)


def render_report(report: ReconciliationReport) -> None:
    """Print a report as rich tables."""
    scope = ", ".join(report.scope) or "entire store"
    console.print(Panel(
        f"[bold]Scope:[/bold] {scope}\n"
        f"[bold]Generated:[/bold] {report.generated_at.isoformat(timespec='seconds')}",
        title="Storage Audit",
    ))

    table = Table(title="Discrepancies")
    table.add_column("Kind", style="cyan")
    table.add_column("Count", justify="right")
    table.add_column("Known size", justify="right")
    table.add_column("Unknown size", justify="right")
    table.add_column("Records", justify="right")
    for kind in DiscrepancyKind:
        summary = report.totals[kind]
        table.add_row(
            kind.value,
            str(summary.count),
            format_bytes(summary.known_bytes),
            str(summary.unknown_size_count),
            str(summary.record_count),
        )
    console.print(table)

    if report.samples:
        samples = Table(title="Sample" + (" (truncated)" if report.sample_truncated else ""))
        samples.add_column("Kind")
        samples.add_column("Key", style="cyan")
        samples.add_column("Size", justify="right")
        samples.add_column("Owner")
        for sample in report.samples:
            samples.add_row(
                sample.kind.value,
                sample.key,
                format_bytes(sample.size_bytes),
                sample.owner_id or "-",
            )
        console.print(samples)

    if report.usage is not None:
        console.print(
            f"[bold]Ledger usage:[/bold] {format_bytes(report.usage.total_bytes)} "
            f"in {report.usage.total_files} file(s)"
        )

    console.print("\n[bold]Recommendations:[/bold]")
    for line in report.recommendations:
        console.print(f"  • {line}")


def render_execution(result: ExecutionResult) -> None:
    """Print per-item outcomes of a cleanup pass."""
    style = "yellow" if result.mode == ExecutionMode.DRY_RUN else "green"
    title = "Cleanup preview (dry run)" if result.mode == ExecutionMode.DRY_RUN else "Cleanup"

    table = Table(title=title)
    table.add_column("Outcome")
    table.add_column("Action")
    table.add_column("Key", style="cyan")
    table.add_column("Detail")
    for bucket, colour in ((result.succeeded, style), (result.failed, "red"), (result.skipped, "dim")):
        for item in bucket:
            detail = item.reason.value if item.reason else (item.error or "")
            table.add_row(f"[{colour}]{item.outcome.value}[/{colour}]", item.action, item.key, detail)
    if table.row_count:
        console.print(table)

    console.print(
        f"\n[bold]Summary:[/bold] {len(result.succeeded)} succeeded, {len(result.failed)} failed, "
        f"{len(result.skipped)} skipped; {format_bytes(result.reclaimed_bytes)} reclaimable"
        + (" [yellow](cancelled)[/yellow]" if result.cancelled else "")
    )


def render_after(report: ReconciliationReport | None, mode: ExecutionMode) -> None:
    """Print the discrepancy counts a cleanup pass leaves behind."""
    if report is None:
        err_console.print("[yellow]Post-cleanup audit failed; run `audit` to see the result.[/yellow]")
        return
    title = "Projected after dry run" if mode == ExecutionMode.DRY_RUN else "After cleanup"
    counts = ", ".join(f"{kind.value}={report.totals[kind].count}" for kind in DiscrepancyKind)
    console.print(f"\n[bold]{title}:[/bold] {counts}")


@app.command("init-db")
def init_database():
    """Create database tables if they don't exist."""
    async def _init():
        await init_db()
        console.print("[green]Database initialized.[/green]")

    run_async(_init())


@app.command()
def audit(
    prefix: PrefixOption = None,
    owner: OwnerOption = None,
    as_json: JsonOption = False,
):
    """Reconcile blob storage against the database (read-only)."""
    scope = resolve_scope(prefix, owner)

    async def _audit() -> ReconciliationReport:
        async with async_session_factory() as session:
            service = StorageAuditService(session, build_blob_store(settings))
            return await service.run_audit(scope)

    try:
        report = run_async(_audit())
    except StorageReconcilerError as e:
        err_console.print(f"[red]Audit failed:[/red] {e}")
        raise typer.Exit(1) from None

    if as_json:
        console.print_json(report.model_dump_json())
    else:
        render_report(report)


@app.command()
def cleanup(
    prefix: PrefixOption = None,
    owner: OwnerOption = None,
    execute: Annotated[
        bool, typer.Option("--execute", help="Actually delete. Without it this is a dry run")
    ] = False,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")] = False,
    as_json: JsonOption = False,
):
    """Delete orphaned blobs and re-point or purge phantom references.

    Runs as a dry run unless --execute is given.
    """
    scope = resolve_scope(prefix, owner)
    mode = ExecutionMode.EXECUTE if execute else ExecutionMode.DRY_RUN

    if mode == ExecutionMode.EXECUTE and not yes:
        confirm = typer.confirm(
            "This will DELETE orphaned files and database references. Are you sure?",
            default=False,
        )
        if not confirm:
            console.print("[yellow]Aborted.[/yellow]")
            raise typer.Exit(0)

    async def _cleanup() -> CleanupOutcome:
        async with async_session_factory() as session:
            service = StorageAuditService(session, build_blob_store(settings))
            return await service.run_cleanup(scope, mode=mode)

    try:
        outcome = run_async(_cleanup())
    except StorageReconcilerError as e:
        err_console.print(f"[red]Cleanup failed:[/red] {e}")
        raise typer.Exit(1) from None

    if as_json:
        console.print_json(outcome.model_dump_json())
    else:
        render_report(outcome.report)
        console.print()
        render_execution(outcome.result)
        render_after(outcome.after, outcome.result.mode)

    if outcome.result.failed:
        raise typer.Exit(1)


@app.command()
def usage(owner: OwnerOption = None):
    """Show storage usage derived from the usage ledger."""
    async def _usage():
        async with async_session_factory() as session:
            ledger = UsageLedger(session)
            summary = await ledger.current_usage(owner)
            breakdown = await ledger.breakdown() if owner is None else {}
        return summary, breakdown

    summary, breakdown = run_async(_usage())

    console.print(Panel(
        f"[bold]Total:[/bold] {format_bytes(summary.total_bytes)}\n"
        f"[bold]Files:[/bold] {summary.total_files}\n"
        f"[bold]Unknown size:[/bold] {summary.unknown_size_files}",
        title=f"Storage usage: {owner}" if owner else "Storage usage",
    ))

    if breakdown:
        table = Table(title="By category")
        table.add_column("Category")
        table.add_column("Files", justify="right")
        table.add_column("Size", justify="right")
        for category, bucket in sorted(breakdown.items(), key=lambda x: -x[1].total_bytes):
            table.add_row(category, str(bucket.total_files), format_bytes(bucket.total_bytes))
        console.print(table)


@app.command()
def version():
    """Show the installed version."""
    console.print(__version__)


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
