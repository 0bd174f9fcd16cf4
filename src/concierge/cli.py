"""Command-line interface for the Family Concierge.

Usage:
    python -m concierge validate-config
    python -m concierge discover --pack school --days 30
    python -m concierge run --once --mode dry-run
    python -m concierge approve <token>
    python -m concierge serve
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Coroutine
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
from rich.console import Console
from rich.table import Table

from concierge.config import validate_config_file
from concierge.core.logging import configure_logging

if TYPE_CHECKING:
    from concierge.config_schema import AgentMode
    from concierge.engine.approval import ApprovalResult
    from concierge.engine.pipeline import RunResult
    from concierge.services import AppServices

console = Console()

AGENT_MODES = ("copilot", "autopilot", "dry-run")


def _run_async(coro: Coroutine[Any, Any, None]) -> None:
    """asyncio.run with the exit codes every command shares."""
    from concierge.core.errors import ConciergeError

    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except ConciergeError as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)
    except Exception as e:
        console.print(f"\n[red]Unexpected error:[/red] {type(e).__name__}: {e}")
        sys.exit(1)


async def _init_services() -> AppServices:
    """Load config and build services, exiting with a hint on failure."""
    from concierge.config import get_config
    from concierge.core.errors import AuthenticationError, ConfigLoadError, ConfigValidationError
    from concierge.services import build_services

    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Copy config/config.yaml.example to config/config.yaml and fill in the auth section."
        )
        sys.exit(1)

    try:
        return await build_services(config)
    except AuthenticationError as e:
        console.print(f"[red]Authentication error:[/red] {e}")
        sys.exit(1)


def _print_approval_result(result: ApprovalResult) -> None:
    if result.success:
        console.print(f"[green]✓[/green] {result.message}")
        if result.calendar_event_id:
            console.print(f"  Calendar event: [dim]{result.calendar_event_id}[/dim]")
        return
    console.print(f"[red]✗[/red] {result.message}")
    sys.exit(1)


def _print_run_result(result: RunResult) -> None:
    console.print(f"\n[bold]Run Summary[/bold] (run {result.run_id[:8]}..., mode {result.mode})")
    console.print(f"  Duration:          {result.duration_ms}ms")
    console.print(f"  Messages seen:     {result.messages_seen}")
    console.print(f"  Processed:         {result.processed}")
    console.print(f"  Skipped:           {result.skipped}")
    console.print(f"  Failed:            {result.failed}")
    console.print(f"  Events extracted:  {result.events_extracted}")
    console.print(f"  Events created:    {result.events_created}")
    console.print(f"  Pending approval:  {result.pending_approval}")
    console.print(f"  Duplicates:        {result.duplicates}")
    console.print(f"  Forwarded:         {result.forwarded}")
    if result.calendar_errors:
        console.print(f"  [yellow]Calendar errors:   {result.calendar_errors}[/yellow]")
    if result.error:
        console.print(f"  [red]Run error: {result.error}[/red]")


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """Family Concierge: school and activity mail onto the family calendar."""
    configure_logging(log_level="DEBUG" if debug else "INFO", json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file."""
    console.print(f"Validating config: [cyan]{config_path or 'config/config.yaml'}[/cyan]")
    is_valid, message = validate_config_file(config_path)
    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    console.print(f"\n[red]✗[/red] {message}")
    sys.exit(1)


@cli.command("discover")
@click.option("--pack", "pack_id", required=True, help="Pack to discover sources for")
@click.option("--days", type=int, default=None, help="Lookback window (default: discovery.lookback_days)")
def discover(pack_id: str, days: int | None) -> None:
    """Scan the mailbox and propose sources and keywords for a pack."""
    _run_async(_run_discover(pack_id, days))


async def _run_discover(pack_id: str, days: int | None) -> None:
    services = await _init_services()
    pack = services.registry.require(pack_id)

    with console.status(f"Scanning mail for [cyan]{pack.name}[/cyan]..."):
        session = await services.discovery.run_discovery(pack, lookback_days=days)

    output = session.output or {}
    stats = output.get("stats", {})
    proposed = output.get("proposed_config", {})

    console.print(f"\n[bold]Discovery Summary[/bold] (session {session.id[:8]}...)")
    console.print(f"  Emails scanned:   {stats.get('total_emails_scanned', 0)}")
    console.print(f"  Relevant found:   {stats.get('relevant_emails_found', 0)}")
    console.print(f"  Unique senders:   {stats.get('unique_senders_found', 0)}")
    console.print(f"  Unique domains:   {stats.get('unique_domains_found', 0)}")
    console.print(f"  ICS attachments:  {stats.get('ics_attachments_found', 0)}")
    console.print(f"  Avg confidence:   {stats.get('average_confidence', 0):.2f}")
    if stats.get("messages_failed"):
        console.print(
            f"  [yellow]Failed: {stats['messages_failed']} ({stats.get('timeouts', 0)} timeouts)[/yellow]"
        )

    sources = proposed.get("sources", [])
    if sources:
        table = Table(title="Proposed sources")
        table.add_column("Name")
        table.add_column("Domains")
        table.add_column("Confidence", justify="right")
        table.add_column("Relay")
        for source in sources:
            table.add_row(
                source["name"],
                ", ".join(source["from_domains"]),
                f"{source['confidence']:.2f}",
                "yes" if source.get("relay") else "",
            )
        console.print(table)

    keywords = proposed.get("keywords", [])
    if keywords:
        console.print(
            "\n[bold]Keywords:[/bold] "
            + ", ".join(f"{k['keyword']} ({k['frequency']})" for k in keywords)
        )
    platforms = proposed.get("platforms", [])
    if platforms:
        console.print(
            "[bold]Platforms:[/bold] " + ", ".join(f"{p['name']} ({p['confidence']:.2f})" for p in platforms)
        )


@cli.command("run")
@click.option("--once", is_flag=True, help="Run a single pass and exit")
@click.option("--mode", type=click.Choice(AGENT_MODES), default=None, help="Override agent.mode")
def run(once: bool, mode: AgentMode | None) -> None:
    """Run the production pipeline once, or on the configured interval."""
    if once:
        _run_async(_run_once(mode))
        return
    try:
        asyncio.run(_run_continuous(mode))
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped.[/yellow]")
        sys.exit(0)


async def _run_once(mode: AgentMode | None) -> None:
    services = await _init_services()
    if mode == "dry-run" or (mode is None and services.config.agent.mode == "dry-run"):
        console.print("[cyan]Dry-run mode:[/cyan] nothing is written to the calendar\n")
    result = await services.pipeline.run(mode=mode)
    _print_run_result(result)


async def _run_continuous(mode: AgentMode | None) -> None:
    import signal

    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    from concierge.config import get_config, reload_config_if_changed

    services = await _init_services()

    async def run_pass() -> None:
        if reload_config_if_changed():
            services.pipeline.update_config(get_config())
        result = await services.pipeline.run(mode=mode)
        console.print(
            f"[dim]Run {result.run_id[:8]}...[/dim] "
            f"processed={result.processed} created={result.events_created} "
            f"pending={result.pending_approval} failed={result.failed} ({result.duration_ms}ms)"
        )

    interval = services.config.agent.interval_minutes
    scheduler = AsyncIOScheduler()
    scheduler.add_job(run_pass, "interval", minutes=interval, id="agent_run", max_instances=1, coalesce=True)
    scheduler.start()
    console.print(f"Agent running every {interval} minutes. Press Ctrl+C to stop.")

    await run_pass()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, stop_event.set)
    loop.add_signal_handler(signal.SIGTERM, stop_event.set)
    await stop_event.wait()

    scheduler.shutdown(wait=False)


@cli.command("approve")
@click.argument("token")
def approve(token: str) -> None:
    """Approve a pending calendar operation and write it to the calendar."""
    _run_async(_approve(token))


async def _approve(token: str) -> None:
    services = await _init_services()
    _print_approval_result(await services.approvals.approve_and_execute(token))


@cli.command("reject")
@click.argument("token")
@click.option("--reason", default=None, help="Why the event was rejected")
def reject(token: str, reason: str | None) -> None:
    """Reject a pending calendar operation."""
    _run_async(_reject(token, reason))


async def _reject(token: str, reason: str | None) -> None:
    services = await _init_services()
    _print_approval_result(await services.approvals.reject(token, reason=reason))


@cli.command("issue-token")
@click.argument("operation_id")
def issue_token(operation_id: str) -> None:
    """Issue an approval token and print the approve/reject links."""
    _run_async(_issue_token(operation_id))


async def _issue_token(operation_id: str) -> None:
    from concierge.engine.approval import TOKEN_TTL, approval_links

    services = await _init_services()
    operation = await services.store.get_operation(operation_id)
    if operation is None:
        console.print(f"[red]✗[/red] Calendar operation not found: {operation_id}")
        sys.exit(1)
    if operation.status != "pending":
        console.print(f"[red]✗[/red] Operation is already {operation.status}")
        sys.exit(1)

    token = await services.approvals.issue(operation_id)
    links = approval_links(token, services.config.approval.base_url)
    hours = int(TOKEN_TTL / timedelta(hours=1))
    console.print(f"[green]✓[/green] Token for [bold]{operation.intent.title}[/bold] (valid {hours}h)")
    console.print(f"  Token:   {token.id}")
    console.print(f"  Approve: {links.approve_url}")
    console.print(f"  Reject:  {links.reject_url}")


@cli.command("cleanup-tokens")
def cleanup_tokens() -> None:
    """Delete expired, unused approval tokens."""
    _run_async(_cleanup_tokens())


async def _cleanup_tokens() -> None:
    services = await _init_services()
    count = await services.approvals.cleanup_expired_tokens()
    console.print(f"Removed {count} expired token{'s' if count != 1 else ''}.")


@cli.command("reconcile")
def reconcile() -> None:
    """Look for calendar events that were edited by hand."""
    _run_async(_reconcile())


async def _reconcile() -> None:
    services = await _init_services()
    result = await services.reconciler.run()
    console.print(
        f"Checked {result.checked} events: {result.flagged} edited by hand, {result.errors} errors."
    )


@cli.command("digest")
@click.option("--days", type=int, default=None, help="Window in days (default: digest.lookback_days)")
def digest(days: int | None) -> None:
    """Print a digest of recent activity."""
    _run_async(_digest(days))


async def _digest(days: int | None) -> None:
    from concierge.config import get_config
    from concierge.db.store import utcnow
    from concierge.engine.digest import DigestBuilder, render_text
    from concierge.services import open_store

    config = get_config()
    store = await open_store(config)
    window = timedelta(days=days or config.digest.lookback_days)
    result = await DigestBuilder(store).build(since=utcnow() - window)
    console.print(render_text(result), markup=False, highlight=False)


@cli.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to (default: localhost only)")
@click.option("--port", default=8000, type=int, help="Port to bind to")
def serve(host: str, port: int) -> None:
    """Start the approval API and the scheduled agent."""
    import uvicorn

    from concierge.web.app import create_app

    if host == "0.0.0.0":  # noqa: S104
        console.print(
            "[yellow]Warning:[/yellow] Binding to 0.0.0.0 exposes approval links to the network.\n"
            "The API has no authentication beyond the tokens themselves."
        )

    configure_logging(log_level="INFO", json_output=True)
    console.print(f"Starting server on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run(create_app(), host=host, port=port, log_level="info")


def main() -> None:
    """Entry point for the CLI."""
    cli()
