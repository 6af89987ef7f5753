"""hypolab Command Line Interface.

Usage:
    hypolab status                      Show storage and configuration status
    hypolab serve                       Start the local HTTP adapter
    hypolab sessions list               List stored sessions, newest first
    hypolab sessions show ID            Show one session
    hypolab sessions recover ID         Load a session, scanning for an intact copy if needed
    hypolab sessions evidence ID VER    Show the evidence recorded for a hypothesis version
    hypolab config show|path|init       Manage configuration
"""

from __future__ import annotations

import asyncio
import json
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from typer import Argument, Option

from hypolab.config import get_config, write_default_config
from hypolab.engine import SessionEngine, engine_from_config
from hypolab.errors import HypolabError, SessionNotFoundError, SessionUnavailableError
from hypolab.logging_config import LogContext, setup_logging
from hypolab.notices import RecoveryNotice
from hypolab.paths import paths

# Main app
app = typer.Typer(
    name="hypolab",
    help="hypolab - resilient session engine for hypothesis testing",
    add_completion=True,
    no_args_is_help=True,
)

# Subcommand groups
config_app = typer.Typer(help="Configuration management")
sessions_app = typer.Typer(help="Inspect and recover sessions")

app.add_typer(config_app, name="config")
app.add_typer(sessions_app, name="sessions")

console = Console()


def _get_version() -> str:
    """Get package version."""
    try:
        from importlib.metadata import version

        return version("hypolab")
    except Exception:
        return "0.1.0"


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"hypolab version {_get_version()}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        Option("--version", "-V", callback=version_callback, is_eager=True, help="Show version"),
    ] = False,
    verbose: Annotated[
        bool,
        Option("--verbose", "-v", help="Enable verbose output"),
    ] = False,
) -> None:
    """hypolab - resilient session engine for hypothesis testing."""
    if verbose:
        setup_logging(level="DEBUG")


def _build_engine() -> SessionEngine:
    return engine_from_config()


def _print_notice(notice: RecoveryNotice) -> None:
    style = {"info": "cyan", "warning": "yellow", "error": "red"}[notice.severity]
    body = notice.message
    if notice.safe_state_message:
        body += f"\n\n[green]{notice.safe_state_message}[/green]"
    if notice.detail:
        body += f"\n\n[dim]{notice.detail}[/dim]"
    if notice.actions:
        body += "\n\n" + "  ".join(f"[bold]{action.label}[/bold]" for action in notice.actions)
    console.print(Panel(body, title=notice.title, border_style=style))


# =============================================================================
# Status Commands
# =============================================================================


@app.command()
def status(
    json_output: Annotated[bool, Option("--json", "-j", help="JSON output")] = False,
) -> None:
    """Show storage and configuration status."""
    config = get_config()
    db_path = config.storage.resolved_path()

    status_data = {
        "data_dir": str(paths.data_home),
        "config_dir": str(paths.config_home),
        "config_file_exists": paths.config_file.exists(),
        "backend": config.storage.backend,
        "database": str(db_path),
        "db_exists": db_path.exists(),
        "sessions": None,
    }

    try:
        status_data["sessions"] = len(asyncio.run(_build_engine().list_sessions()))
    except HypolabError as e:
        status_data["error"] = str(e)

    if json_output:
        console.print_json(json.dumps(status_data))
        return

    console.print("[bold cyan]hypolab Status[/bold cyan]\n")

    table = Table(show_header=False, box=None)
    table.add_column("Key", style="dim")
    table.add_column("Value")

    table.add_row("Data Directory", str(paths.data_home))
    table.add_row("Config Directory", str(paths.config_home))
    table.add_row("Backend", config.storage.backend)
    if config.storage.backend == "sqlite":
        table.add_row("Database", "✓ exists" if status_data["db_exists"] else "✗ not found")
    table.add_row(
        "Sessions",
        str(status_data["sessions"]) if status_data["sessions"] is not None else "[red]unavailable[/red]",
    )

    console.print(table)


# =============================================================================
# Server Commands
# =============================================================================


@app.command()
def serve(
    port: Annotated[Optional[int], Option("--port", "-p", help="HTTP port")] = None,
    host: Annotated[Optional[str], Option("--host", "-H", help="Bind address")] = None,
) -> None:
    """Start the local HTTP adapter."""
    server = get_config().server
    host = host or server.host
    port = port or server.port
    console.print(f"[cyan]Starting hypolab on {host}:{port}...[/cyan]")

    import uvicorn

    from hypolab.app import app as fastapi_app

    uvicorn.run(fastapi_app, host=host, port=port, log_level="info")


# =============================================================================
# Session Commands
# =============================================================================


@sessions_app.command("list")
def sessions_list(
    json_output: Annotated[bool, Option("--json", "-j", help="JSON output")] = False,
) -> None:
    """List stored sessions, most recently updated first."""
    summaries = asyncio.run(_build_engine().list_sessions())

    if json_output:
        console.print_json(json.dumps([s.model_dump(mode="json", by_alias=True) for s in summaries]))
        return

    if not summaries:
        console.print("[dim]No sessions stored[/dim]")
        return

    table = Table(title="Sessions", show_header=True)
    table.add_column("ID", style="cyan")
    table.add_column("Phase")
    table.add_column("Hypothesis")
    table.add_column("Confidence", justify="right")
    table.add_column("Evidence", justify="right")
    table.add_column("Pending", justify="right")
    table.add_column("Updated", style="dim")

    for summary in summaries:
        table.add_row(
            summary.id,
            summary.phase.value,
            summary.hypothesis or "[dim]none[/dim]",
            f"{summary.confidence:.1f}%" if summary.confidence is not None else "-",
            str(summary.evidence_count),
            str(summary.pending_tests),
            summary.updated_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@sessions_app.command("show")
def sessions_show(
    session_id: Annotated[str, Argument(help="Session ID")],
    json_output: Annotated[bool, Option("--json", "-j", help="JSON output")] = False,
) -> None:
    """Show a session's hypotheses and queue."""
    try:
        session = asyncio.run(_build_engine().get_session(session_id))
    except SessionNotFoundError:
        console.print(f"[red]Session not found: {session_id}[/red]")
        raise typer.Exit(1)
    except SessionUnavailableError as e:
        _print_notice(e.notice)
        raise typer.Exit(2)

    if json_output:
        console.print_json(session.to_json())
        return

    console.print(f"[bold cyan]{session.id}[/bold cyan] [dim]({session.phase.value})[/dim]")
    if session.research_question:
        console.print(f"Question: {session.research_question}")

    table = Table(show_header=True)
    table.add_column("Version", style="cyan")
    table.add_column("Role")
    table.add_column("Statement")
    table.add_column("Confidence", justify="right")
    table.add_column("Evidence", justify="right")

    for version_id, card in session.hypothesis_cards.items():
        if version_id == session.primary_hypothesis_id:
            role = "[green]primary[/green]"
        elif card.retired:
            role = f"[dim]retired ({card.retirement.death_type.value})[/dim]"
        else:
            role = "alternative"
        table.add_row(version_id, role, card.statement, f"{card.confidence:.1f}%", str(len(card.evidence)))

    console.print(table)

    pending = [item for item in session.test_queue if item.status.value == "pending"]
    if pending:
        console.print(f"\n[bold]Pending tests ({len(pending)})[/bold]")
        for item in pending:
            console.print(f"  {item.test.id} → {item.hypothesis_id}: {item.test.description}")


@sessions_app.command("recover")
def sessions_recover(
    session_id: Annotated[str, Argument(help="Session ID")],
) -> None:
    """Load a session, scanning storage for an intact copy if its record is damaged.

    Nothing is written or deleted.
    """
    with LogContext(command="sessions.recover"):
        outcome = asyncio.run(_build_engine().load(session_id))

    if outcome.data is not None:
        if outcome.recovered:
            console.print(f"[yellow]Recovered session {session_id} from an intact copy[/yellow]")
        else:
            console.print(f"[green]Session {session_id} is intact[/green]")
        return

    if outcome.notice is None:
        console.print(f"[red]Session not found: {session_id}[/red]")
        raise typer.Exit(1)

    _print_notice(outcome.notice)
    raise typer.Exit(2)


@sessions_app.command("evidence")
def sessions_evidence(
    session_id: Annotated[str, Argument(help="Session ID")],
    version_id: Annotated[str, Argument(help="Hypothesis version, e.g. H1")],
    newest_first: Annotated[bool, Option("--newest-first", "-n", help="Newest entries first")] = False,
    json_output: Annotated[bool, Option("--json", "-j", help="JSON output")] = False,
) -> None:
    """Show the evidence ledger of one hypothesis version."""
    try:
        entries = asyncio.run(_build_engine().evidence_for(session_id, version_id, newest_first=newest_first))
    except SessionNotFoundError:
        console.print(f"[red]Session not found: {session_id}[/red]")
        raise typer.Exit(1)
    except SessionUnavailableError as e:
        _print_notice(e.notice)
        raise typer.Exit(2)
    except HypolabError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    if json_output:
        console.print_json(json.dumps([entry.model_dump(mode="json", by_alias=True) for entry in entries]))
        return

    if not entries:
        console.print(f"[dim]No evidence recorded for {version_id}[/dim]")
        return

    table = Table(title=f"Evidence for {session_id}/{version_id}", show_header=True)
    table.add_column("ID", style="cyan")
    table.add_column("Test")
    table.add_column("Result")
    table.add_column("Confidence", justify="right")
    table.add_column("Recorded", style="dim")

    colors = {"supports": "green", "challenges": "red", "inconclusive": "yellow"}
    for entry in entries:
        color = colors[entry.result.value]
        table.add_row(
            entry.id,
            entry.test.description,
            f"[{color}]{entry.result.value}[/{color}]",
            f"{entry.confidence_before:.1f} → {entry.confidence_after:.1f}",
            entry.recorded_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


# =============================================================================
# Config Commands
# =============================================================================


@config_app.command("show")
def config_show(
    json_output: Annotated[bool, Option("--json", "-j", help="JSON output")] = False,
) -> None:
    """Show current configuration."""
    config_data = get_config().to_dict()

    if json_output:
        console.print_json(json.dumps(config_data))
        return

    table = Table(title="hypolab Configuration", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")

    for section, values in config_data.items():
        for key, value in values.items():
            table.add_row(f"{section}.{key}", str(value) if value != "" else "[dim]not set[/dim]")

    console.print(table)


@config_app.command("path")
def config_path() -> None:
    """Show configuration file path."""
    console.print(str(paths.config_file))


@config_app.command("init")
def config_init(
    force: Annotated[bool, Option("--force", "-f", help="Overwrite an existing file")] = False,
) -> None:
    """Write the default configuration file."""
    if paths.config_file.exists() and not force:
        console.print(f"[yellow]Config already exists at {paths.config_file}[/yellow]")
        console.print("[dim]Use --force to overwrite[/dim]")
        raise typer.Exit(1)

    path = write_default_config(paths.config_file)
    console.print(f"[green]Wrote default config to {path}[/green]")


def main_cli() -> None:
    """Main entry point for the CLI."""
    # Ensure XDG directories exist
    paths.ensure_dirs()
    setup_logging()
    app()


if __name__ == "__main__":
    main_cli()
