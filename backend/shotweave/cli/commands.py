"""CLI commands for shotweave using Typer and Rich.

Operator commands over the continuity session store:
- list: List a user's sessions in a table
- show: Show a session and its shots
- cost: Show the credit estimate for a shot
- backfill: Copy legacy continuity sessions into the unified table
- delete: Delete a session from both stores
"""

import asyncio
import logging

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from shotweave.db import async_session, init_database
from shotweave.services.continuity.cost_calculator import CreditCostCalculator
from shotweave.services.continuity.session_store import ContinuitySessionStore

app = typer.Typer(name="shotweave", help="Continuity-aware shot generation for AI video sessions")
console = Console()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _store() -> ContinuitySessionStore:
    return ContinuitySessionStore(async_session)


@app.command(name="list")
def list_sessions(
    user_id: str = typer.Argument(..., help="Owner of the sessions"),
):
    """List a user's continuity sessions."""
    asyncio.run(_list_async(user_id))


async def _list_async(user_id: str):
    """Async implementation of list command."""
    await init_database()

    sessions = await _store().find_by_user(user_id)
    if not sessions:
        console.print(f"[yellow]No sessions found for {user_id}[/yellow]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Shots", justify="right")
    table.add_column("Version", justify="right")
    table.add_column("Updated")

    for session in sessions:
        name_display = session.name if len(session.name) <= 40 else session.name[:37] + "..."
        status_color = _get_status_color(session.status)
        table.add_row(
            session.id,
            name_display,
            f"[{status_color}]{session.status}[/{status_color}]",
            str(len(session.shots)),
            str(session.version),
            session.updated_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@app.command()
def show(
    session_id: str = typer.Argument(..., help="Session ID"),
):
    """Show a session's settings and shot list."""
    asyncio.run(_show_async(session_id))


async def _show_async(session_id: str):
    """Async implementation of show command."""
    await init_database()

    session = await _store().get(session_id)
    if session is None:
        console.print(f"[red]Error:[/red] Session not found: {session_id}")
        raise typer.Exit(code=1)

    defaults = session.default_settings
    info_lines = [
        f"[bold]ID:[/bold] {session.id}",
        f"[bold]Name:[/bold] {session.name}",
        f"[bold]User:[/bold] {session.user_id}",
        f"[bold]Status:[/bold] {session.status}",
        f"[bold]Version:[/bold] {session.version}",
        f"[bold]Mode:[/bold] {defaults.generation_mode} / {defaults.default_continuity_mode}",
        f"[bold]Model:[/bold] {defaults.default_model}",
        f"[bold]Retries:[/bold] {defaults.max_retries if defaults.auto_retry_on_failure else 'off'}",
    ]
    if session.primary_style_reference:
        info_lines.append(f"[bold]Style Reference:[/bold] {session.primary_style_reference.frame_url}")
    if session.scene_proxy:
        info_lines.append(f"[bold]Scene Proxy:[/bold] {session.scene_proxy.status}")

    console.print(Panel("\n".join(info_lines), title="[bold]Continuity Session[/bold]", border_style="blue"))

    if not session.shots:
        console.print("[dim]No shots yet[/dim]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("#", justify="right")
    table.add_column("Shot", style="dim")
    table.add_column("Prompt")
    table.add_column("Status")
    table.add_column("Mechanism")
    table.add_column("Quality", justify="right")
    table.add_column("Retries", justify="right")

    for shot in session.shots:
        prompt_display = shot.user_prompt if len(shot.user_prompt) <= 50 else shot.user_prompt[:47] + "..."
        status_color = _get_status_color(shot.status)
        quality = "-" if shot.style_score is None else f"{shot.style_score:.2f}"
        table.add_row(
            str(shot.sequence_index),
            shot.id,
            prompt_display,
            f"[{status_color}]{shot.status}[/{status_color}]",
            shot.continuity_mechanism_used or "-",
            quality,
            str(shot.retry_count),
        )

    console.print(table)


@app.command()
def cost(
    session_id: str = typer.Argument(..., help="Session ID"),
    shot_id: str = typer.Argument(..., help="Shot ID"),
):
    """Show the worst-case credit estimate for generating a shot."""
    asyncio.run(_cost_async(session_id, shot_id))


async def _cost_async(session_id: str, shot_id: str):
    """Async implementation of cost command."""
    await init_database()

    session = await _store().get(session_id)
    if session is None:
        console.print(f"[red]Error:[/red] Session not found: {session_id}")
        raise typer.Exit(code=1)

    shot = session.get_shot(shot_id)
    if shot is None:
        console.print(f"[red]Error:[/red] Shot {shot_id} not found in session {session_id}")
        raise typer.Exit(code=1)

    estimate = CreditCostCalculator.calculate_shot_cost(shot, session)
    console.print(f"[bold]Model:[/bold] {shot.model_id}")
    console.print(f"[bold]Per attempt:[/bold] {estimate.per_attempt_cost} credits")
    console.print(f"[bold]Max attempts:[/bold] {estimate.max_attempts}")
    console.print(f"[bold]Reserved:[/bold] [yellow]{estimate.total_cost} credits[/yellow]")


@app.command()
def backfill():
    """Copy legacy-only continuity sessions into the unified sessions table."""
    asyncio.run(_backfill_async())


async def _backfill_async():
    """Async implementation of backfill command."""
    await init_database()

    with console.status("[bold green]Backfilling legacy sessions..."):
        migrated = await _store().backfill_legacy()

    if migrated:
        console.print(f"[green]✓[/green] Backfilled {migrated} session(s)")
    else:
        console.print("[green]✓[/green] Nothing to backfill; legacy flags can be turned off")


@app.command()
def delete(
    session_id: str = typer.Argument(..., help="Session ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete a session from the unified and legacy stores."""
    if not yes:
        typer.confirm(f"Delete session {session_id}?", abort=True)
    asyncio.run(_delete_async(session_id))


async def _delete_async(session_id: str):
    """Async implementation of delete command."""
    await init_database()

    if not await _store().delete(session_id):
        console.print(f"[red]Error:[/red] Session not found: {session_id}")
        raise typer.Exit(code=1)
    console.print(f"[green]✓[/green] Deleted session {session_id}")


def _get_status_color(status: str) -> str:
    """Get Rich color for a session or shot status.

    Color coding:
    - completed/active: green
    - failed: red
    - generating: yellow
    - draft/archived: dim
    """
    if status in ("completed", "active"):
        return "green"
    elif status == "failed":
        return "red"
    elif status == "generating":
        return "yellow"
    elif status in ("draft", "archived"):
        return "dim"
    else:
        return "white"
