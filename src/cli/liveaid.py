"""
Live Aid CLI - drive the stitch scheduler from the terminal.

Usage:
    liveaid init alice                      # Seed three tubes for a new learner
    liveaid complete alice stitch_t1_p1 20 20
    liveaid rotate alice                    # Manual Live Aid rotation
    liveaid status alice                    # Tube roles and positions
    liveaid compress alice tube1 --dry-run  # Preview gap removal
    liveaid next alice                      # Questions for the LIVE tube
    liveaid progression                     # The skip sequence
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Annotated, NoReturn

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Local imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))
from src.liveaid.errors import SchedulerError
from src.liveaid.logging_setup import configure_logging
from src.liveaid.models import SessionCompletion, TubeId
from src.liveaid.scheduler import SchedulerService, build_service
from src.liveaid.skip_progression import SKIP_SEQUENCE

# =============================================================================
# CLI Setup
# =============================================================================

app = typer.Typer(
    name="liveaid",
    help="Live Aid stitch scheduler",
    add_completion=False,
    rich_markup_mode="rich",
)

console = Console()

STATUS_STYLE = {"live": "bold green", "ready": "cyan", "preparing": "yellow"}
HEALTH_STYLE = {"optimal": "green", "degraded": "yellow", "critical": "bold red"}


def get_service() -> SchedulerService:
    return build_service()


def _fail(exc: SchedulerError) -> NoReturn:
    console.print(f"[red]✗ {exc.code.value}[/] {exc.message}")
    raise typer.Exit(code=1)


async def _finish(service: SchedulerService, user_id: str) -> None:
    """Let queued preparations land, then persist."""
    await service.coordinator.drain()
    service.save_user(user_id)


# =============================================================================
# Learner Commands
# =============================================================================


@app.command()
def init(user_id: Annotated[str, typer.Argument(help="Learner id")]) -> None:
    """Seed the default curriculum for a new learner."""

    async def _run() -> None:
        service = get_service()
        state = await service.initialize_user(user_id)
        await _finish(service, user_id)
        console.print(
            Panel(
                f"[bold]{user_id}[/] initialized with {len(state.stitches)} stitches\n"
                f"Live tube: [green]{service.rotation.live_tube(user_id).value}[/]",
                title="Live Aid",
                border_style="green",
            )
        )

    try:
        asyncio.run(_run())
    except SchedulerError as exc:
        _fail(exc)


@app.command()
def complete(
    user_id: Annotated[str, typer.Argument(help="Learner id")],
    stitch_id: Annotated[str, typer.Argument(help="Completed stitch")],
    correct: Annotated[int, typer.Argument(help="Correct answers")],
    total: Annotated[int, typer.Argument(help="Questions in the session")],
) -> None:
    """Record a completed session and reposition the stitch."""

    async def _run() -> None:
        service = get_service()
        service.ensure_loaded(user_id)
        outcome = await service.complete_session(
            SessionCompletion(user_id=user_id, stitch_id=stitch_id, correct_count=correct, total_count=total)
        )
        await _finish(service, user_id)

        r = outcome.reposition
        table = Table(title=f"Session: {stitch_id}")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")
        table.add_row("Score", f"{correct}/{total}")
        table.add_row("Position", f"{r.previous_position} → {r.new_position}")
        table.add_row("Skip number", f"{r.skip_number} → {r.next_skip_number}")
        table.add_row("Boundary level", str(r.boundary_level))
        if outcome.compression is not None:
            table.add_row("Compressed", f"{outcome.compression.gaps_removed} gaps removed")
        if outcome.rotation is not None:
            table.add_row(
                "Rotation",
                f"#{outcome.rotation.rotation_number}: live {outcome.rotation.previous_live.value} → "
                f"{outcome.rotation.new_live.value}",
            )
        console.print(table)

    try:
        asyncio.run(_run())
    except SchedulerError as exc:
        _fail(exc)


@app.command()
def rotate(
    user_id: Annotated[str, typer.Argument(help="Learner id")],
    reason: Annotated[str, typer.Option("--reason", "-r", help="Trigger reason")] = "manual",
) -> None:
    """Rotate the LIVE / READY / PREPARING tubes."""

    async def _run() -> None:
        service = get_service()
        service.ensure_loaded(user_id)
        result = await service.trigger_rotation(user_id, reason)
        await _finish(service, user_id)

        table = Table(title=f"Rotation #{result.rotation_number}")
        table.add_column("Tube", style="cyan")
        table.add_column("From")
        table.add_column("To")
        for t in result.transitions:
            table.add_row(
                t.tube_id.value,
                t.from_status.value,
                f"[{STATUS_STYLE[t.to_status.value]}]{t.to_status.value}[/]",
            )
        console.print(table)

    try:
        asyncio.run(_run())
    except SchedulerError as exc:
        _fail(exc)


@app.command()
def status(user_id: Annotated[str, typer.Argument(help="Learner id")]) -> None:
    """Show tube roles, active stitches and the head of each tube."""
    try:
        service = get_service()
        service.ensure_loaded(user_id)
        info = service.get_user_status(user_id)
    except SchedulerError as exc:
        _fail(exc)

    table = Table(title=f"{user_id} (v{info['version']}, {info['rotation_count']} rotations)")
    table.add_column("Tube", style="cyan")
    table.add_column("Status")
    table.add_column("Active")
    table.add_column("Stitches", justify="right")
    table.add_column("Gaps", justify="right")
    table.add_column("Next up", style="dim")
    for tube, data in info["tubes"].items():
        head = ", ".join(f"{pos}:{sid}" for pos, sid in data["positions"][:4])
        table.add_row(
            tube,
            f"[{STATUS_STYLE[data['status']]}]{data['status']}[/]",
            data["active_stitch"] or "-",
            str(len(data["positions"])),
            str(data["gaps"]),
            head,
        )
    console.print(table)

    health = info["health"]
    metrics = info["metrics"]
    console.print(
        f"Health: [{HEALTH_STYLE[health]}]{health}[/]  "
        f"active preparations: {len(info['active_preparations'])}  "
        f"preparation success: {metrics['preparation_success_rate']:.0%}"
    )


@app.command()
def compress(
    user_id: Annotated[str, typer.Argument(help="Learner id")],
    tube: Annotated[str, typer.Argument(help="tube1, tube2 or tube3")],
    dry_run: Annotated[bool, typer.Option("--dry-run", help="Report without changing positions")] = False,
) -> None:
    """Renumber a tube's positions 1..n."""
    try:
        service = get_service()
        service.ensure_loaded(user_id)
        result = service.compressor.compress_tube_positions(user_id, TubeId.parse(tube), dry_run=dry_run)
        if not dry_run and result.gaps_removed:
            service.save_user(user_id)
    except SchedulerError as exc:
        _fail(exc)

    prefix = "[yellow](dry run)[/] " if dry_run else ""
    console.print(
        f"{prefix}{result.tube_id.value}: span {result.original_count} → {result.compressed_count}, "
        f"{result.gaps_removed} gaps removed (ratio {result.ratio:.2f})"
    )


@app.command(name="next")
def next_content(
    user_id: Annotated[str, typer.Argument(help="Learner id")],
    limit: Annotated[int, typer.Option("--limit", "-n", help="Questions to show")] = 5,
) -> None:
    """Show the ready questions for the LIVE tube."""

    async def _run() -> None:
        service = get_service()
        service.ensure_loaded(user_id)
        content = await service.get_next_content(user_id)

        table = Table(title=f"{content.stitch_id} ({content.tube_id.value}, boundary {content.boundary_level})")
        table.add_column("#", justify="right", style="dim")
        table.add_column("Question", style="cyan")
        table.add_column("Correct", style="green")
        table.add_column("Distractor", style="red")
        for i, q in enumerate(content.questions[:limit], start=1):
            table.add_row(str(i), q.text, q.correct_answer, q.distractor)
        console.print(table)

    try:
        asyncio.run(_run())
    except SchedulerError as exc:
        _fail(exc)


@app.command()
def progression() -> None:
    """Print the skip number sequence."""
    console.print(" → ".join(str(n) for n in SKIP_SEQUENCE))


# =============================================================================
# Entry Point
# =============================================================================


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Verbose output")] = False,
) -> None:
    """Live Aid stitch scheduler."""
    configure_logging(level="DEBUG" if verbose else "WARNING")


def run() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    run()
