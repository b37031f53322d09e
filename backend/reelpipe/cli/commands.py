"""CLI commands for reelpipe using Typer and Rich.

Commands:
- init-db: Create the database schema
- import-plan: Import a plan file (YAML or JSON) as a draft plan version
- plan: Show a plan version and its scenes
- edit-scene: Edit one scene of a draft plan version
- approve: Approve a draft plan version for rendering
- render: Start a run for an approved plan version and follow it
- status: Show run and step status
- cancel: Cancel a run
- artifacts: List the artifacts of a run
- resume: Resume one run, or every interrupted run
- gc: Delete artifacts of old failed/cancelled runs
"""

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Optional

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from reelpipe import validate_dependencies
from reelpipe.config import settings
from reelpipe.db import async_session, init_database, shutdown
from reelpipe.errors import ReelpipeError
from reelpipe.orchestrator.service import RunService
from reelpipe.orchestrator.state import TERMINAL_RUN_STATES
from reelpipe.schemas.plan import PlanInput, RunStatusView, ScenePatch

app = typer.Typer(name="reelpipe", help="Resumable render pipeline for short-form vertical video")
console = Console()

# Seconds between status refreshes while following a run
POLL_INTERVAL_SEC = 0.5


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
):
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=False)],
    )


def _parse_uuid(value: str, label: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        console.print(f"[red]Error:[/red] Invalid {label} UUID: {value}")
        raise typer.Exit(code=1)


def _run(coro):
    """Run a command coroutine, mapping orchestrator errors to exit code 1."""
    async def wrapper():
        try:
            await init_database()
            return await coro
        finally:
            await shutdown()

    try:
        return asyncio.run(wrapper())
    except ReelpipeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)


def _service() -> RunService:
    return RunService(async_session, settings)


@app.command("init-db")
def init_db():
    """Create the database schema (idempotent)."""
    _run(init_database())
    console.print(f"[green]✓[/green] Database ready: {settings.storage.database_url}")


@app.command("import-plan")
def import_plan(
    plan_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Plan file (.yaml/.yml/.json)"),
    approve: bool = typer.Option(False, "--approve", help="Approve the plan version right away"),
):
    """Import a plan file as a new project with a draft plan version."""
    text = plan_file.read_text(encoding="utf-8")
    try:
        data = json.loads(text) if plan_file.suffix == ".json" else yaml.safe_load(text)
        plan = PlanInput.model_validate(data)
    except (ValueError, yaml.YAMLError, ValidationError) as e:
        console.print(f"[red]Error:[/red] Invalid plan file: {e}")
        raise typer.Exit(code=1)

    plan_version_id = _run(_import_async(plan, approve))
    console.print(f"[green]Created plan version:[/green] {plan_version_id}")


async def _import_async(plan: PlanInput, approve: bool) -> uuid.UUID:
    service = _service()
    plan_version_id = await service.import_plan(plan)
    if approve:
        await service.approve_plan(plan_version_id)
    await _print_plan(service, plan_version_id)
    return plan_version_id


@app.command("plan")
def show_plan(
    plan_version_id: str = typer.Argument(..., help="Plan version UUID"),
):
    """Show a plan version and its scenes."""
    _run(_print_plan(_service(), _parse_uuid(plan_version_id, "plan version")))


async def _print_plan(service: RunService, plan_version_id: uuid.UUID) -> None:
    plan, scenes = await service.get_plan(plan_version_id)
    status_color = _get_status_color(plan.status)
    console.print(f"[bold]Plan version:[/bold] {plan.id}  [{status_color}]{plan.status}[/{status_color}]")
    if plan.active_run_id:
        console.print(f"[bold]Active run:[/bold] {plan.active_run_id}")

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("#", justify="right")
    table.add_column("Scene ID", style="dim")
    table.add_column("Narration")
    table.add_column("Effect")
    table.add_column("Timing")
    table.add_column("Locked")
    for scene in scenes:
        narration = scene.narration_text if len(scene.narration_text) <= 50 else scene.narration_text[:47] + "..."
        timing = (
            f"{scene.start_time_sec:.2f}-{scene.end_time_sec:.2f}s"
            if scene.start_time_sec is not None and scene.end_time_sec is not None
            else "-"
        )
        table.add_row(
            str(scene.idx + 1), str(scene.id), narration, scene.effect_preset, timing,
            "yes" if scene.locked else "",
        )
    console.print(table)


@app.command("edit-scene")
def edit_scene(
    plan_version_id: str = typer.Argument(..., help="Plan version UUID"),
    scene_id: str = typer.Argument(..., help="Scene UUID"),
    narration: Optional[str] = typer.Option(None, "--narration", help="New narration text"),
    on_screen_text: Optional[str] = typer.Option(None, "--on-screen-text", help="New on-screen text"),
    image_prompt: Optional[str] = typer.Option(None, "--image-prompt", help="New image prompt"),
    effect: Optional[str] = typer.Option(None, "--effect", help="Motion preset"),
    duration: Optional[float] = typer.Option(None, "--duration", help="Target duration in seconds"),
    lock: Optional[bool] = typer.Option(None, "--lock/--unlock", help="Lock or unlock the scene"),
):
    """Edit one scene of a draft plan version."""
    fields = {
        "narration_text": narration,
        "on_screen_text": on_screen_text,
        "image_prompt": image_prompt,
        "effect_preset": effect,
        "duration_target_sec": duration,
        "locked": lock,
    }
    try:
        patch = ScenePatch(
            scene_id=_parse_uuid(scene_id, "scene"),
            **{k: v for k, v in fields.items() if v is not None},
        )
    except ValidationError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)

    if not patch.changes():
        console.print("[yellow]Nothing to change[/yellow]")
        return

    plan_uuid = _parse_uuid(plan_version_id, "plan version")
    _run(_service().edit_scenes(plan_uuid, [patch]))
    console.print(f"[green]✓[/green] Scene {scene_id} updated")


@app.command()
def approve(
    plan_version_id: str = typer.Argument(..., help="Plan version UUID"),
):
    """Approve a draft plan version for rendering."""
    plan_uuid = _parse_uuid(plan_version_id, "plan version")
    _run(_service().approve_plan(plan_uuid))
    console.print(f"[green]✓[/green] Plan version {plan_uuid} approved")


@app.command()
def render(
    plan_version_id: str = typer.Argument(..., help="Approved plan version UUID"),
    project_id: Optional[str] = typer.Option(None, "--project", help="Expected owning project UUID"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Use placeholder adapters (no network, no ffmpeg)"),
):
    """Start a run for an approved plan version and follow it to the end."""
    dry_run = dry_run or settings.render.dry_run
    if not dry_run:
        # Fail-fast dependency validation
        try:
            validate_dependencies(settings.render.ffmpeg_binary, settings.render.ffprobe_binary)
        except RuntimeError as e:
            console.print(f"[red]Error:[/red] {str(e)}")
            raise typer.Exit(code=1)

    plan_uuid = _parse_uuid(plan_version_id, "plan version")
    project_uuid = _parse_uuid(project_id, "project") if project_id else None
    view = _run(_render_async(plan_uuid, project_uuid, dry_run))
    _print_outcome(view)


async def _render_async(plan_version_id: uuid.UUID, project_id: Optional[uuid.UUID], dry_run: bool) -> RunStatusView:
    service = _service()
    run_id = await service.start_run(plan_version_id, project_id, dry_run=dry_run)
    console.print(f"[green]Started run:[/green] {run_id}")
    return await _follow(service, run_id)


async def _follow(service: RunService, run_id: uuid.UUID) -> RunStatusView:
    try:
        with console.status("[bold green]Starting run...") as status:
            waiter = asyncio.ensure_future(service.wait_for(run_id))
            while not waiter.done():
                view = await service.get_run_status(run_id)
                current = view.current_step
                if current is not None:
                    done = sum(1 for s in view.steps if s.status in ("succeeded", "skipped"))
                    status.update(f"[bold green][{done}/{len(view.steps)}] {current.name}")
                await asyncio.wait({waiter}, timeout=POLL_INTERVAL_SEC)
            return waiter.result()
    except KeyboardInterrupt:
        console.print()
        console.print("[yellow]Run interrupted. You can resume it later with:[/yellow]")
        console.print(f"  reelpipe resume {run_id}")
        raise typer.Exit(code=130)


def _print_outcome(view: RunStatusView) -> None:
    if view.status == "succeeded":
        console.print(f"[green]✓[/green] Run {view.run_id} succeeded")
        console.print(f"  reelpipe artifacts {view.run_id}")
        return
    if view.status == "cancelled":
        console.print(f"[yellow]Run {view.run_id} cancelled[/yellow]")
        return
    if view.error is not None:
        console.print(
            f"[red]✗ Run failed at {view.error.step}[/red] "
            f"({view.error.kind}, {view.error.attempts} attempt(s)): {view.error.message}"
        )
    else:
        console.print(f"[red]✗ Run {view.run_id} ended as {view.status}[/red]")
    raise typer.Exit(code=1)


@app.command()
def status(
    run_id: str = typer.Argument(..., help="Run UUID"),
):
    """Show run status and the state of every step."""
    view = _run(_service().get_run_status(_parse_uuid(run_id, "run")))

    status_color = _get_status_color(view.status)
    info_lines = [
        f"[bold]Run:[/bold] {view.run_id}",
        f"[bold]Plan version:[/bold] {view.plan_version_id}",
        f"[bold]Status:[/bold] [{status_color}]{view.status}[/{status_color}]",
        f"[bold]Created:[/bold] {view.created_at.strftime('%Y-%m-%d %H:%M:%S') if view.created_at else '-'}",
    ]
    if view.finished_at:
        info_lines.append(f"[bold]Finished:[/bold] {view.finished_at.strftime('%Y-%m-%d %H:%M:%S')}")
    if view.cancel_requested and view.status not in TERMINAL_RUN_STATES:
        info_lines.append("[bold]Cancel:[/bold] [yellow]requested, stops at the next step[/yellow]")
    if view.error is not None:
        info_lines.append(f"[bold]Error:[/bold] [red]{view.error.step}: {view.error.message}[/red]")
    console.print(Panel("\n".join(info_lines), title="[bold]Run Status[/bold]", border_style="blue"))

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("#", justify="right")
    table.add_column("Step")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Outputs", justify="right")
    for step in view.steps:
        color = _get_status_color(step.status)
        table.add_row(
            str(step.order_index + 1),
            step.name,
            f"[{color}]{step.status}[/{color}]",
            str(step.attempts),
            str(len(step.output_refs)),
        )
    console.print(table)


@app.command()
def cancel(
    run_id: str = typer.Argument(..., help="Run UUID"),
):
    """Cancel a run; a running run stops at its next step boundary."""
    result = _run(_service().cancel_run(_parse_uuid(run_id, "run")))
    if result == "cancelled":
        console.print(f"[green]✓[/green] Run {run_id} cancelled")
    else:
        console.print(f"[yellow]Cancellation requested; run {run_id} stops after its current step[/yellow]")


@app.command()
def artifacts(
    run_id: str = typer.Argument(..., help="Run UUID"),
):
    """List the artifacts produced by a run."""
    items = _run(_service().list_artifacts(_parse_uuid(run_id, "run")))
    if not items:
        console.print("[yellow]No artifacts found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Role")
    table.add_column("Rev", justify="right")
    table.add_column("Step")
    table.add_column("Size", justify="right")
    table.add_column("Checksum", style="dim")
    table.add_column("Path")
    for item in items:
        role = f"{item.role} [dim](reused)[/dim]" if item.reused_from_id else item.role
        table.add_row(
            role, str(item.revision), item.producing_step, _format_size(item.size_bytes),
            item.checksum[:12], item.path,
        )
    console.print(table)
    console.print(f"[dim]Artifacts root: {settings.storage.artifacts_dir}[/dim]")


@app.command()
def resume(
    run_id: Optional[str] = typer.Argument(None, help="Run UUID; omit to resume every interrupted run"),
):
    """Resume a run from its first unfinished step, or every interrupted run."""
    run_uuid = _parse_uuid(run_id, "run") if run_id else None
    views = _run(_resume_async(run_uuid))
    if not views:
        console.print("[yellow]No interrupted runs[/yellow]")
        return
    failed = False
    for view in views:
        color = _get_status_color(view.status)
        console.print(f"Run {view.run_id}: [{color}]{view.status}[/{color}]")
        failed = failed or view.status == "failed"
    if failed:
        raise typer.Exit(code=1)


async def _resume_async(run_id: Optional[uuid.UUID]) -> list:
    service = _service()
    if run_id is not None:
        await service.resume_run(run_id)
        return [await _follow(service, run_id)]

    run_ids = await service.resume_interrupted_runs()
    await service.wait_all()
    return [await service.get_run_status(r) for r in run_ids]


@app.command()
def gc(
    days: int = typer.Option(
        settings.runner.garbage_retention_days, "--days", help="Delete failed/cancelled runs older than this"
    ),
):
    """Delete artifacts of failed or cancelled runs that finished more than --days ago."""
    purged = _run(_service().collect_garbage(days))
    console.print(f"[green]✓[/green] Removed artifacts of {len(purged)} run(s)")


def _format_size(size: int) -> str:
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}GB"


def _get_status_color(status: str) -> str:
    """Get Rich color for a run, step or plan status.

    Color coding:
    - succeeded/approved: green
    - failed: red
    - running/locked: yellow
    - pending/skipped/draft: dim
    """
    if status in ("succeeded", "approved"):
        return "green"
    elif status == "failed":
        return "red"
    elif status in ("running", "locked", "cancelled"):
        return "yellow"
    elif status in ("pending", "skipped", "draft"):
        return "dim"
    else:
        return "white"
