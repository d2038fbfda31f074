# buildloop/cli.py
"""
CLI interface for buildloop.

Thin presentation layer over the tools/ service layer.
All commands delegate to the same functions that MCP wraps.
"""

import asyncio
import json
import time
from collections import deque

import typer

app = typer.Typer(
    name="buildloop",
    help="Queue-driven AI app builder: message in, validated project version out.",
    no_args_is_help=True,
)


def _fmt_duration(seconds: float) -> str:
    """Format seconds as human-readable duration (e.g. '5m17s', '42s')."""
    s = int(seconds)
    if s < 60:
        return f"{s}s"
    m, s = divmod(s, 60)
    return f"{m}m{s:02d}s"


def _run(coro):
    """Run async function from sync CLI context."""
    return asyncio.run(coro)


async def _get_lifecycle():
    """Open stores and queues without starting workers (enqueue/inspect commands)."""
    from buildloop.background.lifecycle import ServerLifecycle
    from buildloop.config.loader import get_db_path, load_config

    lifecycle = ServerLifecycle(str(get_db_path()), config=load_config())
    await lifecycle.startup(start_workers=False, install_signals=False)
    return lifecycle


def _state_color(state: str) -> str:
    """Return ANSI color for a project or job state."""
    colors = {
        "completed": typer.colors.GREEN,
        "ready": typer.colors.GREEN,
        "deployed": typer.colors.GREEN,
        "active": typer.colors.YELLOW,
        "building": typer.colors.YELLOW,
        "deploying": typer.colors.YELLOW,
        "waiting": typer.colors.CYAN,
        "delayed": typer.colors.MAGENTA,
        "draft": typer.colors.CYAN,
        "failed": typer.colors.RED,
    }
    return colors.get(state, typer.colors.WHITE)


# Stage list for live progress display: (display_name, percent at which it is done)
_DISPLAY_STAGES = [
    ("Analyzing request", 10),
    ("Model turns", 80),
    ("Saving version", 95),
    ("Complete", 100),
]


def _make_live_display(
    message: str,
    percent: int,
    elapsed: float,
    stage: str = "",
    log_lines: list[str] | None = None,
):
    """Build a rich renderable for the live progress display."""
    from rich.console import Group
    from rich.panel import Panel
    from rich.table import Table
    from rich.text import Text

    table = Table.grid(padding=(0, 2))
    table.add_column(width=3)
    table.add_column()

    prev_threshold = 0
    for name, threshold in _DISPLAY_STAGES:
        if percent >= threshold:
            icon, row_style = Text("✓", style="green"), "dim"
        elif percent >= prev_threshold:
            icon, row_style = Text("⟳", style="yellow"), "bold"
        else:
            icon, row_style = Text("○", style="dim"), "dim"
        table.add_row(icon, Text(name, style=row_style))
        prev_threshold = threshold

    bar_width = 36
    filled = int(percent / 100 * bar_width)
    bar = "█" * filled + "░" * (bar_width - filled)

    title = Text(f" {message[:60]}{'…' if len(message) > 60 else ''} ", style="bold")
    parts: list = [
        table,
        Text(f"\n  {bar}  {percent}%  {_fmt_duration(elapsed)}", style="cyan"),
    ]
    if stage:
        parts.append(Text(f"\n  {stage}", style="dim italic"))
    if log_lines:
        parts.append(Text(""))
        for line in log_lines:
            parts.append(Text(f"  {line}", style="dim"))
    parts.append(Text(""))

    return Panel(Group(*parts), title=title, border_style="bright_black")


def _read_frame(frame: str) -> dict:
    """Decode one SSE ``data:`` frame produced by stream_events."""
    return json.loads(frame.strip()[len("data: "):])


async def _run_inline(lifecycle, project_id: str, job_id: str, message: str):
    """Process the build in this process with a live panel fed by the SSE stream."""
    from rich.console import Console
    from rich.live import Live

    from buildloop.models.jobs import JobState
    from buildloop.progress.stream import stream_events

    console = Console(stderr=True)
    start = time.monotonic()
    queue = lifecycle.build_queue
    worker = lifecycle.build_worker

    async def drive():
        while True:
            job = await queue.get(job_id)
            if job is None or job.state in (JobState.COMPLETED, JobState.FAILED):
                return job
            if not await worker.run_once():
                await asyncio.sleep(queue.settings.poll_interval)

    shown = {"percent": 0, "stage": "queued"}
    log_lines: deque[str] = deque(maxlen=6)

    async def follow(stream):
        async for frame in stream:
            event = _read_frame(frame)
            if event.get("percent") is not None:
                shown["percent"] = max(shown["percent"], event["percent"])
            shown["stage"] = event.get("stage") or shown["stage"]
            text = event["stage"]
            if event.get("message"):
                text = f"{text}: {event['message']}"
            log_lines.append(f"{time.strftime('%H:%M:%S')} {text}")

    # Subscribe before the job starts so no event is missed
    stream = stream_events(lifecycle.bus, project_id, stop_on_terminal=True)
    await stream.__anext__()
    task = asyncio.create_task(drive())
    follower = asyncio.create_task(follow(stream))

    def render():
        return _make_live_display(
            message,
            shown["percent"],
            time.monotonic() - start,
            shown["stage"],
            list(log_lines),
        )

    try:
        with Live(render(), console=console, refresh_per_second=4) as live:
            while not task.done():
                await asyncio.wait({task}, timeout=0.3)
                live.update(render())
            # Let the terminal event reach the panel
            await asyncio.wait({follower}, timeout=0.5)
            live.update(render())
    except (KeyboardInterrupt, asyncio.CancelledError):
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise KeyboardInterrupt
    finally:
        follower.cancel()
        await asyncio.gather(follower, return_exceptions=True)
        await stream.aclose()

    job = task.result()
    elapsed = time.monotonic() - start
    console.print()
    if job is not None and job.state == JobState.COMPLETED:
        result = job.result or {}
        console.print(
            f"[green]✓ Done[/green]  version: {result.get('version_number')}  "
            f"files: {result.get('files_changed')}  time: {_fmt_duration(elapsed)}"
        )
        if result.get("partial"):
            console.print("[yellow]Turn budget ran out; this version may be incomplete.[/yellow]")
        if result.get("deploy_job_id"):
            console.print(
                f"[dim]Deploy queued:[/dim] {result['deploy_job_id']} "
                f"(run 'buildloop run' to process)"
            )
        if result.get("summary"):
            typer.echo(result["summary"])
    else:
        error = (job.last_error if job else None) or "unknown error"
        console.print(f"[red]✗ Failed[/red]: {error}")
        raise typer.Exit(1)


@app.command("create-project")
def create_project_cmd(name: str = typer.Argument(..., help="Project name")):
    """Create a new, empty project."""
    from buildloop.tools.create_project import create_project

    async def _create():
        lifecycle = await _get_lifecycle()
        try:
            return await create_project(name, store=lifecycle.store)
        finally:
            await lifecycle.shutdown()

    try:
        result = _run(_create())
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Created project {result['project_id']} ({result['name']})")


@app.command()
def build(
    project_id: str = typer.Argument(..., help="Project ID from create-project"),
    message: str = typer.Argument(..., help="What to build or change"),
    model: str = typer.Option(None, "--model", "-m", help="Model override (default: auto)"),
    detach: bool = typer.Option(False, "--detach", "-d", help="Queue only, don't run inline"),
):
    """Queue a build and run it with live progress. Use --detach to queue only."""
    from buildloop.tools.send_message import send_message

    async def _build():
        lifecycle = await _get_lifecycle()
        try:
            result = await send_message(
                project_id,
                message,
                model,
                None,
                store=lifecycle.store,
                queue=lifecycle.build_queue,
            )
            job_id = result["job_id"]

            if detach:
                typer.echo(f"Queued build {job_id}. Run 'buildloop run' to start processing.")
                return

            await _run_inline(lifecycle, project_id, job_id, message)
        finally:
            await lifecycle.shutdown()

    try:
        _run(_build())
    except KeyboardInterrupt:
        typer.echo("\nCancelled.", err=True)
        raise typer.Exit(130)
    except typer.Exit:
        raise
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


@app.command("run")
def run_worker():
    """Start the build and deploy workers. Ctrl+C to stop."""
    from buildloop.background.lifecycle import ServerLifecycle
    from buildloop.config.loader import get_db_path, load_config
    from buildloop.logging_config import configure_cli_logging

    configure_cli_logging()
    config = load_config()

    async def _run_worker():
        lifecycle = ServerLifecycle(str(get_db_path()), config=config)
        await lifecycle.startup()
        typer.echo("Workers started. Processing queued jobs... (Ctrl+C to stop)\n")
        try:
            await lifecycle.wait_closed()
        finally:
            await lifecycle.shutdown()

    try:
        _run(_run_worker())
    except KeyboardInterrupt:
        pass


@app.command()
def status(project_id: str = typer.Argument(..., help="Project ID to check")):
    """Show a project's build status."""
    from buildloop.tools.build_status import build_status

    async def _status():
        lifecycle = await _get_lifecycle()
        try:
            return await build_status(
                project_id,
                store=lifecycle.store,
                build_queue=lifecycle.build_queue,
                deploy_queue=lifecycle.deploy_queue,
            )
        finally:
            await lifecycle.shutdown()

    try:
        result = _run(_status())
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    state = result["status"]
    typer.echo(f"Project:  {result['project_id']} ({result['name']})")
    typer.echo(typer.style(f"Status:   {state}", fg=_state_color(state)))
    typer.echo(f"Progress: {result['build_progress']}%")
    if result.get("current_build_stage"):
        typer.echo(f"Stage:    {result['current_build_stage']}")
    typer.echo(f"Version:  {result['current_version']}")
    if result.get("deployment_url"):
        typer.echo(f"URL:      {result['deployment_url']}")
    if result.get("env_vars_needed"):
        typer.echo(f"Env vars: {', '.join(result['env_vars_needed'])}")
    if result.get("error_message"):
        typer.echo(typer.style(f"Error:    {result['error_message']}", fg=typer.colors.RED))
    for label in ("build_job", "deploy_job"):
        job = result.get(label)
        if job:
            typer.echo(
                f"{label.split('_')[0].capitalize() + ':':<10}"
                + typer.style(f"{job['job_id']} {job['state']}", fg=_state_color(job["state"]))
                + f" (attempt {job['attempts']}/{job['max_attempts']})"
            )


@app.command()
def stats():
    """Show job counts per state for both queues."""
    from buildloop.tools.queue_stats import queue_stats

    async def _stats():
        lifecycle = await _get_lifecycle()
        try:
            return await queue_stats(lifecycle.build_queue, lifecycle.deploy_queue)
        finally:
            await lifecycle.shutdown()

    result = _run(_stats())

    typer.echo(f"{'QUEUE':<8} {'WAITING':>8} {'ACTIVE':>8} {'DELAYED':>8} {'DONE':>8} {'FAILED':>8}")
    typer.echo("-" * 54)
    for name in ("build", "deploy"):
        counts = result[name]
        typer.echo(
            f"{name:<8} {counts['waiting']:>8} {counts['active']:>8} {counts['delayed']:>8} "
            f"{counts['completed']:>8} {counts['failed']:>8}"
        )


@app.command()
def cancel(project_id: str = typer.Argument(..., help="Project whose build to cancel")):
    """Cancel the queued or running build of a project."""
    from buildloop.tools.cancel_build import cancel_build

    async def _cancel():
        lifecycle = await _get_lifecycle()
        try:
            return await cancel_build(
                project_id, store=lifecycle.store, queue=lifecycle.build_queue, bus=lifecycle.bus
            )
        finally:
            await lifecycle.shutdown()

    try:
        result = _run(_cancel())
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(result["message"])


@app.command()
def versions(project_id: str = typer.Argument(..., help="Project ID")):
    """List the saved versions of a project."""
    from buildloop.tools.list_versions import list_versions

    async def _versions():
        lifecycle = await _get_lifecycle()
        try:
            return await list_versions(project_id, store=lifecycle.store)
        finally:
            await lifecycle.shutdown()

    try:
        result = _run(_versions())
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if not result["versions"]:
        typer.echo("No versions yet.")
        return

    typer.echo(f"{'VERSION':<9} {'FILES':<7} {'CHANGES':<36} REQUEST")
    typer.echo("-" * 80)
    for v in result["versions"]:
        marker = "*" if v["version_number"] == result["current_version"] else " "
        request = (v["prompt_summary"] or "")[:40]
        typer.echo(
            f"{marker}{v['version_number']:<8} {v['file_count']:<7} "
            f"{(v['diff_summary'] or ''):<36} {request}"
        )


@app.command()
def serve():
    """Start the MCP server."""
    from buildloop.__main__ import main

    asyncio.run(main())


if __name__ == "__main__":
    app()
