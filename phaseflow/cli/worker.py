"""Worker commands.

Commands that move waiting or failed runs forward: expiring overdue human
requests and replaying workflows that failed on an infrastructure error.
Also reads back the pipeline log.
"""
from __future__ import annotations

import json
from typing import Optional

import typer

from phaseflow.cli.common import build_pipeline, get_config_or_default, get_console
from phaseflow.cli.display import format_workflow_status

app = typer.Typer(
    name="worker",
    help="Timeout sweeping and recovery commands",
    no_args_is_help=True,
)

console = get_console()


@app.command("sweep")
def sweep_command() -> None:
    """
    Resume runs whose human requests have expired.

    Meant to be run periodically, e.g. from cron.
    """
    pipeline = build_pipeline(get_config_or_default())
    records = pipeline.sweep_timeouts()
    if not records:
        console.print("[dim]No expired requests.[/dim]")
        return
    for record in records:
        console.print(f"Run {record.workflow_id}: ", format_workflow_status(record.status))


@app.command("resume")
def resume_command(
    workflow_id: str = typer.Argument(..., help="Run or workflow to replay"),
) -> None:
    """
    Replay a failed workflow from its last checkpoint.

    Completed steps are not re-executed.
    """
    from phaseflow.durable.engine import WorkflowError

    pipeline = build_pipeline(get_config_or_default())
    try:
        record = pipeline.resume(workflow_id)
    except WorkflowError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"Run {record.workflow_id}: ", format_workflow_status(record.status))
    if record.status == "failed":
        console.print(f"[red]Workflow error: {record.error}[/red]")
        raise typer.Exit(1)


@app.command("logs")
def logs_command(
    run_id: Optional[str] = typer.Option(None, "--run", "-r", help="Read this run's log"),
    date: Optional[str] = typer.Option(None, "--date", "-d", help="Day of the system log (YYYY-MM-DD)"),
    level: Optional[str] = typer.Option(None, "--level", "-l", help="Only this level"),
    event_type: Optional[str] = typer.Option(None, "--event", "-e", help="Only this event type"),
    phase: Optional[str] = typer.Option(None, "--phase", "-p", help="Only entries of this phase"),
    limit: int = typer.Option(100, "--limit", "-n", help="Maximum entries to show"),
    list_runs: bool = typer.Option(False, "--list", help="List runs that have a log"),
) -> None:
    """
    Show a run's structured log, or the daily system log.

    Examples:
        phaseflow worker logs --list
        phaseflow worker logs --run run-1 --level error
        phaseflow worker logs --run run-1 --phase implementation --event quality_gates_result
    """
    from phaseflow.logger import PipelineLogger

    logger = PipelineLogger(get_config_or_default())
    if list_runs:
        runs = logger.list_runs()
        if not runs:
            console.print("[dim]No run logs.[/dim]")
        for name in runs:
            console.print(name, markup=False)
        return

    entries = logger.read_logs(run_id=run_id, date=date, level=level, event_type=event_type,
                               phase=phase, limit=limit)
    if not entries:
        console.print("[dim]No log entries.[/dim]")
        return
    for entry in entries:
        prefix = f"{entry['timestamp']} {entry['level']:<5} "
        if entry.get("phase"):
            prefix += f"[{entry['phase']}] "
        console.print(f"{prefix}{entry['event_type']} {json.dumps(entry['data'])}", markup=False)
