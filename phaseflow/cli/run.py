"""Feature run commands.

Commands for starting a run, inspecting one run and listing runs.
This module should NOT import heavy modules at the top level - use lazy imports inside functions.
"""
from __future__ import annotations

from typing import Optional

import typer

from phaseflow.cli.common import build_pipeline, get_config_or_default, get_console, get_store
from phaseflow.cli.display import (
    format_output,
    format_workflow_status,
    show_pending_requests,
    show_run_detail,
    show_runs,
)

# Create run command group
app = typer.Typer(
    name="run",
    help="Feature run commands",
    no_args_is_help=True,
)

console = get_console()


@app.command("start")
def start_command(
    prompt: str = typer.Argument(..., help="Feature request in natural language"),
    repo_url: str = typer.Argument(..., help="GitHub repository URL"),
    branch: str = typer.Option("main", "--branch", "-b", help="Target branch"),
    runtime: Optional[str] = typer.Option(None, "--runtime", "-r", help="Environment runtime"),
    run_id: Optional[str] = typer.Option(None, "--run-id", help="Explicit run id"),
) -> None:
    """
    Start a feature run.

    The run proceeds until the first human request and then waits; answer
    it with `phaseflow cta respond`.

    Examples:
        phaseflow run start "Add dark mode toggle" https://github.com/acme/web
        phaseflow run start "Fix login redirect" github.com/acme/web --branch develop
    """
    from phaseflow.github_client import GitHubError, parse_repo_url

    try:
        parse_repo_url(repo_url)
    except GitHubError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    config = get_config_or_default()
    pipeline = build_pipeline(config)
    record = pipeline.start_run(prompt, repo_url, branch=branch, runtime=runtime, run_id=run_id)

    console.print(f"[bold]Run:[/bold] {record.workflow_id}")
    console.print("[bold]Workflow:[/bold] ", format_workflow_status(record.status))
    if record.status == "failed":
        console.print(f"[red]Error: {record.error}[/red]")
        console.print(f"Resume with: phaseflow worker resume {record.workflow_id}")
        raise typer.Exit(1)

    outcome = record.output
    if outcome and outcome.get("status") == "failed":
        console.print(
            f"[red]Run failed in {outcome['failedPhase']} ({outcome['reason']}): "
            f"{outcome['message']}[/red]"
        )
        raise typer.Exit(1)
    if outcome:
        console.print(f"[green]Pull request: {outcome['prUrl']}[/green]")
        return

    show_pending_requests(console, pipeline.services.store.list_pending_approvals(record.workflow_id))


@app.command("status")
def status_command(
    run_id: str = typer.Argument(..., help="Run to inspect"),
    show_output: Optional[str] = typer.Option(
        None, "--output", "-o", help="Print the stored output of this phase"
    ),
) -> None:
    """
    Show one run's phases, pending requests and outcome.

    Examples:
        phaseflow run status 3f2a...
        phaseflow run status 3f2a... --output judging
    """
    from phaseflow.durable.journal import StepJournal
    from phaseflow.store import StoreError

    config = get_config_or_default()
    store = get_store(config)
    try:
        run = store.get_feature_run(run_id)
    except StoreError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    results = store.list_phase_results(run_id)
    if show_output:
        matching = [r for r in results if r.phase.value == show_output]
        if not matching:
            console.print(f"[red]Error: No {show_output} phase for run {run_id}[/red]")
            raise typer.Exit(1)
        console.print(format_output(matching[0].output))
        return

    workflow = StepJournal(config.db_path).get_workflow(run_id)
    outcome = workflow.output if workflow is not None else None
    show_run_detail(console, run, results, store.list_pending_approvals(run_id), outcome)
    if workflow is not None and workflow.status == "failed":
        console.print(f"[red]Workflow error: {workflow.error}[/red]")
        console.print(f"Resume with: phaseflow worker resume {run_id}")


@app.command("events")
def events_command(
    run_id: str = typer.Argument(..., help="Run to show events for"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum events to show"),
) -> None:
    """
    Show the event log of one run.

    Examples:
        phaseflow run events 3f2a...
    """
    from phaseflow.events.persistence import EventPersistence

    config = get_config_or_default()
    events = EventPersistence(config.events_path).get_by_run(run_id, limit=limit)
    if not events:
        console.print(f"[dim]No events for run {run_id}.[/dim]")
        return
    for event in sorted(events, key=lambda e: e.timestamp):
        console.print(str(event), markup=False)


@app.command("list")
def list_command(
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum runs to show"),
) -> None:
    """
    List feature runs, newest first.

    Examples:
        phaseflow run list
        phaseflow run list --limit 5
    """
    config = get_config_or_default()
    show_runs(console, get_store(config).list_feature_runs(limit))
