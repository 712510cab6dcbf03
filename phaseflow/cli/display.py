"""Display helpers and formatters for the CLI.

Contains Rich formatting utilities for run phases, phase results and
pending human requests.
This module should NOT import from run/cta/worker modules to avoid circular imports.
"""
from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from phaseflow.models import PhaseStatus, RunPhase

if TYPE_CHECKING:
    from phaseflow.models import ApprovalRequest, FeatureRun, PhaseResult

# Phase display names and colors
PHASE_DISPLAY: dict[RunPhase, tuple[str, str]] = {
    RunPhase.ANALYSIS: ("Analysis", "blue"),
    RunPhase.APPROACHES: ("Approaches", "blue"),
    RunPhase.JUDGING: ("Judging", "yellow"),
    RunPhase.IMPLEMENTATION: ("Implementation", "cyan bold"),
    RunPhase.PR: ("Pull Request", "cyan"),
    RunPhase.COMPLETED: ("Completed", "green bold"),
    RunPhase.FAILED: ("Failed", "red bold"),
}

STATUS_DISPLAY: dict[PhaseStatus, tuple[str, str]] = {
    PhaseStatus.RUNNING: ("Running", "yellow"),
    PhaseStatus.PASSED: ("Passed", "green"),
    PhaseStatus.FAILED: ("Failed", "red"),
}

WORKFLOW_STATUS_STYLE = {
    "running": "yellow",
    "suspended": "cyan",
    "completed": "green",
    "failed": "red",
}


def format_phase(phase: RunPhase) -> Text:
    """Format a run phase as colored text."""
    display_name, style = PHASE_DISPLAY.get(phase, (phase.value, "white"))
    return Text(display_name, style=style)


def format_status(status: PhaseStatus) -> Text:
    """Format a phase result status as colored text."""
    display_name, style = STATUS_DISPLAY.get(status, (status.value, "white"))
    return Text(display_name, style=style)


def format_workflow_status(status: str) -> Text:
    """Format a durable workflow status as colored text."""
    return Text(status, style=WORKFLOW_STATUS_STYLE.get(status, "white"))


def describe_request(request: dict[str, Any]) -> str:
    """One-line description of a human request."""
    if request["kind"] == "approval":
        return request["message"]
    if request["kind"] == "choice":
        options = ", ".join(f"{o['id']} ({o['label']})" for o in request["options"])
        return f"{request['prompt']} [{options}]"
    return request["prompt"]


def show_runs(console: Console, runs: list[FeatureRun]) -> None:
    """Show a table of feature runs."""
    if not runs:
        console.print("[dim]No feature runs yet.[/dim]")
        return

    table = Table(title="Feature Runs")
    table.add_column("Run", style="cyan")
    table.add_column("Phase")
    table.add_column("Repository")
    table.add_column("Prompt")
    table.add_column("Created", style="dim")
    for run in runs:
        prompt = run.prompt.split("\n")[0]
        if len(prompt) > 50:
            prompt = prompt[:47] + "..."
        table.add_row(run.id, format_phase(run.current_phase), run.repo_url, prompt, run.created_at[:19])
    console.print(table)


def show_pending_requests(console: Console, requests: list[ApprovalRequest]) -> None:
    """Show a table of requests awaiting a human response."""
    if not requests:
        console.print("[dim]No pending requests.[/dim]")
        return

    table = Table(title="Pending Requests")
    table.add_column("CTA", style="cyan")
    table.add_column("Run")
    table.add_column("Kind")
    table.add_column("Request")
    table.add_column("Requested", style="dim")
    for req in requests:
        table.add_row(
            req.id,
            req.run_id,
            req.kind.value,
            describe_request(req.request),
            req.requested_at[:19],
        )
    console.print(table)


def show_run_detail(
    console: Console,
    run: FeatureRun,
    results: list[PhaseResult],
    pending: list[ApprovalRequest],
    outcome: Optional[dict[str, Any]] = None,
) -> None:
    """Show one run with its phase results, pending requests and outcome."""
    lines = [
        f"[bold]Prompt:[/bold] {run.prompt}",
        f"[bold]Repository:[/bold] {run.repo_url} ({run.branch})",
        f"[bold]Environment:[/bold] {run.environment_id}",
        f"[bold]Memories:[/bold] {len(run.memories)}",
    ]
    if run.completed_at:
        lines.append(f"[bold]Finished:[/bold] {run.completed_at[:19]}")
    console.print(Panel(
        "\n".join(lines),
        title=f"Run {run.id}",
        subtitle=format_phase(run.current_phase),
    ))

    if results:
        table = Table(title="Phases")
        table.add_column("Phase")
        table.add_column("Status")
        table.add_column("Started", style="dim")
        table.add_column("Finished", style="dim")
        for result in results:
            table.add_row(
                format_phase(result.phase),
                format_status(result.status),
                result.started_at[:19],
                (result.completed_at or "-")[:19],
            )
        console.print(table)

    if pending:
        show_pending_requests(console, pending)

    if outcome:
        if outcome.get("status") == "completed":
            console.print(f"[green]Pull request: {outcome['prUrl']}[/green]")
        else:
            console.print(
                f"[red]Failed in {outcome.get('failedPhase')} "
                f"({outcome.get('reason')}): {outcome.get('message')}[/red]"
            )


def format_output(output: Any) -> str:
    """Pretty JSON for a phase output."""
    return json.dumps(output, indent=2)
