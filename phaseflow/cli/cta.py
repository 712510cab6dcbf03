"""
CLI commands for human requests.

Provides the operator side of the approval protocol:
- list: Show requests awaiting a response
- respond: Answer a request and resume the run waiting on it
"""

from __future__ import annotations

from typing import Any, Optional

import typer
from rich.console import Console

from phaseflow.cli.common import build_pipeline, get_config_or_default, get_console, get_store
from phaseflow.cli.display import format_workflow_status, show_pending_requests

# Create sub-app for cta commands
app = typer.Typer(
    name="cta",
    help="Human request commands",
    no_args_is_help=True,
)

console: Console = get_console()


def build_response(
    cta_id: str,
    kind: str,
    approve: bool,
    reject: bool,
    reason: Optional[str],
    text: Optional[str],
    choice: Optional[str],
) -> dict[str, Any]:
    """
    Build the response event for a request of ``kind`` from the CLI flags.

    Raises:
        typer.BadParameter: If the flags do not fit the request kind.
    """
    if kind == "approval":
        if approve == reject:
            raise typer.BadParameter("Approval requests need exactly one of --approve or --reject")
        response: dict[str, Any] = {"ctaId": cta_id, "kind": kind, "approved": approve}
        if reason:
            response["reason"] = reason
        return response
    if kind == "text":
        if not text:
            raise typer.BadParameter("Text requests need --text")
        return {"ctaId": cta_id, "kind": kind, "text": text}
    if not choice:
        raise typer.BadParameter("Choice requests need --choice")
    return {"ctaId": cta_id, "kind": kind, "selectedId": choice}


@app.command("list")
def list_command(
    run_id: Optional[str] = typer.Option(None, "--run", "-r", help="Only requests of this run"),
) -> None:
    """
    List requests awaiting a response.

    Examples:
        phaseflow cta list
        phaseflow cta list --run 3f2a...
    """
    config = get_config_or_default()
    show_pending_requests(console, get_store(config).list_pending_approvals(run_id))


@app.command("respond")
def respond_command(
    cta_id: str = typer.Argument(..., help="Request to answer"),
    approve: bool = typer.Option(False, "--approve", help="Approve an approval request"),
    reject: bool = typer.Option(False, "--reject", help="Reject an approval request"),
    reason: Optional[str] = typer.Option(None, "--reason", help="Reason for a rejection"),
    text: Optional[str] = typer.Option(None, "--text", "-t", help="Answer to a text request"),
    choice: Optional[str] = typer.Option(None, "--choice", "-c", help="Option id for a choice"),
) -> None:
    """
    Answer a pending request and resume its run.

    Examples:
        phaseflow cta respond 9c1e... --approve
        phaseflow cta respond 9c1e... --reject --reason "Too invasive"
        phaseflow cta respond 9c1e... --choice approach-2
        phaseflow cta respond 9c1e... --text "Use the v2 API"
    """
    from phaseflow.durable.engine import EventAlreadyDelivered
    from phaseflow.errors import ApprovalCorrelationError
    from phaseflow.schemas import SchemaValidationError

    config = get_config_or_default()
    pipeline = build_pipeline(config)
    request = pipeline.services.store.get_approval_request(cta_id)
    if request is None:
        console.print(f"[red]Error: No request with id {cta_id}[/red]")
        raise typer.Exit(1)
    if not request.pending:
        console.print(f"[red]Error: Request {cta_id} is no longer pending[/red]")
        raise typer.Exit(1)

    try:
        response = build_response(cta_id, request.kind.value, approve, reject, reason, text, choice)
        records = pipeline.respond(response)
    except (typer.BadParameter, ApprovalCorrelationError, EventAlreadyDelivered,
            SchemaValidationError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]Response recorded for {cta_id}[/green]")
    for record in records:
        console.print(f"Run {record.workflow_id}: ", format_workflow_status(record.status))
        outcome = record.output
        if outcome and outcome.get("status") == "completed":
            console.print(f"[green]Pull request: {outcome['prUrl']}[/green]")
        elif outcome:
            console.print(
                f"[yellow]Run failed in {outcome['failedPhase']} ({outcome['reason']}): "
                f"{outcome['message']}[/yellow]"
            )
        elif record.status == "failed":
            console.print(f"[red]Workflow error: {record.error}[/red]")
    pending = pipeline.services.store.list_pending_approvals(request.run_id)
    if pending:
        show_pending_requests(console, pending)
