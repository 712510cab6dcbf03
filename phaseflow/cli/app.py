"""Main Typer app definition and routing.

This is the canonical entry point for the CLI. The app, callback, and
sub-app registrations are all defined here.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from phaseflow import __version__
from phaseflow.cli.common import get_console, set_config_path

# Create Typer app
app = typer.Typer(
    name="phaseflow",
    help="Durable, human-gated feature pipeline",
    add_completion=False,
)

# Rich console for output - use singleton from common module
console = get_console()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"phaseflow version {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config.yaml (default: ./config.yaml)",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    Phaseflow - feature requests to pull requests, one approved phase at a time.

    Runs analysis, approach generation, judging and implementation with a
    human gate after each, then opens a pull request.
    """
    if config:
        if not Path(config).is_file():
            console.print(f"[red]Error: Config file not found: {config}[/red]")
            raise typer.Exit(1)
        set_config_path(config)

    # If no subcommand and no --help, show help
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(0)


# =========================================================================
# Sub-App Registration
# =========================================================================

from phaseflow.cli.run import app as run_app  # noqa: E402

app.add_typer(run_app, name="run")

from phaseflow.cli.cta import app as cta_app  # noqa: E402

app.add_typer(cta_app, name="cta")

from phaseflow.cli.worker import app as worker_app  # noqa: E402

app.add_typer(worker_app, name="worker")


# =========================================================================
# Entry Point
# =========================================================================


def cli_main() -> None:
    """Entry point for the CLI."""
    app()


__all__ = ["app", "cli_main"]
