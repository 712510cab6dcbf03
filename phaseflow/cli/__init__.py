"""CLI package for phaseflow.

Modules:
    app.py      - Main Typer app, version callback, sub-app registration
    run.py      - Feature run commands (start, status, events, list)
    cta.py      - Human request commands (list, respond)
    worker.py   - Timeout sweeping, recovery and log commands (sweep, resume, logs)
    display.py  - Rich formatting utilities (format_phase, show_runs, etc.)
    common.py   - Shared helpers (get_console, get_config_or_default, build_pipeline)

Command Structure:
    phaseflow run start "Add dark mode" https://github.com/acme/web
    phaseflow cta respond <cta-id> --approve
    phaseflow worker sweep
"""
from phaseflow.cli.app import app, cli_main

__all__ = ["app", "cli_main"]
