"""Common utilities and global state for the CLI.

Contains config path management, config loading and pipeline construction.
This module should NOT import from run/cta/worker modules to avoid circular imports.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from rich.console import Console

if TYPE_CHECKING:
    from phaseflow.config import PhaseflowConfig
    from phaseflow.pipeline import Pipeline
    from phaseflow.store import PipelineStore

# ============================================================================
# Global State
# ============================================================================

# Config file override (set via --config flag)
_config_path: Optional[str] = None

# Console singleton
_console: Optional[Console] = None


def get_config_path() -> Optional[str]:
    """Get the config file override if set."""
    return _config_path


def set_config_path(path: Optional[str]) -> None:
    """Set the config file override."""
    global _config_path
    _config_path = path


def get_console() -> Console:
    """Get or create the console singleton."""
    global _console
    if _console is None:
        _console = Console()
    return _console


# ============================================================================
# Config Helpers
# ============================================================================


def load_config_safe() -> Optional["PhaseflowConfig"]:
    """
    Load config, returning None if no config file exists.

    An explicit --config path that does not exist is still an error.
    """
    from phaseflow.config import ConfigError, load_config

    path = get_config_path()
    try:
        return load_config(path)
    except ConfigError:
        if path is not None:
            raise
        return None


def get_config_or_default() -> "PhaseflowConfig":
    """Get config or fall back to defaults rooted at the current directory."""
    config = load_config_safe()
    if config is not None:
        return config

    from phaseflow.config import PhaseflowConfig

    return PhaseflowConfig()


def get_store(config: "PhaseflowConfig") -> "PipelineStore":
    """Open the pipeline store for read-only commands."""
    from phaseflow.store import PipelineStore

    return PipelineStore.from_config(config)


def build_pipeline(config: "PhaseflowConfig") -> "Pipeline":
    """Build the pipeline with its default collaborators."""
    from phaseflow.pipeline import Pipeline

    return Pipeline.from_config(config)
