"""
Execution environments for phaseflow.

This module provides:
- The environment and provider interfaces
- A local git-clone implementation
- Filesystem and shell tools for agents
"""

from phaseflow.environment.base import (
    CommandResult,
    EnvironmentProvider,
    ExecutionEnvironment,
    ExecutionEnvironmentError,
    FileNotFoundInEnvironment,
    InvalidPathError,
)
from phaseflow.environment.local import LocalEnvironment, LocalEnvironmentProvider

__all__ = [
    "CommandResult",
    "EnvironmentProvider",
    "ExecutionEnvironment",
    "ExecutionEnvironmentError",
    "FileNotFoundInEnvironment",
    "InvalidPathError",
    "LocalEnvironment",
    "LocalEnvironmentProvider",
]
