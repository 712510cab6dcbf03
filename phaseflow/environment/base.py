"""
Execution environment interface.

An execution environment is the isolated workspace one run's agents work
in. It runs shell commands, reads and writes files, and resets a branch to
a reference. Providers create environments for runs and release them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from phaseflow.models import EnvironmentRecord


class ExecutionEnvironmentError(Exception):
    """
    Raised when the environment itself fails (unreachable, command could not
    be started, I/O failure). A command exiting non-zero is not an error.
    """
    pass


class FileNotFoundInEnvironment(ExecutionEnvironmentError):
    """Raised when a file read targets a missing path."""
    pass


class InvalidPathError(ExecutionEnvironmentError):
    """Raised when a path points outside the workspace."""
    pass


@dataclass
class CommandResult:
    """Outcome of one shell command."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def combined_output(self) -> str:
        """stdout and stderr joined, skipping empty streams."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


class ExecutionEnvironment(Protocol):
    """Operations agents and phases perform against a workspace."""

    id: str

    def run_command(self, command: str, timeout: Optional[int] = None) -> CommandResult:
        """Run a shell command in the workspace root."""
        ...

    def read_file(self, path: str) -> bytes:
        """Read a file. Raises FileNotFoundInEnvironment if missing."""
        ...

    def write_file(self, path: str, content: str | bytes) -> int:
        """Write a file, creating parent directories. Returns bytes written."""
        ...

    def file_exists(self, path: str) -> bool:
        """Check whether a regular file exists."""
        ...

    def reset_branch(self, branch: str, ref: Optional[str] = None) -> None:
        """
        Point ``branch`` at ``ref`` and check it out.

        With ``ref`` every change in the working tree is discarded first, so
        the branch matches ``ref`` exactly. Without it the branch is created
        from the current HEAD.
        """
        ...


class EnvironmentProvider(Protocol):
    """Creates, looks up and releases environments."""

    def provision(
        self, environment_id: str, repo_url: str, branch: str, runtime: str
    ) -> EnvironmentRecord:
        """Create the environment (idempotent on ``environment_id``)."""
        ...

    def connect(self, environment_id: str) -> ExecutionEnvironment:
        """Return a handle to a provisioned environment."""
        ...

    def release(self, environment_id: str) -> None:
        """Tear the environment down. Releasing twice is a no-op."""
        ...
