"""
Local git-clone execution environment.

Each environment is a fresh clone of the target repository under the
workspaces directory. Commands run with subprocess in the clone root.
"""

from __future__ import annotations

import shlex
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from phaseflow.environment.base import (
    CommandResult,
    ExecutionEnvironmentError,
    FileNotFoundInEnvironment,
    InvalidPathError,
)
from phaseflow.models import EnvironmentRecord, EnvironmentStatus
from phaseflow.utils.fs import FileSystemError, ensure_dir, read_bytes, remove_dir, safe_write

if TYPE_CHECKING:
    from phaseflow.config import PhaseflowConfig
    from phaseflow.logger import PipelineLogger
    from phaseflow.store import PipelineStore


class LocalEnvironment:
    """An execution environment backed by a local directory."""

    def __init__(
        self,
        environment_id: str,
        workspace: Path | str,
        command_timeout: int = 600,
        logger: Optional[PipelineLogger] = None,
    ) -> None:
        self.id = environment_id
        self.workspace = Path(workspace).resolve()
        self.command_timeout = command_timeout
        self._logger = logger

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "local_environment", "environment_id": self.id}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _resolve(self, path: str) -> Path:
        """Resolve a workspace path, refusing anything outside the workspace."""
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.workspace / candidate
        resolved = candidate.resolve()
        if resolved != self.workspace and self.workspace not in resolved.parents:
            raise InvalidPathError(f"Path escapes the workspace: {path}")
        return resolved

    def run_command(self, command: str, timeout: Optional[int] = None) -> CommandResult:
        """
        Run a shell command in the workspace.

        A non-zero exit is returned, not raised. A timeout is reported as exit
        code 124 with whatever output was captured.

        Raises:
            ExecutionEnvironmentError: If the command cannot be started.
        """
        timeout_seconds = timeout or self.command_timeout
        self._log("command_start", {"command": command[:200], "timeout": timeout_seconds},
                  level="debug")
        try:
            proc = subprocess.run(
                ["bash", "-c", command],
                capture_output=True,
                text=True,
                cwd=self.workspace,
                timeout=timeout_seconds,
            )
        except subprocess.TimeoutExpired as e:
            self._log("command_timeout", {"command": command[:200]}, level="warn")
            return CommandResult(
                exit_code=124,
                stdout=e.stdout.decode(errors="replace") if isinstance(e.stdout, bytes) else (e.stdout or ""),
                stderr=f"Command timed out after {timeout_seconds}s",
            )
        except OSError as e:
            raise ExecutionEnvironmentError(f"Failed to run command: {e}")

        self._log("command_complete", {"command": command[:200], "exit_code": proc.returncode},
                  level="debug")
        return CommandResult(exit_code=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)

    def read_file(self, path: str) -> bytes:
        target = self._resolve(path)
        if not target.is_file():
            raise FileNotFoundInEnvironment(f"not found: {path}")
        try:
            return read_bytes(target)
        except FileSystemError as e:
            raise ExecutionEnvironmentError(str(e))

    def write_file(self, path: str, content: str | bytes) -> int:
        target = self._resolve(path)
        try:
            return safe_write(target, content)
        except FileSystemError as e:
            raise ExecutionEnvironmentError(str(e))

    def file_exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def reset_branch(self, branch: str, ref: Optional[str] = None) -> None:
        """
        Check out ``branch``, optionally forcing it to ``ref``.

        Raises:
            ExecutionEnvironmentError: If git refuses.
        """
        if ref is None:
            command = f"git checkout -B {shlex.quote(branch)}"
        else:
            command = (
                "git reset --hard && git clean -fd && "
                f"git checkout -B {shlex.quote(branch)} {shlex.quote(ref)}"
            )
        result = self.run_command(command)
        if not result.ok:
            raise ExecutionEnvironmentError(
                f"Failed to reset branch {branch} to {ref or 'HEAD'}: {result.combined_output}"
            )
        self._log("branch_reset", {"branch": branch, "ref": ref})


class LocalEnvironmentProvider:
    """
    Provides one git clone per run under ``<data_dir>/workspaces``.

    Environment records are kept in the pipeline store.
    """

    def __init__(
        self,
        config: PhaseflowConfig,
        store: PipelineStore,
        logger: Optional[PipelineLogger] = None,
    ) -> None:
        self.config = config
        self.store = store
        self._logger = logger

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "environment_provider"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def provision(
        self, environment_id: str, repo_url: str, branch: str, runtime: str
    ) -> EnvironmentRecord:
        """
        Clone ``repo_url`` at ``branch`` into a fresh workspace.

        Raises:
            ExecutionEnvironmentError: If the clone fails.
        """
        workspace = self.config.workspaces_path / environment_id
        if not (workspace / ".git").exists():
            ensure_dir(workspace.parent)
            remove_dir(workspace)
            proc = subprocess.run(
                ["git", "clone", "--branch", branch, repo_url, str(workspace)],
                capture_output=True,
                text=True,
                timeout=self.config.environment.command_timeout_seconds,
            )
            if proc.returncode != 0:
                self._log("clone_failed", {"repo_url": repo_url, "stderr": proc.stderr[:500]},
                          level="error")
                raise ExecutionEnvironmentError(
                    f"git clone of {repo_url} ({branch}) failed: {proc.stderr.strip()}"
                )

        record = self.store.create_environment_record(EnvironmentRecord(
            id=environment_id,
            runtime=runtime,
            repo_url=repo_url,
            branch=branch,
            workspace=str(workspace),
        ))
        self._log("environment_provisioned", {"environment_id": environment_id, "runtime": runtime})
        return record

    def connect(self, environment_id: str) -> LocalEnvironment:
        record = self.store.get_environment_record(environment_id)
        if record.status != EnvironmentStatus.RUNNING:
            raise ExecutionEnvironmentError(f"Environment {environment_id} has been released")
        return LocalEnvironment(
            environment_id,
            record.workspace,
            command_timeout=self.config.environment.command_timeout_seconds,
            logger=self._logger,
        )

    def release(self, environment_id: str) -> None:
        record = self.store.get_environment_record(environment_id)
        remove_dir(Path(record.workspace))
        self.store.stop_environment_record(environment_id)
        self._log("environment_released", {"environment_id": environment_id})
