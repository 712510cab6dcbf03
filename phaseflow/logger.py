"""
Structured JSONL logging for phaseflow.

Entries written while a run is in scope go to that run's own file, which
covers the whole run however many days it spends waiting on people.
Everything else (engine housekeeping, CLI commands, timeout sweeps) goes to
a daily system log.

    <data_dir>/logs/pipeline-YYYY-MM-DD.jsonl
    <data_dir>/logs/runs/<run_id>.jsonl
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from phaseflow.config import PhaseflowConfig, get_config

SYSTEM_LOG = "pipeline"
RUNS_DIR = "runs"


class LogLevel:
    """Log level constants."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


def _today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


class PipelineLogger:
    """
    JSONL event logger routing entries by run.

    Each entry is a JSON object with ``timestamp``, ``level``, ``event_type``
    and ``data``, plus ``run_id`` and ``phase`` when logged inside
    ``run_context`` / ``phase_context``.
    """

    def __init__(self, config: Optional[PhaseflowConfig] = None, name: str = SYSTEM_LOG) -> None:
        """
        Args:
            config: Optional config to use. If not provided, loads from config.yaml.
            name: Prefix of the daily system log files.
        """
        self.name = name
        self._config = config
        self._run_id: Optional[str] = None
        self._phase: Optional[str] = None

    @property
    def config(self) -> PhaseflowConfig:
        """Get configuration (lazy load)."""
        if self._config is None:
            self._config = get_config()
        return self._config

    @property
    def run_id(self) -> Optional[str]:
        """Run currently in scope, if any."""
        return self._run_id

    def run_log_path(self, run_id: str) -> Path:
        return self.config.logs_path / RUNS_DIR / f"{run_id}.jsonl"

    def system_log_path(self, date: Optional[str] = None) -> Path:
        return self.config.logs_path / f"{self.name}-{date or _today()}.jsonl"

    def log(
        self,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        level: str = LogLevel.INFO,
    ) -> None:
        """
        Log an event to the run in scope, or to the system log.

        Args:
            event_type: Type of event (e.g., "phase_started", "cta_emitted").
            data: Additional data to include in the log entry.
            level: Log level (debug, info, warn, error).
        """
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": level,
            "event_type": event_type,
            "data": data or {},
        }
        if self._run_id:
            entry["run_id"] = self._run_id
            path = self.run_log_path(self._run_id)
        else:
            path = self.system_log_path()
        if self._phase:
            entry["phase"] = self._phase

        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a") as f:
            f.write(json.dumps(entry, default=str) + "\n")

    def debug(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.DEBUG)

    def info(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.INFO)

    def warn(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.WARN)

    def error(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        self.log(event_type, data, LogLevel.ERROR)

    @contextmanager
    def run_context(self, run_id: str) -> Iterator[PipelineLogger]:
        """
        Route entries written inside the block to ``run_id``'s log.

        Example:
            with logger.run_context("run-1") as log:
                log.info("run_started")
        """
        previous = self._run_id
        self._run_id = run_id
        try:
            yield self
        finally:
            self._run_id = previous

    @contextmanager
    def phase_context(self, phase: str) -> Iterator[PipelineLogger]:
        """Tag entries written inside the block with ``phase``."""
        previous = self._phase
        self._phase = phase
        try:
            yield self
        finally:
            self._phase = previous

    def list_runs(self) -> list[str]:
        """Runs that have a log, most recently written first."""
        runs_dir = self.config.logs_path / RUNS_DIR
        if not runs_dir.exists():
            return []
        paths = sorted(runs_dir.glob("*.jsonl"), key=lambda p: p.stat().st_mtime, reverse=True)
        return [p.stem for p in paths]

    def read_logs(
        self,
        run_id: Optional[str] = None,
        date: Optional[str] = None,
        level: Optional[str] = None,
        event_type: Optional[str] = None,
        phase: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Read log entries with optional filtering.

        Args:
            run_id: Read this run's log. Otherwise reads the system log.
            date: Day (YYYY-MM-DD) of the system log to read. Defaults to today.
                Ignored when ``run_id`` is given.
            level: Filter by log level.
            event_type: Filter by event type.
            phase: Filter by phase.
            limit: Maximum number of entries to return.

        Returns:
            List of log entries matching the filters.
        """
        log_path = self.run_log_path(run_id) if run_id else self.system_log_path(date)
        if not log_path.exists():
            return []

        entries = []
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue

                if level and entry.get("level") != level:
                    continue
                if event_type and entry.get("event_type") != event_type:
                    continue
                if phase and entry.get("phase") != phase:
                    continue

                entries.append(entry)
                if limit and len(entries) >= limit:
                    break

        return entries


_logger_cache: dict[str, PipelineLogger] = {}


def get_logger(config: Optional[PhaseflowConfig] = None, name: str = SYSTEM_LOG) -> PipelineLogger:
    """Get or create the shared logger writing under ``name``."""
    if name not in _logger_cache:
        _logger_cache[name] = PipelineLogger(config, name)
    return _logger_cache[name]


def clear_logger_cache() -> None:
    """Clear the logger cache. Useful for testing."""
    _logger_cache.clear()
