"""
Persistence layer for phaseflow.

This module handles:
- SQLite storage of environments, feature runs, phase results,
  agent invocations and approval requests
- Idempotent creates keyed on caller-supplied ids (INSERT OR IGNORE),
  so replaying a step never duplicates a row
- Guarded terminal transitions (a phase result or approval request is
  terminated exactly once)
- Append-only memory records per run
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterator, Optional

from phaseflow.errors import ApprovalCorrelationError
from phaseflow.models import (
    AgentInvocation,
    ApprovalRequest,
    CtaKind,
    EnvironmentRecord,
    EnvironmentStatus,
    FeatureRun,
    MemoryRecord,
    PhaseResult,
    PhaseStatus,
    RunPhase,
    is_valid_transition,
    utc_now,
)
from phaseflow.utils.fs import ensure_dir

if TYPE_CHECKING:
    from phaseflow.config import PhaseflowConfig
    from phaseflow.logger import PipelineLogger


class StoreError(Exception):
    """Raised when a persistence operation fails or conflicts with stored state."""
    pass


class PhaseTransitionError(StoreError):
    """Raised when a run would move backward or skip a phase."""
    pass


SCHEMA = """
CREATE TABLE IF NOT EXISTS environments (
    id TEXT PRIMARY KEY,
    runtime TEXT NOT NULL,
    repo_url TEXT NOT NULL,
    branch TEXT NOT NULL,
    workspace TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    stopped_at TEXT
);

CREATE TABLE IF NOT EXISTS feature_runs (
    id TEXT PRIMARY KEY,
    prompt TEXT NOT NULL,
    environment_id TEXT NOT NULL,
    repo_url TEXT NOT NULL,
    branch TEXT NOT NULL,
    current_phase TEXT NOT NULL,
    memories TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS phase_results (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL,
    phase TEXT NOT NULL,
    status TEXT NOT NULL CHECK(status IN ('running', 'passed', 'failed')),
    output TEXT,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    UNIQUE(run_id, phase)
);

CREATE TABLE IF NOT EXISTS agent_invocations (
    id TEXT PRIMARY KEY,
    phase_result_id TEXT,
    parent_invocation_id TEXT,
    model TEXT NOT NULL,
    system_prompt TEXT NOT NULL,
    input_messages TEXT NOT NULL,
    finish_reason TEXT,
    output_text TEXT,
    usage TEXT NOT NULL DEFAULT '{}',
    steps TEXT NOT NULL DEFAULT '[]',
    started_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS approval_requests (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL,
    phase_result_id TEXT,
    tool_call_id TEXT,
    kind TEXT NOT NULL CHECK(kind IN ('approval', 'text', 'choice')),
    request TEXT NOT NULL,
    response TEXT,
    requested_at TEXT NOT NULL,
    responded_at TEXT,
    timed_out INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_phase_results_run ON phase_results(run_id);
CREATE INDEX IF NOT EXISTS idx_invocations_phase ON agent_invocations(phase_result_id);
CREATE INDEX IF NOT EXISTS idx_invocations_parent ON agent_invocations(parent_invocation_id);
CREATE INDEX IF NOT EXISTS idx_approvals_run ON approval_requests(run_id);
"""


def _dumps(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value, default=str)


def _loads(value: Optional[str]) -> Any:
    return None if value is None else json.loads(value)


class PipelineStore:
    """
    Idempotent CRUD over pipeline state.

    Every create is an insert-or-no-op keyed on the caller-supplied id, so a
    step that crashes after writing and is replayed leaves exactly one row.
    """

    def __init__(
        self,
        db_path: Path | str,
        logger: Optional[PipelineLogger] = None,
    ) -> None:
        """
        Initialize the store and create tables if needed.

        Args:
            db_path: Path to the sqlite database file.
            logger: Optional logger for recording operations.
        """
        self.db_path = Path(db_path)
        self._logger = logger
        ensure_dir(self.db_path.parent)
        self._init_schema()

    @classmethod
    def from_config(
        cls, config: PhaseflowConfig, logger: Optional[PipelineLogger] = None
    ) -> PipelineStore:
        """Create a store backed by the configured database."""
        return cls(config.db_path, logger)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success, always close."""
        try:
            conn = sqlite3.connect(self.db_path, timeout=30)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to open database {self.db_path}: {e}")
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        except sqlite3.Error as e:
            raise StoreError(f"Database operation failed: {e}")
        finally:
            conn.close()

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        with self._connect() as conn:
            conn.executescript(SCHEMA)

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "store"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    # =========================================================================
    # Environments
    # =========================================================================

    def create_environment_record(self, record: EnvironmentRecord) -> EnvironmentRecord:
        """Insert an environment record, or return the existing one."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO environments
                    (id, runtime, repo_url, branch, workspace, status, created_at, stopped_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id, record.runtime, record.repo_url, record.branch,
                    record.workspace, record.status.value, record.created_at, record.stopped_at,
                ),
            )
        self._log("environment_record_created", {"environment_id": record.id})
        return self.get_environment_record(record.id)

    def get_environment_record(self, environment_id: str) -> EnvironmentRecord:
        """Load an environment record. Raises StoreError if missing."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM environments WHERE id = ?", (environment_id,)
            ).fetchone()
        if row is None:
            raise StoreError(f"Environment not found: {environment_id}")
        return EnvironmentRecord.from_dict(dict(row))

    def stop_environment_record(self, environment_id: str) -> None:
        """Mark an environment stopped. Stopping twice is a no-op."""
        with self._connect() as conn:
            conn.execute(
                "UPDATE environments SET status = ?, stopped_at = ? WHERE id = ? AND status = ?",
                (EnvironmentStatus.STOPPED.value, utc_now(), environment_id,
                 EnvironmentStatus.RUNNING.value),
            )
        self._log("environment_record_stopped", {"environment_id": environment_id})

    # =========================================================================
    # Feature runs
    # =========================================================================

    def _row_to_run(self, row: sqlite3.Row) -> FeatureRun:
        data = dict(row)
        data["memories"] = _loads(data["memories"]) or []
        return FeatureRun.from_dict(data)

    def create_feature_run(self, run: FeatureRun) -> FeatureRun:
        """
        Insert a feature run, or return the existing row with the same id.

        Args:
            run: The run to create. Memories always start empty.

        Returns:
            The stored run.
        """
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO feature_runs
                    (id, prompt, environment_id, repo_url, branch, current_phase,
                     memories, created_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, '[]', ?, NULL)
                """,
                (
                    run.id, run.prompt, run.environment_id, run.repo_url, run.branch,
                    run.current_phase.value, run.created_at,
                ),
            )
        self._log("feature_run_created", {"run_id": run.id})
        return self.get_feature_run(run.id)

    def get_feature_run(self, run_id: str) -> FeatureRun:
        """Load a feature run. Raises StoreError if missing."""
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM feature_runs WHERE id = ?", (run_id,)).fetchone()
        if row is None:
            raise StoreError(f"Feature run not found: {run_id}")
        return self._row_to_run(row)

    def list_feature_runs(self, limit: int = 50) -> list[FeatureRun]:
        """List runs, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM feature_runs ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [self._row_to_run(r) for r in rows]

    def update_feature_run_phase(self, run_id: str, phase: RunPhase) -> None:
        """
        Advance a run to ``phase``.

        Re-applying the phase the run is already in is a no-op, which makes
        the call safe to replay.

        Raises:
            PhaseTransitionError: If the move is backward, skips a phase, or
                leaves a terminal phase.
        """
        run = self.get_feature_run(run_id)
        if run.current_phase == phase:
            return
        if not is_valid_transition(run.current_phase, phase):
            raise PhaseTransitionError(
                f"Run {run_id} cannot move from {run.current_phase.value} to {phase.value}"
            )
        completed_at = utc_now() if phase in (RunPhase.COMPLETED, RunPhase.FAILED) else None
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE feature_runs SET current_phase = ?, completed_at = COALESCE(?, completed_at)
                WHERE id = ? AND current_phase = ?
                """,
                (phase.value, completed_at, run_id, run.current_phase.value),
            )
        self._log("feature_run_phase_updated", {
            "run_id": run_id,
            "from": run.current_phase.value,
            "to": phase.value,
        })

    def complete_feature_run(self, run_id: str) -> None:
        """Mark a run completed (only valid from the pr phase)."""
        self.update_feature_run_phase(run_id, RunPhase.COMPLETED)

    def fail_feature_run(self, run_id: str) -> None:
        """Mark a run failed from any non-terminal phase."""
        self.update_feature_run_phase(run_id, RunPhase.FAILED)

    def append_feature_run_memories(self, run_id: str, memories: list[MemoryRecord]) -> None:
        """
        Append memory records to a run.

        Existing records are never rewritten or reordered.
        """
        if not memories:
            return
        with self._connect() as conn:
            row = conn.execute(
                "SELECT memories FROM feature_runs WHERE id = ?", (run_id,)
            ).fetchone()
            if row is None:
                raise StoreError(f"Feature run not found: {run_id}")
            existing = _loads(row["memories"]) or []
            existing.extend(m.to_dict() for m in memories)
            conn.execute(
                "UPDATE feature_runs SET memories = ? WHERE id = ?",
                (_dumps(existing), run_id),
            )
        self._log("feature_run_memories_appended", {"run_id": run_id, "count": len(memories)})

    def read_feature_run_memories(self, run_id: str) -> list[MemoryRecord]:
        """Return the run's memory records in insertion order."""
        return self.get_feature_run(run_id).memories

    # =========================================================================
    # Phase results
    # =========================================================================

    def _row_to_phase_result(self, row: sqlite3.Row) -> PhaseResult:
        data = dict(row)
        data["output"] = _loads(data["output"])
        return PhaseResult.from_dict(data)

    def create_phase_result(self, phase_result_id: str, run_id: str, phase: RunPhase) -> PhaseResult:
        """
        Create the running record for (run, phase).

        Exactly one row exists per (run, phase); if one already exists it is
        returned unchanged, whatever its id.
        """
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO phase_results (id, run_id, phase, status, started_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (phase_result_id, run_id, phase.value, PhaseStatus.RUNNING.value, utc_now()),
            )
            row = conn.execute(
                "SELECT * FROM phase_results WHERE run_id = ? AND phase = ?",
                (run_id, phase.value),
            ).fetchone()
        self._log("phase_result_created", {"run_id": run_id, "phase": phase.value})
        return self._row_to_phase_result(row)

    def get_phase_result(self, phase_result_id: str) -> PhaseResult:
        """Load a phase result. Raises StoreError if missing."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM phase_results WHERE id = ?", (phase_result_id,)
            ).fetchone()
        if row is None:
            raise StoreError(f"Phase result not found: {phase_result_id}")
        return self._row_to_phase_result(row)

    def list_phase_results(self, run_id: str) -> list[PhaseResult]:
        """List a run's phase results in start order."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM phase_results WHERE run_id = ? ORDER BY started_at, rowid",
                (run_id,),
            ).fetchall()
        return [self._row_to_phase_result(r) for r in rows]

    def _terminate_phase_result(
        self,
        phase_result_id: str,
        status: PhaseStatus,
        output: Any,
        from_statuses: tuple[PhaseStatus, ...] = (PhaseStatus.RUNNING,),
    ) -> None:
        placeholders = ", ".join("?" for _ in from_statuses)
        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE phase_results
                SET status = ?, output = COALESCE(?, output), completed_at = ?
                WHERE id = ? AND status IN ({placeholders})
                """,
                (status.value, _dumps(output), utc_now(), phase_result_id,
                 *(s.value for s in from_statuses)),
            )
            updated = cursor.rowcount
        if updated:
            self._log("phase_result_terminated", {
                "phase_result_id": phase_result_id,
                "status": status.value,
            })
            return

        current = self.get_phase_result(phase_result_id)
        if current.status != status:
            raise StoreError(
                f"Phase result {phase_result_id} is already {current.status.value}, "
                f"cannot mark {status.value}"
            )

    def pass_phase_result(self, phase_result_id: str, output: Any) -> None:
        """Mark a running phase result passed with its output."""
        self._terminate_phase_result(phase_result_id, PhaseStatus.PASSED, output)

    def fail_phase_result(self, phase_result_id: str, output: Any = None) -> None:
        """
        Mark a phase result failed, optionally attaching diagnostics.

        A passed result can still be failed when the human gate that follows
        it is rejected or expires; its output is kept unless ``output`` is
        given. A failed result is final.
        """
        self._terminate_phase_result(
            phase_result_id,
            PhaseStatus.FAILED,
            output,
            from_statuses=(PhaseStatus.RUNNING, PhaseStatus.PASSED),
        )

    # =========================================================================
    # Agent invocations
    # =========================================================================

    def _row_to_invocation(self, row: sqlite3.Row) -> AgentInvocation:
        data = dict(row)
        data["input_messages"] = _loads(data["input_messages"]) or []
        data["usage"] = _loads(data["usage"]) or {}
        data["steps"] = _loads(data["steps"]) or []
        return AgentInvocation.from_dict(data)

    def create_agent_invocation(self, invocation: AgentInvocation) -> AgentInvocation:
        """Insert an agent invocation, or return the existing one."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO agent_invocations
                    (id, phase_result_id, parent_invocation_id, model, system_prompt,
                     input_messages, started_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    invocation.id, invocation.phase_result_id, invocation.parent_invocation_id,
                    invocation.model, invocation.system_prompt,
                    _dumps(invocation.input_messages), invocation.started_at,
                ),
            )
        self._log("agent_invocation_created", {
            "invocation_id": invocation.id,
            "parent_invocation_id": invocation.parent_invocation_id,
        }, level="debug")
        return self.get_agent_invocation(invocation.id)

    def complete_agent_invocation(
        self,
        invocation_id: str,
        finish_reason: str,
        output_text: str,
        usage: dict[str, int],
        steps: list[dict[str, Any]],
    ) -> None:
        """Record how an agent stopped. Only the first completion is kept."""
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE agent_invocations
                SET finish_reason = ?, output_text = ?, usage = ?, steps = ?, completed_at = ?
                WHERE id = ? AND completed_at IS NULL
                """,
                (finish_reason, output_text, _dumps(usage), _dumps(steps), utc_now(),
                 invocation_id),
            )
        self._log("agent_invocation_completed", {
            "invocation_id": invocation_id,
            "finish_reason": finish_reason,
        }, level="debug")

    def get_agent_invocation(self, invocation_id: str) -> AgentInvocation:
        """Load an agent invocation. Raises StoreError if missing."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM agent_invocations WHERE id = ?", (invocation_id,)
            ).fetchone()
        if row is None:
            raise StoreError(f"Agent invocation not found: {invocation_id}")
        return self._row_to_invocation(row)

    def list_agent_invocations(
        self,
        phase_result_id: Optional[str] = None,
        parent_invocation_id: Optional[str] = None,
    ) -> list[AgentInvocation]:
        """List invocations filtered by owning phase result and/or parent."""
        query = "SELECT * FROM agent_invocations WHERE 1 = 1"
        params: list[Any] = []
        if phase_result_id is not None:
            query += " AND phase_result_id = ?"
            params.append(phase_result_id)
        if parent_invocation_id is not None:
            query += " AND parent_invocation_id = ?"
            params.append(parent_invocation_id)
        query += " ORDER BY started_at, rowid"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_invocation(r) for r in rows]

    # =========================================================================
    # Approval requests
    # =========================================================================

    def _row_to_approval(self, row: sqlite3.Row) -> ApprovalRequest:
        data = dict(row)
        data["request"] = _loads(data["request"])
        data["response"] = _loads(data["response"])
        return ApprovalRequest.from_dict(data)

    def create_approval_request(self, request: ApprovalRequest) -> ApprovalRequest:
        """Insert an approval request, or return the existing one."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO approval_requests
                    (id, run_id, phase_result_id, tool_call_id, kind, request, requested_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    request.id, request.run_id, request.phase_result_id, request.tool_call_id,
                    request.kind.value, _dumps(request.request), request.requested_at,
                ),
            )
        self._log("approval_request_created", {"cta_id": request.id, "kind": request.kind.value})
        return self.get_approval_request(request.id)

    def get_approval_request(self, cta_id: str) -> Optional[ApprovalRequest]:
        """Load an approval request, or None if no request has this id."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM approval_requests WHERE id = ?", (cta_id,)
            ).fetchone()
        return None if row is None else self._row_to_approval(row)

    def list_approval_requests(
        self, run_id: Optional[str] = None, pending_only: bool = False
    ) -> list[ApprovalRequest]:
        """List approval requests, oldest first."""
        query = "SELECT * FROM approval_requests WHERE 1 = 1"
        params: list[Any] = []
        if run_id is not None:
            query += " AND run_id = ?"
            params.append(run_id)
        if pending_only:
            query += " AND response IS NULL AND timed_out = 0"
        query += " ORDER BY requested_at, rowid"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_approval(r) for r in rows]

    def list_pending_approvals(self, run_id: Optional[str] = None) -> list[ApprovalRequest]:
        """List requests still awaiting a response."""
        return self.list_approval_requests(run_id=run_id, pending_only=True)

    def complete_approval_request(
        self, cta_id: str, kind: CtaKind, response: dict[str, Any]
    ) -> ApprovalRequest:
        """
        Record the response to a pending request.

        Raises:
            ApprovalCorrelationError: If no request has this id, the kinds
                differ, or the request was already answered or timed out.
        """
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM approval_requests WHERE id = ?", (cta_id,)
            ).fetchone()
            if row is None:
                raise ApprovalCorrelationError(f"No approval request with id {cta_id}")
            existing = self._row_to_approval(row)
            if existing.kind != kind:
                raise ApprovalCorrelationError(
                    f"Request {cta_id} expects a {existing.kind.value} response, got {kind.value}"
                )
            if existing.timed_out:
                raise ApprovalCorrelationError(f"Request {cta_id} already timed out")
            if existing.response is not None:
                raise ApprovalCorrelationError(f"Request {cta_id} was already answered")
            conn.execute(
                """
                UPDATE approval_requests SET response = ?, responded_at = ?
                WHERE id = ? AND response IS NULL AND timed_out = 0
                """,
                (_dumps(response), utc_now(), cta_id),
            )
        self._log("approval_request_completed", {"cta_id": cta_id, "kind": kind.value})
        return self.get_approval_request(cta_id)

    def timeout_approval_request(self, cta_id: str) -> bool:
        """
        Flag a pending request as timed out.

        Returns:
            True if the flag was set, False if the request was not pending.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE approval_requests SET timed_out = 1
                WHERE id = ? AND response IS NULL AND timed_out = 0
                """,
                (cta_id,),
            )
            updated = cursor.rowcount > 0
        self._log("approval_request_timed_out", {"cta_id": cta_id, "updated": updated}, level="warn")
        return updated
