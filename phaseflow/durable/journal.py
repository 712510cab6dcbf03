"""
Write-ahead journal for durable workflows.

This module handles:
- Workflow records (running / suspended / completed / failed)
- Memoised step outcomes keyed by (workflow_id, step_name)
- Pending waits on correlated external events, with deadlines
- The inbox of delivered events (first write wins) and the outbox of
  emitted events

The journal lives in the same sqlite database as the pipeline store.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional

from phaseflow.models import utc_now
from phaseflow.utils.fs import ensure_dir


class JournalError(Exception):
    """Raised when the journal cannot be read or written."""
    pass


class WorkflowStatus:
    """Workflow status constants."""
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus:
    """Step status constants."""
    COMPLETED = "completed"
    FAILED = "failed"


SCHEMA = """
CREATE TABLE IF NOT EXISTS workflows (
    workflow_id TEXT PRIMARY KEY,
    function_name TEXT NOT NULL,
    input TEXT NOT NULL,
    status TEXT NOT NULL,
    output TEXT,
    error TEXT,
    parent_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS steps (
    workflow_id TEXT NOT NULL,
    step_name TEXT NOT NULL,
    kind TEXT NOT NULL,
    status TEXT NOT NULL,
    output TEXT,
    error TEXT,
    created_at TEXT NOT NULL,
    PRIMARY KEY (workflow_id, step_name)
);

CREATE TABLE IF NOT EXISTS waits (
    workflow_id TEXT NOT NULL,
    step_name TEXT NOT NULL,
    event_name TEXT NOT NULL,
    correlation_id TEXT NOT NULL,
    deadline TEXT NOT NULL,
    resolved INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (workflow_id, step_name)
);

CREATE TABLE IF NOT EXISTS inbox (
    event_name TEXT NOT NULL,
    correlation_id TEXT NOT NULL,
    payload TEXT,
    received_at TEXT NOT NULL,
    PRIMARY KEY (event_name, correlation_id)
);

CREATE TABLE IF NOT EXISTS outbox (
    id TEXT PRIMARY KEY,
    workflow_id TEXT NOT NULL,
    step_name TEXT NOT NULL,
    event_name TEXT NOT NULL,
    payload TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_waits_event ON waits(event_name, correlation_id);
CREATE INDEX IF NOT EXISTS idx_workflows_parent ON workflows(parent_id);
"""


@dataclass
class WorkflowRecord:
    """One workflow execution."""
    workflow_id: str
    function_name: str
    input: Any
    status: str
    output: Any = None
    error: Optional[str] = None
    parent_id: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class StepRecord:
    """A memoised step outcome."""
    workflow_id: str
    step_name: str
    kind: str
    status: str
    output: Any = None
    error: Optional[dict[str, Any]] = None


@dataclass
class WaitRecord:
    """A workflow step waiting on a correlated event."""
    workflow_id: str
    step_name: str
    event_name: str
    correlation_id: str
    deadline: datetime
    resolved: bool = False


@dataclass
class InboxRecord:
    """A delivered event."""
    event_name: str
    correlation_id: str
    payload: Any
    received_at: str


def _dumps(value: Any) -> str:
    return json.dumps(value)


def _loads(value: Optional[str]) -> Any:
    return None if value is None else json.loads(value)


class StepJournal:
    """
    Persistent journal backing the workflow engine.

    Completed step rows are never rewritten: writes use INSERT OR IGNORE so a
    replayed step that races a previous write keeps the first outcome.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        ensure_dir(self.db_path.parent)
        with self._connect() as conn:
            conn.executescript(SCHEMA)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=30)
        except sqlite3.Error as e:
            raise JournalError(f"Failed to open journal {self.db_path}: {e}")
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        except sqlite3.Error as e:
            raise JournalError(f"Journal operation failed: {e}")
        finally:
            conn.close()

    # Workflows

    def _row_to_workflow(self, row: sqlite3.Row) -> WorkflowRecord:
        return WorkflowRecord(
            workflow_id=row["workflow_id"],
            function_name=row["function_name"],
            input=_loads(row["input"]),
            status=row["status"],
            output=_loads(row["output"]),
            error=row["error"],
            parent_id=row["parent_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def create_workflow(
        self,
        workflow_id: str,
        function_name: str,
        data: Any,
        parent_id: Optional[str] = None,
    ) -> WorkflowRecord:
        """Insert a workflow record, or return the existing one."""
        now = utc_now()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO workflows
                    (workflow_id, function_name, input, status, parent_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (workflow_id, function_name, _dumps(data), WorkflowStatus.RUNNING,
                 parent_id, now, now),
            )
        return self.get_workflow(workflow_id)

    def get_workflow(self, workflow_id: str) -> Optional[WorkflowRecord]:
        """Load a workflow record, or None."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workflows WHERE workflow_id = ?", (workflow_id,)
            ).fetchone()
        return None if row is None else self._row_to_workflow(row)

    def list_workflows(
        self,
        status: Optional[str] = None,
        roots_only: bool = False,
    ) -> list[WorkflowRecord]:
        """List workflows, oldest first."""
        query = "SELECT * FROM workflows WHERE 1 = 1"
        params: list[Any] = []
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        if roots_only:
            query += " AND parent_id IS NULL"
        query += " ORDER BY created_at, rowid"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_workflow(r) for r in rows]

    def set_workflow_status(
        self,
        workflow_id: str,
        status: str,
        output: Any = None,
        error: Optional[str] = None,
    ) -> None:
        """Update a workflow's status, output and error."""
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE workflows SET status = ?, output = ?, error = ?, updated_at = ?
                WHERE workflow_id = ?
                """,
                (status, _dumps(output) if output is not None else None, error,
                 utc_now(), workflow_id),
            )

    def claim_workflow(self, workflow_id: str, force: bool = False) -> bool:
        """
        Mark a workflow running unless another dispatcher already holds it.

        Completed workflows are never claimed. With ``force`` a workflow
        left ``running`` by a crashed process is taken over.
        """
        if force:
            condition = "status != ?"
            params: tuple = (WorkflowStatus.COMPLETED,)
        else:
            condition = "status NOT IN (?, ?)"
            params = (WorkflowStatus.COMPLETED, WorkflowStatus.RUNNING)
        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE workflows SET status = ?, error = NULL, updated_at = ?
                WHERE workflow_id = ? AND {condition}
                """,
                (WorkflowStatus.RUNNING, utc_now(), workflow_id, *params),
            )
            return cursor.rowcount > 0

    def root_of(self, workflow_id: str) -> str:
        """Follow parent links up to the root workflow id."""
        current = workflow_id
        seen = set()
        while current not in seen:
            seen.add(current)
            record = self.get_workflow(current)
            if record is None or record.parent_id is None:
                return current
            current = record.parent_id
        raise JournalError(f"Cycle in workflow parents at {workflow_id}")

    # Steps

    def get_step(self, workflow_id: str, step_name: str) -> Optional[StepRecord]:
        """Load a memoised step outcome, or None if the step never finished."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM steps WHERE workflow_id = ? AND step_name = ?",
                (workflow_id, step_name),
            ).fetchone()
        if row is None:
            return None
        return StepRecord(
            workflow_id=row["workflow_id"],
            step_name=row["step_name"],
            kind=row["kind"],
            status=row["status"],
            output=_loads(row["output"]),
            error=_loads(row["error"]),
        )

    def record_step(
        self,
        workflow_id: str,
        step_name: str,
        kind: str,
        output: Any = None,
        status: str = StepStatus.COMPLETED,
        error: Optional[dict[str, Any]] = None,
    ) -> StepRecord:
        """Record a step outcome and return whichever outcome was stored first."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO steps
                    (workflow_id, step_name, kind, status, output, error, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (workflow_id, step_name, kind, status, _dumps(output),
                 _dumps(error) if error is not None else None, utc_now()),
            )
        return self.get_step(workflow_id, step_name)

    def list_steps(self, workflow_id: str) -> list[StepRecord]:
        """List a workflow's steps in the order they finished."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM steps WHERE workflow_id = ? ORDER BY rowid", (workflow_id,)
            ).fetchall()
        return [
            StepRecord(
                workflow_id=r["workflow_id"],
                step_name=r["step_name"],
                kind=r["kind"],
                status=r["status"],
                output=_loads(r["output"]),
                error=_loads(r["error"]),
            )
            for r in rows
        ]

    # Waits

    def _row_to_wait(self, row: sqlite3.Row) -> WaitRecord:
        return WaitRecord(
            workflow_id=row["workflow_id"],
            step_name=row["step_name"],
            event_name=row["event_name"],
            correlation_id=row["correlation_id"],
            deadline=datetime.fromisoformat(row["deadline"]),
            resolved=bool(row["resolved"]),
        )

    def register_wait(
        self,
        workflow_id: str,
        step_name: str,
        event_name: str,
        correlation_id: str,
        deadline: datetime,
    ) -> WaitRecord:
        """Register a wait. The first registration's deadline is kept."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO waits
                    (workflow_id, step_name, event_name, correlation_id, deadline)
                VALUES (?, ?, ?, ?, ?)
                """,
                (workflow_id, step_name, event_name, correlation_id, deadline.isoformat()),
            )
            row = conn.execute(
                "SELECT * FROM waits WHERE workflow_id = ? AND step_name = ?",
                (workflow_id, step_name),
            ).fetchone()
        return self._row_to_wait(row)

    def get_wait(self, workflow_id: str, step_name: str) -> Optional[WaitRecord]:
        """Load a registered wait, resolved or not."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM waits WHERE workflow_id = ? AND step_name = ?",
                (workflow_id, step_name),
            ).fetchone()
        return None if row is None else self._row_to_wait(row)

    def resolve_wait(self, workflow_id: str, step_name: str) -> None:
        """Mark a wait as no longer pending."""
        with self._connect() as conn:
            conn.execute(
                "UPDATE waits SET resolved = 1 WHERE workflow_id = ? AND step_name = ?",
                (workflow_id, step_name),
            )

    def pending_waits(
        self,
        event_name: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> list[WaitRecord]:
        """List unresolved waits, optionally for one event key."""
        query = "SELECT * FROM waits WHERE resolved = 0"
        params: list[Any] = []
        if event_name is not None:
            query += " AND event_name = ?"
            params.append(event_name)
        if correlation_id is not None:
            query += " AND correlation_id = ?"
            params.append(correlation_id)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_wait(r) for r in rows]

    def expired_waits(self, now: datetime) -> list[WaitRecord]:
        """List unresolved waits whose deadline is at or before ``now``."""
        return [w for w in self.pending_waits() if w.deadline <= now]

    # Inbox / outbox

    def put_inbox(
        self,
        event_name: str,
        correlation_id: str,
        payload: Any,
        received_at: Optional[datetime] = None,
    ) -> bool:
        """
        Store a delivered event.

        ``received_at`` is compared against wait deadlines, so callers pass
        the engine clock.

        Returns:
            True if stored, False if an event with this key was already delivered.
        """
        received = received_at.isoformat() if received_at is not None else utc_now()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO inbox (event_name, correlation_id, payload, received_at)
                VALUES (?, ?, ?, ?)
                """,
                (event_name, correlation_id, _dumps(payload), received),
            )
            return cursor.rowcount > 0

    def get_inbox(self, event_name: str, correlation_id: str) -> Optional[InboxRecord]:
        """Load a delivered event, or None."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM inbox WHERE event_name = ? AND correlation_id = ?",
                (event_name, correlation_id),
            ).fetchone()
        if row is None:
            return None
        return InboxRecord(
            event_name=row["event_name"],
            correlation_id=row["correlation_id"],
            payload=_loads(row["payload"]),
            received_at=row["received_at"],
        )

    def append_outbox(
        self, workflow_id: str, step_name: str, event_name: str, payload: Any
    ) -> bool:
        """Record an emitted event. Returns False if this step already emitted."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO outbox
                    (id, workflow_id, step_name, event_name, payload, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (f"{workflow_id}:{step_name}", workflow_id, step_name, event_name,
                 _dumps(payload), utc_now()),
            )
            return cursor.rowcount > 0

    def list_outbox(
        self,
        workflow_id: Optional[str] = None,
        event_name: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """List emitted events in emission order."""
        query = "SELECT * FROM outbox WHERE 1 = 1"
        params: list[Any] = []
        if workflow_id is not None:
            query += " AND workflow_id = ?"
            params.append(workflow_id)
        if event_name is not None:
            query += " AND event_name = ?"
            params.append(event_name)
        query += " ORDER BY rowid"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            {
                "workflow_id": r["workflow_id"],
                "step_name": r["step_name"],
                "event_name": r["event_name"],
                "payload": _loads(r["payload"]),
                "created_at": r["created_at"],
            }
            for r in rows
        ]
