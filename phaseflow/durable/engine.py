"""
Durable workflow engine.

This module handles:
- Registering workflow functions by name
- Starting workflows and replaying them from the journal
- Suspending on waits without holding a thread
- Delivering correlated events and re-dispatching waiting workflows
- Sweeping expired waits so timeouts become ordinary step outcomes
- Resuming workflows that failed on an infrastructure error
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional

from phaseflow.durable.context import StepContext, WorkflowSuspended
from phaseflow.durable.journal import StepJournal, WorkflowRecord, WorkflowStatus

if TYPE_CHECKING:
    from phaseflow.logger import PipelineLogger

WorkflowFunction = Callable[[StepContext, Any], Any]
EventListener = Callable[[str, Any], None]


class WorkflowError(Exception):
    """Raised for engine misuse: unknown functions or workflows."""
    pass


class EventAlreadyDelivered(WorkflowError):
    """Raised when a second event arrives for an already-answered correlation key."""
    pass


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowEngine:
    """
    Replay-based executor for durable workflows.

    A workflow function receives a StepContext and its input. It is re-run
    from the top on every dispatch; steps already in the journal return their
    recorded outcome, so side effects happen once.
    """

    def __init__(
        self,
        db_path: Path | str,
        logger: Optional[PipelineLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """
        Initialize the engine.

        Args:
            db_path: sqlite database holding the journal.
            logger: Optional logger for engine events.
            clock: Returns the current timezone-aware time. Defaults to UTC now.
        """
        self.journal = StepJournal(db_path)
        self._logger = logger
        self._clock = clock or _utc_now
        self._now_override: Optional[datetime] = None
        self._functions: dict[str, WorkflowFunction] = {}
        self._listeners: list[EventListener] = []

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "workflow_engine"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def now(self) -> datetime:
        """Current time as seen by running workflows."""
        return self._now_override or self._clock()

    def register(self, name: str, fn: WorkflowFunction) -> None:
        """Register a workflow function under ``name``."""
        self._functions[name] = fn

    def subscribe(self, listener: EventListener) -> None:
        """Receive every event sent with ``StepContext.send_event``."""
        self._listeners.append(listener)

    def _notify(self, event_name: str, payload: Any) -> None:
        for listener in self._listeners:
            try:
                listener(event_name, payload)
            except Exception as e:
                self._log("listener_failed", {"event_name": event_name, "error": str(e)},
                          level="warn")

    def _lookup(self, function_name: str) -> WorkflowFunction:
        try:
            return self._functions[function_name]
        except KeyError:
            raise WorkflowError(f"Unknown workflow function: {function_name}")

    def _execute(
        self,
        workflow_id: str,
        function_name: str,
        data: Any,
        parent_id: Optional[str] = None,
    ) -> Any:
        """
        Run one workflow (root or child) to completion, suspension or failure.

        Raises whatever the function raised after recording the status.
        """
        record = self.journal.create_workflow(workflow_id, function_name, data, parent_id)
        if record.status == WorkflowStatus.COMPLETED:
            return record.output

        fn = self._lookup(function_name)
        if parent_id is not None:
            self.journal.set_workflow_status(workflow_id, WorkflowStatus.RUNNING)

        ctx = StepContext(self, workflow_id)
        try:
            result = fn(ctx, record.input)
        except WorkflowSuspended as s:
            self.journal.set_workflow_status(workflow_id, WorkflowStatus.SUSPENDED)
            self._log("workflow_suspended", {
                "workflow_id": workflow_id,
                "step": s.step_name,
                "event_name": s.event_name,
                "correlation_id": s.correlation_id,
            })
            raise
        except Exception as e:
            self.journal.set_workflow_status(
                workflow_id, WorkflowStatus.FAILED, error=f"{type(e).__name__}: {e}"
            )
            self._log("workflow_failed", {
                "workflow_id": workflow_id,
                "error_type": type(e).__name__,
                "error": str(e),
            }, level="error")
            raise

        self.journal.set_workflow_status(workflow_id, WorkflowStatus.COMPLETED, output=result)
        self._log("workflow_completed", {"workflow_id": workflow_id})
        return self.journal.get_workflow(workflow_id).output

    def _dispatch(self, workflow_id: str, force: bool = False) -> WorkflowRecord:
        """
        Replay a root workflow under a claim.

        Failures are recorded on the workflow rather than raised, so callers
        inspect the returned record.
        """
        record = self.journal.get_workflow(workflow_id)
        if record is None:
            raise WorkflowError(f"Unknown workflow: {workflow_id}")

        while True:
            if not self.journal.claim_workflow(workflow_id, force=force):
                self._log("dispatch_skipped", {"workflow_id": workflow_id, "status": record.status},
                          level="debug")
                return self.journal.get_workflow(workflow_id)
            force = False

            try:
                self._execute(workflow_id, record.function_name, record.input)
            except WorkflowSuspended as s:
                # An event delivered while this dispatch held the claim was
                # skipped by its deliverer, so check again before returning.
                if self.journal.get_inbox(s.event_name, s.correlation_id) is not None:
                    continue
            except Exception:
                # _execute has already recorded the failure on the workflow
                pass
            return self.journal.get_workflow(workflow_id)

    def start(
        self,
        function_name: str,
        data: Any,
        workflow_id: Optional[str] = None,
    ) -> WorkflowRecord:
        """
        Start (or re-dispatch) a root workflow.

        Args:
            function_name: Registered workflow function.
            data: JSON-serialisable input.
            workflow_id: Optional id. Starting an existing id replays it.

        Returns:
            The workflow record after this dispatch.
        """
        self._lookup(function_name)
        workflow_id = workflow_id or uuid.uuid4().hex
        existing = self.journal.get_workflow(workflow_id)
        if existing is None:
            self.journal.create_workflow(workflow_id, function_name, data)
            # A fresh record is created as running; release it for the claim.
            self.journal.set_workflow_status(workflow_id, WorkflowStatus.SUSPENDED)
            self._log("workflow_started", {"workflow_id": workflow_id, "function": function_name})
        return self._dispatch(workflow_id)

    def get(self, workflow_id: str) -> Optional[WorkflowRecord]:
        """Load a workflow record."""
        return self.journal.get_workflow(workflow_id)

    def deliver_event(self, event_name: str, correlation_id: str, payload: Any) -> list[WorkflowRecord]:
        """
        Deliver a correlated event and re-dispatch every workflow waiting on it.

        Raises:
            EventAlreadyDelivered: If an event with this key was delivered before.

        Returns:
            Root workflow records after re-dispatch.
        """
        if not self.journal.put_inbox(event_name, correlation_id, payload, received_at=self.now()):
            raise EventAlreadyDelivered(
                f"Event {event_name} for {correlation_id} was already delivered"
            )
        self._log("event_delivered", {"event_name": event_name, "correlation_id": correlation_id})

        roots = []
        for wait in self.journal.pending_waits(event_name, correlation_id):
            root = self.journal.root_of(wait.workflow_id)
            if root not in roots:
                roots.append(root)
        return [self._dispatch(root) for root in roots]

    def sweep_timeouts(self, now: Optional[datetime] = None) -> list[WorkflowRecord]:
        """
        Re-dispatch workflows whose waits have expired.

        Args:
            now: Time to evaluate deadlines at. Defaults to the engine clock.

        Returns:
            Root workflow records after re-dispatch.
        """
        now = now or self._clock()
        roots = []
        for wait in self.journal.expired_waits(now):
            root = self.journal.root_of(wait.workflow_id)
            if root not in roots:
                roots.append(root)

        self._now_override = now
        try:
            results = [self._dispatch(root) for root in roots]
        finally:
            self._now_override = None
        if roots:
            self._log("timeouts_swept", {"workflows": roots})
        return results

    def resume(self, workflow_id: str) -> WorkflowRecord:
        """
        Re-dispatch a failed or stuck workflow from its last checkpoint.

        Raises:
            WorkflowError: If the workflow is unknown.
        """
        record = self.journal.get_workflow(workflow_id)
        if record is None:
            raise WorkflowError(f"Unknown workflow: {workflow_id}")
        root = self.journal.root_of(workflow_id)
        self._log("workflow_resumed", {"workflow_id": root})
        return self._dispatch(root, force=True)
