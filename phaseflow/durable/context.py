"""
Step context handed to durable workflow functions.

Every side effect a workflow performs goes through one of the context's
operations, each identified by a step name. On replay, steps already in
the journal return their recorded outcome instead of running again.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Optional, TypeVar

from phaseflow.durable.journal import StepStatus

if TYPE_CHECKING:
    from phaseflow.durable.engine import WorkflowEngine

T = TypeVar("T")


class WorkflowSuspended(Exception):
    """
    Raised when a workflow must wait for an external event.

    Caught by the engine at the root, which marks the workflow suspended
    and returns without holding a thread.
    """

    def __init__(
        self,
        workflow_id: str,
        step_name: str,
        event_name: str,
        correlation_id: str,
    ) -> None:
        super().__init__(
            f"Workflow {workflow_id} waiting on {event_name}:{correlation_id} at {step_name}"
        )
        self.workflow_id = workflow_id
        self.step_name = step_name
        self.event_name = event_name
        self.correlation_id = correlation_id


class InvokeError(Exception):
    """
    Raised when an invoked child workflow failed.

    Carries the child's failure reason and details so the caller can report
    them. Replays raise the same error from the journal.
    """

    def __init__(
        self,
        function_name: str,
        message: str,
        error_type: str = "Exception",
        reason: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.function_name = function_name
        self.message = message
        self.error_type = error_type
        self.reason = reason
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for journaling."""
        return {
            "function_name": self.function_name,
            "message": self.message,
            "error_type": self.error_type,
            "reason": self.reason,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InvokeError:
        """Create from a journaled dictionary."""
        return cls(
            function_name=data.get("function_name", ""),
            message=data.get("message", ""),
            error_type=data.get("error_type", "Exception"),
            reason=data.get("reason"),
            details=data.get("details") or {},
        )

    @classmethod
    def from_exception(cls, function_name: str, exc: BaseException) -> InvokeError:
        """Describe a child's exception, keeping a pipeline failure reason if it has one."""
        if isinstance(exc, InvokeError):
            return cls.from_dict({**exc.to_dict(), "function_name": function_name})
        reason = getattr(exc, "reason", None)
        details = getattr(exc, "details", None)
        return cls(
            function_name=function_name,
            message=str(exc),
            error_type=type(exc).__name__,
            reason=getattr(reason, "value", reason),
            details=details if isinstance(details, dict) else {},
        )


def _round_trip(value: Any) -> Any:
    """Return the value exactly as a replay would read it back from the journal."""
    return json.loads(json.dumps(value))


class StepContext:
    """
    Memoising facade over the journal for one workflow execution.

    Step names must be deterministic across replays. Re-using a name within
    one execution gets a ``:<n>`` suffix, so loops may call ``run("think", ...)``
    repeatedly.
    """

    def __init__(self, engine: WorkflowEngine, workflow_id: str) -> None:
        self.engine = engine
        self.workflow_id = workflow_id
        self._journal = engine.journal
        self._name_counts: dict[str, int] = {}

    def _step_name(self, name: str) -> str:
        count = self._name_counts.get(name, 0)
        self._name_counts[name] = count + 1
        return name if count == 0 else f"{name}:{count}"

    def _replay(self, step_name: str) -> tuple[bool, Any]:
        record = self._journal.get_step(self.workflow_id, step_name)
        if record is None:
            return False, None
        if record.status == StepStatus.FAILED:
            raise InvokeError.from_dict(record.error or {})
        return True, record.output

    def run(self, name: str, fn: Callable[[], T]) -> T:
        """
        Run ``fn`` once and memoise its JSON-serialisable result.

        Exceptions are not journaled: they propagate and the step runs again
        when the workflow is resumed.

        Args:
            name: Step name, unique within the workflow.
            fn: Zero-argument callable performing the side effect.

        Returns:
            The JSON round-tripped result, identical on first run and replay.
        """
        step = self._step_name(name)
        found, output = self._replay(step)
        if found:
            return output

        value = _round_trip(fn())
        record = self._journal.record_step(self.workflow_id, step, "run", value)
        self.engine._log("step_completed", {"workflow_id": self.workflow_id, "step": step},
                         level="debug")
        return record.output

    def send_event(self, name: str, event_name: str, data: Any) -> None:
        """Emit an event to the outbox and engine listeners exactly once."""
        step = self._step_name(name)
        found, _ = self._replay(step)
        if found:
            return

        payload = _round_trip(data)
        if self._journal.append_outbox(self.workflow_id, step, event_name, payload):
            self.engine._notify(event_name, payload)
        self._journal.record_step(self.workflow_id, step, "send", None)

    def wait_for_event(
        self,
        name: str,
        event_name: str,
        correlation_id: str,
        timeout: timedelta,
    ) -> Optional[Any]:
        """
        Wait for the event correlated by ``correlation_id``.

        Returns:
            The delivered payload, or None if the timeout elapsed first.

        Raises:
            WorkflowSuspended: While the event has not arrived and the
                deadline has not passed.
        """
        step = self._step_name(name)
        found, output = self._replay(step)
        if found:
            return output

        delivered = self._journal.get_inbox(event_name, correlation_id)
        if delivered is not None:
            wait = self._journal.get_wait(self.workflow_id, step)
            # An event that arrived after the deadline is a timeout.
            if wait is not None and datetime.fromisoformat(delivered.received_at) >= wait.deadline:
                return self._time_out(step, event_name, correlation_id)
            record = self._journal.record_step(self.workflow_id, step, "wait", delivered.payload)
            self._journal.resolve_wait(self.workflow_id, step)
            return record.output

        wait = self._journal.register_wait(
            self.workflow_id, step, event_name, correlation_id, self.engine.now() + timeout
        )
        if self.engine.now() >= wait.deadline:
            return self._time_out(step, event_name, correlation_id)

        raise WorkflowSuspended(self.workflow_id, step, event_name, correlation_id)

    def _time_out(self, step: str, event_name: str, correlation_id: str) -> Any:
        record = self._journal.record_step(self.workflow_id, step, "wait", None)
        self._journal.resolve_wait(self.workflow_id, step)
        self.engine._log("wait_timed_out", {
            "workflow_id": self.workflow_id,
            "step": step,
            "event_name": event_name,
            "correlation_id": correlation_id,
        }, level="warn")
        return record.output

    def invoke(self, name: str, function_name: str, data: Any) -> Any:
        """
        Run a registered workflow function as a child workflow.

        The child's id is ``<parent id>/<step name>`` and it keeps its own
        journal, so a suspension inside the child suspends this workflow and
        the child replays from its own checkpoints later.

        Raises:
            InvokeError: If the child failed. The failure is journaled, so
                replays raise the same error without re-running the child.
        """
        step = self._step_name(name)
        found, output = self._replay(step)
        if found:
            return output

        child_id = f"{self.workflow_id}/{step}"
        try:
            result = self.engine._execute(
                child_id, function_name, _round_trip(data), parent_id=self.workflow_id
            )
        except WorkflowSuspended:
            raise
        except Exception as e:
            error = InvokeError.from_exception(function_name, e)
            self._journal.record_step(
                self.workflow_id, step, "invoke", None,
                status=StepStatus.FAILED, error=error.to_dict(),
            )
            raise error from e

        record = self._journal.record_step(self.workflow_id, step, "invoke", result)
        return record.output
