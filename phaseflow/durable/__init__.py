"""
Durable execution for phaseflow.

This module provides:
- StepJournal: write-ahead log of step outcomes, waits, inbox and outbox
- StepContext: memoised run / send_event / wait_for_event / invoke
- WorkflowEngine: replay-based dispatch, event delivery and timeout sweeps
"""

from phaseflow.durable.context import InvokeError, StepContext, WorkflowSuspended
from phaseflow.durable.engine import EventAlreadyDelivered, WorkflowEngine, WorkflowError
from phaseflow.durable.journal import StepJournal, WorkflowRecord, WorkflowStatus

__all__ = [
    "EventAlreadyDelivered",
    "InvokeError",
    "StepContext",
    "StepJournal",
    "WorkflowEngine",
    "WorkflowError",
    "WorkflowRecord",
    "WorkflowStatus",
    "WorkflowSuspended",
]
