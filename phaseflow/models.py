"""
Core data models for phaseflow.

This module defines the records persisted for every run:
- Enums for run phases, phase status, approval kinds and memory kinds
- The fixed phase order and its transition rule
- Dataclasses for runs, phase results, agent invocations, approval
  requests and execution environments, with dict round-tripping
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class RunPhase(Enum):
    """
    Phases in a feature run's lifecycle.

    A run walks these in order; FAILED is reachable from any non-terminal phase.
    """
    ANALYSIS = "analysis"
    APPROACHES = "approaches"
    JUDGING = "judging"
    IMPLEMENTATION = "implementation"
    PR = "pr"
    COMPLETED = "completed"
    FAILED = "failed"


PHASE_ORDER: tuple[RunPhase, ...] = (
    RunPhase.ANALYSIS,
    RunPhase.APPROACHES,
    RunPhase.JUDGING,
    RunPhase.IMPLEMENTATION,
    RunPhase.PR,
    RunPhase.COMPLETED,
)

TERMINAL_PHASES = frozenset({RunPhase.COMPLETED, RunPhase.FAILED})


def next_phase(phase: RunPhase) -> RunPhase:
    """
    Return the phase that follows ``phase`` in the fixed order.

    Raises:
        ValueError: If ``phase`` is terminal.
    """
    if phase in TERMINAL_PHASES:
        raise ValueError(f"{phase.value} is terminal")
    return PHASE_ORDER[PHASE_ORDER.index(phase) + 1]


def is_valid_transition(current: RunPhase, target: RunPhase) -> bool:
    """
    Check whether a run may move from ``current`` to ``target``.

    Only single forward steps and failure from a non-terminal phase are allowed.
    """
    if current in TERMINAL_PHASES:
        return False
    if target == RunPhase.FAILED:
        return True
    return target == next_phase(current)


class PhaseStatus(Enum):
    """Status of one phase execution record."""
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"


class MemoryKind(Enum):
    """Kinds of memory records threaded between phases."""
    INSIGHT = "insight"          # Non-obvious discovery
    FAILURE = "failure"          # Something that did not work
    DECISION = "decision"        # Meaningful choice
    CONSTRAINT = "constraint"    # Hard limitation


class CtaKind(Enum):
    """Kinds of human-in-the-loop requests."""
    APPROVAL = "approval"
    TEXT = "text"
    CHOICE = "choice"


class EnvironmentStatus(Enum):
    """Lifecycle of an execution environment."""
    RUNNING = "running"
    STOPPED = "stopped"


def utc_now() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


@dataclass
class MemoryRecord:
    """A phase-tagged note carried forward into later phases' prompts."""
    phase: str
    kind: str
    content: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryRecord:
        """Create from dictionary."""
        return cls(phase=data["phase"], kind=data["kind"], content=data["content"])


@dataclass
class FeatureRun:
    """
    One feature request's lifecycle.

    Only current_phase and memories change after creation.
    """
    id: str
    prompt: str
    environment_id: str
    repo_url: str
    branch: str
    current_phase: RunPhase = RunPhase.ANALYSIS
    memories: list[MemoryRecord] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)
    completed_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        """Check whether the run has completed or failed."""
        return self.current_phase in TERMINAL_PHASES

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["current_phase"] = self.current_phase.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeatureRun:
        """Create from dictionary."""
        data = data.copy()
        data["current_phase"] = RunPhase(data["current_phase"])
        data["memories"] = [MemoryRecord.from_dict(m) for m in data.get("memories", [])]
        return cls(**data)


@dataclass
class PhaseResult:
    """Execution record of one phase within one run."""
    id: str
    run_id: str
    phase: RunPhase
    status: PhaseStatus = PhaseStatus.RUNNING
    output: Optional[Any] = None
    started_at: str = field(default_factory=utc_now)
    completed_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["phase"] = self.phase.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PhaseResult:
        """Create from dictionary."""
        data = data.copy()
        data["phase"] = RunPhase(data["phase"])
        data["status"] = PhaseStatus(data["status"])
        return cls(**data)


@dataclass
class AgentInvocation:
    """
    One LLM-driven execution.

    parent_invocation_id is set only for sub-agents spawned by another agent.
    """
    id: str
    phase_result_id: Optional[str]
    model: str
    system_prompt: str
    input_messages: list[dict[str, Any]] = field(default_factory=list)
    parent_invocation_id: Optional[str] = None
    finish_reason: Optional[str] = None
    output_text: Optional[str] = None
    usage: dict[str, int] = field(default_factory=dict)
    steps: list[dict[str, Any]] = field(default_factory=list)
    started_at: str = field(default_factory=utc_now)
    completed_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentInvocation:
        """Create from dictionary."""
        return cls(**data)


@dataclass
class ApprovalRequest:
    """
    A human-in-the-loop request; its id is the correlation key.

    phase_result_id and tool_call_id are None for gates fired between phases.
    """
    id: str
    run_id: str
    kind: CtaKind
    request: dict[str, Any]
    phase_result_id: Optional[str] = None
    tool_call_id: Optional[str] = None
    response: Optional[dict[str, Any]] = None
    requested_at: str = field(default_factory=utc_now)
    responded_at: Optional[str] = None
    timed_out: bool = False

    @property
    def pending(self) -> bool:
        """Check whether the request still awaits a response."""
        return self.response is None and not self.timed_out

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ApprovalRequest:
        """Create from dictionary."""
        data = data.copy()
        data["kind"] = CtaKind(data["kind"])
        data["timed_out"] = bool(data.get("timed_out", False))
        return cls(**data)


@dataclass
class EnvironmentRecord:
    """An execution environment provisioned for exactly one run."""
    id: str
    runtime: str
    repo_url: str
    branch: str
    workspace: str
    status: EnvironmentStatus = EnvironmentStatus.RUNNING
    created_at: str = field(default_factory=utc_now)
    stopped_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EnvironmentRecord:
        """Create from dictionary."""
        data = data.copy()
        data["status"] = EnvironmentStatus(data["status"])
        return cls(**data)
