"""
Event types for the phaseflow event system.

Defines PipelineEvent dataclass and EventType enum covering the significant
moments of a feature run: run lifecycle, phase lifecycle and human gates.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class EventType(Enum):
    """All event types emitted by the pipeline."""

    # Run lifecycle
    RUN_STARTED = "run.started"
    RUN_COMPLETED = "run.completed"
    RUN_FAILED = "run.failed"

    # Phase lifecycle
    PHASE_STARTED = "phase.started"
    PHASE_PASSED = "phase.passed"
    PHASE_FAILED = "phase.failed"
    PHASE_TRANSITION = "phase.transition"

    # Human-in-the-loop
    CTA_REQUESTED = "cta.requested"
    CTA_RESPONDED = "cta.responded"
    CTA_TIMED_OUT = "cta.timed_out"


@dataclass
class PipelineEvent:
    """A single event in a feature run."""

    event_id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    event_type: EventType = EventType.RUN_STARTED
    run_id: str = ""
    phase: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    source: str = ""
    payload: dict = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        d = asdict(self)
        d["event_type"] = self.event_type.value
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineEvent:
        """Create from dict."""
        data = data.copy()
        data["event_type"] = EventType(data["event_type"])
        return cls(**data)

    def __str__(self) -> str:
        phase = f" phase={self.phase}" if self.phase else ""
        return f"[{self.timestamp}] {self.event_type.value} run={self.run_id}{phase}"
