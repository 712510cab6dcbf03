"""
Event payload validation for the phaseflow event system.

Each EventType has a defined set of allowed payload fields. Events carrying
anything else are rejected before they are persisted or dispatched, which
keeps arbitrary agent output out of the event log.
"""

from __future__ import annotations

from phaseflow.events.types import EventType, PipelineEvent


ALLOWED_FIELDS: dict[EventType, set[str]] = {
    # Run lifecycle
    EventType.RUN_STARTED: {"prompt", "repo_url", "branch", "environment_id"},
    EventType.RUN_COMPLETED: {"pr_url"},
    EventType.RUN_FAILED: {"failed_phase", "reason", "message"},

    # Phase lifecycle
    EventType.PHASE_STARTED: {"phase_result_id"},
    EventType.PHASE_PASSED: {"phase_result_id", "memory_count"},
    EventType.PHASE_FAILED: {"phase_result_id", "reason", "message"},
    EventType.PHASE_TRANSITION: {"from", "to"},

    # Human-in-the-loop
    EventType.CTA_REQUESTED: {"cta_id", "kind", "request", "tool_call_id"},
    EventType.CTA_RESPONDED: {"cta_id", "kind"},
    EventType.CTA_TIMED_OUT: {"cta_id"},
}


def validate_payload(event: PipelineEvent) -> bool:
    """
    Validate event payload against its allow-list.

    Args:
        event: The PipelineEvent to validate.

    Returns:
        True if validation passes.

    Raises:
        ValueError: If payload contains disallowed fields, with the field names included.
    """
    allowed = ALLOWED_FIELDS.get(event.event_type, set())
    invalid = set(event.payload.keys()) - allowed

    if invalid:
        raise ValueError(f"Invalid payload field(s): {sorted(invalid)}")

    return True
