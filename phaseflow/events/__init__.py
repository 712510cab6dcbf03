"""
Event infrastructure for phaseflow.

This module provides:
- Typed events for run, phase and human-gate lifecycle
- An event bus with payload allow-list validation
- JSONL persistence for audit and debugging
"""

from phaseflow.events.types import EventType, PipelineEvent
from phaseflow.events.bus import EventBus
from phaseflow.events.persistence import EventPersistence

__all__ = [
    "EventType",
    "PipelineEvent",
    "EventBus",
    "EventPersistence",
]
