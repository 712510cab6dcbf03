"""
Event bus for the phaseflow event system.

Routes PipelineEvents to subscribers after validating their payload and
appending them to the JSONL event log.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Optional

from phaseflow.events.persistence import EventPersistence
from phaseflow.events.types import EventType, PipelineEvent
from phaseflow.events.validation import validate_payload

EventHandler = Callable[[PipelineEvent], None]


class EventBus:
    """Lightweight event bus for routing pipeline events."""

    def __init__(
        self,
        events_dir: Optional[Path] = None,
        persist: bool = True,
    ) -> None:
        """
        Initialize the event bus.

        Args:
            events_dir: Directory for JSONL persistence.
            persist: Whether to persist events to disk.
        """
        self._handlers: dict[EventType, list[EventHandler]] = {}
        self._global_handlers: list[EventHandler] = []
        if persist and events_dir:
            self._persistence: Optional[EventPersistence] = EventPersistence(events_dir)
        else:
            self._persistence = None

    @property
    def persistence(self) -> Optional[EventPersistence]:
        """The JSONL store backing this bus, if any."""
        return self._persistence

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """Subscribe to a specific event type."""
        self._handlers.setdefault(event_type, []).append(handler)

    def subscribe_all(self, handler: EventHandler) -> None:
        """Subscribe to all events (for logging, notifications)."""
        self._global_handlers.append(handler)

    def emit(self, event: PipelineEvent) -> None:
        """Emit an event to all subscribers.

        Validates the event payload before dispatch. Invalid payloads
        raise ValueError and are not persisted or dispatched.

        Raises:
            ValueError: If the event payload contains disallowed fields.
        """
        validate_payload(event)

        if self._persistence:
            self._persistence.append(event)

        for handler in self._global_handlers + self._handlers.get(event.event_type, []):
            try:
                handler(event)
            except Exception:
                # Handlers must not break the pipeline
                pass

    def publish(
        self,
        event_type: EventType,
        run_id: str,
        payload: Optional[dict[str, Any]] = None,
        phase: Optional[str] = None,
        source: str = "pipeline",
    ) -> PipelineEvent:
        """Build and emit an event in one call."""
        event = PipelineEvent(
            event_type=event_type,
            run_id=run_id,
            phase=phase,
            source=source,
            payload=payload or {},
        )
        self.emit(event)
        return event

    def emit_phase_transition(self, run_id: str, from_phase: str, to_phase: str) -> PipelineEvent:
        """Convenience method to emit phase transition."""
        return self.publish(
            EventType.PHASE_TRANSITION,
            run_id,
            {"from": from_phase, "to": to_phase},
            phase=to_phase,
        )
