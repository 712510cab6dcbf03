"""
Event persistence for the phaseflow event system.

Persists events to JSONL files under <data_dir>/events/ and supports
querying by run, event type and time.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from phaseflow.events.types import EventType, PipelineEvent


class EventPersistence:
    """Persist events to JSONL files."""

    def __init__(self, events_dir: Path) -> None:
        """
        Initialize event persistence.

        Args:
            events_dir: Directory that receives events-YYYY-MM-DD.jsonl files.
        """
        self._events_dir = Path(events_dir)
        self._events_dir.mkdir(parents=True, exist_ok=True)

    def _get_log_path(self) -> Path:
        """Get today's event log path."""
        date_str = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self._events_dir / f"events-{date_str}.jsonl"

    def append(self, event: PipelineEvent) -> None:
        """Append event to today's log."""
        with self._get_log_path().open("a") as f:
            f.write(json.dumps(event.to_dict(), default=str) + "\n")

    def query(
        self,
        run_id: Optional[str] = None,
        event_types: Optional[list[EventType]] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[PipelineEvent]:
        """
        Query events with filters, newest log file first.

        Args:
            run_id: Filter by run ID.
            event_types: Filter by event types.
            since: Only return events at or after this (timezone-aware) time.
            limit: Maximum number of events to return.

        Returns:
            List of matching PipelineEvent objects.
        """
        events: list[PipelineEvent] = []

        for log_file in sorted(self._events_dir.glob("events-*.jsonl"), reverse=True):
            with log_file.open() as f:
                for line in f:
                    if not line.strip():
                        continue

                    event = PipelineEvent.from_dict(json.loads(line))

                    if run_id and event.run_id != run_id:
                        continue
                    if event_types and event.event_type not in event_types:
                        continue
                    if since and datetime.fromisoformat(event.timestamp) < since:
                        continue

                    events.append(event)
                    if len(events) >= limit:
                        return events

        return events

    def get_by_run(self, run_id: str, limit: int = 50) -> list[PipelineEvent]:
        """Get events for a specific run."""
        return self.query(run_id=run_id, limit=limit)
