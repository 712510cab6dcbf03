"""
Memory records threaded between phases.

Agents call the ``create_memory`` tool to leave notes for later phases.
The master orchestrator appends them to the run after the phase passes and
every later phase sees all of them, grouped by kind, in its prompt.
"""

from __future__ import annotations

from typing import Any

from phaseflow.llm_clients import ToolCall, ToolSpec
from phaseflow.models import MemoryKind, MemoryRecord

KIND_ORDER = (MemoryKind.INSIGHT, MemoryKind.DECISION, MemoryKind.CONSTRAINT, MemoryKind.FAILURE)

KIND_LABELS = {
    MemoryKind.INSIGHT: "Insights",
    MemoryKind.FAILURE: "Failures",
    MemoryKind.DECISION: "Decisions",
    MemoryKind.CONSTRAINT: "Constraints",
}

CREATE_MEMORY_TOOL = ToolSpec(
    name="create_memory",
    description=(
        "Create a memory record to preserve important findings, decisions, constraints, "
        "or failures for future phases. Use 'insight' for non-obvious discoveries, "
        "'failure' for things that didn't work, 'decision' for meaningful choices, "
        "'constraint' for hard limitations."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "kind": {"type": "string", "enum": [k.value for k in MemoryKind]},
            "content": {"type": "string", "minLength": 1},
        },
        "required": ["kind", "content"],
        "additionalProperties": False,
    },
)


def format_memories_for_prompt(memories: list[MemoryRecord]) -> str:
    """
    Render memory records as a prompt section.

    Records are grouped by kind in a fixed order and keep their insertion
    order within a group. Nothing is dropped or shortened.

    Returns:
        The markdown section, or "" when there are no records.
    """
    if not memories:
        return ""

    grouped: dict[str, list[MemoryRecord]] = {}
    for memory in memories:
        grouped.setdefault(memory.kind, []).append(memory)

    sections = []
    for kind in KIND_ORDER:
        records = grouped.get(kind.value)
        if not records:
            continue
        lines = "\n".join(f"- [{r.phase}] {r.content}" for r in records)
        sections.append(f"### {KIND_LABELS[kind]}\n{lines}")

    return "## Memory Records from Previous Phases\n\n" + "\n\n".join(sections)


def record_memory(phase: str, call: ToolCall, collected: list[MemoryRecord]) -> dict[str, Any]:
    """Handle a ``create_memory`` call by collecting the record for the phase outcome."""
    collected.append(MemoryRecord(
        phase=phase,
        kind=call.input["kind"],
        content=call.input["content"],
    ))
    return {"ok": True, "kind": call.input["kind"]}
