"""Tests for memory records threaded between phases."""

from phaseflow.llm_clients import ToolCall
from phaseflow.memory import format_memories_for_prompt, record_memory
from phaseflow.models import MemoryRecord


class TestFormatMemories:

    def test_empty(self):
        assert format_memories_for_prompt([]) == ""

    def test_grouped_in_fixed_kind_order(self):
        text = format_memories_for_prompt([
            MemoryRecord("analysis", "failure", "Grep on node_modules timed out"),
            MemoryRecord("analysis", "insight", "Colors are CSS variables"),
            MemoryRecord("approaches", "constraint", "No new dependencies"),
            MemoryRecord("approaches", "insight", "Settings page is lazy loaded"),
        ])
        assert text.startswith("## Memory Records from Previous Phases\n\n### Insights\n")
        positions = [text.index(h) for h in ("### Insights", "### Constraints", "### Failures")]
        assert positions == sorted(positions)
        assert "### Decisions" not in text
        assert ("- [analysis] Colors are CSS variables\n"
                "- [approaches] Settings page is lazy loaded") in text

    def test_nothing_shortened(self):
        long_note = "detail " * 500
        assert long_note in format_memories_for_prompt([MemoryRecord("analysis", "insight", long_note)])


class TestRecordMemory:

    def test_collects_record_for_phase(self):
        collected = []
        result = record_memory(
            "judging",
            ToolCall(id="t1", name="create_memory", input={"kind": "decision", "content": "Use tokens"}),
            collected,
        )
        assert result == {"ok": True, "kind": "decision"}
        assert collected == [MemoryRecord("judging", "decision", "Use tokens")]
