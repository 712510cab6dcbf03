"""
Approaches phase.

Generates structurally distinct ways to implement the feature, each with a
step-by-step plan, tradeoffs and explorer-validated assumptions. The human
picks one at the gate that follows.
"""

from __future__ import annotations

import json
from typing import Any

from phaseflow.agent_loop import AgentSpec
from phaseflow.cta import REQUEST_HUMAN_FEEDBACK_TOOL
from phaseflow.errors import ApproachSelectionError
from phaseflow.llm_clients import ToolSpec
from phaseflow.memory import CREATE_MEMORY_TOOL
from phaseflow.models import RunPhase
from phaseflow.phases.common import SPAWN_SUBAGENT_TOOL, PhaseOrchestrator
from phaseflow.schemas import validate_approaches_output


VALIDATE_ASSUMPTION_TOOL = ToolSpec(
    name=SPAWN_SUBAGENT_TOOL.name,
    description=(
        "Spawn an explorer subagent to validate a technical assumption about the codebase: "
        "that an API exists, a dependency is compatible, or a file is structured as expected. "
        "The explorer runs to completion and returns what it found."
    ),
    input_schema=SPAWN_SUBAGENT_TOOL.input_schema,
)

APPROACHES_INTRO = '''You are the Approaches Phase orchestrator for a feature implementation pipeline.
Your job is to generate at least two structurally distinct implementation approaches and validate
the technical assumptions each one relies on.

## Differentiation Constraint
Approaches must differ along a structural axis (which layer, what abstraction, sync vs async).
Do NOT produce approach B by weakening approach A.
Each approach must represent a genuinely different way to solve the problem,
not a variation in effort level or completeness.'''

APPROACHES_TOOLS_PROMPT = '''## Your Tools
- **spawn_subagent**: Spawn explorer agents to validate technical assumptions.
  Use this to verify APIs exist, check dependency compatibility, confirm file structures.
- **request_human_feedback**: Ask the human about design preferences.
  Use this when the feature has ambiguous UX or architectural tradeoffs that need human input.
  Don't ask for things you can decide yourself.
- **create_memory**: Record important findings for future phases.
  Use 'insight' for non-obvious discoveries, 'constraint' for hard limitations,
  'decision' for meaningful choices, 'failure' for things that didn't work.

## Workflow
1. Review the analysis output below to understand the codebase landscape.
2. Identify two or more structurally distinct axes for implementing the feature.
3. For each approach, spawn explorers to validate its key technical assumptions.
4. Write the implementation plan as a numbered list of concrete steps:
   which file, what change, in what order.
5. Assess tradeoffs (pros/cons) for each approach.
6. Create memory records for validated assumptions and key decisions.
7. Produce the final structured output with all approaches.'''

APPROACHES_OUTPUT_PROMPT = '''## Final Output
When approach generation is complete, respond with a JSON object matching this exact schema:
```json
{
  "approaches": [
    {
      "id": "approach-1",
      "title": "Short descriptive title",
      "summary": "One paragraph summary of the approach",
      "rationale": "Why this approach is worth considering",
      "implementation": "Numbered list of concrete steps: which file, what change, in what order",
      "affectedFiles": ["src/path/to/file.ts"],
      "tradeoffs": { "pros": ["..."], "cons": ["..."] },
      "assumptions": [
        { "claim": "Assumption text", "validated": true, "evidence": "What was found" }
      ],
      "estimatedComplexity": "low" | "medium" | "high"
    }
  ],
  "recommendation": "Which approach is recommended and why",
  "singleApproachJustification": "Only if fewer than 2 approaches exist, explain why"
}
```

IMPORTANT: Your final message MUST be ONLY the JSON object, with no surrounding text or markdown fences.'''


def select_approach(approaches_output: dict[str, Any], selected_id: str) -> dict[str, Any]:
    """
    Look up the approach a human chose.

    Raises:
        ApproachSelectionError: If no approach has ``selected_id``.
    """
    for approach in approaches_output["approaches"]:
        if approach["id"] == selected_id:
            return approach
    raise ApproachSelectionError(
        selected_id, [a["id"] for a in approaches_output["approaches"]]
    )


def approach_options(approaches_output: dict[str, Any]) -> list[dict[str, str]]:
    """Choice options for the approaches gate, one per approach."""
    return [{"id": a["id"], "label": a["title"]} for a in approaches_output["approaches"]]


class ApproachesPhase(PhaseOrchestrator):
    """Generation of distinct, validated implementation approaches."""

    phase = RunPhase.APPROACHES
    validator = staticmethod(validate_approaches_output)

    def build_system_prompt(self, data: dict[str, Any], memories: str) -> str:
        sections = [
            APPROACHES_INTRO,
            "",
            "## Environment",
            f"- Environment ID: {data['environmentId']}",
            f"- Repository: {data['repoUrl']}",
            f"- Branch: {data['branch']}",
            "",
            APPROACHES_TOOLS_PROMPT,
            "",
            "## Analysis Output (from previous phase)",
            json.dumps(data["analysisOutput"], indent=2),
            "",
            APPROACHES_OUTPUT_PROMPT,
        ]
        if memories:
            sections.extend(["", memories])
        return "\n".join(sections)

    def build_spec(self, system: str) -> AgentSpec:
        config = self.services.config
        return AgentSpec(
            name="approaches-orchestrator",
            model=config.anthropic.orchestrator_model,
            system=system,
            tools=[VALIDATE_ASSUMPTION_TOOL, REQUEST_HUMAN_FEEDBACK_TOOL, CREATE_MEMORY_TOOL],
            max_steps=config.pipeline.orchestrator_max_steps,
        )
