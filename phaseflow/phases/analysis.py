"""
Analysis phase.

The orchestrator investigates the target codebase through explorer
sub-agents and reports which systems the feature touches, the constraints
and risks involved, and whether the feature is feasible.
"""

from __future__ import annotations

from typing import Any

from phaseflow.agent_loop import AgentSpec
from phaseflow.cta import REQUEST_HUMAN_FEEDBACK_TOOL
from phaseflow.memory import CREATE_MEMORY_TOOL
from phaseflow.models import RunPhase
from phaseflow.phases.common import SPAWN_SUBAGENT_TOOL, PhaseOrchestrator
from phaseflow.schemas import validate_analysis_output


ANALYSIS_INTRO = '''You are the Analysis Phase orchestrator for a feature implementation pipeline.
Your job is to analyze the target codebase thoroughly and assess whether the proposed feature is architecturally feasible.'''

ANALYSIS_TOOLS_PROMPT = '''## Your Tools
- **spawn_subagent**: Spawn explorer agents to investigate specific questions about the codebase.
  You are the orchestrator, not a file reader. Do NOT ask explorers to return the full contents of files.
  Give each explorer a specific analytical question or checklist to answer. Examples:
    GOOD: "Analyze the database schema. What tables exist? What are the key relationships? What query patterns are used?"
    GOOD: "Examine the CLI argument parsing. What framework is used? What subcommands and flags exist? How is output formatted?"
    GOOD: "Investigate the testing infrastructure. What test framework is used? Where do tests live? What fixtures exist?"
    BAD: "Read and return the full contents of src/main.rs and src/commands.rs"
    BAD: "Read every .go file and summarize them"
  Explorers return structured summaries and answers, not raw file contents.
- **request_human_feedback**: Ask the human for clarification when the feature request is ambiguous.
  Ask early if requirements are unclear. Don't ask for things you can decide yourself.
- **create_memory**: Record important findings for future phases.
  Use 'insight' for non-obvious discoveries, 'constraint' for hard limitations,
  'decision' for meaningful choices, 'failure' for things that didn't work.

## Workflow
1. If the feature request is ambiguous, request human feedback FIRST.
2. Decide what you need to understand about the codebase to assess feasibility.
3. Break the investigation into specific questions grouped by area (data layer, UI layer, routing, config).
4. Spawn one explorer per area or concern with a focused analytical question.
5. Synthesize explorer findings to identify which systems the feature touches.
6. List architectural constraints (framework limitations, enforced code patterns, pinned dependency versions).
7. Identify risks (breaking changes, migration complexity, missing infrastructure).
8. Create memory records for key findings so future phases can use them.
9. Produce a feasibility assessment: is the feature buildable, and what are the main challenges?

## Final Output
When analysis is complete, respond with a JSON object matching this exact schema:
```json
{
  "affectedSystems": ["list of systems/modules the feature touches"],
  "architecturalConstraints": ["list of hard constraints discovered"],
  "risks": ["list of risks identified"],
  "codebaseMap": [
    { "path": "src/some/path", "purpose": "what this file/dir does", "relevance": "how it relates to the feature" }
  ],
  "feasibilityAssessment": "A paragraph summarizing feasibility, main challenges, and recommended approach"
}
```

IMPORTANT: Your final message MUST be ONLY the JSON object, with no surrounding text or markdown fences.'''


class AnalysisPhase(PhaseOrchestrator):
    """Codebase investigation and feasibility assessment."""

    phase = RunPhase.ANALYSIS
    validator = staticmethod(validate_analysis_output)

    def build_system_prompt(self, data: dict[str, Any], memories: str) -> str:
        sections = [
            ANALYSIS_INTRO,
            "",
            "## Environment",
            f"- Environment ID: {data['environmentId']}",
            f"- Repository: {data['repoUrl']}",
            f"- Branch: {data['branch']}",
            "",
            ANALYSIS_TOOLS_PROMPT,
        ]
        if memories:
            sections.extend(["", memories])
        return "\n".join(sections)

    def build_spec(self, system: str) -> AgentSpec:
        config = self.services.config
        return AgentSpec(
            name="analysis-orchestrator",
            model=config.anthropic.orchestrator_model,
            system=system,
            tools=[SPAWN_SUBAGENT_TOOL, REQUEST_HUMAN_FEEDBACK_TOOL, CREATE_MEMORY_TOOL],
            max_steps=config.pipeline.orchestrator_max_steps,
        )
