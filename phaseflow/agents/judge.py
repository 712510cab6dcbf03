"""
Judge agent instructions.

The judge reviews the approach chosen at the approaches gate against five
criteria and reports severity-tagged findings. It never decides the verdict;
that is derived from the findings by phaseflow.verdict.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from phaseflow.agent_loop import AgentSpec
from phaseflow.environment.fs_tools import EXPLORE_TOOLS
from phaseflow.memory import CREATE_MEMORY_TOOL

if TYPE_CHECKING:
    from phaseflow.config import PhaseflowConfig


JUDGE_CRITERIA_PROMPT = '''You are a code review judge that evaluates a proposed approach against 5 criteria:
security, bugs, backwards compatibility, performance, and code quality.

## Your Task
Use the read, glob, and grep tools to examine the codebase, then evaluate the proposed
approach below. Read the relevant files before making judgments; ground every finding in code.
Use create_memory to record constraints or insights the implementation phase must know about.

## Evaluation Criteria

### 1. Security
- Injection vulnerabilities (SQL, XSS, command injection)
- Authentication/authorization gaps
- Secrets exposure, unsafe deserialization
- Missing input validation at trust boundaries

### 2. Bugs
- Logic errors, off-by-one, null handling
- Race conditions, deadlocks, resource leaks
- Unhandled edge cases, missing error propagation

### 3. Backwards Compatibility
- Breaking changes to public APIs, exported types, or database schemas
- Removed or renamed exports that other modules depend on
- Changed function signatures, return types, or event shapes

### 4. Performance
- N+1 queries, missing indexes, unbounded data fetching
- Repeated work in hot paths
- Memory leaks, large allocations, blocking calls on latency-sensitive paths

### 5. Code Quality (Project-Enforced Patterns)
The project enforces its own lint rules and conventions. Look for the linter
configuration and the prevailing patterns in neighbouring code, then flag:
- Violations of the configured lint rules
- Error handling that differs from the project's established pattern
- Logging that bypasses the project's logger
- Naming, layout, or export conventions the surrounding modules do not use'''


JUDGE_OUTPUT_PROMPT = '''## Required Output Format
After examining the codebase, respond with a JSON object matching this exact schema:
```json
{
    "findings": [
        {
            "criterion": "security" | "bugs" | "compatibility" | "performance" | "quality",
            "severity": "critical" | "major" | "minor",
            "description": "Clear description of the issue found",
            "recommendation": "Specific fix or mitigation"
        }
    ],
    "overallAssessment": "Summary of the approach quality and key risks"
}
```

Evaluate all 5 criteria. If a criterion has no issues, omit it from findings.
Severity guide:
- critical: Must fix before merging. Security holes, data loss, breaking changes.
- major: Should fix. Bugs, performance regressions, significant pattern violations.
- minor: Nice to fix. Style issues, minor optimizations, non-blocking quality concerns.

IMPORTANT: Your final message MUST be ONLY the JSON object, with no surrounding text.'''


def build_judge_prompt(
    environment_id: str,
    repo_url: str,
    branch: str,
    approach: dict[str, Any],
    analysis_output: dict[str, Any],
    memories: str = "",
) -> str:
    """Assemble the judge's system prompt around the approach under review."""
    sections = [
        JUDGE_CRITERIA_PROMPT,
        "",
        "## Environment",
        f"- Environment ID: {environment_id}",
        f"- Repository: {repo_url}",
        f"- Branch: {branch}",
        "",
        "## Proposed Approach",
        json.dumps(approach, indent=2),
        "",
        "## Analysis Output",
        json.dumps(analysis_output, indent=2),
        "",
        JUDGE_OUTPUT_PROMPT,
    ]
    if memories:
        sections.extend(["", memories])
    return "\n".join(sections)


def build_judge_spec(config: PhaseflowConfig, system: str) -> AgentSpec:
    """Judge agent: read-only tools plus create_memory, judge step budget."""
    return AgentSpec(
        name="judge",
        model=config.anthropic.judge_model,
        system=system,
        tools=[*EXPLORE_TOOLS, CREATE_MEMORY_TOOL],
        max_steps=config.pipeline.judge_max_steps,
    )
