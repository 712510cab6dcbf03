"""
Sub-agents used by the phase orchestrators.

This module provides:
- ExplorerAgent: read-only investigator spawned through spawn_subagent
- CoderAgent: fresh coding agent run once per implementation attempt
- Judge instructions and agent spec for the judging phase
"""

from phaseflow.agents.coder import CODER_SYSTEM_PROMPT, CoderAgent, build_coder_spec
from phaseflow.agents.explorer import EXPLORER_SYSTEM_PROMPT, ExplorerAgent, build_explorer_spec
from phaseflow.agents.judge import build_judge_prompt, build_judge_spec

__all__ = [
    "CODER_SYSTEM_PROMPT",
    "CoderAgent",
    "EXPLORER_SYSTEM_PROMPT",
    "ExplorerAgent",
    "build_coder_spec",
    "build_explorer_spec",
    "build_judge_prompt",
    "build_judge_spec",
]
