"""
Explorer sub-agent.

Read-only codebase investigator spawned by the analysis and approaches
orchestrators through ``spawn_subagent``. Runs as its own child workflow so
its model calls are checkpointed independently of the parent loop.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from phaseflow.agent_loop import AgentSpec, run_agent_loop
from phaseflow.environment.fs_tools import EXPLORE_TOOLS, dispatch_fs_tool

if TYPE_CHECKING:
    from phaseflow.config import PhaseflowConfig
    from phaseflow.durable.context import StepContext
    from phaseflow.phases.common import PhaseServices


EXPLORER_SYSTEM_PROMPT = '''You are a codebase explorer.

The repository is already cloned in your working directory. Do NOT try to clone, fetch, or download anything.

## Your Tools
- **glob**: list files matching a name pattern (e.g. dirPath ".", pattern "**/*.py")
- **grep**: search file contents for a regular expression (e.g. dirPath ".", pattern "def main")
- **read**: read the full contents of one file

## How to Work
1. Start with glob to understand the directory structure
2. Use grep to find relevant code by pattern
3. Read specific files to understand implementation details

## Finishing
You MUST end with a final text response summarizing your findings.
Do NOT end your turn with a tool call. Once you have gathered enough information,
stop calling tools and write a structured summary answering the question you were asked.
Your step budget is limited: leave room for the summary, and if you are running low,
stop investigating and summarize what you have so far.

Structure the summary with clear sections, file paths, and relevant code excerpts.
'''


def build_explorer_spec(config: PhaseflowConfig) -> AgentSpec:
    """Explorer agent: read-only tools and the explorer step budget."""
    return AgentSpec(
        name="explorer",
        model=config.anthropic.explorer_model,
        system=EXPLORER_SYSTEM_PROMPT,
        tools=list(EXPLORE_TOOLS),
        max_steps=config.pipeline.explorer_max_steps,
    )


class ExplorerAgent:
    """
    Workflow function answering one exploration question.

    Input: ``{"prompt", "environmentId", "phaseResultId", "parentInvocationId"}``.
    Output: ``{"text", "steps", "invocationId"}``.
    """

    function_name = "explorer"

    def __init__(self, services: PhaseServices) -> None:
        self.services = services

    def __call__(self, ctx: StepContext, data: dict[str, Any]) -> dict[str, Any]:
        services = self.services
        env = services.provider.connect(data["environmentId"])
        spec = build_explorer_spec(services.config)

        result = run_agent_loop(
            ctx,
            services.client,
            spec,
            [{"role": "user", "content": data["prompt"]}],
            lambda call: dispatch_fs_tool(env, call, services.logger),
            store=services.store,
            phase_result_id=data.get("phaseResultId"),
            parent_invocation_id=data.get("parentInvocationId"),
            max_tokens=services.config.anthropic.max_tokens,
            logger=services.logger,
        )
        return {"text": result.text, "steps": result.steps, "invocationId": result.invocation_id}
