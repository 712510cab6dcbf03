"""
Coder sub-agent.

A fresh coder is invoked for every implementation attempt. It edits the
working tree of the run's environment; the implementation phase runs the
quality gates afterwards, so the coder is told to check its own work but
never to commit or push.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from phaseflow.agent_loop import AgentSpec, run_agent_loop
from phaseflow.environment.fs_tools import CODER_TOOLS, dispatch_fs_tool

if TYPE_CHECKING:
    from phaseflow.config import PhaseflowConfig
    from phaseflow.durable.context import StepContext
    from phaseflow.phases.common import PhaseServices


CODER_SYSTEM_PROMPT = '''You are a software engineer implementing a feature in an existing repository.

The repository is checked out on the feature branch in your working directory.
Do NOT clone, fetch, commit, push, or switch branches.

## Your Tools
- **glob / grep / read**: explore the codebase before changing it
- **write**: create or overwrite a file
- **edit**: replace an exact string in a file (the string must be unique unless replaceAll is set)
- **bash**: run commands in the repository root (tests, type checks, linters)

## How to Work
1. Read the approach and analysis in the task message and locate every file it names
2. Follow the conventions of the surrounding code; match naming, error handling and layout
3. Make the smallest set of changes that fully implements the approach
4. Address every judging condition you are given
5. Run the project's checks with bash and fix what they report

Your changes are verified afterwards with these commands, in order:
{gate_commands}

## Finishing
End with a short plain-text summary: what you changed, in which files, and anything
you could not resolve. Do NOT end your turn with a tool call.
'''


def build_coder_spec(config: PhaseflowConfig) -> AgentSpec:
    """Coder agent: full tool set, gate commands spelled out in the instructions."""
    gate_commands = "\n".join(f"- {gate}: `{command}`" for gate, command in config.gates.commands())
    return AgentSpec(
        name="coder",
        model=config.anthropic.coder_model,
        system=CODER_SYSTEM_PROMPT.format(gate_commands=gate_commands),
        tools=list(CODER_TOOLS),
        max_steps=config.pipeline.coder_max_steps,
    )


class CoderAgent:
    """
    Workflow function running one coding attempt.

    Input: ``{"prompt", "environmentId", "phaseResultId"}``.
    Output: ``{"text", "steps", "invocationId"}``.
    """

    function_name = "coder"

    def __init__(self, services: PhaseServices) -> None:
        self.services = services

    def __call__(self, ctx: StepContext, data: dict[str, Any]) -> dict[str, Any]:
        services = self.services
        env = services.provider.connect(data["environmentId"])
        spec = build_coder_spec(services.config)

        result = run_agent_loop(
            ctx,
            services.client,
            spec,
            [{"role": "user", "content": data["prompt"]}],
            lambda call: dispatch_fs_tool(env, call, services.logger),
            store=services.store,
            phase_result_id=data.get("phaseResultId"),
            max_tokens=services.config.anthropic.max_tokens,
            logger=services.logger,
        )
        return {"text": result.text, "steps": result.steps, "invocationId": result.invocation_id}
