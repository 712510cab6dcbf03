"""
Generic agent execution loop.

This module handles:
- The think -> dispatch -> inject cycle shared by every phase and sub-agent
- Checkpointing each model call as a journaled step
- Validating tool arguments against their JSON Schema before dispatch
- Grouping all results of one model turn into a single reply message
- Recording the run as an AgentInvocation
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Optional

from jsonschema import Draft202012Validator

from phaseflow.errors import PipelineError, ToolInputError
from phaseflow.llm_clients import ModelResponse, ToolCall, ToolSpec
from phaseflow.models import AgentInvocation

if TYPE_CHECKING:
    from phaseflow.durable.context import StepContext
    from phaseflow.llm_clients import ModelClient
    from phaseflow.logger import PipelineLogger
    from phaseflow.store import PipelineStore

ToolHandler = Callable[[ToolCall], Any]

UNKNOWN_TOOL_RESULT = {"error": "unknown tool"}


@dataclass
class AgentSpec:
    """How to run one agent: model, instructions, tools and step budget."""
    name: str
    model: str
    system: str
    tools: list[ToolSpec] = field(default_factory=list)
    max_steps: int = 50


@dataclass
class AgentLoopResult:
    """Outcome of one agent loop."""
    invocation_id: str
    text: str
    steps: int
    finish_reason: str
    usage: dict[str, int] = field(default_factory=dict)


def validate_tool_input(spec: ToolSpec, call: ToolCall) -> None:
    """
    Check a tool call's arguments against the tool's input schema.

    Raises:
        ToolInputError: If the arguments violate the schema.
    """
    validator = Draft202012Validator(spec.input_schema)
    errors = sorted(validator.iter_errors(call.input), key=lambda e: list(e.path))
    if errors:
        error = errors[0]
        location = "/".join(str(p) for p in error.path)
        message = f"{location}: {error.message}" if location else error.message
        raise ToolInputError(call.name, message)


def build_tool_result(call_id: str, result: Any) -> dict[str, Any]:
    """Render one dispatched action's result as a tool_result block."""
    content = result if isinstance(result, str) else json.dumps(result, default=str)
    block: dict[str, Any] = {
        "type": "tool_result",
        "tool_use_id": call_id,
        "content": content,
    }
    if isinstance(result, dict) and "error" in result:
        block["is_error"] = True
    return block


def _add_usage(total: dict[str, int], usage: dict[str, int]) -> None:
    for key, value in usage.items():
        total[key] = total.get(key, 0) + int(value)


def run_agent_loop(
    ctx: StepContext,
    client: ModelClient,
    spec: AgentSpec,
    messages: list[dict[str, Any]],
    on_tool_call: ToolHandler,
    store: Optional[PipelineStore] = None,
    phase_result_id: Optional[str] = None,
    parent_invocation_id: Optional[str] = None,
    step_prefix: str = "",
    max_tokens: Optional[int] = None,
    logger: Optional[PipelineLogger] = None,
    invocation_id: Optional[str] = None,
) -> AgentLoopResult:
    """
    Run an agent until it finishes or its step budget runs out.

    Each model call is a journaled step named ``<prefix>think-<i>`` and is
    never re-issued once it has returned. ``on_tool_call`` must checkpoint
    its own side effects; the loop only orders them and feeds results back.

    Args:
        ctx: Step context of the enclosing workflow.
        client: Model backend.
        spec: Model, system prompt, tools and step budget.
        messages: Initial conversation.
        on_tool_call: Dispatch callback, called once per requested action.
        store: When given, the run is recorded as an AgentInvocation.
        phase_result_id: PhaseResult owning the invocation.
        parent_invocation_id: Set for sub-agents.
        step_prefix: Prefix keeping step names unique per agent.
        max_tokens: Output cap per model call.
        logger: Optional logger.
        invocation_id: Pre-allocated invocation id, for callers that hand it
            to sub-agents as their parent. Generated as a step otherwise.

    Returns:
        AgentLoopResult with the final text, steps used and finish reason.

    Raises:
        ToolInputError: If the model calls a tool with invalid arguments.
    """
    tools_by_name = {t.name: t for t in spec.tools}
    conversation = [dict(m) for m in messages]
    usage: dict[str, int] = {}
    audit: list[dict[str, Any]] = []

    if invocation_id is None:
        invocation_id = ctx.run(f"{step_prefix}invocation-id", lambda: uuid.uuid4().hex)
    if store is not None:
        ctx.run(
            f"{step_prefix}create-invocation",
            lambda: store.create_agent_invocation(AgentInvocation(
                id=invocation_id,
                phase_result_id=phase_result_id,
                parent_invocation_id=parent_invocation_id,
                model=spec.model,
                system_prompt=spec.system,
                input_messages=messages,
            )).id,
        )

    def finish(reason: str, text: str) -> None:
        if store is not None:
            ctx.run(
                f"{step_prefix}complete-invocation",
                lambda: store.complete_agent_invocation(invocation_id, reason, text, usage, audit),
            )
        if logger:
            logger.log("agent_finished", {
                "agent": spec.name,
                "invocation_id": invocation_id,
                "finish_reason": reason,
                "steps": len(audit),
            })

    final_text = ""
    finish_reason = "max_steps"
    try:
        for i in range(spec.max_steps):
            snapshot = list(conversation)
            response = ModelResponse.from_dict(ctx.run(
                f"{step_prefix}think-{i}",
                lambda: client.complete(
                    spec.model, spec.system, snapshot, spec.tools, max_tokens
                ).to_dict(),
            ))
            _add_usage(usage, response.usage)
            audit.append({
                "step": i,
                "text": response.text,
                "tool_calls": [c.to_dict() for c in response.tool_calls],
                "finish_reason": response.finish_reason,
            })
            final_text = response.text

            if not response.tool_calls:
                finish_reason = response.finish_reason
                break

            conversation.append(response.to_message())
            results = []
            for call in response.tool_calls:
                tool = tools_by_name.get(call.name)
                if tool is None:
                    result: Any = UNKNOWN_TOOL_RESULT
                else:
                    validate_tool_input(tool, call)
                    result = on_tool_call(call)
                results.append(build_tool_result(call.id, result))
            conversation.append({"role": "user", "content": results})
    except PipelineError as e:
        finish("error", str(e))
        raise

    finish(finish_reason, final_text)
    return AgentLoopResult(
        invocation_id=invocation_id,
        text=final_text,
        steps=len(audit),
        finish_reason=finish_reason,
        usage=usage,
    )
