"""
Shared machinery for phase orchestrators.

This module handles:
- The services bundle every workflow function is built from
- The spawn_subagent tool and the dispatcher that routes orchestrator tool
  calls (sub-agents, human feedback, memories, filesystem tools)
- Asking a human through the durable approval protocol
- Parsing and validating a phase's final output
- The base orchestrator that runs the agent loop and returns
  ``{"output", "memories"}`` to the master orchestrator
"""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Callable, Iterator, Optional

from phaseflow.agent_loop import UNKNOWN_TOOL_RESULT, AgentSpec, run_agent_loop
from phaseflow.cta import (
    TIMEOUT_RESULT,
    CtaSteps,
    build_cta_request,
    request_human_input,
)
from phaseflow.environment.fs_tools import FS_TOOL_NAMES, dispatch_fs_tool
from phaseflow.errors import ApprovalTimeoutError, PhaseValidationError
from phaseflow.events.types import EventType
from phaseflow.llm_clients import ToolSpec
from phaseflow.memory import format_memories_for_prompt, record_memory
from phaseflow.models import MemoryRecord, RunPhase
from phaseflow.schemas import SchemaValidationError, extract_json_object

if TYPE_CHECKING:
    from phaseflow.config import PhaseflowConfig
    from phaseflow.durable.context import StepContext
    from phaseflow.environment.base import EnvironmentProvider, ExecutionEnvironment
    from phaseflow.events.bus import EventBus
    from phaseflow.github_client import GitHubClient
    from phaseflow.llm_clients import ModelClient, ToolCall
    from phaseflow.logger import PipelineLogger
    from phaseflow.store import PipelineStore


SPAWN_SUBAGENT_TOOL = ToolSpec(
    name="spawn_subagent",
    description=(
        "Spawn an explorer subagent to research the codebase. Use this to read files, "
        "search for patterns, and understand architecture. The explorer runs to completion "
        "and returns a summary of its findings."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "prompt": {
                "type": "string",
                "minLength": 1,
                "description": "Detailed instructions for the explorer",
            },
        },
        "required": ["prompt"],
        "additionalProperties": False,
    },
)


@dataclass
class PhaseServices:
    """Collaborators shared by every workflow function of the pipeline."""
    config: PhaseflowConfig
    store: PipelineStore
    client: ModelClient
    provider: EnvironmentProvider
    github: Optional[GitHubClient] = None
    bus: Optional[EventBus] = None
    logger: Optional[PipelineLogger] = None

    @property
    def cta_timeout(self) -> timedelta:
        """How long a human request may stay unanswered."""
        return timedelta(days=self.config.pipeline.cta_timeout_days)

    def publish(
        self,
        event_type: EventType,
        run_id: str,
        payload: Optional[dict[str, Any]] = None,
        phase: Optional[str] = None,
    ) -> None:
        """Publish a pipeline event if an event bus is configured."""
        if self.bus is not None:
            self.bus.publish(event_type, run_id, payload, phase=phase, source="pipeline")

    def log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self.logger:
            self.logger.log(event_type, data or {}, level=level)

    @contextmanager
    def run_scope(self, run_id: str) -> Iterator[None]:
        """Send log entries written inside the block to ``run_id``'s log."""
        if self.logger is None:
            yield
            return
        with self.logger.run_context(run_id):
            yield

    @contextmanager
    def phase_scope(self, phase: str) -> Iterator[None]:
        """Tag log entries written inside the block with ``phase``."""
        if self.logger is None:
            yield
            return
        with self.logger.phase_context(phase):
            yield


def ask_human(
    ctx: StepContext,
    services: PhaseServices,
    steps: CtaSteps,
    run_id: str,
    build_request: Callable[[str], dict[str, Any]],
    phase: Optional[str] = None,
    phase_result_id: Optional[str] = None,
    tool_call_id: Optional[str] = None,
) -> Optional[dict[str, Any]]:
    """
    Ask a human and wait for the answer, announcing a timeout on the bus.

    Returns:
        The validated response, or None if the request timed out.
    """
    issued: list[str] = []

    def build(cta_id: str) -> dict[str, Any]:
        issued.append(cta_id)
        return build_request(cta_id)

    response = request_human_input(
        ctx,
        services.store,
        steps,
        run_id,
        build,
        services.cta_timeout,
        phase_result_id=phase_result_id,
        tool_call_id=tool_call_id,
        logger=services.logger,
    )
    if response is None:
        ctx.run(f"{steps.timeout}-event", lambda: services.publish(
            EventType.CTA_TIMED_OUT, run_id, {"cta_id": issued[0]}, phase=phase
        ))
    return response


def parse_phase_output(
    phase: RunPhase,
    text: str,
    validator: Callable[[Any], dict[str, Any]],
) -> dict[str, Any]:
    """
    Extract and validate the JSON object an agent ended with.

    Raises:
        PhaseValidationError: If no object can be parsed or it fails its schema.
    """
    try:
        return validator(extract_json_object(text))
    except SchemaValidationError as e:
        raise PhaseValidationError(phase.value, str(e))


class PhaseToolbox:
    """
    Dispatch callback for an orchestrator's agent loop.

    Routes spawn_subagent to a child explorer workflow, request_human_feedback
    to the approval protocol and create_memory to the phase's collected
    memories. Filesystem tools are served when an environment is given.
    Everything it collects is rebuilt identically on replay.
    """

    def __init__(
        self,
        ctx: StepContext,
        services: PhaseServices,
        phase: RunPhase,
        data: dict[str, Any],
        invocation_id: str,
        env: Optional[ExecutionEnvironment] = None,
    ) -> None:
        self.ctx = ctx
        self.services = services
        self.phase = phase
        self.data = data
        self.invocation_id = invocation_id
        self.env = env
        self.memories: list[MemoryRecord] = []
        self.timed_out_cta: Optional[str] = None

    def __call__(self, call: ToolCall) -> Any:
        if call.name == "spawn_subagent":
            return self.spawn_subagent(call)
        if call.name == "request_human_feedback":
            return self.request_feedback(call)
        if call.name == "create_memory":
            result = record_memory(self.phase.value, call, self.memories)
            self.services.log("memory_created", {"phase": self.phase.value, "kind": result["kind"]})
            return result
        if self.env is not None and call.name in FS_TOOL_NAMES:
            return dispatch_fs_tool(self.env, call, self.services.logger)
        self.services.log("unknown_tool_call", {"tool": call.name}, level="warn")
        return UNKNOWN_TOOL_RESULT

    def spawn_subagent(self, call: ToolCall) -> dict[str, Any]:
        result = self.ctx.invoke(f"explore-{call.id}", "explorer", {
            "prompt": call.input["prompt"],
            "environmentId": self.data["environmentId"],
            "phaseResultId": self.data["phaseResultId"],
            "parentInvocationId": self.invocation_id,
        })
        self.services.log("explorer_complete", {"tool_call_id": call.id, "steps": result["steps"]})
        return {"summary": result["text"], "steps": result["steps"]}

    def request_feedback(self, call: ToolCall) -> dict[str, Any]:
        run_id = self.data["runId"]
        issued: list[str] = []

        def build(cta_id: str) -> dict[str, Any]:
            issued.append(cta_id)
            return build_cta_request(cta_id, run_id, call.input)

        response = ask_human(
            self.ctx,
            self.services,
            CtaSteps.for_tool_call(call.id),
            run_id,
            build,
            phase=self.phase.value,
            phase_result_id=self.data["phaseResultId"],
            tool_call_id=call.id,
        )
        if response is None:
            # The model still gets a result; the phase fails once the loop ends.
            if self.timed_out_cta is None:
                self.timed_out_cta = issued[0]
            return TIMEOUT_RESULT
        return {k: v for k, v in response.items() if k != "ctaId"}

    def raise_if_timed_out(self) -> None:
        """
        Raises:
            ApprovalTimeoutError: If any feedback request of this phase expired.
        """
        if self.timed_out_cta is not None:
            raise ApprovalTimeoutError(self.timed_out_cta)


class PhaseOrchestrator:
    """
    Base for LLM-driven phases (analysis, approaches, judging).

    Subclasses supply the instructions, tools and output handling. Called
    as a workflow function with ``{"runId", "phaseResultId", "environmentId",
    "prompt", "repoUrl", "branch", "memories", ...}`` and returns
    ``{"output", "memories"}``.
    """

    phase: RunPhase
    validator: Callable[[Any], dict[str, Any]]
    uses_environment_tools = False

    def __init__(self, services: PhaseServices) -> None:
        self.services = services

    @property
    def function_name(self) -> str:
        return self.phase.value

    def build_system_prompt(self, data: dict[str, Any], memories: str) -> str:
        raise NotImplementedError

    def build_spec(self, system: str) -> AgentSpec:
        raise NotImplementedError

    def build_user_message(self, data: dict[str, Any]) -> str:
        return data["prompt"]

    def finalize(self, ctx: StepContext, data: dict[str, Any], text: str) -> dict[str, Any]:
        """Turn the agent's final text into the phase output."""
        return parse_phase_output(self.phase, text, self.validator)

    def __call__(self, ctx: StepContext, data: dict[str, Any]) -> dict[str, Any]:
        services = self.services
        services.log("phase_orchestrator_started", {
            "phase": self.phase.value,
            "run_id": data["runId"],
            "environment_id": data["environmentId"],
        })
        env = services.provider.connect(data["environmentId"])
        memories = [MemoryRecord.from_dict(m) for m in data.get("memories", [])]
        system = self.build_system_prompt(data, format_memories_for_prompt(memories))
        spec = self.build_spec(system)

        invocation_id = ctx.run("orchestrator-invocation-id", lambda: uuid.uuid4().hex)
        toolbox = PhaseToolbox(
            ctx,
            services,
            self.phase,
            data,
            invocation_id,
            env=env if self.uses_environment_tools else None,
        )
        result = run_agent_loop(
            ctx,
            services.client,
            spec,
            [{"role": "user", "content": self.build_user_message(data)}],
            toolbox,
            store=services.store,
            phase_result_id=data["phaseResultId"],
            max_tokens=services.config.anthropic.max_tokens,
            logger=services.logger,
            invocation_id=invocation_id,
        )
        toolbox.raise_if_timed_out()

        output = self.finalize(ctx, data, result.text)
        services.log("phase_orchestrator_complete", {
            "phase": self.phase.value,
            "run_id": data["runId"],
            "steps": result.steps,
            "memories": len(toolbox.memories),
        })
        return {"output": output, "memories": [m.to_dict() for m in toolbox.memories]}
