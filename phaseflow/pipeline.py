"""
Master orchestrator for feature runs.

This module handles:
- Provisioning the run's environment and creating the run
- Walking analysis -> approaches -> judging -> implementation -> pr
- Persisting phase results and threading memories between phases
- The human gate after every phase, including approach selection
- Failing the run (and releasing the environment) on phase failure,
  rejection or gate timeout
- Wiring the engine, phase workflow functions and event forwarding
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from phaseflow.agents import CoderAgent, ExplorerAgent
from phaseflow.cta import CtaSteps, approval_request, choice_request, forward_cta_events, respond_to_cta
from phaseflow.durable.context import InvokeError
from phaseflow.durable.engine import WorkflowEngine
from phaseflow.environment.local import LocalEnvironmentProvider
from phaseflow.errors import ApproachSelectionError, FailureReason
from phaseflow.events.bus import EventBus
from phaseflow.events.types import EventType
from phaseflow.github_client import GitHubClient
from phaseflow.llm_clients import AnthropicClient
from phaseflow.logger import get_logger
from phaseflow.models import FeatureRun, MemoryRecord, RunPhase, next_phase
from phaseflow.phases import (
    AnalysisPhase,
    ApproachesPhase,
    ImplementationPhase,
    JudgingPhase,
    PhaseServices,
    PullRequestPhase,
    approach_options,
    ask_human,
    select_approach,
)
from phaseflow.store import PipelineStore

if TYPE_CHECKING:
    from phaseflow.config import PhaseflowConfig
    from phaseflow.durable.context import StepContext
    from phaseflow.durable.journal import WorkflowRecord
    from phaseflow.environment.base import EnvironmentProvider
    from phaseflow.llm_clients import ModelClient
    from phaseflow.logger import PipelineLogger

FEATURE_RUN_FUNCTION = "feature-run"

AGENT_PHASES = (
    RunPhase.ANALYSIS,
    RunPhase.APPROACHES,
    RunPhase.JUDGING,
    RunPhase.IMPLEMENTATION,
)

GATE_MESSAGES = {
    RunPhase.ANALYSIS: "Analysis complete. Approve to proceed to approach generation?",
    RunPhase.JUDGING: "Approach passed review. Begin implementation?",
    RunPhase.IMPLEMENTATION: "Implementation complete, all gates pass. Create PR?",
}
APPROACH_CHOICE_PROMPT = "Which approach should I pursue?"
SINGLE_APPROACH_MESSAGE = "Proceed with the single approach?"

_FAILURE_REASONS = {r.value for r in FailureReason}


def failure_reason(value: Optional[str]) -> str:
    """Normalize a child failure reason to a user-visible FailureReason value."""
    return value if value in _FAILURE_REASONS else FailureReason.ERROR.value


def build_gate_request(
    phase: RunPhase, cta_id: str, run_id: str, output: dict[str, Any]
) -> dict[str, Any]:
    """
    Build the request for the gate after ``phase``.

    The approaches gate is a choice over approach titles when there are at
    least two approaches, and an approval otherwise.
    """
    if phase == RunPhase.APPROACHES:
        options = approach_options(output)
        if len(options) >= 2:
            return choice_request(cta_id, run_id, APPROACH_CHOICE_PROMPT, options)
        return approval_request(cta_id, run_id, SINGLE_APPROACH_MESSAGE)
    return approval_request(cta_id, run_id, GATE_MESSAGES[phase])


class FeatureRunWorkflow:
    """
    Root workflow function of a feature run.

    Input: ``{"runId", "prompt", "repoUrl", "branch", "runtime"}``.
    Returns the run outcome: ``{"status": "completed", "prUrl"}`` or
    ``{"status": "failed", "failedPhase", "reason", "message"}``.

    Every side effect is a named step, so a replay after a crash or a
    resumed wait skips what already happened.
    """

    function_name = FEATURE_RUN_FUNCTION

    def __init__(self, services: PhaseServices) -> None:
        self.services = services

    # -------------------------------------------------------------------------
    # Step bodies
    # -------------------------------------------------------------------------

    def _create_run(self, data: dict[str, Any], environment_id: str) -> str:
        run = self.services.store.create_feature_run(FeatureRun(
            id=data["runId"],
            prompt=data["prompt"],
            environment_id=environment_id,
            repo_url=data["repoUrl"],
            branch=data["branch"],
        ))
        self.services.publish(EventType.RUN_STARTED, run.id, {
            "prompt": run.prompt,
            "repo_url": run.repo_url,
            "branch": run.branch,
            "environment_id": environment_id,
        })
        return run.id

    def _create_phase(self, run_id: str, phase: RunPhase) -> str:
        result = self.services.store.create_phase_result(f"{run_id}:{phase.value}", run_id, phase)
        self.services.publish(EventType.PHASE_STARTED, run_id,
                              {"phase_result_id": result.id}, phase=phase.value)
        return result.id

    def _pass_phase(self, run_id: str, phase: RunPhase, phase_result_id: str,
                    output: Any, memory_count: int) -> None:
        self.services.store.pass_phase_result(phase_result_id, output)
        self.services.publish(EventType.PHASE_PASSED, run_id, {
            "phase_result_id": phase_result_id,
            "memory_count": memory_count,
        }, phase=phase.value)

    def _advance(self, run_id: str, phase: RunPhase) -> None:
        target = next_phase(phase)
        self.services.store.update_feature_run_phase(run_id, target)
        if self.services.bus is not None:
            self.services.bus.emit_phase_transition(run_id, phase.value, target.value)

    def _append_memories(self, run_id: str, memories: list[dict[str, Any]]) -> None:
        self.services.store.append_feature_run_memories(
            run_id, [MemoryRecord.from_dict(m) for m in memories]
        )

    def _release(self, environment_id: str) -> None:
        self.services.provider.release(environment_id)

    def _fail(
        self,
        ctx: StepContext,
        run_id: str,
        environment_id: str,
        phase: RunPhase,
        phase_result_id: str,
        reason: str,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Fail the phase result and the run, release the environment."""
        services = self.services
        services.log("phase_failed", {
            "run_id": run_id,
            "phase": phase.value,
            "reason": reason,
            "message": message,
        }, level="error")

        def fail_phase() -> None:
            diagnostics = {"reason": reason, "message": message, **(details or {})}
            services.store.fail_phase_result(phase_result_id, diagnostics)
            services.publish(EventType.PHASE_FAILED, run_id, {
                "phase_result_id": phase_result_id,
                "reason": reason,
                "message": message,
            }, phase=phase.value)

        def fail_run() -> None:
            services.store.fail_feature_run(run_id)
            services.publish(EventType.RUN_FAILED, run_id, {
                "failed_phase": phase.value,
                "reason": reason,
                "message": message,
            })

        ctx.run(f"fail-phase-{phase.value}", fail_phase)
        ctx.run("fail-run", fail_run)
        ctx.run("release-environment", lambda: self._release(environment_id))
        return {"status": "failed", "failedPhase": phase.value, "reason": reason, "message": message}

    # -------------------------------------------------------------------------
    # Workflow
    # -------------------------------------------------------------------------

    def _phase_input(
        self, phase: RunPhase, base: dict[str, Any], outputs: dict[str, Any]
    ) -> dict[str, Any]:
        data = dict(base)
        if phase != RunPhase.ANALYSIS:
            data["analysisOutput"] = outputs[RunPhase.ANALYSIS.value]
        if phase in (RunPhase.JUDGING, RunPhase.IMPLEMENTATION):
            data["selectedApproach"] = outputs["selectedApproach"]
        if phase == RunPhase.IMPLEMENTATION:
            data["judgingOutput"] = outputs[RunPhase.JUDGING.value]
        return data

    def __call__(self, ctx: StepContext, data: dict[str, Any]) -> dict[str, Any]:
        with self.services.run_scope(data["runId"]):
            return self._run(ctx, data)

    def _run(self, ctx: StepContext, data: dict[str, Any]) -> dict[str, Any]:
        services = self.services
        store = services.store
        run_id = data["runId"]
        environment_id = data.get("environmentId") or f"env-{run_id}"
        runtime = data.get("runtime") or services.config.environment.default_runtime

        ctx.run("create-environment", lambda: services.provider.provision(
            environment_id, data["repoUrl"], data["branch"], runtime
        ).id)
        ctx.run("create-feature-run", lambda: self._create_run(data, environment_id))

        base = {
            "runId": run_id,
            "environmentId": environment_id,
            "prompt": data["prompt"],
            "repoUrl": data["repoUrl"],
            "branch": data["branch"],
        }
        outputs: dict[str, Any] = {}

        for phase in AGENT_PHASES:
            p = phase.value
            phase_result_id = ctx.run(f"create-phase-{p}", lambda: self._create_phase(run_id, phase))
            memories = ctx.run(
                f"read-memories-{p}",
                lambda: [m.to_dict() for m in store.read_feature_run_memories(run_id)],
            )
            phase_input = self._phase_input(phase, base, outputs)
            phase_input.update({"phaseResultId": phase_result_id, "memories": memories})

            try:
                with services.phase_scope(p):
                    result = ctx.invoke(f"invoke-{p}", p, phase_input)
            except InvokeError as e:
                return self._fail(ctx, run_id, environment_id, phase, phase_result_id,
                                  failure_reason(e.reason), e.message, e.details)

            output = result["output"]
            new_memories = result["memories"]
            ctx.run(f"pass-phase-{p}", lambda: self._pass_phase(
                run_id, phase, phase_result_id, output, len(new_memories)
            ))
            ctx.run(f"advance-phase-{p}", lambda: self._advance(run_id, phase))
            if new_memories:
                ctx.run(f"append-memories-{p}", lambda: self._append_memories(run_id, new_memories))
            outputs[p] = output

            response = ask_human(
                ctx,
                services,
                CtaSteps.for_gate(p),
                run_id,
                lambda cta_id: build_gate_request(phase, cta_id, run_id, output),
                phase=p,
            )
            if response is None:
                return self._fail(ctx, run_id, environment_id, phase, phase_result_id,
                                  FailureReason.TIMEOUT.value,
                                  f"Approval gate after {p} timed out")
            if response["kind"] == "approval" and not response["approved"]:
                return self._fail(ctx, run_id, environment_id, phase, phase_result_id,
                                  FailureReason.REJECTION.value,
                                  response.get("reason") or f"Rejected at the gate after {p}")

            if phase == RunPhase.APPROACHES:
                if response["kind"] == "choice":
                    selected_id = response["selectedId"]
                else:
                    selected_id = output["approaches"][0]["id"]
                try:
                    outputs["selectedApproach"] = select_approach(output, selected_id)
                except ApproachSelectionError as e:
                    self._fail(ctx, run_id, environment_id, phase, phase_result_id,
                               FailureReason.ERROR.value, str(e), e.details)
                    raise

        return self._open_pull_request(ctx, base, outputs)

    def _open_pull_request(
        self, ctx: StepContext, base: dict[str, Any], outputs: dict[str, Any]
    ) -> dict[str, Any]:
        services = self.services
        run_id = base["runId"]
        environment_id = base["environmentId"]
        phase = RunPhase.PR

        phase_result_id = ctx.run("create-phase-pr", lambda: self._create_phase(run_id, phase))
        pr_input = {
            **base,
            "phaseResultId": phase_result_id,
            "analysisOutput": outputs[RunPhase.ANALYSIS.value],
            "selectedApproach": outputs["selectedApproach"],
            "implementationOutput": outputs[RunPhase.IMPLEMENTATION.value],
        }
        try:
            with services.phase_scope(phase.value):
                result = ctx.invoke("create-pr", phase.value, pr_input)
        except InvokeError as e:
            return self._fail(ctx, run_id, environment_id, phase, phase_result_id,
                              failure_reason(e.reason), e.message, e.details)

        output = result["output"]
        ctx.run("pass-phase-pr", lambda: self._pass_phase(run_id, phase, phase_result_id, output, 0))

        def complete_run() -> None:
            services.store.complete_feature_run(run_id)
            services.publish(EventType.RUN_COMPLETED, run_id, {"pr_url": output["prUrl"]})

        ctx.run("complete-run", complete_run)
        ctx.run("release-environment", lambda: self._release(environment_id))
        services.log("run_completed", {"run_id": run_id, "pr_url": output["prUrl"]})
        return {"status": "completed", "prUrl": output["prUrl"]}


class Pipeline:
    """
    Entry point tying the engine, services and workflow functions together.

    Used by the CLI to start runs, deliver human responses, sweep timeouts
    and resume failed workflows.
    """

    def __init__(self, services: PhaseServices, engine: WorkflowEngine) -> None:
        self.services = services
        self.engine = engine
        for fn in (
            FeatureRunWorkflow(services),
            AnalysisPhase(services),
            ApproachesPhase(services),
            JudgingPhase(services),
            ImplementationPhase(services),
            PullRequestPhase(services),
            ExplorerAgent(services),
            CoderAgent(services),
        ):
            engine.register(fn.function_name, fn)
        if services.bus is not None:
            engine.subscribe(forward_cta_events(services.bus))

    @classmethod
    def from_config(
        cls,
        config: PhaseflowConfig,
        client: Optional[ModelClient] = None,
        provider: Optional[EnvironmentProvider] = None,
        github: Optional[GitHubClient] = None,
        logger: Optional[PipelineLogger] = None,
    ) -> Pipeline:
        """Build a pipeline from configuration, defaulting every collaborator."""
        logger = logger or get_logger(config)
        store = PipelineStore.from_config(config, logger)
        services = PhaseServices(
            config=config,
            store=store,
            client=client or AnthropicClient(config.anthropic, config.retry, logger),
            provider=provider or LocalEnvironmentProvider(config, store, logger),
            github=github or GitHubClient(config.github, logger),
            bus=EventBus(config.events_path),
            logger=logger,
        )
        return cls(services, WorkflowEngine(config.db_path, logger))

    def start_run(
        self,
        prompt: str,
        repo_url: str,
        branch: str = "main",
        runtime: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> WorkflowRecord:
        """
        Start a feature run and drive it to its first suspension or end.

        The run id doubles as the root workflow id.
        """
        run_id = run_id or uuid.uuid4().hex
        return self.engine.start(FEATURE_RUN_FUNCTION, {
            "runId": run_id,
            "prompt": prompt,
            "repoUrl": repo_url,
            "branch": branch,
            "runtime": runtime or self.services.config.environment.default_runtime,
        }, workflow_id=run_id)

    def respond(self, response: dict[str, Any]) -> list[WorkflowRecord]:
        """Record a human response and resume the run waiting on it."""
        return respond_to_cta(self.services.store, self.engine, response, self.services.bus)

    def sweep_timeouts(self, now: Optional[datetime] = None) -> list[WorkflowRecord]:
        """Resume runs whose human requests have expired."""
        return self.engine.sweep_timeouts(now)

    def resume(self, run_id: str) -> WorkflowRecord:
        """Replay a run that failed on an infrastructure error."""
        return self.engine.resume(run_id)

    def outcome(self, run_id: str) -> Optional[dict[str, Any]]:
        """The run outcome once the root workflow has completed, else None."""
        record = self.engine.get(run_id)
        return record.output if record is not None else None
