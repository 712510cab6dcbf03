"""
End-to-end feature runs driven through the workflow engine.

The model, environment provider and GitHub API are fakes; the store,
journal, event bus and every phase are real.
"""

import json

import pytest

from phaseflow.durable import WorkflowStatus
from phaseflow.environment.base import CommandResult
from phaseflow.errors import ApprovalCorrelationError
from phaseflow.events.types import EventType
from phaseflow.logger import PipelineLogger
from phaseflow.models import PhaseStatus, RunPhase
from tests.fakes import (
    PR_URL,
    analysis_output,
    approve,
    choose,
    finding,
    json_response,
    judge_report,
    pending_request,
    script_happy_path,
    text_response,
    tool_response,
)

pytestmark = pytest.mark.integration

PROMPT = "Add dark mode to the settings page"
REPO = "https://github.com/acme/web"
RUN_ID = "run-1"


def start(pipeline):
    return pipeline.start_run(PROMPT, REPO, branch="main", run_id=RUN_ID)


def phase_statuses(store):
    return {r.phase.value: r.status for r in store.list_phase_results(RUN_ID)}


def drive_to_implementation_gate(pipeline):
    start(pipeline)
    approve(pipeline, RUN_ID)
    choose(pipeline, RUN_ID, "approach-2")
    return approve(pipeline, RUN_ID)


class TestHappyPath:

    def test_run_reaches_pull_request(self, pipeline, model, env, provider, github, store, bus):
        script_happy_path(model)
        env.respond("--name-status", CommandResult(exit_code=0, stdout="M\tsrc/theme.ts\nA\tsrc/toggle.tsx\n"))

        record = start(pipeline)
        assert record.status == WorkflowStatus.SUSPENDED
        assert provider.provisioned[0]["id"] == "env-run-1"
        gate = pending_request(store, RUN_ID)
        assert gate.request["message"] == "Analysis complete. Approve to proceed to approach generation?"

        approve(pipeline, RUN_ID)
        choice = pending_request(store, RUN_ID)
        assert choice.request["kind"] == "choice"
        assert choice.request["prompt"] == "Which approach should I pursue?"
        assert [o["id"] for o in choice.request["options"]] == ["approach-1", "approach-2"]

        choose(pipeline, RUN_ID, "approach-2")
        assert pending_request(store, RUN_ID).request["message"] == (
            "Approach passed review. Begin implementation?"
        )
        approve(pipeline, RUN_ID)
        assert pending_request(store, RUN_ID).request["message"] == (
            "Implementation complete, all gates pass. Create PR?"
        )
        final = approve(pipeline, RUN_ID)

        assert final.status == WorkflowStatus.COMPLETED
        assert final.output == {"status": "completed", "prUrl": PR_URL}
        run = store.get_feature_run(RUN_ID)
        assert run.current_phase == RunPhase.COMPLETED
        assert set(phase_statuses(store).values()) == {PhaseStatus.PASSED}
        assert len(phase_statuses(store)) == 5
        assert provider.released == ["env-run-1"]

        args, kwargs = github.create_pull_request.call_args
        assert args[:3] == ("acme", "web", "feat: add dark mode to the settings page")
        assert kwargs == {"head": "feat/add-dark-mode-to-the-settings-page", "base": "main"}
        assert env.commands_matching("git push -u origin feat/add-dark-mode-to-the-settings-page")

    def test_selected_approach_reaches_judge_and_coder(self, pipeline, model, env, store):
        script_happy_path(model)
        drive_to_implementation_gate(pipeline)

        judge_system = model.calls_for("judge")[0]["system"]
        assert '"id": "approach-2"' in judge_system
        coder_prompt = model.calls_for("coder")[0]["messages"][0]["content"]
        assert "Context-driven theme" in coder_prompt
        assert "## Judging Conditions" in coder_prompt

        implementation = store.get_phase_result(f"{RUN_ID}:implementation").output
        assert implementation["totalCoderAttempts"] == 1
        assert implementation["conditionsAddressed"] == [
            "[quality] Naming drifts: Follow the module's naming"
        ]
        assert env.resets == [("feat/add-dark-mode-to-the-settings-page", None)]

    def test_single_approach_gate_is_an_approval(self, pipeline, model, store):
        script_happy_path(model, approach_count=1)
        start(pipeline)
        approve(pipeline, RUN_ID)
        gate = pending_request(store, RUN_ID)
        assert gate.kind.value == "approval"
        assert gate.request["message"] == "Proceed with the single approach?"
        approve(pipeline, RUN_ID)
        assert '"id": "approach-1"' in model.calls_for("judge")[0]["system"]

    def test_events_published(self, pipeline, model, store, bus):
        script_happy_path(model)
        start(pipeline)
        approve(pipeline, RUN_ID)
        types = [e.event_type for e in bus.persistence.get_by_run(RUN_ID)]
        assert types[:4] == [
            EventType.RUN_STARTED,
            EventType.PHASE_STARTED,
            EventType.PHASE_PASSED,
            EventType.PHASE_TRANSITION,
        ]
        assert EventType.CTA_REQUESTED in types
        assert EventType.CTA_RESPONDED in types

    def test_replayed_start_does_not_duplicate(self, pipeline, model, provider, store):
        script_happy_path(model)
        start(pipeline)
        again = start(pipeline)
        assert again.status == WorkflowStatus.SUSPENDED
        assert len(store.list_approval_requests(RUN_ID)) == 1
        assert len(model.calls_for("analysis")) == 1
        assert len(provider.provisioned) == 1

    def test_run_logs_to_its_own_file(self, pipeline, services, model, config):
        services.logger = PipelineLogger(config)
        script_happy_path(model)
        start(pipeline)
        approve(pipeline, RUN_ID, approved=False)

        entries = services.logger.read_logs(run_id=RUN_ID)
        assert {e["run_id"] for e in entries} == {RUN_ID}
        types = [e["event_type"] for e in entries]
        assert "cta_emitted" in types
        assert "phase_failed" in types
        assert services.logger.read_logs(run_id=RUN_ID, phase="analysis")
        assert services.logger.list_runs() == [RUN_ID]
        assert services.logger.read_logs() == []


class TestMemoriesAndTools:

    def test_memories_threaded_to_later_phases(self, pipeline, model, store):
        model.add(
            "analysis",
            tool_response(("m1", "create_memory", {"kind": "constraint", "content": "No new dependencies"})),
            json_response(analysis_output()),
        )
        script_happy_path(model)
        model.scripts["analysis"].pop()
        start(pipeline)
        approve(pipeline, RUN_ID)

        memories = store.read_feature_run_memories(RUN_ID)
        assert [(m.phase, m.kind, m.content) for m in memories] == [
            ("analysis", "constraint", "No new dependencies"),
        ]
        approaches_system = model.calls_for("approaches")[0]["system"]
        assert "### Constraints\n- [analysis] No new dependencies" in approaches_system

    def test_spawn_subagent_runs_explorer(self, pipeline, model, store):
        model.add(
            "analysis",
            tool_response(("s1", "spawn_subagent", {"prompt": "Where are colors defined?"})),
            json_response(analysis_output()),
        )
        model.add("explorer", text_response("Colors live in src/theme.ts"))
        start(pipeline)

        second_turn = model.calls_for("analysis")[1]["messages"]
        result = json.loads(second_turn[2]["content"][0]["content"])
        assert result == {"summary": "Colors live in src/theme.ts", "steps": 1}
        assert model.calls_for("explorer")[0]["messages"][0]["content"] == "Where are colors defined?"

        invocations = store.list_agent_invocations(phase_result_id=f"{RUN_ID}:analysis")
        parent = [i for i in invocations if i.parent_invocation_id is None][0]
        children = store.list_agent_invocations(parent_invocation_id=parent.id)
        assert [c.output_text for c in children] == ["Colors live in src/theme.ts"]

    def test_agent_feedback_request_round_trip(self, pipeline, model, store):
        model.add(
            "analysis",
            tool_response(("f1", "request_human_feedback", {"kind": "text", "prompt": "Which API?"})),
            json_response(analysis_output()),
        )
        record = start(pipeline)
        assert record.status == WorkflowStatus.SUSPENDED
        request = pending_request(store, RUN_ID)
        assert request.tool_call_id == "f1"
        assert request.phase_result_id == f"{RUN_ID}:analysis"

        pipeline.respond({"ctaId": request.id, "kind": "text", "text": "Use v2"})
        second_turn = model.calls_for("analysis")[1]["messages"]
        assert json.loads(second_turn[2]["content"][0]["content"]) == {"kind": "text", "text": "Use v2"}
        assert pending_request(store, RUN_ID).request["kind"] == "approval"

    def test_agent_feedback_timeout_fails_phase(self, pipeline, model, store, clock):
        model.add(
            "analysis",
            tool_response(("f1", "request_human_feedback", {"kind": "approval", "message": "OK?"})),
            json_response(analysis_output()),
        )
        start(pipeline)
        clock.advance(days=31)
        record = pipeline.sweep_timeouts()[0]

        second_turn = model.calls_for("analysis")[1]["messages"]
        assert json.loads(second_turn[2]["content"][0]["content"])["error"] == "timeout"
        assert record.output["status"] == "failed"
        assert record.output["reason"] == "timeout"
        assert record.output["failedPhase"] == "analysis"


class TestFailures:

    def test_gate_rejection_fails_run(self, pipeline, model, store, provider, bus):
        script_happy_path(model)
        start(pipeline)
        record = approve(pipeline, RUN_ID, approved=False, reason="Scope too broad")

        assert record.status == WorkflowStatus.COMPLETED
        assert record.output == {
            "status": "failed",
            "failedPhase": "analysis",
            "reason": "rejection",
            "message": "Scope too broad",
        }
        assert store.get_feature_run(RUN_ID).current_phase == RunPhase.FAILED
        assert phase_statuses(store) == {"analysis": PhaseStatus.FAILED}
        assert provider.released == ["env-run-1"]
        assert EventType.RUN_FAILED in [e.event_type for e in bus.persistence.get_by_run(RUN_ID)]

    def test_gate_timeout_fails_run(self, pipeline, model, store, clock, provider):
        script_happy_path(model)
        start(pipeline)
        assert pipeline.sweep_timeouts() == []

        clock.advance(days=31)
        record = pipeline.sweep_timeouts()[0]
        assert record.output["reason"] == "timeout"
        assert record.output["failedPhase"] == "analysis"
        assert store.list_approval_requests(RUN_ID)[0].timed_out is True
        assert provider.released == ["env-run-1"]

    def test_late_gate_response_is_a_timeout(self, pipeline, model, store, clock, provider):
        script_happy_path(model)
        start(pipeline)
        clock.advance(days=31)

        with pytest.raises(ApprovalCorrelationError, match="timed out"):
            approve(pipeline, RUN_ID)

        outcome = pipeline.outcome(RUN_ID)
        assert outcome["reason"] == "timeout"
        assert outcome["failedPhase"] == "analysis"
        assert store.list_approval_requests(RUN_ID)[0].timed_out is True
        assert model.calls_for("approaches") == []
        assert provider.released == ["env-run-1"]

    def test_judging_gate_timeout_fails_run(self, pipeline, model, store, clock, provider):
        script_happy_path(model)
        start(pipeline)
        approve(pipeline, RUN_ID)
        choose(pipeline, RUN_ID, "approach-2")
        clock.advance(days=31)
        record = pipeline.sweep_timeouts()[0]

        assert record.output["status"] == "failed"
        assert record.output["failedPhase"] == "judging"
        assert record.output["reason"] == "timeout"
        assert store.get_feature_run(RUN_ID).current_phase == RunPhase.FAILED
        assert store.get_phase_result(f"{RUN_ID}:judging").status == PhaseStatus.FAILED
        assert "implementation" not in phase_statuses(store)
        assert model.calls_for("coder") == []
        assert provider.released == ["env-run-1"]

    def test_judge_rejection_fails_judging(self, pipeline, model, store):
        script_happy_path(model)
        model.scripts["judge"] = [json_response(judge_report(finding("critical", "security", "Token logged")))]
        start(pipeline)
        approve(pipeline, RUN_ID)
        record = choose(pipeline, RUN_ID, "approach-1")

        assert record.output["reason"] == "rejection"
        assert record.output["failedPhase"] == "judging"
        assert record.output["message"] == "Critical findings: [security] Token logged"
        judging = store.get_phase_result(f"{RUN_ID}:judging")
        assert judging.status == PhaseStatus.FAILED
        assert judging.output["judgingOutput"]["overallVerdict"] == "rejected"
        assert model.calls_for("coder") == []

    def test_invalid_analysis_output_is_validation_failure(self, pipeline, model, store):
        model.add("analysis", text_response("I could not finish."))
        record = start(pipeline)
        assert record.output["reason"] == "validation"
        assert record.output["failedPhase"] == "analysis"
        assert pipeline.services.store.list_pending_approvals(RUN_ID) == []

    def test_unknown_choice_fails_without_fallback(self, pipeline, model, store):
        script_happy_path(model)
        start(pipeline)
        approve(pipeline, RUN_ID)
        record = choose(pipeline, RUN_ID, "approach-9")

        assert record.status == WorkflowStatus.FAILED
        assert record.error.startswith("ApproachSelectionError:")
        assert store.get_feature_run(RUN_ID).current_phase == RunPhase.FAILED
        assert phase_statuses(store)["approaches"] == PhaseStatus.FAILED
        assert model.calls_for("judge") == []

    def test_resume_after_infrastructure_failure(self, pipeline, model, provider, store):
        script_happy_path(model)
        real_provision = provider.provision
        attempts = []

        def flaky_provision(*args):
            attempts.append(args)
            if len(attempts) == 1:
                raise ConnectionError("sandbox host unreachable")
            return real_provision(*args)

        provider.provision = flaky_provision
        record = start(pipeline)
        assert record.status == WorkflowStatus.FAILED
        assert record.error == "ConnectionError: sandbox host unreachable"

        resumed = pipeline.resume(RUN_ID)
        assert resumed.status == WorkflowStatus.SUSPENDED
        assert len(attempts) == 2
        assert pending_request(store, RUN_ID).request["kind"] == "approval"

    def test_pull_request_failure_reported(self, pipeline, model, github, provider):
        script_happy_path(model)
        github.create_pull_request.side_effect = RuntimeError("GitHub API returned 500")
        drive_to_implementation_gate(pipeline)
        record = approve(pipeline, RUN_ID)

        assert record.output == {
            "status": "failed",
            "failedPhase": "pr",
            "reason": "error",
            "message": "GitHub API returned 500",
        }
        assert provider.released == ["env-run-1"]
