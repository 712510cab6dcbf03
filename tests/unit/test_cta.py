"""Tests for human-in-the-loop requests and responses."""

from datetime import timedelta

import pytest

from phaseflow.cta import (
    CTA_REQUEST_EVENT,
    CtaSteps,
    approval_request,
    build_cta_request,
    choice_request,
    forward_cta_events,
    request_human_input,
    respond_to_cta,
)
from phaseflow.durable import WorkflowStatus
from phaseflow.errors import ApprovalCorrelationError
from phaseflow.events.types import EventType
from phaseflow.schemas import SchemaValidationError

OPTIONS = [{"id": "a", "label": "Option A"}, {"id": "b", "label": "Option B"}]


class TestBuildRequest:

    def test_approval_default_message(self):
        request = build_cta_request("c1", "r1", {"kind": "approval"})
        assert request == {"ctaId": "c1", "runId": "r1", "kind": "approval",
                           "message": "Approval requested"}

    def test_text_keeps_placeholder(self):
        request = build_cta_request("c1", "r1", {"kind": "text", "prompt": "Which API?",
                                                 "placeholder": "v2"})
        assert request["prompt"] == "Which API?"
        assert request["placeholder"] == "v2"

    def test_text_default_prompt(self):
        assert build_cta_request("c1", "r1", {"kind": "text"})["prompt"] == "Input requested"

    def test_choice_with_two_options(self):
        request = build_cta_request("c1", "r1", {"kind": "choice", "prompt": "Pick",
                                                 "options": OPTIONS})
        assert request["kind"] == "choice"
        assert request["options"] == OPTIONS

    def test_choice_with_one_option_becomes_approval(self):
        request = build_cta_request("c1", "r1", {"kind": "choice", "prompt": "Pick one.",
                                                 "options": OPTIONS[:1]})
        assert request["kind"] == "approval"
        assert request["message"] == "Pick one. Proceed with the only option: Option A?"

    def test_choice_without_options_becomes_approval(self):
        request = build_cta_request("c1", "r1", {"kind": "choice"})
        assert request == {"ctaId": "c1", "runId": "r1", "kind": "approval",
                           "message": "Choice requested Proceed?"}

    def test_step_names(self):
        gate = CtaSteps.for_gate("analysis")
        assert gate.wait == "cta-wait-after-analysis"
        assert gate.gen_id == "gen-cta-id-analysis"
        tool = CtaSteps.for_tool_call("toolu_1")
        assert tool.persist == "cta-persist-toolu_1"


@pytest.fixture
def ask(engine, store):
    """Register an 'ask' workflow that asks one question of kind ``data['kind']``."""

    def build(cta_id, kind):
        if kind == "choice":
            return choice_request(cta_id, "run-1", "Which approach?", OPTIONS)
        return approval_request(cta_id, "run-1", "Proceed?")

    def workflow(ctx, data):
        response = request_human_input(
            ctx, store, CtaSteps.for_gate("analysis"), "run-1",
            lambda cta_id: build(cta_id, data["kind"]), timedelta(days=30),
        )
        return {"response": response}

    engine.register("ask", workflow)
    return workflow


class TestRoundTrip:

    def test_request_persisted_and_workflow_suspended(self, engine, store, ask):
        record = engine.start("ask", {"kind": "approval"}, workflow_id="wf-1")
        assert record.status == WorkflowStatus.SUSPENDED
        pending = store.list_pending_approvals("run-1")
        assert len(pending) == 1
        assert pending[0].request["message"] == "Proceed?"

    def test_response_resumes_workflow(self, engine, store, ask):
        engine.start("ask", {"kind": "approval"}, workflow_id="wf-1")
        cta_id = store.list_pending_approvals("run-1")[0].id
        records = respond_to_cta(store, engine, {"ctaId": cta_id, "kind": "approval",
                                                 "approved": True})
        assert records[0].status == WorkflowStatus.COMPLETED
        assert records[0].output["response"]["approved"] is True
        assert store.get_approval_request(cta_id).response["approved"] is True

    def test_choice_response(self, engine, store, ask):
        engine.start("ask", {"kind": "choice"}, workflow_id="wf-1")
        cta_id = store.list_pending_approvals("run-1")[0].id
        records = respond_to_cta(store, engine, {"ctaId": cta_id, "kind": "choice",
                                                 "selectedId": "b"})
        assert records[0].output["response"]["selectedId"] == "b"

    def test_mismatched_kind_rejected_before_delivery(self, engine, store, ask):
        engine.start("ask", {"kind": "approval"}, workflow_id="wf-1")
        cta_id = store.list_pending_approvals("run-1")[0].id
        with pytest.raises(ApprovalCorrelationError):
            respond_to_cta(store, engine, {"ctaId": cta_id, "kind": "text", "text": "yes"})
        assert engine.get("wf-1").status == WorkflowStatus.SUSPENDED

    def test_unknown_cta_rejected(self, engine, store, ask):
        with pytest.raises(ApprovalCorrelationError):
            respond_to_cta(store, engine, {"ctaId": "nope", "kind": "approval", "approved": True})

    def test_malformed_response_rejected(self, engine, store, ask):
        with pytest.raises(SchemaValidationError):
            respond_to_cta(store, engine, {"ctaId": "c1", "kind": "approval"})

    def test_timeout_flags_request(self, engine, store, clock, ask):
        engine.start("ask", {"kind": "approval"}, workflow_id="wf-1")
        cta_id = store.list_pending_approvals("run-1")[0].id
        clock.advance(days=31)
        records = engine.sweep_timeouts()
        assert records[0].output == {"response": None}
        assert store.get_approval_request(cta_id).timed_out is True
        with pytest.raises(ApprovalCorrelationError, match="timed out"):
            respond_to_cta(store, engine, {"ctaId": cta_id, "kind": "approval", "approved": True})

    def test_late_response_refused_without_sweep(self, engine, store, clock, ask):
        engine.start("ask", {"kind": "approval"}, workflow_id="wf-1")
        cta_id = store.list_pending_approvals("run-1")[0].id
        clock.advance(days=31)

        with pytest.raises(ApprovalCorrelationError, match="already timed out"):
            respond_to_cta(store, engine, {"ctaId": cta_id, "kind": "approval", "approved": True})

        request = store.get_approval_request(cta_id)
        assert request.timed_out is True
        assert request.response is None
        record = engine.get("wf-1")
        assert record.status == WorkflowStatus.COMPLETED
        assert record.output == {"response": None}
        assert engine.journal.get_inbox("cta.response", cta_id) is None

    def test_response_inside_window_accepted(self, engine, store, clock, ask):
        engine.start("ask", {"kind": "approval"}, workflow_id="wf-1")
        cta_id = store.list_pending_approvals("run-1")[0].id
        clock.advance(days=29)
        records = respond_to_cta(store, engine, {"ctaId": cta_id, "kind": "approval",
                                                 "approved": True})
        assert records[0].output["response"]["approved"] is True

    def test_requests_forwarded_to_bus(self, engine, store, bus, ask):
        engine.subscribe(forward_cta_events(bus))
        engine.start("ask", {"kind": "approval"}, workflow_id="wf-1")
        cta_id = store.list_pending_approvals("run-1")[0].id
        respond_to_cta(store, engine, {"ctaId": cta_id, "kind": "approval", "approved": False},
                       bus=bus)
        types = [e.event_type for e in bus.persistence.get_by_run("run-1")]
        assert types == [EventType.CTA_REQUESTED, EventType.CTA_RESPONDED]

    def test_listener_ignores_other_events(self, bus):
        listener = forward_cta_events(bus)
        listener("run.started", {"runId": "run-1"})
        listener(CTA_REQUEST_EVENT, {"runId": "run-1", "ctaId": "c1", "kind": "approval"})
        assert len(bus.persistence.get_by_run("run-1")) == 1
