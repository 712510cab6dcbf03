"""Tests for the replay-based workflow engine."""

from datetime import timedelta

import pytest

from phaseflow.durable import (
    EventAlreadyDelivered,
    InvokeError,
    WorkflowEngine,
    WorkflowError,
    WorkflowStatus,
)
from phaseflow.errors import GateExhaustionError


@pytest.fixture
def engine(tmp_path, clock):
    return WorkflowEngine(tmp_path / "engine.db", clock=clock)


class Counter:
    """Callable step body that counts how often it really ran."""

    def __init__(self, value=None):
        self.calls = 0
        self.value = value

    def __call__(self):
        self.calls += 1
        return self.value if self.value is not None else self.calls


class TestRunSteps:

    def test_completed_workflow_records_output(self, engine):
        engine.register("double", lambda ctx, data: ctx.run("calc", lambda: data["n"] * 2))
        record = engine.start("double", {"n": 21}, workflow_id="wf-1")
        assert record.status == WorkflowStatus.COMPLETED
        assert record.output == 42

    def test_steps_memoised_across_replays(self, engine):
        side_effect = Counter()

        def flow(ctx, data):
            ctx.run("side-effect", side_effect)
            return ctx.wait_for_event("wait", "go", "k1", timedelta(hours=1))

        engine.register("flow", flow)
        engine.start("flow", {}, workflow_id="wf-1")
        engine.deliver_event("go", "k1", {"ok": True})
        assert side_effect.calls == 1
        assert engine.get("wf-1").output == {"ok": True}

    def test_results_are_json_round_tripped(self, engine):
        engine.register("tuple", lambda ctx, data: ctx.run("t", lambda: (1, 2)))
        assert engine.start("tuple", None, workflow_id="wf-1").output == [1, 2]

    def test_repeated_step_names_get_suffixes(self, engine):
        def loop(ctx, data):
            return [ctx.run("think", lambda i=i: i) for i in range(3)]

        engine.register("loop", loop)
        engine.start("loop", None, workflow_id="wf-1")
        names = [s.step_name for s in engine.journal.list_steps("wf-1")]
        assert names == ["think", "think:1", "think:2"]

    def test_unknown_function(self, engine):
        with pytest.raises(WorkflowError, match="Unknown workflow function"):
            engine.start("missing", None)

    def test_completed_workflow_is_not_rerun(self, engine):
        body = Counter("done")
        engine.register("once", lambda ctx, data: ctx.run("body", body))
        engine.start("once", None, workflow_id="wf-1")
        engine.start("once", None, workflow_id="wf-1")
        assert body.calls == 1


class TestEvents:

    def make_waiting(self, engine, timeout=timedelta(days=30)):
        engine.register("waiter", lambda ctx, data: ctx.wait_for_event(
            "approval", "cta.response", data["ctaId"], timeout
        ))
        return engine.start("waiter", {"ctaId": "c1"}, workflow_id="wf-1")

    def test_wait_suspends(self, engine):
        record = self.make_waiting(engine)
        assert record.status == WorkflowStatus.SUSPENDED
        assert len(engine.journal.pending_waits("cta.response", "c1")) == 1

    def test_delivery_resumes(self, engine):
        self.make_waiting(engine)
        records = engine.deliver_event("cta.response", "c1", {"approved": True})
        assert [r.workflow_id for r in records] == ["wf-1"]
        assert records[0].status == WorkflowStatus.COMPLETED
        assert records[0].output == {"approved": True}
        assert engine.journal.pending_waits() == []

    def test_second_delivery_rejected(self, engine):
        self.make_waiting(engine)
        engine.deliver_event("cta.response", "c1", {"approved": True})
        with pytest.raises(EventAlreadyDelivered):
            engine.deliver_event("cta.response", "c1", {"approved": False})

    def test_event_before_wait_is_picked_up(self, engine):
        engine.deliver_event("cta.response", "c1", {"approved": False})
        record = self.make_waiting(engine)
        assert record.status == WorkflowStatus.COMPLETED
        assert record.output == {"approved": False}

    def test_delivery_for_nobody_is_stored(self, engine):
        assert engine.deliver_event("cta.response", "orphan", {}) == []
        assert engine.journal.get_inbox("cta.response", "orphan") is not None

    def test_sweep_turns_expiry_into_none(self, engine, clock):
        self.make_waiting(engine, timeout=timedelta(days=30))
        assert engine.sweep_timeouts() == []
        clock.advance(days=30, seconds=1)
        records = engine.sweep_timeouts()
        assert records[0].status == WorkflowStatus.COMPLETED
        assert records[0].output is None

    def test_late_event_after_timeout_does_not_rerun(self, engine, clock):
        self.make_waiting(engine, timeout=timedelta(hours=1))
        clock.advance(hours=2)
        engine.sweep_timeouts()
        assert engine.deliver_event("cta.response", "c1", {"approved": True}) == []
        assert engine.get("wf-1").output is None

    def test_event_delivered_after_deadline_is_a_timeout(self, engine, clock):
        self.make_waiting(engine, timeout=timedelta(days=30))
        clock.advance(days=31)
        records = engine.deliver_event("cta.response", "c1", {"approved": True})
        assert records[0].status == WorkflowStatus.COMPLETED
        assert records[0].output is None
        assert engine.journal.pending_waits() == []

    def test_event_delivered_just_before_deadline_is_accepted(self, engine, clock):
        self.make_waiting(engine, timeout=timedelta(days=30))
        clock.advance(days=29, hours=23)
        records = engine.deliver_event("cta.response", "c1", {"approved": True})
        assert records[0].output == {"approved": True}

    def test_send_event_emitted_once(self, engine):
        seen = []
        engine.subscribe(lambda name, payload: seen.append((name, payload)))

        def flow(ctx, data):
            ctx.send_event("announce", "run.started", {"runId": "r1"})
            return ctx.wait_for_event("wait", "go", "k1", timedelta(hours=1))

        engine.register("flow", flow)
        engine.start("flow", None, workflow_id="wf-1")
        engine.deliver_event("go", "k1", 1)
        assert seen == [("run.started", {"runId": "r1"})]
        assert len(engine.journal.list_outbox("wf-1")) == 1

    def test_failing_listener_does_not_break_workflow(self, engine):
        def broken(name, payload):
            raise RuntimeError("listener down")

        engine.subscribe(broken)
        engine.register("flow", lambda ctx, data: ctx.send_event("e", "evt", {}) or "ok")
        assert engine.start("flow", None, workflow_id="wf-1").output == "ok"


class TestChildWorkflows:

    def test_child_output_memoised(self, engine):
        child_body = Counter("child-result")
        engine.register("child", lambda ctx, data: ctx.run("body", child_body))

        def parent(ctx, data):
            value = ctx.invoke("call-child", "child", {})
            ctx.wait_for_event("wait", "go", "k1", timedelta(hours=1))
            return value

        engine.register("parent", parent)
        engine.start("parent", None, workflow_id="wf-1")
        engine.deliver_event("go", "k1", None)
        assert engine.get("wf-1").output == "child-result"
        assert engine.get("wf-1/call-child").status == WorkflowStatus.COMPLETED
        assert child_body.calls == 1
        roots = engine.journal.list_workflows(roots_only=True)
        assert [w.workflow_id for w in roots] == ["wf-1"]
        assert len(engine.journal.list_workflows(status=WorkflowStatus.COMPLETED)) == 2

    def test_wait_inside_child_routes_to_root(self, engine):
        engine.register("child", lambda ctx, data: ctx.wait_for_event(
            "ask", "cta.response", "c9", timedelta(hours=1)
        ))
        engine.register("parent", lambda ctx, data: {"answer": ctx.invoke("ask", "child", {})})
        assert engine.start("parent", None, workflow_id="wf-1").status == WorkflowStatus.SUSPENDED
        records = engine.deliver_event("cta.response", "c9", "blue")
        assert records[0].workflow_id == "wf-1"
        assert records[0].output == {"answer": "blue"}

    def test_child_failure_journaled_with_reason(self, engine):
        attempts = Counter()

        def child(ctx, data):
            attempts()
            raise GateExhaustionError(5, [{"gate": "test", "status": "failed"}], "feat/x")

        def parent(ctx, data):
            try:
                ctx.invoke("implement", "child", {})
            except InvokeError as e:
                return {"reason": e.reason, "type": e.error_type, "details": e.details}

        engine.register("child", child)
        engine.register("parent", parent)
        output = engine.start("parent", None, workflow_id="wf-1").output
        assert output["reason"] == "gate_exhaustion"
        assert output["type"] == "GateExhaustionError"
        assert output["details"]["branch"] == "feat/x"
        step = engine.journal.get_step("wf-1", "implement")
        assert step.status == "failed"
        assert attempts.calls == 1


class TestFailureAndResume:

    def test_failure_recorded_not_raised(self, engine):
        def broken(ctx, data):
            ctx.run("boom", lambda: 1 / 0)

        engine.register("broken", broken)
        record = engine.start("broken", None, workflow_id="wf-1")
        assert record.status == WorkflowStatus.FAILED
        assert record.error.startswith("ZeroDivisionError:")

    def test_resume_continues_from_checkpoint(self, engine):
        first = Counter("kept")
        state = {"fail": True}

        def flaky():
            if state["fail"]:
                raise ConnectionError("sandbox unreachable")
            return "recovered"

        def flow(ctx, data):
            return [ctx.run("first", first), ctx.run("second", flaky)]

        engine.register("flow", flow)
        assert engine.start("flow", None, workflow_id="wf-1").status == WorkflowStatus.FAILED
        state["fail"] = False
        record = engine.resume("wf-1")
        assert record.status == WorkflowStatus.COMPLETED
        assert record.output == ["kept", "recovered"]
        assert first.calls == 1

    def test_resume_takes_over_a_stuck_claim(self, engine):
        engine.register("flow", lambda ctx, data: "done")
        engine.journal.create_workflow("wf-1", "flow", None)
        assert engine.start("flow", None, workflow_id="wf-1").status == WorkflowStatus.RUNNING
        assert engine.resume("wf-1").status == WorkflowStatus.COMPLETED

    def test_resume_unknown(self, engine):
        with pytest.raises(WorkflowError):
            engine.resume("nope")
