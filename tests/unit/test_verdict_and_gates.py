"""Tests for verdict derivation and the quality gate runner."""

import pytest

from phaseflow.config import GatesConfig
from phaseflow.environment.base import CommandResult
from phaseflow.gates import all_passed, run_all_gates, run_gate, truncate_tail
from phaseflow.verdict import build_conditions, derive_verdict, evaluate
from tests.fakes import FakeEnvironment, finding


class TestDeriveVerdict:

    @pytest.mark.parametrize("severities,expected", [
        ([], "approved"),
        (["minor", "minor", "minor"], "approved"),
        (["major"], "approved_with_conditions"),
        (["major", "minor"], "approved_with_conditions"),
        (["major", "major"], "rejected"),
        (["critical"], "rejected"),
        (["minor", "critical"], "rejected"),
    ])
    def test_severity_rules(self, severities, expected):
        assert derive_verdict([finding(s) for s in severities]) == expected

    def test_conditions_skip_critical_and_keep_severity(self):
        conditions = build_conditions([
            finding("major", "security", "Token logged"),
            finding("critical", "feasibility", "API missing"),
            finding("minor"),
        ])
        assert [c["severity"] for c in conditions] == ["major", "minor"]
        assert conditions[0]["description"] == (
            "[security] Token logged: Follow the module's naming"
        )

    def test_rejection_reason_names_critical_findings(self):
        result = evaluate([finding("critical", "feasibility", "API missing"), finding("major")])
        assert result.verdict == "rejected"
        assert result.rejection_reason == "Critical findings: [feasibility] API missing"

    def test_rejection_reason_for_multiple_majors(self):
        result = evaluate([finding("major", "security", "A"), finding("major", "quality", "B")])
        assert result.rejection_reason == "Multiple major findings: [security] A; [quality] B"

    def test_no_rejection_reason_when_approved(self):
        assert evaluate([finding("major")]).rejection_reason is None


class TestGates:

    def test_all_gates_run_in_order(self):
        env = FakeEnvironment()
        results = run_all_gates(env, GatesConfig())
        assert [r["gate"] for r in results] == ["typecheck", "test", "lint", "build"]
        assert env.commands == ["bun typecheck", "bun test", "bun lint", "bun build"]
        assert all_passed(results)

    def test_stops_at_first_failure(self):
        env = FakeEnvironment()
        env.respond("bun test", CommandResult(exit_code=1, stdout="1 failing", stderr="trace"))
        results = run_all_gates(env, GatesConfig())
        assert [r["status"] for r in results] == ["passed", "failed"]
        assert results[1]["output"] == "1 failing\ntrace"
        assert "bun lint" not in env.commands
        assert not all_passed(results)

    def test_custom_commands(self):
        env = FakeEnvironment()
        run_all_gates(env, GatesConfig(typecheck="tsc --noEmit", build="npm run build"))
        assert env.commands[0] == "tsc --noEmit"
        assert env.commands[-1] == "npm run build"

    def test_output_tail_truncated(self):
        env = FakeEnvironment()
        env.respond("lint", CommandResult(exit_code=1, stdout="x" * 9000 + "END"))
        result = run_gate(env, "lint", "bun lint")
        assert result["output"].startswith("[truncated]\n")
        assert result["output"].endswith("END")

    def test_truncate_tail_short_text_untouched(self):
        assert truncate_tail("ok") == "ok"

    def test_partial_run_is_not_all_passed(self):
        assert not all_passed([{"gate": "typecheck", "status": "passed", "output": ""}])
