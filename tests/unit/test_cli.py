"""Tests for the phaseflow CLI."""

from unittest.mock import patch

import pytest

from phaseflow import __version__
from phaseflow.cli.app import app
from phaseflow.cli.cta import build_response
from phaseflow.logger import PipelineLogger
from tests.fakes import pending_request, script_happy_path

REPO = "https://github.com/acme/web"


@pytest.fixture
def config_file(tmp_path, config):
    path = tmp_path / "config.yaml"
    path.write_text(f"repo_root: {config.repo_root}\n")
    return str(path)


@pytest.fixture
def invoke(cli_runner, config_file, pipeline):
    """Run the CLI against the test pipeline."""
    def run(*args):
        with patch("phaseflow.cli.run.build_pipeline", return_value=pipeline), \
                patch("phaseflow.cli.cta.build_pipeline", return_value=pipeline), \
                patch("phaseflow.cli.worker.build_pipeline", return_value=pipeline):
            return cli_runner.invoke(app, ["--config", config_file, *args])
    return run


@pytest.fixture
def started(invoke, model):
    script_happy_path(model)
    result = invoke("run", "start", "Add dark mode", REPO, "--run-id", "run-1")
    assert result.exit_code == 0, result.output
    return result


class TestApp:

    def test_version(self, cli_runner):
        result = cli_runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_missing_config_file(self, cli_runner, tmp_path):
        result = cli_runner.invoke(app, ["--config", str(tmp_path / "nope.yaml"), "run", "list"])
        assert result.exit_code == 1
        assert "Config file not found" in result.output


class TestRunCommands:

    def test_start_waits_for_first_gate(self, started):
        assert "Run: run-1" in started.output
        assert "suspended" in started.output
        assert "Pending Requests" in started.output

    def test_start_rejects_non_github_url(self, invoke):
        result = invoke("run", "start", "Add dark mode", "https://gitlab.com/acme/web")
        assert result.exit_code == 1
        assert "invalid github repo url" in result.output

    def test_status(self, started, invoke):
        result = invoke("run", "status", "run-1")
        assert result.exit_code == 0
        assert "Run run-1" in result.output
        assert "Analysis" in result.output

    def test_status_phase_output(self, started, invoke):
        result = invoke("run", "status", "run-1", "--output", "analysis")
        assert result.exit_code == 0
        assert '"feasibilityAssessment"' in result.output

    def test_status_missing_phase_output(self, started, invoke):
        result = invoke("run", "status", "run-1", "--output", "judging")
        assert result.exit_code == 1
        assert "No judging phase" in result.output

    def test_status_unknown_run(self, invoke):
        result = invoke("run", "status", "ghost")
        assert result.exit_code == 1
        assert "Error" in result.output

    def test_events(self, started, invoke):
        result = invoke("run", "events", "run-1")
        assert "run.started" in result.output
        assert "cta.requested" in result.output

    def test_list(self, started, invoke):
        result = invoke("run", "list")
        assert result.exit_code == 0
        assert "run-1" in result.output


class TestCtaCommands:

    def test_respond_advances_run(self, started, invoke, store):
        gate = pending_request(store, "run-1")
        result = invoke("cta", "respond", gate.id, "--approve")

        assert result.exit_code == 0, result.output
        assert "Response recorded" in result.output
        assert pending_request(store, "run-1").kind.value == "choice"

    def test_wrong_flags_for_kind(self, started, invoke, store):
        invoke("cta", "respond", pending_request(store, "run-1").id, "--approve")
        choice = pending_request(store, "run-1")
        result = invoke("cta", "respond", choice.id, "--approve")
        assert result.exit_code == 1
        assert "Choice requests need --choice" in result.output
        assert pending_request(store, "run-1").id == choice.id

    def test_unknown_request(self, invoke):
        result = invoke("cta", "respond", "cta-ghost", "--approve")
        assert result.exit_code == 1
        assert "No request with id cta-ghost" in result.output

    def test_answered_request_not_pending(self, started, invoke, store):
        gate = pending_request(store, "run-1")
        invoke("cta", "respond", gate.id, "--approve")
        result = invoke("cta", "respond", gate.id, "--approve")
        assert result.exit_code == 1
        assert "no longer pending" in result.output

    def test_list_without_requests(self, invoke):
        assert "No pending requests" in invoke("cta", "list").output

    @pytest.mark.parametrize("kind,flags,expected", [
        ("approval", dict(approve=False, reject=True, reason="Too broad"),
         {"ctaId": "c", "kind": "approval", "approved": False, "reason": "Too broad"}),
        ("text", dict(text="Use the v2 API"), {"ctaId": "c", "kind": "text", "text": "Use the v2 API"}),
        ("choice", dict(choice="approach-2"), {"ctaId": "c", "kind": "choice", "selectedId": "approach-2"}),
    ])
    def test_build_response(self, kind, flags, expected):
        args = dict(approve=False, reject=False, reason=None, text=None, choice=None)
        args.update(flags)
        assert build_response("c", kind, **args) == expected


class TestWorkerCommands:

    def test_sweep_with_nothing_expired(self, invoke):
        result = invoke("worker", "sweep")
        assert result.exit_code == 0
        assert "No expired requests" in result.output

    def test_resume_unknown_workflow(self, invoke):
        result = invoke("worker", "resume", "ghost")
        assert result.exit_code == 1
        assert "Unknown workflow: ghost" in result.output

    def test_logs_empty(self, invoke):
        assert "No log entries" in invoke("worker", "logs").output

    def test_logs_for_run(self, invoke, config):
        logger = PipelineLogger(config)
        with logger.run_context("run-1"), logger.phase_context("judging"):
            logger.info("verdict_derived", {"n": 1})
        logger.info("timeouts_swept")

        result = invoke("worker", "logs", "--run", "run-1")
        assert result.exit_code == 0
        assert "[judging] verdict_derived" in result.output
        assert "timeouts_swept" not in result.output
        assert "run-1" in invoke("worker", "logs", "--list").output
        assert "timeouts_swept" in invoke("worker", "logs").output
