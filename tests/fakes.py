"""Test doubles and payload builders for phaseflow tests.

The pipeline is driven end to end against in-memory fakes: a scripted model
client that answers each agent from its own queue, an execution environment
that records commands, and a provider handing out that environment.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Union

from phaseflow.environment.base import CommandResult, FileNotFoundInEnvironment
from phaseflow.llm_clients import ModelResponse, ToolCall
from phaseflow.models import EnvironmentRecord
from phaseflow.pipeline import Pipeline
from phaseflow.store import PipelineStore


# =============================================================================
# Model responses
# =============================================================================

AGENT_ROUTES = (
    ("You are the Analysis Phase orchestrator", "analysis"),
    ("You are the Approaches Phase orchestrator", "approaches"),
    ("You are a code review judge", "judge"),
    ("You are a codebase explorer", "explorer"),
    ("You are a software engineer implementing", "coder"),
)


def route_agent(system: str) -> str:
    """Name of the agent a system prompt belongs to."""
    for opening, agent in AGENT_ROUTES:
        if system.startswith(opening):
            return agent
    raise AssertionError(f"Unrecognised system prompt: {system[:60]!r}")


def text_response(text: str) -> ModelResponse:
    """A final turn with no tool calls."""
    return ModelResponse(text=text, finish_reason="stop",
                         usage={"input_tokens": 10, "output_tokens": 5})


def json_response(payload: dict[str, Any]) -> ModelResponse:
    """A final turn whose text is ``payload`` as JSON."""
    return text_response(json.dumps(payload))


def tool_response(*calls: tuple[str, str, dict[str, Any]], text: str = "") -> ModelResponse:
    """A turn requesting ``(id, name, input)`` tool calls."""
    return ModelResponse(
        text=text,
        tool_calls=[ToolCall(id=call_id, name=name, input=args) for call_id, name, args in calls],
        finish_reason="tool_calls",
        usage={"input_tokens": 10, "output_tokens": 5},
    )


Scripted = Union[ModelResponse, Callable[[list[dict[str, Any]]], ModelResponse]]


class ScriptedModelClient:
    """
    Model client answering each agent from its own queue.

    Queue entries are ModelResponses or callables receiving the messages
    sent with the call. Every call is recorded.
    """

    def __init__(self) -> None:
        self.scripts: dict[str, list[Scripted]] = {}
        self.calls: list[dict[str, Any]] = []

    def add(self, agent: str, *responses: Scripted) -> "ScriptedModelClient":
        self.scripts.setdefault(agent, []).extend(responses)
        return self

    def complete(self, model, system, messages, tools, max_tokens=None) -> ModelResponse:
        agent = route_agent(system)
        self.calls.append({
            "agent": agent,
            "model": model,
            "system": system,
            "messages": messages,
            "tools": [t.name for t in tools],
        })
        queue = self.scripts.get(agent)
        if not queue:
            raise AssertionError(f"No scripted response left for {agent}")
        response = queue.pop(0)
        if callable(response):
            response = response(messages)
        return response

    def calls_for(self, agent: str) -> list[dict[str, Any]]:
        return [c for c in self.calls if c["agent"] == agent]


# =============================================================================
# Environment fakes
# =============================================================================


class FakeEnvironment:
    """
    In-memory execution environment.

    Commands are answered by the first registered fragment they contain.
    A fragment's results are consumed in order and the last one repeats.
    Unmatched commands succeed with no output.
    """

    def __init__(self, environment_id: str = "env-test") -> None:
        self.id = environment_id
        self.files: dict[str, bytes] = {}
        self.commands: list[str] = []
        self.resets: list[tuple[str, Optional[str]]] = []
        self._responses: list[tuple[str, list[CommandResult]]] = []

    def respond(self, fragment: str, *results: CommandResult) -> None:
        self._responses.append((fragment, list(results)))

    def run_command(self, command: str, timeout: Optional[int] = None) -> CommandResult:
        self.commands.append(command)
        for fragment, results in self._responses:
            if fragment in command:
                return results.pop(0) if len(results) > 1 else results[0]
        return CommandResult(exit_code=0)

    def read_file(self, path: str) -> bytes:
        if path not in self.files:
            raise FileNotFoundInEnvironment(f"not found: {path}")
        return self.files[path]

    def write_file(self, path: str, content) -> int:
        data = content.encode("utf-8") if isinstance(content, str) else content
        self.files[path] = data
        return len(data)

    def file_exists(self, path: str) -> bool:
        return path in self.files

    def reset_branch(self, branch: str, ref: Optional[str] = None) -> None:
        self.resets.append((branch, ref))

    def commands_matching(self, fragment: str) -> list[str]:
        return [c for c in self.commands if fragment in c]


class FakeProvider:
    """Environment provider handing out a single FakeEnvironment."""

    def __init__(self, env: FakeEnvironment) -> None:
        self.env = env
        self.provisioned: list[dict[str, str]] = []
        self.released: list[str] = []

    def provision(self, environment_id, repo_url, branch, runtime) -> EnvironmentRecord:
        self.provisioned.append({
            "id": environment_id,
            "repo_url": repo_url,
            "branch": branch,
            "runtime": runtime,
        })
        self.env.id = environment_id
        return EnvironmentRecord(
            id=environment_id,
            runtime=runtime,
            repo_url=repo_url,
            branch=branch,
            workspace=f"/workspaces/{environment_id}",
        )

    def connect(self, environment_id: str) -> FakeEnvironment:
        return self.env

    def release(self, environment_id: str) -> None:
        self.released.append(environment_id)


class FakeClock:
    """Settable timezone-aware clock for the workflow engine."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# =============================================================================
# Phase outputs
# =============================================================================

PR_URL = "https://github.com/acme/web/pull/7"


def analysis_output() -> dict[str, Any]:
    return {
        "affectedSystems": ["settings UI", "theme provider"],
        "architecturalConstraints": ["CSS variables drive all colors"],
        "risks": ["Third-party widgets ignore the theme"],
        "codebaseMap": [
            {"path": "src/theme.ts", "purpose": "Theme tokens", "relevance": "Holds color values"},
        ],
        "feasibilityAssessment": "Feasible; the theme provider already centralizes colors.",
    }


def approach(approach_id: str, title: str) -> dict[str, Any]:
    return {
        "id": approach_id,
        "title": title,
        "summary": f"{title} summary",
        "rationale": "Keeps the change small",
        "implementation": "1. Edit src/theme.ts\n2. Add the toggle to settings",
        "affectedFiles": ["src/theme.ts", "src/settings.tsx"],
        "tradeoffs": {"pros": ["Simple"], "cons": ["Touches shared code"]},
        "assumptions": [
            {"claim": "Colors come from CSS variables", "validated": True, "evidence": "src/theme.ts"},
        ],
        "estimatedComplexity": "low",
    }


def approaches_output(count: int = 2) -> dict[str, Any]:
    titles = ["CSS variable swap", "Context-driven theme", "Server-rendered theme"]
    output: dict[str, Any] = {
        "approaches": [approach(f"approach-{i + 1}", titles[i]) for i in range(count)],
        "recommendation": "approach-1 is the least invasive",
    }
    if count == 1:
        output["singleApproachJustification"] = "Only one theming mechanism exists"
    return output


def finding(severity: str, criterion: str = "quality", description: str = "Naming drifts") -> dict[str, str]:
    return {
        "criterion": criterion,
        "severity": severity,
        "description": description,
        "recommendation": "Follow the module's naming",
    }


def judge_report(*findings: dict[str, str]) -> dict[str, Any]:
    return {"findings": list(findings), "overallAssessment": "Sound approach"}


def script_happy_path(model: ScriptedModelClient, approach_count: int = 2) -> ScriptedModelClient:
    """Queue one final answer per agent for a run that reaches the pull request."""
    model.add("analysis", json_response(analysis_output()))
    model.add("approaches", json_response(approaches_output(approach_count)))
    model.add("judge", json_response(judge_report(finding("minor"))))
    model.add("coder", text_response("Added the dark mode toggle"))
    return model


def pending_request(store: PipelineStore, run_id: str):
    """The single request a run is waiting on."""
    pending = store.list_pending_approvals(run_id)
    assert len(pending) == 1, f"expected one pending request, got {len(pending)}"
    return pending[0]


def approve(pipeline: Pipeline, run_id: str, approved: bool = True, reason: Optional[str] = None):
    """Answer the run's pending approval and return the root workflow record."""
    request = pending_request(pipeline.services.store, run_id)
    response: dict[str, Any] = {"ctaId": request.id, "kind": "approval", "approved": approved}
    if reason:
        response["reason"] = reason
    records = pipeline.respond(response)
    return records[0]


def choose(pipeline: Pipeline, run_id: str, selected_id: str):
    """Answer the run's pending choice and return the root workflow record."""
    request = pending_request(pipeline.services.store, run_id)
    records = pipeline.respond({"ctaId": request.id, "kind": "choice", "selectedId": selected_id})
    return records[0]


