"""
Implementation phase and its retry loop.

Each attempt starts from a clean branch, runs a brand-new coder agent with
the approach, analysis, judging conditions and (on retries) the previous
attempt's failure context, then runs the quality gates. The first attempt
that passes every gate wins; after the last failed attempt the phase fails
with the final gate results attached.
"""

from __future__ import annotations

import json
import re
import shlex
from typing import TYPE_CHECKING, Any, Optional

from phaseflow.environment.base import ExecutionEnvironmentError
from phaseflow.errors import GateExhaustionError
from phaseflow.gates import all_passed, run_all_gates
from phaseflow.memory import format_memories_for_prompt
from phaseflow.models import MemoryRecord, RunPhase
from phaseflow.schemas import validate_implementation_output

if TYPE_CHECKING:
    from phaseflow.durable.context import StepContext
    from phaseflow.environment.base import ExecutionEnvironment
    from phaseflow.phases.common import PhaseServices

BRANCH_PREFIX = "feat/"
MAX_SLUG_LENGTH = 50


def slugify_branch(prompt: str) -> str:
    """
    Derive the feature branch name from the request text.

    Lower-cases, drops everything but letters, digits, whitespace and
    hyphens, joins words with hyphens and cuts the slug to 50 characters.
    """
    slug = re.sub(r"[^a-z0-9\s-]", "", prompt.lower()).strip()
    slug = re.sub(r"\s+", "-", slug)[:MAX_SLUG_LENGTH]
    slug = re.sub(r"-+$", "", slug)
    return f"{BRANCH_PREFIX}{slug}"


def conditions_addressed(judging_output: Optional[dict[str, Any]]) -> list[str]:
    """Descriptions of the judging conditions handed to the coder."""
    if not judging_output:
        return []
    return [c["description"] for c in judging_output.get("conditions", [])]


def build_coder_prompt(
    prompt: str,
    selected_approach: dict[str, Any],
    analysis_output: dict[str, Any],
    judging_output: Optional[dict[str, Any]],
    memories: str,
    attempt: int,
    previous_files: list[str],
    previous_summary: str,
    previous_gates: list[dict[str, Any]],
) -> str:
    """
    Build the task message for one coder attempt.

    Attempts are numbered from 1. From attempt 2 on, a retry section lists
    the files the previous attempt touched, its summary, and the output of
    every gate it failed.
    """
    sections = [
        "## Feature Request",
        prompt,
        "",
        "## Selected Implementation Approach",
        json.dumps(selected_approach, indent=2),
        "",
        "## Codebase Analysis",
        json.dumps(analysis_output, indent=2),
    ]

    if judging_output:
        sections.extend(["", "## Judging Conditions", json.dumps(judging_output, indent=2)])

    if memories:
        sections.extend(["", memories])

    if attempt > 1:
        sections.extend([
            "",
            f"## RETRY CONTEXT (Attempt #{attempt})",
            "The previous coder attempt FAILED quality gates. You must fix the issues.",
            "",
        ])
        if previous_files:
            sections.extend([
                "### Files Touched by Previous Attempt",
                "\n".join(f"- {path}" for path in previous_files),
                "",
            ])
        if previous_summary:
            sections.extend(["### Previous Coder Summary", previous_summary, ""])

        failed = [g for g in previous_gates if g["status"] == "failed"]
        if failed:
            sections.append("### Gate Errors")
            for gate in failed:
                sections.extend([f"#### {gate['gate']} (FAILED)", "```", gate["output"], "```", ""])

        sections.extend([
            "### Instructions",
            "- Do NOT repeat the patterns that caused previous failures.",
            "- Focus on fixing the specific gate errors shown above.",
            "- Implement the full feature correctly this time.",
        ])

    return "\n".join(sections)


def _git(env: ExecutionEnvironment, command: str) -> str:
    result = env.run_command(command)
    if not result.ok:
        raise ExecutionEnvironmentError(f"{command} failed: {result.combined_output}")
    return result.stdout


def list_touched_files(env: ExecutionEnvironment, target: str) -> list[str]:
    """Paths differing from ``target``, new untracked files included."""
    out = _git(env, f"git add -A && git diff --cached --name-only {shlex.quote(target)}")
    return [line for line in out.strip().split("\n") if line]


def parse_name_status(diff_output: str) -> list[dict[str, str]]:
    """
    Turn ``git diff --name-status`` output into file changes.

    A is added, D is deleted, anything else (M, R, C, T) is modified.
    Renames and copies report their destination path.
    """
    changes = []
    for line in diff_output.strip().split("\n"):
        if not line:
            continue
        parts = line.split("\t")
        if len(parts) < 2:
            changes.append({"path": line, "changeType": "modified"})
            continue
        status = parts[0]
        if status.startswith("A"):
            change_type = "added"
        elif status.startswith("D"):
            change_type = "deleted"
        else:
            change_type = "modified"
        changes.append({"path": parts[-1], "changeType": change_type})
    return changes


def list_changed_files(env: ExecutionEnvironment, target: str) -> list[dict[str, str]]:
    """File changes of the accepted attempt relative to ``target``."""
    out = _git(env, f"git add -A && git diff --cached --name-status {shlex.quote(target)}")
    return parse_name_status(out)


class ImplementationPhase:
    """
    Workflow function for the implementation phase.

    Input adds ``selectedApproach``, ``analysisOutput`` and ``judgingOutput``
    to the common phase input. Returns ``{"output", "memories"}``.
    """

    phase = RunPhase.IMPLEMENTATION
    function_name = RunPhase.IMPLEMENTATION.value

    def __init__(self, services: PhaseServices) -> None:
        self.services = services

    def __call__(self, ctx: StepContext, data: dict[str, Any]) -> dict[str, Any]:
        services = self.services
        config = services.config
        env = services.provider.connect(data["environmentId"])
        target = data["branch"]
        branch = slugify_branch(data["prompt"])
        max_attempts = config.pipeline.max_coder_attempts
        memories = format_memories_for_prompt(
            [MemoryRecord.from_dict(m) for m in data.get("memories", [])]
        )

        services.log("implementation_started", {
            "run_id": data["runId"],
            "branch": branch,
            "max_attempts": max_attempts,
        })

        gate_results: list[dict[str, Any]] = []
        touched: list[str] = []
        summary = ""
        attempts = 0
        passed = False

        for attempt in range(1, max_attempts + 1):
            attempts = attempt
            if attempt == 1:
                ctx.run("create-feature-branch", lambda: env.reset_branch(branch))
            else:
                services.log("resetting_branch", {"attempt": attempt, "branch": branch})
                ctx.run(f"reset-branch-{attempt}", lambda: env.reset_branch(branch, target))

            coder_prompt = build_coder_prompt(
                data["prompt"],
                data["selectedApproach"],
                data["analysisOutput"],
                data.get("judgingOutput"),
                memories,
                attempt,
                touched,
                summary,
                gate_results,
            )
            coder = ctx.invoke(f"coder-attempt-{attempt}", "coder", {
                "prompt": coder_prompt,
                "environmentId": data["environmentId"],
                "phaseResultId": data["phaseResultId"],
            })
            summary = coder["text"]

            touched = ctx.run(f"diff-files-{attempt}", lambda: list_touched_files(env, target))
            gate_results = ctx.run(
                f"quality-gates-{attempt}",
                lambda: run_all_gates(env, config.gates, services.logger),
            )

            services.log("quality_gates_result", {
                "attempt": attempt,
                "gates": [f"{g['gate']}:{g['status']}" for g in gate_results],
            })
            if all_passed(gate_results):
                passed = True
                break

            services.log("quality_gates_failed", {
                "attempt": attempt,
                "remaining_attempts": max_attempts - attempt,
            }, level="warn")

        if not passed:
            services.log("implementation_exhausted", {
                "run_id": data["runId"],
                "attempts": attempts,
            }, level="error")
            raise GateExhaustionError(attempts, gate_results, branch)

        files_changed = ctx.run("detect-changed-files", lambda: list_changed_files(env, target))
        output = validate_implementation_output({
            "branch": branch,
            "filesChanged": files_changed,
            "gateResults": gate_results,
            "totalCoderAttempts": attempts,
            "conditionsAddressed": conditions_addressed(data.get("judgingOutput")),
        })
        services.log("implementation_complete", {
            "run_id": data["runId"],
            "branch": branch,
            "files_changed": len(files_changed),
            "attempts": attempts,
        })
        return {"output": output, "memories": []}
