"""
Judging phase.

A judge agent reviews the selected approach against the codebase and
reports findings; the verdict is then derived from them deterministically.
A rejected verdict fails the phase and is never retried automatically.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from phaseflow.agent_loop import AgentSpec
from phaseflow.agents.judge import build_judge_prompt, build_judge_spec
from phaseflow.errors import VerdictRejectedError
from phaseflow.models import RunPhase
from phaseflow.phases.common import PhaseOrchestrator, parse_phase_output
from phaseflow.schemas import validate_judge_report, validate_judging_output
from phaseflow.verdict import evaluate

if TYPE_CHECKING:
    from phaseflow.durable.context import StepContext


def build_judging_output(selected_approach_id: str, report: dict[str, Any]) -> dict[str, Any]:
    """Combine the judge's report with the derived verdict and conditions."""
    verdict = evaluate(report["findings"])
    output = {
        "selectedApproachId": selected_approach_id,
        "findings": report["findings"],
        "overallVerdict": verdict.verdict,
        "conditions": verdict.conditions,
        "overallAssessment": report["overallAssessment"],
    }
    if verdict.rejection_reason is not None:
        output["rejectionReason"] = verdict.rejection_reason
    return validate_judging_output(output)


class JudgingPhase(PhaseOrchestrator):
    """Review of the selected approach against five criteria."""

    phase = RunPhase.JUDGING
    validator = staticmethod(validate_judge_report)
    uses_environment_tools = True

    def build_system_prompt(self, data: dict[str, Any], memories: str) -> str:
        return build_judge_prompt(
            data["environmentId"],
            data["repoUrl"],
            data["branch"],
            data["selectedApproach"],
            data["analysisOutput"],
            memories,
        )

    def build_spec(self, system: str) -> AgentSpec:
        return build_judge_spec(self.services.config, system)

    def finalize(self, ctx: StepContext, data: dict[str, Any], text: str) -> dict[str, Any]:
        report = parse_phase_output(self.phase, text, self.validator)
        approach_id = data["selectedApproach"]["id"]
        output = ctx.run("derive-verdict", lambda: build_judging_output(approach_id, report))

        self.services.log("verdict_derived", {
            "run_id": data["runId"],
            "verdict": output["overallVerdict"],
            "findings": len(output["findings"]),
            "conditions": len(output["conditions"]),
        })
        if output["overallVerdict"] == "rejected":
            raise VerdictRejectedError(output.get("rejectionReason") or "Approach rejected", output)
        return output
