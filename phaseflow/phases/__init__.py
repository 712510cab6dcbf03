"""
Phase orchestrators.

Each phase is a workflow function invoked by the master orchestrator as a
child workflow. It returns ``{"output", "memories"}``; the output has
already been validated against the phase's schema.
"""

from phaseflow.phases.analysis import AnalysisPhase
from phaseflow.phases.approaches import ApproachesPhase, approach_options, select_approach
from phaseflow.phases.common import PhaseServices, PhaseToolbox, ask_human, parse_phase_output
from phaseflow.phases.implementation import ImplementationPhase, build_coder_prompt, slugify_branch
from phaseflow.phases.judging import JudgingPhase
from phaseflow.phases.pr import PullRequestPhase, generate_body, generate_title

__all__ = [
    "AnalysisPhase",
    "ApproachesPhase",
    "ImplementationPhase",
    "JudgingPhase",
    "PhaseServices",
    "PhaseToolbox",
    "PullRequestPhase",
    "approach_options",
    "ask_human",
    "build_coder_prompt",
    "generate_body",
    "generate_title",
    "parse_phase_output",
    "select_approach",
    "slugify_branch",
]
