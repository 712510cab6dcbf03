"""
Pull request creation.

A deterministic, non-LLM step run by the master orchestrator after the
implementation gate: commit the accepted work, push the feature branch
from the environment and open a pull request against the target branch.
"""

from __future__ import annotations

import json
import re
import shlex
from typing import TYPE_CHECKING, Any

from phaseflow.environment.base import ExecutionEnvironmentError
from phaseflow.github_client import parse_repo_url
from phaseflow.schemas import validate_pr_output

if TYPE_CHECKING:
    from phaseflow.durable.context import StepContext
    from phaseflow.environment.base import ExecutionEnvironment
    from phaseflow.phases.common import PhaseServices

TITLE_PREFIX = "feat: "
MAX_TITLE_LENGTH = 72
MAX_BODY_SECTION = 2000
COMMIT_AUTHOR = ("phaseflow", "phaseflow@users.noreply.github.com")


def generate_title(prompt: str) -> str:
    """
    ``feat: `` plus the first prompt line, lower-cased, within 72 characters.

    Long lines are cut at a word boundary and end with ``...``.
    """
    available = MAX_TITLE_LENGTH - len(TITLE_PREFIX)
    first_line = prompt.split("\n")[0].strip().lower()
    if not first_line:
        return f"{TITLE_PREFIX}implement changes"
    if len(first_line) <= available:
        return f"{TITLE_PREFIX}{first_line}"

    truncated = re.sub(r"\s+\S*$", "", first_line[:available - 3])
    return f"{TITLE_PREFIX}{truncated}..."


def format_phase_output(label: str, output: Any) -> str:
    """Render one phase output as a markdown section, capped at 2000 characters."""
    if output is None:
        return f"### {label}\n\n_No output captured._\n"

    is_text = isinstance(output, str)
    content = output if is_text else json.dumps(output, indent=2)
    if len(content) > MAX_BODY_SECTION:
        content = f"{content[:MAX_BODY_SECTION]}\n\n... (truncated)"
    fence = "" if is_text else "json"
    return f"### {label}\n\n```{fence}\n{content}\n```\n"


def generate_body(
    prompt: str,
    analysis_output: Any,
    approach_output: Any,
    implementation_output: Any,
) -> str:
    """Pull request body: the request followed by the phase outputs."""
    sections = [
        f"## Prompt\n\n{prompt}\n",
        format_phase_output("Analysis", analysis_output),
        format_phase_output("Approach", approach_output),
        format_phase_output("Implementation", implementation_output),
        "---\n\n_This PR was created automatically by phaseflow._",
    ]
    return "\n".join(sections)


def push_branch(env: ExecutionEnvironment, branch: str, message: str) -> None:
    """
    Commit pending work on ``branch`` and push it to ``origin``.

    Re-running after a successful push only pushes again.

    Raises:
        ExecutionEnvironmentError: If committing or pushing fails.
    """
    name, email = COMMIT_AUTHOR
    commit = (
        "git add -A && (git diff --cached --quiet || "
        f"git -c user.name={shlex.quote(name)} -c user.email={shlex.quote(email)} "
        f"commit -m {shlex.quote(message)})"
    )
    for command in (commit, f"git push -u origin {shlex.quote(branch)}"):
        result = env.run_command(command)
        if not result.ok:
            raise ExecutionEnvironmentError(f"{command} failed: {result.combined_output}")


def create_pull_request(services: PhaseServices, data: dict[str, Any]) -> dict[str, Any]:
    """
    Push the implementation branch and open the pull request.

    Args:
        services: Pipeline services; ``github`` must be configured.
        data: ``environmentId``, ``repoUrl``, ``branch`` (target), ``prompt``,
            ``analysisOutput``, ``selectedApproach`` and ``implementationOutput``.

    Returns:
        The validated PR output ``{"prUrl", "prNumber", "title", "body"}``.

    Raises:
        GitHubError: If the API refuses the pull request.
        ExecutionEnvironmentError: If the branch cannot be pushed.
    """
    if services.github is None:
        raise ValueError("A GitHub client is required to open pull requests")

    owner, repo = parse_repo_url(data["repoUrl"])
    implementation = data["implementationOutput"]
    head = implementation["branch"]
    title = generate_title(data["prompt"])
    body = generate_body(
        data["prompt"],
        data["analysisOutput"],
        data["selectedApproach"],
        implementation,
    )

    env = services.provider.connect(data["environmentId"])
    push_branch(env, head, title)
    services.log("branch_pushed", {"branch": head})

    created = services.github.create_pull_request(
        owner, repo, title, body, head=head, base=data["branch"]
    )
    return validate_pr_output({**created, "title": title, "body": body})


class PullRequestPhase:
    """
    Workflow function for the pr phase.

    Running it as a child workflow journals a push or API failure once, so
    the master orchestrator reports it instead of retrying it on every replay.
    """

    function_name = "pr"

    def __init__(self, services: PhaseServices) -> None:
        self.services = services

    def __call__(self, ctx: StepContext, data: dict[str, Any]) -> dict[str, Any]:
        output = ctx.run("push-and-open-pr", lambda: create_pull_request(self.services, data))
        self.services.log("pull_request_opened", {"run_id": data["runId"], "pr_url": output["prUrl"]})
        return {"output": output, "memories": []}
