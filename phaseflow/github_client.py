"""
GitHub REST client for pull request creation.

This module provides:
- Repository URL parsing (https, .git suffix, or bare github.com/o/r)
- GitHubClient.create_pull_request over requests
- Recovery when a pull request for the branch already exists, so a
  replayed create step returns the original pull request
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, Optional

import requests

if TYPE_CHECKING:
    from phaseflow.config import GitHubConfig
    from phaseflow.logger import PipelineLogger


class GitHubError(Exception):
    """Raised when the GitHub API call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


_REPO_PATTERN = re.compile(r"github\.com/([^/]+)/([^/]+)$")


def parse_repo_url(repo_url: str) -> tuple[str, str]:
    """
    Extract (owner, repo) from a GitHub URL.

    Accepts ``https://github.com/o/r``, ``https://github.com/o/r.git`` and
    ``github.com/o/r``.

    Raises:
        GitHubError: If the URL is not a GitHub repository URL.
    """
    cleaned = re.sub(r"\.git$", "", repo_url.strip().rstrip("/"))
    match = _REPO_PATTERN.search(cleaned)
    if not match or not match.group(1) or not match.group(2):
        raise GitHubError(f"invalid github repo url: {repo_url}")
    return match.group(1), match.group(2)


class GitHubClient:
    """Minimal GitHub REST client."""

    def __init__(self, config: GitHubConfig, logger: Optional[PipelineLogger] = None) -> None:
        self.config = config
        self._logger = logger

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "github_client"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.get_token()}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        try:
            return requests.request(
                method,
                f"{self.config.api_url}{path}",
                headers=self._headers(),
                timeout=self.config.timeout_seconds,
                **kwargs,
            )
        except requests.exceptions.RequestException as e:
            self._log("github_request_failed", {"path": path, "error": str(e)}, level="error")
            raise GitHubError(f"GitHub request failed: {e}")

    def find_open_pull_request(self, owner: str, repo: str, head: str) -> Optional[dict[str, Any]]:
        """Return the open pull request for ``head``, if any."""
        response = self._request(
            "GET",
            f"/repos/{owner}/{repo}/pulls",
            params={"head": f"{owner}:{head}", "state": "open"},
        )
        if response.status_code >= 400:
            raise GitHubError(
                f"github api {response.status_code}: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        pulls = response.json()
        return pulls[0] if pulls else None

    def create_pull_request(
        self,
        owner: str,
        repo: str,
        title: str,
        body: str,
        head: str,
        base: str,
    ) -> dict[str, Any]:
        """
        Open a pull request.

        Returns:
            ``{"prUrl", "prNumber"}``.

        Raises:
            GitHubError: If the API refuses and no matching pull request exists.
        """
        self._log("creating_pull_request", {
            "owner": owner,
            "repo": repo,
            "head": head,
            "base": base,
            "title_length": len(title),
            "body_length": len(body),
        })
        response = self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            json={"title": title, "body": body, "head": head, "base": base},
        )

        if response.status_code == 422:
            existing = self.find_open_pull_request(owner, repo, head)
            if existing is not None:
                self._log("pull_request_exists", {"number": existing.get("number")})
                return {"prUrl": existing["html_url"], "prNumber": existing["number"]}

        if response.status_code >= 400:
            self._log("github_api_error", {
                "status": response.status_code,
                "body": response.text[:500],
            }, level="error")
            raise GitHubError(
                f"github api {response.status_code}: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            data = response.json()
            result = {"prUrl": str(data["html_url"]), "prNumber": int(data["number"])}
        except (ValueError, KeyError, TypeError) as e:
            raise GitHubError(f"invalid github pr response: {e}", body=response.text)

        self._log("pull_request_created", result)
        return result
