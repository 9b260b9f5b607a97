"""GitHub API client wrapper for router actions.

This wraps PyGithub (issue creation) and a plain `requests` session (search and
workflow dispatch) to keep GitHub calls out of action code and make tests easy.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import requests
from github import Auth, Github
from github.Repository import Repository

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CreatedIssue:
    """Minimal issue metadata returned from GitHub."""

    repository: str
    number: int
    title: str
    created_at: datetime
    url: str | None


class GitHubClient:
    """Small wrapper around PyGithub and the REST API for the calls actions need."""

    def __init__(
        self,
        *,
        token: str,
        repository: str,
        base_url: str = "https://api.github.com",
        timeout_seconds: float = 30.0,
        repo: Repository | None = None,
        github_api: Github | None = None,
        session: requests.Session | None = None,
    ) -> None:
        if not token:
            raise ValueError("GitHub token is required")
        if not repository:
            raise ValueError("GitHub repository is required")

        self._repository_name = repository
        self._rest_base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": "workflow-run-router",
            }
        )

        self._github: Github | None = None
        self._repo: Repository | None = repo
        if repo is None:
            self._github = github_api or Github(
                auth=Auth.Token(token),
                base_url=self._rest_base_url,
                timeout=max(1, int(timeout_seconds)),
            )

    @property
    def repository(self) -> str:
        """Return the configured repository name ("owner/repo")."""

        return self._repository_name

    def _get_repo(self) -> Repository:
        if self._repo is None:
            assert self._github is not None
            self._repo = self._github.get_repo(self._repository_name)
            logger.info(
                "Connected to GitHub repository", extra={"repo": self._repository_name}
            )
        return self._repo

    def _repo_url(self, path: str) -> str:
        return f"{self._rest_base_url}/repos/{self._repository_name}/{path.lstrip('/')}"

    def create_issue(self, *, title: str, body: str, labels: list[str] | None) -> CreatedIssue:
        if not title.strip():
            raise ValueError("Issue title is required")

        issue = self._get_repo().create_issue(title=title, body=body, labels=labels or [])
        logger.info(
            "Issue created", extra={"repo": self._repository_name, "issue_number": issue.number}
        )
        return CreatedIssue(
            repository=self._repository_name,
            number=issue.number,
            title=issue.title,
            created_at=issue.created_at,
            url=getattr(issue, "html_url", None),
        )

    def find_issue_number_by_body_marker(self, *, marker: str) -> int | None:
        """Search for an issue in this repo whose body contains a marker string."""

        if not marker.strip():
            raise ValueError("marker must be non-empty")

        query = f'repo:{self._repository_name} is:issue in:body "{marker}"'
        resp = self._session.get(
            f"{self._rest_base_url}/search/issues", params={"q": query}, timeout=self._timeout
        )
        resp.raise_for_status()

        payload: dict[str, Any] = resp.json()
        items = payload.get("items")
        if not isinstance(items, list) or not items:
            return None

        # Pick the lowest-number match for determinism.
        numbers: list[int] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            num = item.get("number")
            if isinstance(num, int) and num > 0:
                numbers.append(num)
        return min(numbers) if numbers else None

    def dispatch_workflow(self, *, workflow: str, ref: str, inputs: dict[str, str]) -> None:
        """Create a `workflow_dispatch` event for a workflow file name or id."""

        if not workflow.strip():
            raise ValueError("workflow is required")
        if not ref.strip():
            raise ValueError("ref is required")

        url = self._repo_url(f"actions/workflows/{workflow}/dispatches")
        resp = self._session.post(url, json={"ref": ref, "inputs": inputs}, timeout=self._timeout)
        resp.raise_for_status()
        logger.info(
            "Workflow dispatched",
            extra={"repo": self._repository_name, "workflow": workflow, "ref": ref},
        )

    def close(self) -> None:
        """Close the underlying HTTP connections."""

        self._session.close()
        if self._github is not None:
            self._github.close()
