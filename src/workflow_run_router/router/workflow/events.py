from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Conclusion(str, Enum):
    """Terminal status of a monitored workflow run."""

    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"
    ACTION_REQUIRED = "action_required"
    NEUTRAL = "neutral"


ALL_CONCLUSIONS: frozenset[Conclusion] = frozenset(Conclusion)


@dataclass(frozen=True, slots=True)
class CompletionEvent:
    """A finished workflow run, as seen by the router.

    Identity of the workflow is its declared name, never the file it lives in.
    Events are created once by ingress and never mutated.
    """

    workflow_name: str
    branch: str | None
    commit_sha: str
    conclusion: Conclusion
    run_id: int
    run_url: str
    triggering_actor: str
    completed_at: datetime
    repository: str = ""
    run_attempt: int = 1

    @property
    def short_sha(self) -> str:
        return self.commit_sha[:7]

    def template_fields(self) -> dict[str, str]:
        """Values available to action templates (`{workflow_name}`, `{run_url}`, ...)."""

        return {
            "workflow_name": self.workflow_name,
            "branch": self.branch or "",
            "commit_sha": self.commit_sha,
            "short_sha": self.short_sha,
            "conclusion": self.conclusion.value,
            "run_id": str(self.run_id),
            "run_url": self.run_url,
            "triggering_actor": self.triggering_actor,
            "completed_at": self.completed_at.isoformat(),
            "repository": self.repository,
            "run_attempt": str(self.run_attempt),
        }

    def to_json(self) -> dict[str, object]:
        out: dict[str, object] = dict(self.template_fields())
        out["run_id"] = self.run_id
        out["run_attempt"] = self.run_attempt
        out["branch"] = self.branch
        del out["short_sha"]
        return out


TEMPLATE_FIELDS: frozenset[str] = frozenset(
    {
        "workflow_name",
        "branch",
        "commit_sha",
        "short_sha",
        "conclusion",
        "run_id",
        "run_url",
        "triggering_actor",
        "completed_at",
        "repository",
        "run_attempt",
    }
)
