from __future__ import annotations

from dataclasses import dataclass, field

from workflow_run_router.router.errors import PermanentActionError

ISSUES_WRITE = "issues:write"
ACTIONS_WRITE = "actions:write"


@dataclass(frozen=True, slots=True)
class TrustContext:
    """Capabilities granted to actions for one dispatch.

    Triggered work runs in the default-branch context of the repository with
    whatever permissions the operator granted, regardless of the ref that
    produced the completion. That is made explicit here and handed to the
    dispatcher; actions never read credentials from the environment.
    """

    repository: str = ""
    default_branch: str = "main"
    permissions: frozenset[str] = frozenset()
    github_token: str = field(default="", repr=False)
    github_base_url: str = "https://api.github.com"

    def allows(self, permission: str) -> bool:
        return permission in self.permissions

    def require(self, permission: str) -> None:
        if not self.allows(permission):
            raise PermanentActionError(f"Trust context does not grant {permission!r}")

    def require_github(self) -> str:
        if not self.github_token.strip():
            raise PermanentActionError("Trust context carries no GitHub token")
        return self.github_token

    def resolve_repository(self, override: str | None) -> str:
        repo = (override or self.repository).strip()
        if not repo:
            raise PermanentActionError("No repository configured for this action")
        return repo
