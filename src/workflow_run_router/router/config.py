"""Configuration for the router.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

A GitHub token is optional at startup: only actions that call GitHub need it,
and they fail permanently (not at boot) when it is missing. To avoid collisions
with CI tools that export `GITHUB_TOKEN`, the router reads
`ROUTER_GITHUB_TOKEN`.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from workflow_run_router.router.matcher import DedupePolicy
from workflow_run_router.router.workflow.trust import TrustContext


class RouterSettings(BaseSettings):
    """Settings for ingest, matching and dispatch.

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `RouterSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    state_path: Path = Field(
        default=Path("router_state"),
        validation_alias="ROUTER_STATE_PATH",
        description="Directory holding subscriptions and dispatch history",
    )

    max_in_flight: int = Field(
        default=4,
        validation_alias="ROUTER_MAX_IN_FLIGHT",
        description="Maximum number of actions executing concurrently for one event",
        ge=1,
        le=64,
    )
    max_attempts: int = Field(
        default=3,
        validation_alias="ROUTER_MAX_ATTEMPTS",
        description="Attempts per action before a transient failure becomes final",
        ge=1,
        le=20,
    )
    backoff_base_seconds: float = Field(
        default=1.0,
        validation_alias="ROUTER_BACKOFF_BASE_SECONDS",
        description="First retry delay; doubles on each further attempt",
        ge=0,
    )
    backoff_max_seconds: float = Field(
        default=30.0,
        validation_alias="ROUTER_BACKOFF_MAX_SECONDS",
        description="Upper bound for a single retry delay",
        ge=0,
    )
    action_timeout_seconds: float = Field(
        default=30.0,
        validation_alias="ROUTER_ACTION_TIMEOUT_SECONDS",
        description="Default per-invocation timeout for an action",
        gt=0,
    )
    abandon_grace_seconds: float = Field(
        default=5.0,
        validation_alias="ROUTER_ABANDON_GRACE_SECONDS",
        description=(
            "How long a timed out action may take to stop before it is left unknown "
            "instead of being retried"
        ),
        ge=0,
    )
    claim_lease_seconds: float = Field(
        default=600.0,
        validation_alias="ROUTER_CLAIM_LEASE_SECONDS",
        description=(
            "How long a dispatch claim is honoured before another worker may take it over. "
            "Must exceed the longest expected retry sequence of a single action."
        ),
        gt=0,
    )
    dedupe_policy: DedupePolicy = Field(
        default=DedupePolicy.PER_SUBSCRIPTION,
        validation_alias="ROUTER_DEDUPE_POLICY",
        description="per_subscription | global",
    )

    github_token: str = Field(
        default="",
        validation_alias="ROUTER_GITHUB_TOKEN",
        description="GitHub token handed to actions through the trust context",
    )
    github_base_url: str = Field(
        default="https://api.github.com",
        validation_alias="GITHUB_BASE_URL",
        description="GitHub API base URL (useful for GitHub Enterprise)",
    )
    repository: str = Field(
        default="",
        validation_alias="ROUTER_REPOSITORY",
        description="Default 'owner/repo' for actions when the event does not name one",
    )
    default_branch: str = Field(
        default="main",
        validation_alias="ROUTER_DEFAULT_BRANCH",
        description="Branch context triggered workflows run in",
    )
    trust_permissions: str = Field(
        default="",
        validation_alias="ROUTER_TRUST_PERMISSIONS",
        description="Comma-separated permissions granted to actions, e.g. 'issues:write'",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def subscriptions_file(self) -> Path:
        """Path where registered subscriptions are persisted."""

        return self.state_path / "subscriptions.json"

    @property
    def dispatch_db_file(self) -> Path:
        """Path of the SQLite dispatch history."""

        return self.state_path / "dispatch.sqlite3"

    def parsed_permissions(self) -> frozenset[str]:
        return frozenset(p.strip() for p in self.trust_permissions.split(",") if p.strip())

    def trust_context(self) -> TrustContext:
        return TrustContext(
            repository=self.repository.strip(),
            default_branch=self.default_branch.strip() or "main",
            permissions=self.parsed_permissions(),
            github_token=self.github_token.strip(),
            github_base_url=self.github_base_url,
        )
