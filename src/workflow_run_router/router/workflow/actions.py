from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

import requests
from github import GithubException, RateLimitExceededException

from workflow_run_router.router.errors import (
    ActionError,
    PermanentActionError,
    TransientActionError,
)
from workflow_run_router.router.github.client import GitHubClient
from workflow_run_router.router.workflow.action_config import (
    ActionConfig,
    CreateIssueActionConfig,
    EmitMetricActionConfig,
    NotifyActionConfig,
    RollbackActionConfig,
    render,
)
from workflow_run_router.router.workflow.events import CompletionEvent
from workflow_run_router.router.workflow.trust import ACTIONS_WRITE, ISSUES_WRITE, TrustContext

logger = logging.getLogger(__name__)
metrics_logger = logging.getLogger("workflow_run_router.metrics")

DISPATCH_MARKER_PREFIX = "workflow-run-router-dispatch:"
REQUEST_TIMEOUT_FRACTION = 0.8


@dataclass(frozen=True, slots=True)
class ActionResult:
    ok: bool
    message: str
    details: dict[str, object] | None = None


@dataclass(frozen=True, slots=True)
class ActionContext:
    """Everything an action may use beyond the event itself.

    Keep this explicit. Actions must not read credentials or settings from
    the environment.
    """

    action_id: str
    attempt: int
    timeout_seconds: float
    trust: TrustContext
    cancel_event: threading.Event = field(default_factory=threading.Event)
    abort_event: threading.Event = field(default_factory=threading.Event)

    @property
    def request_timeout_seconds(self) -> float:
        # Network calls must give up before the dispatcher abandons the invocation.
        return self.timeout_seconds * REQUEST_TIMEOUT_FRACTION

    def should_stop(self) -> bool:
        return self.cancel_event.is_set() or self.abort_event.is_set()

    def check_stop(self) -> None:
        """Raise before a side effect when this invocation was aborted or cancelled."""

        if self.should_stop():
            raise TransientActionError(f"Invocation of {self.action_id!r} aborted")


class Action(Protocol):
    """An idempotent side effect triggered by a matching completion.

    Raise TransientActionError for failures worth retrying and
    PermanentActionError for everything else.
    """

    def execute(self, event: CompletionEvent, context: ActionContext) -> ActionResult: ...


def _status_error(status: int | None, message: str) -> ActionError:
    if status is None or status == 429 or status >= 500:
        return TransientActionError(message)
    return PermanentActionError(message)


def classify_error(error: Exception) -> ActionError:
    """Map an HTTP client failure onto the transient/permanent split."""

    if isinstance(error, ActionError):
        return error
    if isinstance(error, (requests.ConnectionError, requests.Timeout)):
        return TransientActionError(f"{type(error).__name__}: {error}")
    if isinstance(error, requests.HTTPError):
        status = error.response.status_code if error.response is not None else None
        return _status_error(status, f"HTTP {status}: {error}")
    if isinstance(error, RateLimitExceededException):
        return TransientActionError(f"GitHub rate limit exceeded: {error}")
    if isinstance(error, GithubException):
        return _status_error(error.status, f"GitHub API error {error.status}: {error.data}")
    return PermanentActionError(f"{type(error).__name__}: {error}")


GitHubClientFactory = Callable[..., GitHubClient]


def _github_client(
    factory: GitHubClientFactory, context: ActionContext, repository: str
) -> GitHubClient:
    token = context.trust.require_github()
    try:
        return factory(
            token=token,
            repository=repository,
            base_url=context.trust.github_base_url,
            timeout_seconds=context.request_timeout_seconds,
        )
    except ValueError as e:
        raise PermanentActionError(str(e)) from e


@dataclass(frozen=True, slots=True)
class NotifyAction:
    config: NotifyActionConfig
    session: requests.Session | None = None

    def execute(self, event: CompletionEvent, context: ActionContext) -> ActionResult:
        text = render(self.config.message, event)
        http = self.session or requests
        context.check_stop()
        try:
            resp = http.post(
                self.config.url,
                json={"text": text},
                headers=self.config.headers or None,
                timeout=context.request_timeout_seconds,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise classify_error(e) from e
        return ActionResult(ok=True, message="Notified", details={"status_code": resp.status_code})


@dataclass(frozen=True, slots=True)
class CreateIssueAction:
    """Open an issue for the run.

    Idempotency:
      - primary: the dispatcher's (run_id, action_id) gate
      - fallback: an HTML comment marker in the body, searched before creating,
        in case local dispatch state was lost
    """

    config: CreateIssueActionConfig
    client_factory: GitHubClientFactory = GitHubClient

    def execute(self, event: CompletionEvent, context: ActionContext) -> ActionResult:
        context.trust.require(ISSUES_WRITE)
        repository = context.trust.resolve_repository(self.config.repository or event.repository)
        marker = f"{DISPATCH_MARKER_PREFIX} {event.run_id}/{context.action_id}"
        body = f"{render(self.config.body, event).rstrip()}\n\n<!-- {marker} -->\n"

        github = _github_client(self.client_factory, context, repository)
        try:
            existing = github.find_issue_number_by_body_marker(marker=marker)
            if existing is not None:
                return ActionResult(
                    ok=True, message="Issue already exists", details={"issue_number": existing}
                )
            context.check_stop()
            created = github.create_issue(
                title=render(self.config.title, event), body=body, labels=self.config.labels
            )
        except (requests.RequestException, GithubException) as e:
            raise classify_error(e) from e
        finally:
            github.close()
        return ActionResult(
            ok=True,
            message="Created issue",
            details={"issue_number": created.number, "url": created.url},
        )


@dataclass(frozen=True, slots=True)
class RollbackAction:
    """Dispatch a rollback workflow in the default-branch context."""

    config: RollbackActionConfig
    client_factory: GitHubClientFactory = GitHubClient

    def execute(self, event: CompletionEvent, context: ActionContext) -> ActionResult:
        context.trust.require(ACTIONS_WRITE)
        repository = context.trust.resolve_repository(self.config.repository or event.repository)
        ref = self.config.ref or context.trust.default_branch
        inputs = {key: render(value, event) for key, value in self.config.inputs.items()}

        github = _github_client(self.client_factory, context, repository)
        try:
            context.check_stop()
            github.dispatch_workflow(workflow=self.config.workflow, ref=ref, inputs=inputs)
        except (requests.RequestException, GithubException) as e:
            raise classify_error(e) from e
        finally:
            github.close()
        return ActionResult(
            ok=True,
            message="Workflow dispatched",
            details={"workflow": self.config.workflow, "ref": ref, "repository": repository},
        )


@dataclass(frozen=True, slots=True)
class EmitMetricAction:
    config: EmitMetricActionConfig

    def execute(self, event: CompletionEvent, context: ActionContext) -> ActionResult:
        context.check_stop()
        sample = {
            "metric": self.config.metric,
            "value": self.config.value,
            "tags": {key: render(value, event) for key, value in self.config.tags.items()},
            "run_id": event.run_id,
            "action_id": context.action_id,
            "timestamp": datetime.now(tz=UTC).isoformat(),
        }
        metrics_logger.info("metric", extra=sample)

        if self.config.path is not None:
            try:
                self.config.path.parent.mkdir(parents=True, exist_ok=True)
                with self.config.path.open("a", encoding="utf-8") as f:
                    f.write(json.dumps(sample, ensure_ascii=False) + "\n")
            except OSError as e:
                raise PermanentActionError(f"Cannot write metric to {self.config.path}: {e}") from e
        return ActionResult(ok=True, message="Metric emitted", details={"metric": self.config.metric})


def build_action(config: ActionConfig) -> Action:
    """Instantiate the action implementation for a parsed configuration."""

    if isinstance(config, NotifyActionConfig):
        return NotifyAction(config)
    if isinstance(config, CreateIssueActionConfig):
        return CreateIssueAction(config)
    if isinstance(config, RollbackActionConfig):
        return RollbackAction(config)
    if isinstance(config, EmitMetricActionConfig):
        return EmitMetricAction(config)
    raise PermanentActionError(f"Unsupported action kind: {type(config).__name__}")
