"""Test configuration and fixtures."""

from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from workflow_run_router.router.dispatch_store import DispatchStore
from workflow_run_router.router.subscriptions import Subscription, parse_subscription
from workflow_run_router.router.workflow.events import CompletionEvent, Conclusion
from workflow_run_router.router.workflow.trust import ACTIONS_WRITE, ISSUES_WRITE, TrustContext


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Provide a temporary state directory."""
    state_dir = tmp_path / "router_state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def make_payload() -> Callable[..., dict[str, Any]]:
    """Build a `workflow_run` webhook body with overridable run fields."""

    def _make(**run_overrides: Any) -> dict[str, Any]:
        run: dict[str, Any] = {
            "id": 42,
            "name": "CI",
            "head_branch": "main",
            "head_sha": "0123456789abcdef0123456789abcdef01234567",
            "conclusion": "failure",
            "html_url": "https://github.com/octo-org/octo-repo/actions/runs/42",
            "run_attempt": 1,
            "updated_at": "2025-01-01T12:00:00Z",
            "triggering_actor": {"login": "octocat"},
            "actor": {"login": "someone-else"},
        }
        run.update(run_overrides)
        return {
            "action": "completed",
            "workflow_run": run,
            "repository": {"full_name": "octo-org/octo-repo"},
        }

    return _make


@pytest.fixture
def make_event() -> Callable[..., CompletionEvent]:
    """Build a CompletionEvent directly, bypassing ingress."""

    def _make(**overrides: Any) -> CompletionEvent:
        fields: dict[str, Any] = {
            "workflow_name": "CI",
            "branch": "main",
            "commit_sha": "0123456789abcdef0123456789abcdef01234567",
            "conclusion": Conclusion.FAILURE,
            "run_id": 42,
            "run_url": "https://github.com/octo-org/octo-repo/actions/runs/42",
            "triggering_actor": "octocat",
            "completed_at": datetime(2025, 1, 1, 12, 0, tzinfo=UTC),
            "repository": "octo-org/octo-repo",
        }
        fields.update(overrides)
        return CompletionEvent(**fields)

    return _make


@pytest.fixture
def make_subscription() -> Callable[..., Subscription]:
    """Build a subscription from camelCase keys with sensible defaults."""

    def _make(**overrides: Any) -> Subscription:
        raw: dict[str, Any] = {
            "id": "ci-main",
            "watchedWorkflowNames": ["CI"],
            "branchFilter": ["main"],
            "conclusionPredicate": "failure",
            "actions": [{"kind": "emit_metric"}],
        }
        raw.update(overrides)
        return parse_subscription(raw)

    return _make


@pytest.fixture
def dispatch_store(temp_state_dir: Path) -> DispatchStore:
    return DispatchStore(temp_state_dir / "dispatch.sqlite3")


@pytest.fixture
def trust() -> TrustContext:
    return TrustContext(
        repository="octo-org/octo-repo",
        default_branch="main",
        permissions=frozenset({ISSUES_WRITE, ACTIONS_WRITE}),
        github_token="test-token",
    )
