"""Event ingress: turn a raw `workflow_run` webhook body into a CompletionEvent.

The payload shape is owned by the CI platform. We only read the fields we need
and validate the ones the router cannot work without. Redelivery of an already
seen run is accepted here; deduplication happens at dispatch time.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from workflow_run_router.router.errors import MalformedEventError
from workflow_run_router.router.workflow.events import CompletionEvent, Conclusion

logger = logging.getLogger(__name__)

_CONCLUSION_VALUES = ", ".join(c.value for c in Conclusion)


def _safe_login(value: object) -> str | None:
    if isinstance(value, dict):
        login = value.get("login")
        if isinstance(login, str) and login.strip():
            return login
    return None


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _parse_run_id(value: object) -> int:
    if isinstance(value, bool):
        raise MalformedEventError("workflow_run.id must be a positive integer", field="id")
    if isinstance(value, int):
        run_id = value
    elif isinstance(value, str) and value.strip().isdigit():
        run_id = int(value.strip())
    else:
        raise MalformedEventError("workflow_run.id is required", field="id")
    if run_id <= 0:
        raise MalformedEventError("workflow_run.id must be a positive integer", field="id")
    return run_id


def _parse_conclusion(value: object) -> Conclusion:
    if not isinstance(value, str) or not value.strip():
        raise MalformedEventError("workflow_run.conclusion is required", field="conclusion")
    try:
        return Conclusion(value.strip())
    except ValueError:
        raise MalformedEventError(
            f"workflow_run.conclusion {value!r} is not one of: {_CONCLUSION_VALUES}",
            field="conclusion",
        ) from None


def _parse_completed_at(value: object) -> datetime:
    if isinstance(value, str) and value.strip():
        # GitHub returns timestamps like "2025-01-01T00:00:00Z".
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise MalformedEventError(
                f"workflow_run.updated_at {value!r} is not an ISO timestamp",
                field="updated_at",
            ) from None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed.astimezone(UTC)
    return datetime.now(tz=UTC)


def _parse(payload: object) -> CompletionEvent:
    if not isinstance(payload, dict):
        raise MalformedEventError("Payload must be a JSON object")

    run = payload.get("workflow_run")
    if not isinstance(run, dict):
        raise MalformedEventError("Payload is missing the workflow_run object", field="workflow_run")

    name = _optional_str(run.get("name"))
    if name is None:
        raise MalformedEventError("workflow_run.name is required", field="name")

    conclusion = _parse_conclusion(run.get("conclusion"))
    run_id = _parse_run_id(run.get("id"))

    actor = _safe_login(run.get("triggering_actor")) or _safe_login(run.get("actor")) or "unknown"

    repository = ""
    repo_raw = payload.get("repository")
    if isinstance(repo_raw, dict):
        repository = _optional_str(repo_raw.get("full_name")) or ""

    attempt_raw = run.get("run_attempt")
    run_attempt = (
        attempt_raw
        if isinstance(attempt_raw, int) and not isinstance(attempt_raw, bool) and attempt_raw > 0
        else 1
    )

    return CompletionEvent(
        workflow_name=name,
        branch=_optional_str(run.get("head_branch")),
        commit_sha=_optional_str(run.get("head_sha")) or "",
        conclusion=conclusion,
        run_id=run_id,
        run_url=_optional_str(run.get("html_url")) or "",
        triggering_actor=actor,
        completed_at=_parse_completed_at(run.get("updated_at")),
        repository=repository,
        run_attempt=run_attempt,
    )


def parse_completion_event(payload: dict[str, Any]) -> CompletionEvent:
    """Validate a webhook body and build the immutable CompletionEvent.

    Raises:
        MalformedEventError: if a required field is missing or invalid. The
            rejection is logged with the payload context before re-raising.
    """

    try:
        event = _parse(payload)
    except MalformedEventError as e:
        run = payload.get("workflow_run") if isinstance(payload, dict) else None
        context: dict[str, object] = {"reason": str(e), "field": e.field}
        if isinstance(run, dict):
            context.update(
                {
                    "workflow_name": run.get("name"),
                    "run_id": run.get("id"),
                    "conclusion": run.get("conclusion"),
                    "head_branch": run.get("head_branch"),
                }
            )
        logger.warning("Rejected malformed completion event", extra=context)
        raise

    logger.debug(
        "Completion event ingested",
        extra={
            "workflow_name": event.workflow_name,
            "run_id": event.run_id,
            "conclusion": event.conclusion.value,
            "branch": event.branch,
        },
    )
    return event
