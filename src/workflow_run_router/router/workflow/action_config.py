"""Configuration shapes, one per action kind.

Action configuration arrives as arbitrary JSON inside a subscription. It is
parsed into one of these models (discriminated on `kind`) when the subscription
is registered, so a typo in a template or a missing URL is reported to the
operator immediately instead of on the next failed build.
"""

from __future__ import annotations

import string
from pathlib import Path
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from workflow_run_router.router.workflow.events import TEMPLATE_FIELDS, CompletionEvent

_FORMATTER = string.Formatter()


def template_placeholders(template: str) -> set[str]:
    names: set[str] = set()
    for _literal, field_name, _spec, _conversion in _FORMATTER.parse(template):
        if field_name is not None:
            names.add(field_name)
    return names


def validate_template(template: str) -> str:
    try:
        names = template_placeholders(template)
    except ValueError as e:
        raise ValueError(f"Invalid template {template!r}: {e}") from None
    unknown = sorted(n for n in names if n not in TEMPLATE_FIELDS)
    if unknown:
        raise ValueError(
            f"Unknown template field(s) {', '.join(unknown)}; "
            f"available: {', '.join(sorted(TEMPLATE_FIELDS))}"
        )
    return template


def render(template: str, event: CompletionEvent) -> str:
    return template.format(**event.template_fields())


class _BaseActionConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(default="", pattern=r"^[A-Za-z0-9_.-]*$")
    timeout_seconds: float | None = Field(default=None, gt=0)
    max_attempts: int | None = Field(default=None, ge=1, le=20)

    @model_validator(mode="before")
    @classmethod
    def _default_name(cls, data: object) -> object:
        if isinstance(data, dict) and not data.get("name"):
            kind = data.get("kind") or cls.model_fields["kind"].default
            data = {**data, "name": kind}
        return data


class NotifyActionConfig(_BaseActionConfig):
    """POST a message to a chat incoming-webhook (Slack-compatible `{"text": ...}`)."""

    kind: Literal["notify"] = "notify"
    url: str
    message: str = "Workflow {workflow_name} concluded {conclusion} on {branch}: {run_url}"
    headers: dict[str, str] = Field(default_factory=dict)

    @field_validator("url")
    @classmethod
    def _http_url(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("url must be an http(s) URL")
        return v

    @field_validator("message")
    @classmethod
    def _message_template(cls, v: str) -> str:
        return validate_template(v)


class CreateIssueActionConfig(_BaseActionConfig):
    """Open an issue describing the completed run."""

    kind: Literal["create_issue"] = "create_issue"
    title: str = "{workflow_name} {conclusion} on {branch} ({short_sha})"
    body: str = (
        "Workflow **{workflow_name}** concluded `{conclusion}` on `{branch}`.\n\n"
        "- Commit: {commit_sha}\n"
        "- Triggered by: @{triggering_actor}\n"
        "- Run: {run_url}\n"
    )
    labels: list[str] = Field(default_factory=list)
    repository: str | None = None

    @field_validator("title", "body")
    @classmethod
    def _templates(cls, v: str) -> str:
        return validate_template(v)

    @field_validator("title")
    @classmethod
    def _title_required(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("title must be non-empty")
        return v


class RollbackActionConfig(_BaseActionConfig):
    """Trigger a `workflow_dispatch` run, typically a rollback or revert workflow."""

    kind: Literal["rollback"] = "rollback"
    workflow: str
    ref: str | None = None
    inputs: dict[str, str] = Field(default_factory=dict)
    repository: str | None = None

    @field_validator("workflow")
    @classmethod
    def _workflow_required(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("workflow must be non-empty")
        return v.strip()

    @field_validator("inputs")
    @classmethod
    def _input_templates(cls, v: dict[str, str]) -> dict[str, str]:
        for value in v.values():
            validate_template(value)
        return v


class EmitMetricActionConfig(_BaseActionConfig):
    """Emit a counter/gauge sample for the completion."""

    kind: Literal["emit_metric"] = "emit_metric"
    metric: str = Field(default="workflow_run.completed", min_length=1)
    value: float = 1.0
    tags: dict[str, str] = Field(
        default_factory=lambda: {"workflow": "{workflow_name}", "conclusion": "{conclusion}"}
    )
    path: Path | None = None

    @field_validator("tags")
    @classmethod
    def _tag_templates(cls, v: dict[str, str]) -> dict[str, str]:
        for value in v.values():
            validate_template(value)
        return v


ActionConfig = Annotated[
    NotifyActionConfig | CreateIssueActionConfig | RollbackActionConfig | EmitMetricActionConfig,
    Field(discriminator="kind"),
]

ACTION_CONFIG_ADAPTER: TypeAdapter[ActionConfig] = TypeAdapter(ActionConfig)


def parse_action_config(raw: object) -> ActionConfig:
    return ACTION_CONFIG_ADAPTER.validate_python(raw)
