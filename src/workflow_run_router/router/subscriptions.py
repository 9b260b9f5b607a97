"""Subscriptions and their JSON-file store.

A subscription binds a filter over completion events (declared workflow
names, branches, conclusions) to an ordered list of actions. Subscriptions are
matched by the workflow's declared name. Renaming a workflow therefore
requires updating the subscriptions that watch it.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel

from workflow_run_router.router.errors import SubscriptionError
from workflow_run_router.router.workflow.action_config import ActionConfig
from workflow_run_router.router.workflow.predicate import ConclusionPredicate

logger = logging.getLogger(__name__)


class Subscription(BaseModel):
    """A registered routing rule. Immutable once loaded."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        arbitrary_types_allowed=True,
    )

    id: str = Field(pattern=r"^[A-Za-z0-9_.-]+$")
    watched_workflow_names: tuple[str, ...]
    branch_filter: tuple[str, ...] | None = None
    conclusion_predicate: ConclusionPredicate = Field(default_factory=ConclusionPredicate.default)
    actions: tuple[ActionConfig, ...]

    @field_validator("watched_workflow_names")
    @classmethod
    def _names(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        # Names are kept verbatim: matching is exact on the declared name.
        if not v or any(not name.strip() for name in v):
            raise ValueError("watchedWorkflowNames must list at least one non-empty name")
        return v

    @field_validator("branch_filter")
    @classmethod
    def _branches(cls, v: tuple[str, ...] | None) -> tuple[str, ...] | None:
        if v is None:
            return None
        patterns = tuple(p.strip() for p in v)
        if not patterns or any(not p for p in patterns):
            raise ValueError("branchFilter must be omitted or list at least one non-empty pattern")
        return patterns

    @field_validator("conclusion_predicate", mode="before")
    @classmethod
    def _predicate(cls, v: object) -> ConclusionPredicate:
        if isinstance(v, ConclusionPredicate):
            return v
        if v is None:
            return ConclusionPredicate.default()
        if isinstance(v, str):
            return ConclusionPredicate.parse(v)
        if isinstance(v, (list, tuple)):
            return ConclusionPredicate.of([str(item) for item in v])
        raise ValueError("conclusionPredicate must be a list of conclusions or an expression")

    @field_validator("actions")
    @classmethod
    def _actions(cls, v: tuple[ActionConfig, ...]) -> tuple[ActionConfig, ...]:
        if not v:
            raise ValueError("actions must contain at least one action")
        seen: set[str] = set()
        for action in v:
            if action.name in seen:
                raise ValueError(f"Duplicate action name {action.name!r} in subscription")
            seen.add(action.name)
        return v

    @field_serializer("conclusion_predicate")
    def _dump_predicate(self, predicate: ConclusionPredicate) -> str:
        return predicate.expression

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def parse_subscription(raw: object) -> Subscription:
    return Subscription.model_validate(raw)


class SubscriptionStore:
    """JSON-file backed, ordered set of subscriptions.

    Registration order is preserved; it is the order the matcher emits actions
    in. Writes replace the file atomically so a concurrent reader always sees a
    complete set.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _load_unlocked(self) -> tuple[Subscription, ...]:
        if not self._path.exists():
            return ()

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise SubscriptionError(f"Subscription file {self._path} is not valid JSON: {e}") from e

        if raw is None:
            return ()
        if not isinstance(raw, list):
            raise SubscriptionError(f"Subscription file {self._path} must contain a JSON list")
        return tuple(parse_subscription(item) for item in raw)

    def _save_unlocked(self, subscriptions: tuple[Subscription, ...]) -> None:
        ids = [s.id for s in subscriptions]
        if len(ids) != len(set(ids)):
            raise SubscriptionError("Subscription ids must be unique")

        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = [s.to_json() for s in subscriptions]
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(json.dumps(payload, indent=2, ensure_ascii=False) + "\n")
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def load(self) -> tuple[Subscription, ...]:
        with self._lock:
            return self._load_unlocked()

    def get(self, subscription_id: str) -> Subscription | None:
        for subscription in self.load():
            if subscription.id == subscription_id:
                return subscription
        return None

    def add(self, subscription: Subscription, *, replace: bool = False) -> Subscription:
        with self._lock:
            current = list(self._load_unlocked())
            for idx, existing in enumerate(current):
                if existing.id != subscription.id:
                    continue
                if not replace:
                    raise SubscriptionError(f"Subscription {subscription.id!r} already exists")
                current[idx] = subscription
                break
            else:
                current.append(subscription)
            self._save_unlocked(tuple(current))

        logger.info(
            "Subscription registered",
            extra={
                "subscription_id": subscription.id,
                "workflows": list(subscription.watched_workflow_names),
                "actions": [a.name for a in subscription.actions],
            },
        )
        return subscription

    def remove(self, subscription_id: str) -> bool:
        with self._lock:
            current = self._load_unlocked()
            remaining = tuple(s for s in current if s.id != subscription_id)
            if len(remaining) == len(current):
                return False
            self._save_unlocked(remaining)

        logger.info("Subscription removed", extra={"subscription_id": subscription_id})
        return True

    def replace_all(self, subscriptions: list[Subscription]) -> tuple[Subscription, ...]:
        """Swap the whole set in one write (the reload path)."""

        new_set = tuple(subscriptions)
        with self._lock:
            self._save_unlocked(new_set)
        logger.info("Subscription set replaced", extra={"count": len(new_set)})
        return new_set
