"""Rule matcher: (event, subscriptions) -> ordered actions to dispatch.

This is intentionally small and explicit. It performs no I/O and never fails
on a well-formed event; no match is a normal, empty result.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from fnmatch import fnmatchcase

from workflow_run_router.router.subscriptions import Subscription
from workflow_run_router.router.workflow.action_config import ActionConfig
from workflow_run_router.router.workflow.events import CompletionEvent

logger = logging.getLogger(__name__)


class DedupePolicy(str, Enum):
    """How an action shared by several matching subscriptions is keyed.

    PER_SUBSCRIPTION runs it once per subscription (action ids are namespaced
    by subscription). GLOBAL runs it once per event, keyed by action name, and
    the earliest registered subscription wins.
    """

    PER_SUBSCRIPTION = "per_subscription"
    GLOBAL = "global"


@dataclass(frozen=True, slots=True)
class MatchedAction:
    subscription_id: str
    action_id: str
    action: ActionConfig


def _branch_matches(subscription: Subscription, branch: str | None) -> bool:
    if subscription.branch_filter is None:
        return True
    if branch is None:
        return False
    return any(fnmatchcase(branch, pattern) for pattern in subscription.branch_filter)


def subscription_matches(subscription: Subscription, event: CompletionEvent) -> bool:
    if event.workflow_name not in subscription.watched_workflow_names:
        return False
    if not _branch_matches(subscription, event.branch):
        return False
    return subscription.conclusion_predicate(event.conclusion)


def action_id_for(subscription: Subscription, action: ActionConfig, policy: DedupePolicy) -> str:
    if policy is DedupePolicy.GLOBAL:
        return action.name
    return f"{subscription.id}/{action.name}"


def match_subscriptions(
    event: CompletionEvent,
    subscriptions: Iterable[Subscription],
    *,
    policy: DedupePolicy = DedupePolicy.PER_SUBSCRIPTION,
) -> list[MatchedAction]:
    """Select the actions to run for an event.

    Output order is subscription registration order, then each subscription's
    declared action order.
    """

    matched: list[MatchedAction] = []
    seen: set[str] = set()
    for subscription in subscriptions:
        if not subscription_matches(subscription, event):
            continue
        for action in subscription.actions:
            action_id = action_id_for(subscription, action, policy)
            if action_id in seen:
                continue
            seen.add(action_id)
            matched.append(
                MatchedAction(subscription_id=subscription.id, action_id=action_id, action=action)
            )

    logger.info(
        "Completion matched",
        extra={
            "workflow_name": event.workflow_name,
            "run_id": event.run_id,
            "conclusion": event.conclusion.value,
            "branch": event.branch,
            "matched": [m.action_id for m in matched],
        },
    )
    return matched
