"""High-level routing: ingest -> match -> dispatch.

Ingress and matcher errors fail the whole event; dispatcher errors are isolated
per action and surface as reports.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any

from workflow_run_router.router.config import RouterSettings
from workflow_run_router.router.dispatch_store import DispatchStore
from workflow_run_router.router.dispatcher import DispatchReport, Dispatcher, RetryPolicy
from workflow_run_router.router.ingress import parse_completion_event
from workflow_run_router.router.matcher import DedupePolicy, MatchedAction, match_subscriptions
from workflow_run_router.router.subscriptions import SubscriptionStore
from workflow_run_router.router.workflow.events import CompletionEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RoutingResult:
    event: CompletionEvent
    matches: list[MatchedAction]
    reports: list[DispatchReport]


class CompletionRouter:
    """Wires the subscription store, matcher and dispatcher together."""

    def __init__(
        self,
        *,
        subscriptions: SubscriptionStore,
        dispatcher: Dispatcher,
        policy: DedupePolicy = DedupePolicy.PER_SUBSCRIPTION,
    ) -> None:
        self._subscriptions = subscriptions
        self._dispatcher = dispatcher
        self._policy = policy

    @classmethod
    def from_settings(cls, settings: RouterSettings) -> CompletionRouter:
        store = DispatchStore(settings.dispatch_db_file, lease_seconds=settings.claim_lease_seconds)
        dispatcher = Dispatcher(
            store=store,
            trust=settings.trust_context(),
            retry=RetryPolicy(
                max_attempts=settings.max_attempts,
                base_delay_seconds=settings.backoff_base_seconds,
                max_delay_seconds=settings.backoff_max_seconds,
            ),
            action_timeout_seconds=settings.action_timeout_seconds,
            max_in_flight=settings.max_in_flight,
            abandon_grace_seconds=settings.abandon_grace_seconds,
        )
        return cls(
            subscriptions=SubscriptionStore(settings.subscriptions_file),
            dispatcher=dispatcher,
            policy=settings.dedupe_policy,
        )

    @property
    def subscriptions(self) -> SubscriptionStore:
        return self._subscriptions

    @property
    def dispatch_store(self) -> DispatchStore:
        return self._dispatcher.store

    def ingest(self, payload: dict[str, Any]) -> CompletionEvent:
        return parse_completion_event(payload)

    def match(self, event: CompletionEvent) -> list[MatchedAction]:
        # One snapshot of the subscription set per event.
        return match_subscriptions(event, self._subscriptions.load(), policy=self._policy)

    def dispatch(
        self,
        event: CompletionEvent,
        matches: list[MatchedAction],
        *,
        cancel_event: threading.Event | None = None,
    ) -> list[DispatchReport]:
        return self._dispatcher.dispatch(event, matches, cancel_event=cancel_event)

    def route(
        self, payload: dict[str, Any], *, cancel_event: threading.Event | None = None
    ) -> RoutingResult:
        event = self.ingest(payload)
        matches = self.match(event)
        if not matches:
            logger.info(
                "No subscription matched",
                extra={"workflow_name": event.workflow_name, "run_id": event.run_id},
            )
        reports = self.dispatch(event, matches, cancel_event=cancel_event)
        return RoutingResult(event=event, matches=matches, reports=reports)
