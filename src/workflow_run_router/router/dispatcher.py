"""Dispatcher: execute matched actions for one completion event.

Guarantees:
- isolation: each action gets its own report; one failure never stops siblings
- idempotency: an action is only executed after claiming (run_id, action_id);
  an already successful key is reported as already applied
- retry: transient failures back off exponentially up to the attempt limit
- timeout: each invocation is bounded; overrunning counts as transient, and the
  overrunning invocation is aborted and must settle before any retry
- cancellation: a cancelled dispatch leaves claimed records `unknown`, never
  `success` unless the action actually returned
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum

from workflow_run_router.router.dispatch_store import (
    DispatchRecord,
    DispatchStatus,
    DispatchStore,
)
from workflow_run_router.router.errors import (
    IdempotencyConflictError,
    PermanentActionError,
    TransientActionError,
)
from workflow_run_router.router.matcher import MatchedAction
from workflow_run_router.router.workflow.action_config import ActionConfig
from workflow_run_router.router.workflow.actions import (
    Action,
    ActionContext,
    ActionResult,
    build_action,
)
from workflow_run_router.router.workflow.events import CompletionEvent
from workflow_run_router.router.workflow.trust import TrustContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded exponential backoff: base * 2**(attempt - 1), capped at max_delay."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("backoff delays must be >= 0")

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay_seconds, self.base_delay_seconds * 2 ** (attempt - 1))


class DispatchOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    FAILED = "failed"
    CONFLICT = "conflict"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class DispatchReport:
    action_id: str
    subscription_id: str
    outcome: DispatchOutcome
    record: DispatchRecord | None
    message: str = ""

    def to_json(self) -> dict[str, object]:
        return {
            "action_id": self.action_id,
            "subscription_id": self.subscription_id,
            "outcome": self.outcome.value,
            "message": self.message,
            "record": self.record.model_dump(mode="json") if self.record is not None else None,
        }


ActionFactory = Callable[[ActionConfig], Action]


class _InvocationStillRunning(Exception):
    """A timed out invocation ignored its abort signal and may still apply its effect."""


class Dispatcher:
    def __init__(
        self,
        *,
        store: DispatchStore,
        trust: TrustContext,
        retry: RetryPolicy | None = None,
        action_timeout_seconds: float = 30.0,
        max_in_flight: int = 4,
        action_factory: ActionFactory = build_action,
        abandon_grace_seconds: float = 5.0,
    ) -> None:
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be >= 1")
        if abandon_grace_seconds < 0:
            raise ValueError("abandon_grace_seconds must be >= 0")
        self._store = store
        self._trust = trust
        self._retry = retry or RetryPolicy()
        self._timeout = action_timeout_seconds
        self._max_in_flight = max_in_flight
        self._action_factory = action_factory
        self._abandon_grace = abandon_grace_seconds

    @property
    def store(self) -> DispatchStore:
        return self._store

    def dispatch(
        self,
        event: CompletionEvent,
        matches: list[MatchedAction],
        *,
        cancel_event: threading.Event | None = None,
    ) -> list[DispatchReport]:
        """Run every matched action; reports come back in match order."""

        if not matches:
            return []

        owner = uuid.uuid4().hex
        cancel = cancel_event or threading.Event()
        workers = min(self._max_in_flight, len(matches))
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix=f"dispatch-{event.run_id}"
        ) as pool:
            futures = [pool.submit(self._dispatch_one, event, m, owner, cancel) for m in matches]
            reports = [f.result() for f in futures]

        logger.info(
            "Dispatch finished",
            extra={
                "run_id": event.run_id,
                "workflow_name": event.workflow_name,
                "outcomes": {r.action_id: r.outcome.value for r in reports},
            },
        )
        return reports

    def _dispatch_one(
        self,
        event: CompletionEvent,
        match: MatchedAction,
        owner: str,
        cancel: threading.Event,
    ) -> DispatchReport:
        try:
            return self._claim_and_run(event, match, owner, cancel)
        except IdempotencyConflictError as e:
            logger.warning(
                "Dispatch conflict; another worker owns this action",
                extra={"run_id": event.run_id, "action_id": match.action_id, "holder": e.owner},
            )
            return DispatchReport(
                action_id=match.action_id,
                subscription_id=match.subscription_id,
                outcome=DispatchOutcome.CONFLICT,
                record=self._store.get(event.run_id, match.action_id),
                message=str(e),
            )
        except sqlite3.Error as e:
            logger.exception(
                "Dispatch store failure",
                extra={"run_id": event.run_id, "action_id": match.action_id},
            )
            return DispatchReport(
                action_id=match.action_id,
                subscription_id=match.subscription_id,
                outcome=DispatchOutcome.FAILED,
                record=None,
                message=f"Dispatch store failure: {e}",
            )

    @staticmethod
    def _report(
        match: MatchedAction,
        outcome: DispatchOutcome,
        record: DispatchRecord | None,
        message: str,
    ) -> DispatchReport:
        return DispatchReport(
            action_id=match.action_id,
            subscription_id=match.subscription_id,
            outcome=outcome,
            record=record,
            message=message,
        )

    def _claim_and_run(
        self,
        event: CompletionEvent,
        match: MatchedAction,
        owner: str,
        cancel: threading.Event,
    ) -> DispatchReport:
        if cancel.is_set():
            return self._report(match, DispatchOutcome.CANCELLED, None, "Cancelled before start")

        claim = self._store.claim(
            run_id=event.run_id,
            action_id=match.action_id,
            owner=owner,
            subscription_id=match.subscription_id,
            action_name=match.action.name,
            workflow_name=event.workflow_name,
        )
        if not claim.claimed:
            logger.info(
                "Action already applied",
                extra={"run_id": event.run_id, "action_id": match.action_id},
            )
            return self._report(
                match, DispatchOutcome.ALREADY_APPLIED, claim.record, "Already applied"
            )

        def record(
            attempt: int, status: DispatchStatus, error: str | None = None
        ) -> DispatchRecord:
            return self._store.record_attempt(
                run_id=event.run_id,
                action_id=match.action_id,
                owner=owner,
                attempt=attempt,
                status=status,
                error=error,
            )

        def failed(attempt: int, message: str) -> DispatchReport:
            final = record(attempt, DispatchStatus.FAILED, message)
            return self._report(match, DispatchOutcome.FAILED, final, message)

        try:
            action = self._action_factory(match.action)
        except PermanentActionError as e:
            return failed(1, str(e))

        max_attempts = match.action.max_attempts or self._retry.max_attempts
        timeout = match.action.timeout_seconds or self._timeout
        extra = {"run_id": event.run_id, "action_id": match.action_id}

        for attempt in range(1, max_attempts + 1):
            if cancel.is_set():
                return self._cancelled(event, match, owner)

            context = ActionContext(
                action_id=match.action_id,
                attempt=attempt,
                timeout_seconds=timeout,
                trust=self._trust,
                cancel_event=cancel,
            )
            try:
                result = self._invoke(action, event, context)
                if not result.ok:
                    raise PermanentActionError(result.message or "Action reported failure")
            except TransientActionError as e:
                if attempt >= max_attempts:
                    logger.error(
                        "Action failed after retries",
                        extra={**extra, "attempts": attempt, "error": str(e)},
                    )
                    return failed(attempt, str(e))
                record(attempt, DispatchStatus.RETRYING, str(e))
                delay = self._retry.delay_for(attempt)
                logger.warning(
                    "Transient action failure; retrying",
                    extra={**extra, "attempt": attempt, "delay_seconds": delay, "error": str(e)},
                )
                if cancel.wait(delay):
                    return self._cancelled(event, match, owner)
                continue
            except PermanentActionError as e:
                logger.error(
                    "Action failed permanently",
                    extra={**extra, "attempt": attempt, "error": str(e)},
                )
                return failed(attempt, str(e))
            except _InvocationStillRunning as e:
                logger.error(
                    "Timed out invocation did not stop; not retrying",
                    extra={**extra, "attempt": attempt, "error": str(e)},
                )
                unsettled = record(attempt, DispatchStatus.UNKNOWN, str(e))
                return self._report(match, DispatchOutcome.FAILED, unsettled, str(e))
            except Exception as e:
                logger.exception(
                    "Action raised an unexpected error", extra={**extra, "attempt": attempt}
                )
                return failed(attempt, f"{type(e).__name__}: {e}")

            logger.info(
                "Action applied",
                extra={**extra, "attempt": attempt, "result_message": result.message},
            )
            applied = record(attempt, DispatchStatus.SUCCESS)
            return self._report(match, DispatchOutcome.APPLIED, applied, result.message)

        raise AssertionError("unreachable: attempt loop always returns")

    def _cancelled(self, event: CompletionEvent, match: MatchedAction, owner: str) -> DispatchReport:
        released = self._store.release(
            run_id=event.run_id, action_id=match.action_id, owner=owner
        )
        logger.warning(
            "Dispatch cancelled; record left for recovery",
            extra={"run_id": event.run_id, "action_id": match.action_id},
        )
        return self._report(match, DispatchOutcome.CANCELLED, released, "Cancelled")

    def _invoke(
        self, action: Action, event: CompletionEvent, context: ActionContext
    ) -> ActionResult:
        """Run one invocation bounded by its timeout.

        An overrunning invocation is told to stop through `context.abort_event`
        and given `abandon_grace_seconds` to settle. A late result is returned as
        is, so a side effect that did complete is recorded instead of repeated.
        An invocation that is still running after the grace raises
        `_InvocationStillRunning`; it must not be retried while it may still
        apply its side effect.
        """

        runner = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"action-{context.action_id}")
        try:
            future = runner.submit(action.execute, event, context)
            try:
                return future.result(timeout=context.timeout_seconds)
            except TimeoutError as e:
                if future.done():
                    raise TransientActionError(f"TimeoutError: {e}") from e

            context.abort_event.set()
            timed_out = f"Action timed out after {context.timeout_seconds:g}s"
            try:
                result = future.result(timeout=self._abandon_grace)
            except TimeoutError as e:
                if future.done():
                    raise TransientActionError(timed_out) from e
                raise _InvocationStillRunning(
                    f"{timed_out}; still running {self._abandon_grace:g}s after abort"
                ) from None
            except PermanentActionError:
                raise
            except Exception as e:
                raise TransientActionError(timed_out) from e

            logger.warning(
                "Timed out invocation completed during grace period",
                extra={"action_id": context.action_id, "attempt": context.attempt},
            )
            return result
        finally:
            runner.shutdown(wait=False)
