"""Unit tests for the dispatcher (fake actions, real SQLite store)."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from pathlib import Path

import pytest

from workflow_run_router.router.dispatch_store import DispatchStatus, DispatchStore
from workflow_run_router.router.dispatcher import (
    DispatchOutcome,
    Dispatcher,
    RetryPolicy,
)
from workflow_run_router.router.errors import PermanentActionError, TransientActionError
from workflow_run_router.router.matcher import MatchedAction
from workflow_run_router.router.workflow.action_config import ActionConfig, EmitMetricActionConfig
from workflow_run_router.router.workflow.actions import ActionContext, ActionResult
from workflow_run_router.router.workflow.events import CompletionEvent

NO_BACKOFF = RetryPolicy(max_attempts=3, base_delay_seconds=0, max_delay_seconds=0)

Behaviour = Callable[[CompletionEvent, ActionContext], ActionResult]


class CountingAction:
    """Fake action that counts invocations and delegates to a behaviour."""

    def __init__(self, behaviour: Behaviour | None = None) -> None:
        self.behaviour = behaviour
        self.calls = 0
        self.contexts: list[ActionContext] = []
        self._lock = threading.Lock()

    def execute(self, event: CompletionEvent, context: ActionContext) -> ActionResult:
        with self._lock:
            self.calls += 1
            self.contexts.append(context)
        if self.behaviour is not None:
            return self.behaviour(event, context)
        return ActionResult(ok=True, message="done")


def _match(name: str, **config: object) -> MatchedAction:
    return MatchedAction(
        subscription_id="sub",
        action_id=f"sub/{name}",
        action=EmitMetricActionConfig(name=name, **config),
    )


def _dispatcher(
    store: DispatchStore,
    trust,
    actions: dict[str, CountingAction],
    *,
    retry: RetryPolicy = NO_BACKOFF,
    **kwargs: object,
) -> Dispatcher:
    def factory(config: ActionConfig) -> CountingAction:
        return actions[config.name]

    return Dispatcher(store=store, trust=trust, retry=retry, action_factory=factory, **kwargs)


def _fail_times(n: int, error: type[Exception] = TransientActionError) -> Behaviour:
    def behaviour(_event: CompletionEvent, context: ActionContext) -> ActionResult:
        if context.attempt <= n:
            raise error(f"network down #{context.attempt}")
        return ActionResult(ok=True, message="recovered")

    return behaviour


def test_success_is_recorded(dispatch_store, trust, make_event) -> None:
    action = CountingAction()
    dispatcher = _dispatcher(dispatch_store, trust, {"count": action})

    [report] = dispatcher.dispatch(make_event(), [_match("count")])

    assert report.outcome is DispatchOutcome.APPLIED
    assert report.record is not None
    assert report.record.status is DispatchStatus.SUCCESS
    assert report.record.attempts == 1
    assert action.calls == 1
    assert action.contexts[0].trust is trust
    assert action.contexts[0].action_id == "sub/count"


def test_transient_failures_then_success_records_three_attempts(
    dispatch_store, trust, make_event
) -> None:
    action = CountingAction(_fail_times(2))
    dispatcher = _dispatcher(dispatch_store, trust, {"flaky": action})

    [report] = dispatcher.dispatch(make_event(), [_match("flaky")])

    assert report.outcome is DispatchOutcome.APPLIED
    record = dispatch_store.get(42, "sub/flaky")
    assert record is not None
    assert record.status is DispatchStatus.SUCCESS
    assert record.attempts == 3
    assert [a.status for a in dispatch_store.attempts(42, "sub/flaky")] == [
        DispatchStatus.RETRYING,
        DispatchStatus.RETRYING,
        DispatchStatus.SUCCESS,
    ]


def test_exhausted_retries_fail_with_last_error(dispatch_store, trust, make_event) -> None:
    action = CountingAction(_fail_times(10))
    dispatcher = _dispatcher(dispatch_store, trust, {"down": action})

    [report] = dispatcher.dispatch(make_event(), [_match("down")])

    assert report.outcome is DispatchOutcome.FAILED
    assert action.calls == 3
    assert report.record is not None
    assert report.record.status is DispatchStatus.FAILED
    assert report.record.attempts == 3
    assert report.record.last_error == "network down #3"
    assert len(dispatch_store.attempts(42)) == 3


def test_per_action_max_attempts_override(dispatch_store, trust, make_event) -> None:
    action = CountingAction(_fail_times(10))
    dispatcher = _dispatcher(dispatch_store, trust, {"once": action})

    [report] = dispatcher.dispatch(make_event(), [_match("once", max_attempts=1)])

    assert report.outcome is DispatchOutcome.FAILED
    assert action.calls == 1


def test_permanent_failure_is_not_retried(dispatch_store, trust, make_event) -> None:
    action = CountingAction(_fail_times(10, PermanentActionError))
    dispatcher = _dispatcher(dispatch_store, trust, {"bad": action})

    [report] = dispatcher.dispatch(make_event(), [_match("bad")])

    assert report.outcome is DispatchOutcome.FAILED
    assert action.calls == 1
    assert report.record is not None
    assert report.record.last_error == "network down #1"


def test_unexpected_exception_and_not_ok_result_fail(dispatch_store, trust, make_event) -> None:
    def explode(_event: CompletionEvent, _context: ActionContext) -> ActionResult:
        raise RuntimeError("kaboom")

    actions = {
        "explode": CountingAction(explode),
        "refused": CountingAction(lambda _e, _c: ActionResult(ok=False, message="refused")),
    }
    dispatcher = _dispatcher(dispatch_store, trust, actions)

    reports = dispatcher.dispatch(make_event(), [_match("explode"), _match("refused")])

    assert [r.outcome for r in reports] == [DispatchOutcome.FAILED, DispatchOutcome.FAILED]
    assert reports[0].message == "RuntimeError: kaboom"
    assert reports[1].message == "refused"
    assert actions["explode"].calls == 1
    assert actions["refused"].calls == 1


def test_failures_are_isolated_and_reports_keep_match_order(
    dispatch_store, trust, make_event
) -> None:
    actions = {
        "first": CountingAction(_fail_times(10, PermanentActionError)),
        "second": CountingAction(),
        "third": CountingAction(),
    }
    dispatcher = _dispatcher(dispatch_store, trust, actions, max_in_flight=2)

    reports = dispatcher.dispatch(
        make_event(), [_match("first"), _match("second"), _match("third")]
    )

    assert [r.action_id for r in reports] == ["sub/first", "sub/second", "sub/third"]
    assert [r.outcome for r in reports] == [
        DispatchOutcome.FAILED,
        DispatchOutcome.APPLIED,
        DispatchOutcome.APPLIED,
    ]


def test_action_build_failure_is_reported(dispatch_store, trust, make_event) -> None:
    def factory(_config: ActionConfig) -> CountingAction:
        raise PermanentActionError("Unsupported action kind")

    dispatcher = Dispatcher(store=dispatch_store, trust=trust, action_factory=factory)

    [report] = dispatcher.dispatch(make_event(), [_match("count")])

    assert report.outcome is DispatchOutcome.FAILED
    assert report.record is not None
    assert report.record.last_error == "Unsupported action kind"


def test_redispatch_reports_already_applied(dispatch_store, trust, make_event) -> None:
    actions = {"count": CountingAction(), "flaky": CountingAction(_fail_times(10))}
    dispatcher = _dispatcher(dispatch_store, trust, actions)
    event = make_event()
    matches = [_match("count"), _match("flaky")]

    dispatcher.dispatch(event, matches)
    second = dispatcher.dispatch(event, matches)

    assert [r.outcome for r in second] == [DispatchOutcome.ALREADY_APPLIED, DispatchOutcome.FAILED]
    assert actions["count"].calls == 1
    # Failed actions are re-claimed and retried on redelivery.
    assert actions["flaky"].calls == 6


def test_same_action_on_another_run_is_independent(dispatch_store, trust, make_event) -> None:
    action = CountingAction()
    dispatcher = _dispatcher(dispatch_store, trust, {"count": action})

    dispatcher.dispatch(make_event(run_id=1), [_match("count")])
    dispatcher.dispatch(make_event(run_id=2), [_match("count")])

    assert action.calls == 2


def test_concurrent_dispatch_from_two_workers_applies_once(
    tmp_path: Path, trust, make_event
) -> None:
    db = tmp_path / "dispatch.sqlite3"

    def slow(_event: CompletionEvent, _context: ActionContext) -> ActionResult:
        time.sleep(0.2)
        return ActionResult(ok=True, message="applied")

    action = CountingAction(slow)
    workers = [
        _dispatcher(DispatchStore(db), trust, {"count": action}),
        _dispatcher(DispatchStore(db), trust, {"count": action}),
    ]
    event = make_event()
    barrier = threading.Barrier(2)
    outcomes: list[DispatchOutcome] = []
    lock = threading.Lock()

    def run(dispatcher: Dispatcher) -> None:
        barrier.wait()
        [report] = dispatcher.dispatch(event, [_match("count")])
        with lock:
            outcomes.append(report.outcome)

    threads = [threading.Thread(target=run, args=(w,)) for w in workers]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert action.calls == 1
    assert outcomes.count(DispatchOutcome.APPLIED) == 1
    assert len(outcomes) == 2
    records = DispatchStore(db).history(42)
    assert len(records) == 1
    assert records[0].status is DispatchStatus.SUCCESS


def test_timeout_counts_as_transient(dispatch_store, trust, make_event) -> None:
    def hang(_event: CompletionEvent, context: ActionContext) -> ActionResult:
        context.abort_event.wait(5)
        raise TransientActionError("aborted")

    action = CountingAction(hang)
    dispatcher = _dispatcher(dispatch_store, trust, {"slow": action})

    [report] = dispatcher.dispatch(
        make_event(), [_match("slow", timeout_seconds=0.05, max_attempts=2)]
    )

    assert report.outcome is DispatchOutcome.FAILED
    assert action.calls == 2
    assert all(c.abort_event.is_set() for c in action.contexts)
    assert report.record is not None
    assert "timed out" in (report.record.last_error or "")
    assert [a.status for a in dispatch_store.attempts(42)] == [
        DispatchStatus.RETRYING,
        DispatchStatus.FAILED,
    ]


def test_late_success_after_timeout_is_not_repeated(dispatch_store, trust, make_event) -> None:
    def slow(_event: CompletionEvent, _context: ActionContext) -> ActionResult:
        time.sleep(0.3)
        return ActionResult(ok=True, message="applied late")

    action = CountingAction(slow)
    dispatcher = _dispatcher(dispatch_store, trust, {"slow": action}, abandon_grace_seconds=2.0)

    [report] = dispatcher.dispatch(
        make_event(), [_match("slow", timeout_seconds=0.1, max_attempts=2)]
    )

    assert report.outcome is DispatchOutcome.APPLIED
    assert report.message == "applied late"
    assert action.calls == 1
    assert report.record is not None
    assert report.record.status is DispatchStatus.SUCCESS
    assert [a.status for a in dispatch_store.attempts(42)] == [DispatchStatus.SUCCESS]


def test_timed_out_invocation_that_ignores_abort_is_not_retried(
    dispatch_store, trust, make_event
) -> None:
    release = threading.Event()

    def stubborn(_event: CompletionEvent, _context: ActionContext) -> ActionResult:
        release.wait(5)
        return ActionResult(ok=True, message="too late")

    action = CountingAction(stubborn)
    dispatcher = _dispatcher(dispatch_store, trust, {"slow": action}, abandon_grace_seconds=0.05)
    try:
        [report] = dispatcher.dispatch(
            make_event(), [_match("slow", timeout_seconds=0.1, max_attempts=2)]
        )
    finally:
        release.set()

    assert report.outcome is DispatchOutcome.FAILED
    assert action.calls == 1
    assert "still running" in report.message
    assert report.record is not None
    assert report.record.status is DispatchStatus.UNKNOWN
    assert [a.status for a in dispatch_store.attempts(42)] == [DispatchStatus.UNKNOWN]


def test_negative_abandon_grace_is_rejected(dispatch_store, trust) -> None:
    with pytest.raises(ValueError, match="abandon_grace_seconds"):
        _dispatcher(dispatch_store, trust, {}, abandon_grace_seconds=-1)


def test_success_is_logged_at_info(dispatch_store, trust, make_event, caplog) -> None:
    caplog.set_level(logging.INFO, logger="workflow_run_router")
    action = CountingAction()
    dispatcher = _dispatcher(dispatch_store, trust, {"count": action})

    [report] = dispatcher.dispatch(make_event(), [_match("count")])

    assert report.outcome is DispatchOutcome.APPLIED
    assert report.record is not None
    assert report.record.status is DispatchStatus.SUCCESS
    [applied] = [r for r in caplog.records if r.getMessage() == "Action applied"]
    assert applied.result_message == "done"
    assert applied.action_id == "sub/count"


def test_cancel_before_start_claims_nothing(dispatch_store, trust, make_event) -> None:
    action = CountingAction()
    dispatcher = _dispatcher(dispatch_store, trust, {"count": action})
    cancel = threading.Event()
    cancel.set()

    [report] = dispatcher.dispatch(make_event(), [_match("count")], cancel_event=cancel)

    assert report.outcome is DispatchOutcome.CANCELLED
    assert action.calls == 0
    assert dispatch_store.get(42, "sub/count") is None


def test_cancel_during_backoff_leaves_record_unknown(dispatch_store, trust, make_event) -> None:
    cancel = threading.Event()

    def fail_and_cancel(_event: CompletionEvent, _context: ActionContext) -> ActionResult:
        cancel.set()
        raise TransientActionError("connection reset")

    action = CountingAction(fail_and_cancel)
    dispatcher = _dispatcher(
        dispatch_store,
        trust,
        {"count": action},
        retry=RetryPolicy(max_attempts=5, base_delay_seconds=30, max_delay_seconds=30),
    )

    started = time.monotonic()
    [report] = dispatcher.dispatch(make_event(), [_match("count")], cancel_event=cancel)

    assert time.monotonic() - started < 10
    assert report.outcome is DispatchOutcome.CANCELLED
    assert action.calls == 1
    record = dispatch_store.get(42, "sub/count")
    assert record is not None
    assert record.status is DispatchStatus.UNKNOWN
    assert record.last_error == "connection reset"


def test_retry_policy_delays_are_bounded() -> None:
    policy = RetryPolicy(max_attempts=6, base_delay_seconds=1.0, max_delay_seconds=5.0)
    assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
