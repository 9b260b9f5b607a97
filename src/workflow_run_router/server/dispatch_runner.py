"""Background runner for webhook dispatches.

Webhook senders expect a quick response, so the API only ingests and matches
in the request and hands dispatch to a background thread. On shutdown all
in-flight dispatches receive the cancellation signal and are joined.
"""

from __future__ import annotations

import logging
import threading
import time

from workflow_run_router.router.matcher import MatchedAction
from workflow_run_router.router.service import CompletionRouter
from workflow_run_router.router.workflow.events import CompletionEvent

logger = logging.getLogger(__name__)


class DispatchRunner:
    def __init__(self, router: CompletionRouter) -> None:
        self._router = router
        self._cancel = threading.Event()
        self._lock = threading.Lock()
        self._threads: set[threading.Thread] = set()

    def submit(self, event: CompletionEvent, matches: list[MatchedAction]) -> None:
        if self._cancel.is_set():
            raise RuntimeError("Dispatch runner is shut down")

        thread = threading.Thread(
            target=self._run,
            name=f"dispatch-run-{event.run_id}",
            daemon=True,
            kwargs={"event": event, "matches": matches},
        )
        with self._lock:
            self._threads.add(thread)
        thread.start()

    def _run(self, *, event: CompletionEvent, matches: list[MatchedAction]) -> None:
        try:
            self._router.dispatch(event, matches, cancel_event=self._cancel)
        except Exception:
            logger.exception(
                "Background dispatch failed",
                extra={"run_id": event.run_id, "workflow_name": event.workflow_name},
            )
        finally:
            with self._lock:
                self._threads.discard(threading.current_thread())

    def active(self) -> int:
        with self._lock:
            return len(self._threads)

    def join(self, timeout: float | None = None) -> bool:
        """Wait for in-flight dispatches. Returns True when none remain."""

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                pending = list(self._threads)
            if not pending:
                return True
            for thread in pending:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                thread.join(remaining)
            if deadline is not None and time.monotonic() >= deadline:
                return self.active() == 0

    def shutdown(self, timeout: float | None = None) -> bool:
        """Signal cancellation to every in-flight dispatch and wait for them."""

        self._cancel.set()
        drained = self.join(timeout)
        if not drained:
            logger.warning("Dispatch runner shut down with work still running")
        return drained
