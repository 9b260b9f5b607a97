"""Error taxonomy for the router.

An empty match is not an error: the matcher simply returns no actions.
"""

from __future__ import annotations


class RouterError(Exception):
    """Base class for all router errors."""


class MalformedEventError(RouterError, ValueError):
    """The completion payload is missing required fields or has invalid values."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class SubscriptionError(RouterError, ValueError):
    """A subscription could not be registered, found or removed."""


class ActionError(RouterError):
    """Raised by an action when its side effect could not be applied."""


class TransientActionError(ActionError):
    """Network or timeout class failure; the dispatcher retries it."""


class PermanentActionError(ActionError):
    """Configuration or authorisation failure; never retried."""


class IdempotencyConflictError(RouterError):
    """Another dispatch currently holds the claim for (run_id, action_id)."""

    def __init__(self, *, run_id: int, action_id: str, owner: str | None) -> None:
        super().__init__(
            f"Dispatch of {action_id!r} for run {run_id} is already claimed by {owner or 'unknown'}"
        )
        self.run_id = run_id
        self.action_id = action_id
        self.owner = owner
