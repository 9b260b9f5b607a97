"""Workflow Run Router.

Routes CI workflow completion events to downstream actions:
- completion payloads normalised by the ingress layer
- declarative subscriptions matched on workflow name, branch and conclusion
- idempotent dispatch with retries, timeouts and a persisted dispatch history
"""

__version__ = "0.1.0"

from workflow_run_router.router.config import RouterSettings

__all__ = ["__version__", "RouterSettings"]
