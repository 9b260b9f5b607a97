"""FastAPI server adapter for workflow-run-router.

This module exposes the webhook receiver and a small query API.

Design intent:
- Keep routing logic in `workflow_run_router.router.*`
- Keep server-specific concerns (signatures, background dispatch) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from workflow_run_router.server.app import create_app
