"""FastAPI app factory.

Endpoints are intentionally thin wrappers over the router services.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Body, FastAPI, HTTPException, Request, status
from pydantic import ValidationError

from workflow_run_router import __version__
from workflow_run_router.router.errors import MalformedEventError, SubscriptionError
from workflow_run_router.router.service import CompletionRouter
from workflow_run_router.router.subscriptions import parse_subscription
from workflow_run_router.server.config import ServerSettings
from workflow_run_router.server.dispatch_runner import DispatchRunner
from workflow_run_router.server.models import DispatchHistory, WebhookAccepted

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Hub-Signature-256"
EVENT_HEADER = "X-GitHub-Event"
DELIVERY_HEADER = "X-GitHub-Delivery"


def verify_signature(*, secret: str, body: bytes, signature: str | None) -> bool:
    """Check a GitHub `sha256=<hex>` HMAC signature over the raw body."""

    if not signature or not signature.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(f"sha256={expected}", signature)


def create_app(settings: ServerSettings | None = None) -> FastAPI:
    settings = settings or ServerSettings()
    router = CompletionRouter.from_settings(settings)
    runner = DispatchRunner(router)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        yield
        runner.shutdown(timeout=settings.shutdown_timeout_seconds)

    app = FastAPI(
        title="Workflow Run Router",
        version=__version__,
        description="Routes CI workflow completion events to downstream actions.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )

    # Expose collaborators for request handlers and tests.
    app.state.settings = settings
    app.state.router = router
    app.state.runner = runner

    @app.get("/api/v1/health")
    def health() -> dict[str, object]:
        return {"status": "ok", "version": __version__, "in_flight": runner.active()}

    @app.post(
        "/api/v1/webhooks/github",
        response_model=WebhookAccepted,
        status_code=status.HTTP_202_ACCEPTED,
    )
    async def github_webhook(request: Request) -> WebhookAccepted:
        body = await request.body()
        delivery_id = request.headers.get(DELIVERY_HEADER)

        if settings.webhook_secret and not verify_signature(
            secret=settings.webhook_secret,
            body=body,
            signature=request.headers.get(SIGNATURE_HEADER),
        ):
            logger.warning("Webhook signature mismatch", extra={"delivery_id": delivery_id})
            raise HTTPException(status_code=401, detail="Invalid webhook signature")

        event_name = request.headers.get(EVENT_HEADER, "")
        if event_name == "ping":
            return WebhookAccepted(status="ignored", reason="ping", delivery_id=delivery_id)
        if event_name != "workflow_run":
            return WebhookAccepted(
                status="ignored", reason=f"unsupported event {event_name!r}", delivery_id=delivery_id
            )

        try:
            payload: Any = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise HTTPException(status_code=400, detail=f"Body is not valid JSON: {e}") from e

        action = payload.get("action") if isinstance(payload, dict) else None
        if action is not None and action != "completed":
            return WebhookAccepted(
                status="ignored", reason=f"workflow_run action {action!r}", delivery_id=delivery_id
            )

        try:
            event = router.ingest(payload)
        except MalformedEventError as e:
            raise HTTPException(status_code=422, detail=str(e)) from e

        matches = router.match(event)
        if matches:
            runner.submit(event, matches)

        logger.info(
            "Webhook accepted",
            extra={
                "delivery_id": delivery_id,
                "run_id": event.run_id,
                "matched": [m.action_id for m in matches],
            },
        )
        return WebhookAccepted(
            status="accepted",
            delivery_id=delivery_id,
            run_id=event.run_id,
            matched=[m.action_id for m in matches],
        )

    @app.get("/api/v1/subscriptions")
    def list_subscriptions() -> list[dict[str, Any]]:
        return [s.to_json() for s in router.subscriptions.load()]

    @app.post("/api/v1/subscriptions", status_code=status.HTTP_201_CREATED)
    def register_subscription(
        payload: dict[str, Any] = Body(...), replace: bool = False
    ) -> dict[str, Any]:
        try:
            subscription = parse_subscription(payload)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=str(e)) from e
        try:
            router.subscriptions.add(subscription, replace=replace)
        except SubscriptionError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        return subscription.to_json()

    @app.delete("/api/v1/subscriptions/{subscription_id}", status_code=status.HTTP_204_NO_CONTENT)
    def remove_subscription(subscription_id: str) -> None:
        if not router.subscriptions.remove(subscription_id):
            raise HTTPException(status_code=404, detail="Subscription not found")

    @app.get("/api/v1/dispatches/{run_id}", response_model=DispatchHistory)
    def dispatch_history(run_id: int, attempts: bool = False) -> DispatchHistory:
        store = router.dispatch_store
        return DispatchHistory(
            run_id=run_id,
            records=store.history(run_id),
            attempts=store.attempts(run_id) if attempts else None,
        )

    return app
