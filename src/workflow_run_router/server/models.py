"""Pydantic models for the REST server."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from workflow_run_router.router.dispatch_store import DispatchAttempt, DispatchRecord


class WebhookAccepted(BaseModel):
    status: Literal["accepted", "ignored"]
    reason: str | None = None
    delivery_id: str | None = None
    run_id: int | None = None
    matched: list[str] = Field(default_factory=list)


class DispatchHistory(BaseModel):
    run_id: int
    records: list[DispatchRecord]
    attempts: list[DispatchAttempt] | None = None
