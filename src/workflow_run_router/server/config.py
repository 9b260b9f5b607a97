"""Configuration for the REST server."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import SettingsConfigDict

from workflow_run_router.router.config import RouterSettings


class ServerSettings(RouterSettings):
    """Router settings plus the HTTP-only knobs.

    Notes:
        - When no webhook secret is configured, deliveries are accepted without
          signature verification. Set ROUTER_WEBHOOK_SECRET in any deployment
          reachable from the internet.
    """

    webhook_secret: str = Field(
        default="",
        validation_alias="ROUTER_WEBHOOK_SECRET",
        description="Shared secret used to verify X-Hub-Signature-256",
    )
    host: str = Field(default="127.0.0.1", validation_alias="ROUTER_HOST")
    port: int = Field(default=8080, validation_alias="ROUTER_PORT", ge=1, le=65535)
    shutdown_timeout_seconds: float = Field(
        default=30.0,
        validation_alias="ROUTER_SHUTDOWN_TIMEOUT_SECONDS",
        description="How long shutdown waits for cancelled dispatches to settle",
        ge=0,
    )

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")
