from __future__ import annotations

import hashlib
import hmac
import json
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from workflow_run_router.server.app import create_app, verify_signature

SECRET = "webhook-secret"


def _sign(body: bytes, secret: str = SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _subscription(**overrides: Any) -> dict[str, Any]:
    raw: dict[str, Any] = {
        "id": "ci",
        "watchedWorkflowNames": ["CI"],
        "branchFilter": ["main"],
        "conclusionPredicate": "failure",
        "actions": [{"kind": "emit_metric"}],
    }
    raw.update(overrides)
    return raw


@pytest.fixture
def server_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    state = tmp_path / "router_state"
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("ROUTER_STATE_PATH", str(state))
    monkeypatch.setenv("ROUTER_WEBHOOK_SECRET", SECRET)
    monkeypatch.setenv("ROUTER_BACKOFF_BASE_SECONDS", "0")
    return state


@pytest.fixture
def client(server_env: Path) -> TestClient:
    return TestClient(create_app())


def _deliver(
    client: TestClient, payload: dict[str, Any], *, event: str = "workflow_run", sign: bool = True
):
    body = json.dumps(payload).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "X-GitHub-Event": event,
        "X-GitHub-Delivery": "delivery-1",
    }
    if sign:
        headers["X-Hub-Signature-256"] = _sign(body)
    return client.post("/api/v1/webhooks/github", content=body, headers=headers)


def test_verify_signature() -> None:
    body = b'{"hello": "world"}'
    assert verify_signature(secret=SECRET, body=body, signature=_sign(body))
    assert not verify_signature(secret=SECRET, body=body, signature=_sign(body, "other"))
    assert not verify_signature(secret=SECRET, body=body, signature=None)
    assert not verify_signature(secret=SECRET, body=body, signature="sha1=abc")


def test_health_and_docs(client: TestClient) -> None:
    health = client.get("/api/v1/health").json()
    assert health["status"] == "ok"
    assert "version" in health

    assert client.get("/api/openapi.json").status_code == 200


def test_subscription_crud(client: TestClient) -> None:
    created = client.post("/api/v1/subscriptions", json=_subscription())
    assert created.status_code == 201
    assert created.json()["watchedWorkflowNames"] == ["CI"]

    assert client.post("/api/v1/subscriptions", json=_subscription()).status_code == 409
    replaced = client.post(
        "/api/v1/subscriptions?replace=true", json=_subscription(branchFilter=["release/*"])
    )
    assert replaced.status_code == 201

    listed = client.get("/api/v1/subscriptions").json()
    assert [s["branchFilter"] for s in listed] == [["release/*"]]

    assert client.delete("/api/v1/subscriptions/ci").status_code == 204
    assert client.delete("/api/v1/subscriptions/ci").status_code == 404
    assert client.get("/api/v1/subscriptions").json() == []


@pytest.mark.parametrize(
    "overrides",
    [
        {"watchedWorkflowNames": []},
        {"conclusionPredicate": "failure or"},
        {"actions": [{"kind": "notify", "url": "https://x", "message": "{unknown}"}]},
    ],
)
def test_invalid_subscription_is_422(client: TestClient, overrides: dict[str, Any]) -> None:
    assert client.post("/api/v1/subscriptions", json=_subscription(**overrides)).status_code == 422


def test_webhook_rejects_bad_signature(client: TestClient, make_payload) -> None:
    body = json.dumps(make_payload()).encode("utf-8")
    resp = client.post(
        "/api/v1/webhooks/github",
        content=body,
        headers={"X-GitHub-Event": "workflow_run", "X-Hub-Signature-256": _sign(body, "wrong")},
    )
    assert resp.status_code == 401

    assert _deliver(client, make_payload(), sign=False).status_code == 401


def test_webhook_ignores_other_events_and_actions(client: TestClient, make_payload) -> None:
    ping = _deliver(client, {"zen": "Keep it logically awesome."}, event="ping")
    assert ping.status_code == 202
    assert ping.json()["status"] == "ignored"

    push = _deliver(client, {"ref": "refs/heads/main"}, event="push")
    assert push.json()["status"] == "ignored"

    requested = make_payload()
    requested["action"] = "requested"
    resp = _deliver(client, requested)
    assert resp.status_code == 202
    assert resp.json()["status"] == "ignored"


def test_webhook_rejects_malformed_event(client: TestClient, make_payload) -> None:
    assert _deliver(client, make_payload(conclusion="exploded")).status_code == 422
    assert _deliver(client, make_payload(id=None)).status_code == 422


@pytest.mark.parametrize("body", [b'{"action": "\x80"}', b"{not json"])
def test_webhook_rejects_undecodable_body(client: TestClient, body: bytes) -> None:
    resp = client.post(
        "/api/v1/webhooks/github",
        content=body,
        headers={"X-GitHub-Event": "workflow_run", "X-Hub-Signature-256": _sign(body)},
    )
    assert resp.status_code == 400
    assert "not valid JSON" in resp.json()["detail"]


def test_webhook_dispatches_in_background(client: TestClient, make_payload) -> None:
    client.post("/api/v1/subscriptions", json=_subscription())

    resp = _deliver(client, make_payload())

    assert resp.status_code == 202
    body = resp.json()
    assert body == {
        "status": "accepted",
        "reason": None,
        "delivery_id": "delivery-1",
        "run_id": 42,
        "matched": ["ci/emit_metric"],
    }
    assert client.app.state.runner.join(5)

    history = client.get("/api/v1/dispatches/42", params={"attempts": "true"}).json()
    assert history["run_id"] == 42
    assert [(r["action_id"], r["status"], r["attempts"]) for r in history["records"]] == [
        ("ci/emit_metric", "success", 1)
    ]
    assert [a["status"] for a in history["attempts"]] == ["success"]

    # Redelivery is accepted but applies nothing new.
    assert _deliver(client, make_payload()).status_code == 202
    assert client.app.state.runner.join(5)
    again = client.get("/api/v1/dispatches/42", params={"attempts": "true"}).json()
    assert len(again["attempts"]) == 1


def test_webhook_without_match_dispatches_nothing(client: TestClient, make_payload) -> None:
    client.post("/api/v1/subscriptions", json=_subscription())

    resp = _deliver(client, make_payload(conclusion="success"))

    assert resp.json()["matched"] == []
    assert client.get("/api/v1/dispatches/42").json() == {
        "run_id": 42,
        "records": [],
        "attempts": None,
    }


def test_unsigned_delivery_accepted_without_secret(
    server_env: Path, monkeypatch: pytest.MonkeyPatch, make_payload
) -> None:
    monkeypatch.delenv("ROUTER_WEBHOOK_SECRET")
    client = TestClient(create_app())

    assert _deliver(client, make_payload(), sign=False).status_code == 202


def test_shutdown_stops_runner(server_env: Path) -> None:
    app = create_app()
    with TestClient(app) as client:
        assert client.get("/api/v1/health").status_code == 200

    with pytest.raises(RuntimeError):
        app.state.runner.submit(None, [])
