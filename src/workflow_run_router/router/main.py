"""CLI entrypoint for the router.

Operational surface: manage subscriptions, inspect dispatch history, route a
saved payload locally, or serve the webhook API.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from workflow_run_router import __version__
from workflow_run_router.router.config import RouterSettings
from workflow_run_router.router.dispatch_store import DispatchStore
from workflow_run_router.router.errors import MalformedEventError, SubscriptionError
from workflow_run_router.router.logging import configure_logging
from workflow_run_router.router.service import CompletionRouter
from workflow_run_router.router.subscriptions import (
    Subscription,
    SubscriptionStore,
    parse_subscription,
)
from workflow_run_router.router.workflow.predicate import PredicateSyntaxError

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="workflow-run-router",
        description="Route CI workflow completion events to downstream actions",
    )
    parser.add_argument(
        "--version", action="version", version=f"workflow-run-router {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subs = subparsers.add_parser("subscriptions", help="Register, list or remove subscriptions")
    subs_commands = subs.add_subparsers(dest="subscriptions_command", required=True)

    subs_list = subs_commands.add_parser("list", help="List registered subscriptions")
    subs_list.add_argument("--json", action="store_true", help="Print subscriptions as JSON")

    subs_add = subs_commands.add_parser(
        "add",
        help="Register a subscription from a JSON file or from inline flags",
    )
    subs_add.add_argument(
        "--file",
        type=Path,
        default=None,
        help="JSON file holding one subscription object or a list of them",
    )
    subs_add.add_argument("--id", dest="subscription_id", default=None, help="Subscription id")
    subs_add.add_argument(
        "--workflow",
        action="append",
        default=None,
        help="Declared workflow name to watch (repeatable)",
    )
    subs_add.add_argument(
        "--branch",
        action="append",
        default=None,
        help="Branch name or glob to accept (repeatable; omit to accept all branches)",
    )
    subs_add.add_argument(
        "--conclusion",
        default=None,
        help="Conclusion predicate, e.g. 'failure' or 'failure or timed_out' (default: failure)",
    )
    subs_add.add_argument(
        "--action",
        action="append",
        default=None,
        help='Action configuration as JSON, e.g. \'{"kind": "notify", "url": "https://..."}\'',
    )
    subs_add.add_argument(
        "--replace",
        action="store_true",
        help="Replace an existing subscription with the same id",
    )

    subs_remove = subs_commands.add_parser("remove", help="Remove a subscription")
    subs_remove.add_argument("--id", dest="subscription_id", required=True)

    history = subparsers.add_parser("history", help="Show dispatch records for a run")
    history.add_argument("--run-id", type=int, required=True, help="Workflow run id")
    history.add_argument("--attempts", action="store_true", help="Include every attempt")
    history.add_argument("--json", action="store_true", help="Print records as JSON")

    dispatch = subparsers.add_parser(
        "dispatch",
        help="Ingest a saved workflow_run payload, match it and dispatch its actions",
    )
    dispatch.add_argument("--payload", type=Path, required=True, help="Path to the JSON payload")
    dispatch.add_argument("--json", action="store_true", help="Print the event and reports as JSON")

    serve = subparsers.add_parser("serve", help="Serve the webhook and query API")
    serve.add_argument("--host", default=None, help="Bind address (default: ROUTER_HOST)")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default: ROUTER_PORT)")

    return parser


def _read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def _subscriptions_from_args(args: argparse.Namespace) -> list[Subscription]:
    if args.file is not None:
        raw = _read_json(args.file)
        items = raw if isinstance(raw, list) else [raw]
        return [parse_subscription(item) for item in items]

    if not args.subscription_id or not args.workflow or not args.action:
        raise SubscriptionError("Either --file or all of --id, --workflow and --action are required")

    raw_sub: dict[str, Any] = {
        "id": args.subscription_id,
        "watchedWorkflowNames": args.workflow,
        "actions": [json.loads(a) for a in args.action],
    }
    if args.branch:
        raw_sub["branchFilter"] = args.branch
    if args.conclusion:
        raw_sub["conclusionPredicate"] = args.conclusion
    return [parse_subscription(raw_sub)]


def _describe(subscription: Subscription) -> str:
    branches = ", ".join(subscription.branch_filter) if subscription.branch_filter else "*"
    actions = ", ".join(f"{a.name}({a.kind})" for a in subscription.actions)
    return (
        f"{subscription.id}: workflows=[{', '.join(subscription.watched_workflow_names)}] "
        f"branches=[{branches}] when={subscription.conclusion_predicate.expression} "
        f"actions=[{actions}]"
    )


def _run_subscriptions(args: argparse.Namespace, settings: RouterSettings) -> int:
    store = SubscriptionStore(settings.subscriptions_file)

    if args.subscriptions_command == "list":
        subscriptions = store.load()
        if args.json:
            print(json.dumps([s.to_json() for s in subscriptions], indent=2))
        elif not subscriptions:
            print("No subscriptions registered")
        else:
            for subscription in subscriptions:
                print(_describe(subscription))
        return 0

    if args.subscriptions_command == "add":
        for subscription in _subscriptions_from_args(args):
            store.add(subscription, replace=args.replace)
            print(f"Registered subscription {subscription.id}")
        return 0

    if args.subscriptions_command == "remove":
        if not store.remove(args.subscription_id):
            print(f"Subscription not found: {args.subscription_id}", file=sys.stderr)
            return 1
        print(f"Removed subscription {args.subscription_id}")
        return 0

    raise AssertionError(f"Unhandled subscriptions command: {args.subscriptions_command}")


def _run_history(args: argparse.Namespace, settings: RouterSettings) -> int:
    store = DispatchStore(settings.dispatch_db_file, lease_seconds=settings.claim_lease_seconds)
    records = store.history(args.run_id)
    attempts = store.attempts(args.run_id) if args.attempts else []

    if args.json:
        payload: dict[str, Any] = {
            "run_id": args.run_id,
            "records": [r.model_dump(mode="json") for r in records],
        }
        if args.attempts:
            payload["attempts"] = [a.model_dump(mode="json") for a in attempts]
        print(json.dumps(payload, indent=2))
        return 0

    if not records:
        print(f"No dispatch records for run {args.run_id}")
        return 0

    for record in records:
        line = f"{record.action_id}: {record.status.value} (attempts={record.attempts})"
        if record.last_error:
            line += f" last_error={record.last_error}"
        print(line)
        for attempt in attempts:
            if attempt.action_id == record.action_id:
                suffix = f" {attempt.error}" if attempt.error else ""
                print(f"  #{attempt.attempt} {attempt.status.value} at {attempt.recorded_at}{suffix}")
    return 0


def _run_dispatch(args: argparse.Namespace, settings: RouterSettings) -> int:
    router = CompletionRouter.from_settings(settings)
    result = router.route(_read_json(args.payload))
    if args.json:
        payload = {
            "event": result.event.to_json(),
            "reports": [r.to_json() for r in result.reports],
        }
        print(json.dumps(payload, indent=2))
        return 0
    if not result.matches:
        print(f"Run {result.event.run_id} ({result.event.workflow_name}): no subscription matched")
        return 0
    for report in result.reports:
        print(f"{report.action_id}: {report.outcome.value} {report.message}".rstrip())
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from workflow_run_router.server.config import ServerSettings

    server_settings = ServerSettings()
    uvicorn.run(
        "workflow_run_router.server.app:create_app",
        factory=True,
        host=args.host or server_settings.host,
        port=args.port or server_settings.port,
        log_config=None,
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = RouterSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)

    try:
        if args.command == "subscriptions":
            return _run_subscriptions(args, settings)
        if args.command == "history":
            return _run_history(args, settings)
        if args.command == "dispatch":
            return _run_dispatch(args, settings)
        if args.command == "serve":
            return _run_serve(args)
    except (SubscriptionError, PredicateSyntaxError, ValidationError) as e:
        print(f"Invalid subscription: {e}", file=sys.stderr)
        return 1
    except MalformedEventError as e:
        print(f"Malformed event: {e}", file=sys.stderr)
        return 1
    except (OSError, json.JSONDecodeError) as e:
        logger.error("Command failed", extra={"command": args.command, "error": str(e)})
        print(f"Error: {e}", file=sys.stderr)
        return 1

    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
