from __future__ import annotations

import argparse
import json
import os
import subprocess
import sys
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Any

DEFAULT_API_URL = "http://localhost:8090"
API_KEY_ENVS = ("ROLLWAVE_API_KEY",)


def _resolve_api_url(value: str | None) -> str:
    return (value or os.getenv("ROLLWAVE_API_URL", DEFAULT_API_URL)).rstrip("/")


def _request_json(
    method: str,
    url: str,
    payload: dict[str, Any] | None = None,
    timeout: int = 30,
) -> Any:
    data = None
    if payload is not None:
        data = json.dumps(payload).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    for name in API_KEY_ENVS:
        value = os.getenv(name)
        if value:
            headers["x-api-key"] = value
            break
    req = urllib.request.Request(
        url,
        data=data,
        method=method,
        headers=headers,
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            raw = resp.read()
            if not raw:
                return {}
            return json.loads(raw.decode("utf-8"))
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="ignore")
        detail: str | dict[str, Any] = body
        try:
            detail = json.loads(body)
        except json.JSONDecodeError:
            detail = body or exc.reason
        raise RuntimeError(f"HTTP {exc.code} {detail}") from exc


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _parse_pairs(items: list[str] | None) -> dict[str, str] | None:
    if not items:
        return None
    parsed: dict[str, str] = {}
    for item in items:
        if "=" not in item:
            raise ValueError(f"Expected key=value, got: {item}")
        key, value = item.split("=", 1)
        parsed[key.strip()] = value.strip()
    return parsed or None


def _condition_payload(value: str | None) -> dict[str, Any] | None:
    from rollwave_core.rollouts.conditions import parse_condition

    condition = parse_condition(value)
    if condition is None:
        return None
    return {"kind": condition.kind, "threshold": condition.threshold}


def _uvicorn_cmd(host: str, port: int, log_level: str) -> list[str]:
    return [
        "uvicorn",
        "local_adapter.rollout_service:app",
        "--host",
        host,
        "--port",
        str(port),
        "--log-level",
        log_level,
    ]


def cmd_up(args: argparse.Namespace) -> int:
    command = _uvicorn_cmd(args.host, args.port, args.log_level)
    if args.dry_run:
        print(" ".join(command))
        return 0
    proc = subprocess.Popen(command)
    try:
        return proc.wait() or 0
    except KeyboardInterrupt:
        proc.terminate()
        proc.wait(timeout=5)
        return 0


def cmd_status(args: argparse.Namespace) -> int:
    api_url = _resolve_api_url(args.api_url)
    _print_json(_request_json("GET", f"{api_url}/health"))
    return 0


def cmd_target_add(args: argparse.Namespace) -> int:
    api_url = _resolve_api_url(args.api_url)
    payload: dict[str, Any] = {"controller_id": args.controller_id}
    if args.name:
        payload["name"] = args.name
    if args.tag:
        payload["tags"] = args.tag
    attributes = _parse_pairs(args.attribute)
    if attributes:
        payload["attributes"] = attributes
    _print_json(_request_json("POST", f"{api_url}/targets", payload=payload))
    return 0


def cmd_target_list(args: argparse.Namespace) -> int:
    api_url = _resolve_api_url(args.api_url)
    url = f"{api_url}/targets"
    if args.filter:
        url += "?" + urllib.parse.urlencode({"filter": args.filter})
    _print_json(_request_json("GET", url))
    return 0


def cmd_distribution_add(args: argparse.Namespace) -> int:
    api_url = _resolve_api_url(args.api_url)
    payload = {
        "name": args.name,
        "version": args.version,
        "modules": args.module or [],
    }
    _print_json(_request_json("POST", f"{api_url}/distributions", payload=payload))
    return 0


def cmd_rollout_create(args: argparse.Namespace) -> int:
    api_url = _resolve_api_url(args.api_url)
    payload: dict[str, Any] = {
        "name": args.name,
        "distribution_id": args.distribution_id,
        "target_filter": args.filter,
        "action_type": args.action_type,
        "error_action": args.error_action,
    }
    if args.groups_json:
        payload["groups"] = json.loads(args.groups_json)
    else:
        payload["amount"] = args.amount
    for key, value in (
        ("description", args.description),
        ("forced_time", args.forced_time),
        ("start_at", args.start_at),
        ("success_condition", _condition_payload(args.success)),
        ("error_condition", _condition_payload(args.error)),
    ):
        if value is not None:
            payload[key] = value
    _print_json(_request_json("POST", f"{api_url}/rollouts", payload=payload))
    return 0


def cmd_rollout_list(args: argparse.Namespace) -> int:
    api_url = _resolve_api_url(args.api_url)
    url = f"{api_url}/rollouts"
    if args.status:
        url += "?" + urllib.parse.urlencode([("status", item) for item in args.status])
    _print_json(_request_json("GET", url))
    return 0


def cmd_rollout_status(args: argparse.Namespace) -> int:
    api_url = _resolve_api_url(args.api_url)
    _print_json(_request_json("GET", f"{api_url}/rollouts/{args.rollout_id}/status"))
    return 0


def cmd_rollout_command(args: argparse.Namespace) -> int:
    api_url = _resolve_api_url(args.api_url)
    payload = None
    if args.verb == "stop" and args.reason:
        payload = {"reason": args.reason}
    response = _request_json(
        "POST",
        f"{api_url}/rollouts/{args.rollout_id}/{args.verb}",
        payload=payload,
    )
    _print_json(response)
    return 0


def cmd_action_report(args: argparse.Namespace) -> int:
    api_url = _resolve_api_url(args.api_url)
    payload: dict[str, Any] = {"status": args.status}
    if args.message:
        payload["message"] = args.message
    response = _request_json(
        "POST",
        f"{api_url}/actions/{args.action_id}/status",
        payload=payload,
    )
    _print_json(response)
    return 0


def _local_tick() -> dict[str, Any]:
    from rollwave_core.config import get_config
    from rollwave_core.logging import configure_logging
    from rollwave_core.rollouts.scheduler import run_scheduler_tick

    config = get_config()
    configure_logging(service="rollwave-cli", env=config.env)
    return run_scheduler_tick(config=config).to_dict()


def cmd_tick(args: argparse.Namespace) -> int:
    if args.local:
        _print_json(_local_tick())
        return 0
    api_url = _resolve_api_url(args.api_url)
    _print_json(_request_json("POST", f"{api_url}/scheduler/tick"))
    return 0


def cmd_scheduler(args: argparse.Namespace) -> int:
    from rollwave_core.config import get_config

    interval = args.interval or get_config().scheduler_interval_seconds
    remaining = args.iterations
    try:
        while remaining is None or remaining > 0:
            _print_json(_local_tick())
            if remaining is not None:
                remaining -= 1
                if remaining == 0:
                    break
            time.sleep(interval)
    except KeyboardInterrupt:
        return 0
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rollwave")
    parser.add_argument("--api-url")
    subparsers = parser.add_subparsers(dest="command")

    up_parser = subparsers.add_parser("up", help="Run the local rollout service")
    up_parser.add_argument("--host", default="0.0.0.0")
    up_parser.add_argument("--port", type=int, default=8090)
    up_parser.add_argument("--log-level", default="info")
    up_parser.add_argument("--dry-run", action="store_true", help="Print command only")
    up_parser.set_defaults(func=cmd_up)

    status_parser = subparsers.add_parser("status", help="Check service health")
    status_parser.set_defaults(func=cmd_status)

    target_parser = subparsers.add_parser("targets", help="Manage targets")
    target_sub = target_parser.add_subparsers(dest="target_command", required=True)
    target_add = target_sub.add_parser("add", help="Register a target")
    target_add.add_argument("--controller-id", required=True)
    target_add.add_argument("--name")
    target_add.add_argument("--tag", action="append")
    target_add.add_argument("--attribute", action="append", help="key=value")
    target_add.set_defaults(func=cmd_target_add)
    target_list = target_sub.add_parser("list", help="List targets")
    target_list.add_argument("--filter")
    target_list.set_defaults(func=cmd_target_list)

    dist_parser = subparsers.add_parser("distributions", help="Manage distributions")
    dist_sub = dist_parser.add_subparsers(dest="distribution_command", required=True)
    dist_add = dist_sub.add_parser("add", help="Register a distribution")
    dist_add.add_argument("--name", required=True)
    dist_add.add_argument("--version", required=True)
    dist_add.add_argument("--module", action="append")
    dist_add.set_defaults(func=cmd_distribution_add)

    rollout_parser = subparsers.add_parser("rollouts", help="Manage rollouts")
    rollout_sub = rollout_parser.add_subparsers(dest="rollout_command", required=True)
    create = rollout_sub.add_parser("create", help="Create a rollout")
    create.add_argument("--name", required=True)
    create.add_argument("--distribution-id", required=True)
    create.add_argument("--filter", required=True)
    create.add_argument("--description")
    group_args = create.add_mutually_exclusive_group()
    group_args.add_argument("--amount", type=int, default=1)
    group_args.add_argument("--groups-json", help="Explicit group list as JSON")
    create.add_argument("--success", help="e.g. percentage:100")
    create.add_argument("--error", help="e.g. percentage:20")
    create.add_argument("--error-action", default="PAUSE", choices=["PAUSE", "NONE"])
    create.add_argument(
        "--action-type",
        default="forced",
        choices=["forced", "soft", "timeforced"],
    )
    create.add_argument("--forced-time")
    create.add_argument("--start-at")
    create.set_defaults(func=cmd_rollout_create)

    listing = rollout_sub.add_parser("list", help="List rollouts")
    listing.add_argument("--status", action="append")
    listing.set_defaults(func=cmd_rollout_list)

    status = rollout_sub.add_parser("status", help="Show rollout progress")
    status.add_argument("rollout_id")
    status.set_defaults(func=cmd_rollout_status)

    for verb in ("start", "pause", "resume", "stop", "trigger-next"):
        command = rollout_sub.add_parser(verb, help=f"{verb.capitalize()} a rollout")
        command.add_argument("rollout_id")
        if verb == "stop":
            command.add_argument("--reason")
        command.set_defaults(func=cmd_rollout_command, verb=verb, reason=None)

    action_parser = subparsers.add_parser("actions", help="Report device progress")
    action_sub = action_parser.add_subparsers(dest="action_command", required=True)
    report = action_sub.add_parser("report", help="Report an action status")
    report.add_argument("action_id")
    report.add_argument("--status", required=True)
    report.add_argument("--message")
    report.set_defaults(func=cmd_action_report)

    tick_parser = subparsers.add_parser("tick", help="Run one scheduler tick")
    tick_parser.add_argument(
        "--local",
        action="store_true",
        help="Tick against the local store instead of the service",
    )
    tick_parser.set_defaults(func=cmd_tick)

    scheduler_parser = subparsers.add_parser(
        "scheduler", help="Run the scheduler loop against the local store"
    )
    scheduler_parser.add_argument("--interval", type=float)
    scheduler_parser.add_argument("--iterations", type=int)
    scheduler_parser.set_defaults(func=cmd_scheduler)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "command", None):
        parser.print_help()
        return 2
    try:
        return args.func(args)
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
