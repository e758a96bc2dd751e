"""Daemon and command line entry point for vaultsnap."""
from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Optional, Sequence

import uvicorn

from core.logging_utils import configure_json_logging
from core.paths import resolve_working_dir
from health import format_report, report_to_dict
from snapshots import AccountNotFoundError, SnapshotService
from snapshots.api import create_app

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8757


def _resolve_bind_host(candidate: Optional[str]) -> str:
    host = (candidate or DEFAULT_HOST).strip()
    if not host:
        host = DEFAULT_HOST
    norm = host.lower()
    if norm == "localhost" or norm == "::1":
        return "127.0.0.1"
    if norm.startswith("127."):
        return host
    raise ValueError(f"Refusing to bind the API to non-loopback host '{candidate}'.")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Versioned snapshot daemon for backup accounts.")
    parser.add_argument("--working-dir", type=Path, default=None, help="Override working directory")
    parser.add_argument("--verbose", action="store_true", help="Log debug output to the console")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Watch workspaces and take snapshots")
    serve.add_argument("--api", action="store_true", default=None, help="Also serve the HTTP API")
    serve.add_argument("--no-events", action="store_true", help="Do not start the inotify feed")
    serve.add_argument("--host", default=None, help="API bind host (default from settings.json)")
    serve.add_argument("--port", type=int, default=None, help="API bind port (default from settings.json)")

    snapshot = sub.add_parser("snapshot", help="Take an admission-gated snapshot now")
    snapshot.add_argument("account")

    retention = sub.add_parser("retention", help="Apply retention policies")
    retention.add_argument("--account", default=None, help="Only this account")

    status = sub.add_parser("status", help="Show snapshot state of an account")
    status.add_argument("account")

    policy = sub.add_parser("policy", help="Show the effective quota and retention of an account")
    policy.add_argument("account")

    health = sub.add_parser("health", help="Run health checks")
    health.add_argument("--json", action="store_true", help="Output report as JSON")
    return parser.parse_args(argv)


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _serve(service: SnapshotService, args: argparse.Namespace) -> int:
    api_cfg = service.settings.get("api") if isinstance(service.settings.get("api"), dict) else {}
    use_api = args.api if args.api is not None else bool(api_cfg.get("enabled_default", False))
    service.start(events=False if args.no_events else None)
    try:
        if use_api:
            host = _resolve_bind_host(args.host or api_cfg.get("host"))
            port = args.port or api_cfg.get("port") or DEFAULT_PORT
            try:
                port = int(port)
            except (TypeError, ValueError):
                port = DEFAULT_PORT
            print(f"API listening on http://{host}:{port}", flush=True)
            config = uvicorn.Config(create_app(service), host=host, port=port, log_level="info", access_log=False)
            server = uvicorn.Server(config)
            return 0 if server.run() is not False else 1
        stop = threading.Event()
        for signum in (signal.SIGINT, signal.SIGTERM):
            signal.signal(signum, lambda *_: stop.set())
        logging.info("vaultsnap watching %s", service.registry.home_root)
        stop.wait()
        return 0
    finally:
        service.stop()


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
    args = parse_args(argv)
    working_dir = args.working_dir or resolve_working_dir()
    configure_json_logging(
        "vaultsnap",
        working_dir=working_dir,
        level=logging.DEBUG if args.verbose else logging.INFO,
        console=bool(args.verbose),
    )
    service = SnapshotService.from_working_dir(working_dir)

    try:
        if args.command == "serve":
            return _serve(service, args)
        if args.command == "snapshot":
            outcome = service.snapshot_now(args.account, reason="manual")
            _print_json(
                {
                    "account": outcome.account,
                    "status": outcome.status,
                    "reason": outcome.reason,
                    "snapshot": outcome.snapshot_id,
                    "excluded": outcome.excluded,
                }
            )
            return 0 if outcome.status != "failed" else 1
        if args.command == "retention":
            summaries = service.apply_retention(args.account)
            _print_json(
                [
                    {
                        "account": item.account,
                        "removed": item.removed,
                        "kept": len(item.kept),
                        "failed": item.failed,
                        "error": item.error,
                    }
                    for item in summaries
                ]
            )
            return 1 if any(item.error or item.failed for item in summaries) else 0
        if args.command == "status":
            _print_json(service.account_status(args.account))
            return 0
        if args.command == "policy":
            _print_json(service.effective_policy(args.account))
            return 0
        if args.command == "health":
            report = service.health(persist=True)
            if args.json:
                _print_json(report_to_dict(report))
            else:
                print(format_report(report))
            return 1 if report.degraded else 0
    except AccountNotFoundError as exc:
        logging.error("%s", exc)
        return 2
    except ValueError as exc:
        logging.error("%s", exc)
        return 2
    return 2


if __name__ == "__main__":
    sys.exit(main())
