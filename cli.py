from __future__ import annotations

import argparse
import json
import sys

import requests

from splat.controller import Orchestrator
from splat.logging_setup import setup_logging
from splat.settings import settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _run(config_paths: list[str], api: bool) -> int:
    setup_logging(settings.log_level, settings.log_dir)
    orch = Orchestrator(settings)
    orch.install_signal_handlers()
    server = None
    if api:
        from splat.api import serve_in_background

        server = serve_in_background(orch, settings.api_host, settings.api_port)
    try:
        return orch.run(config_paths)
    finally:
        if server is not None:
            server.should_exit = True


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="splat: run containerized apps behind nginx on one host")
    p.add_argument("--api", default=f"http://{settings.api_host}:{settings.api_port}", help="Status API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_run = sub.add_parser("run", help="Start every app and block until shutdown")
    s_run.add_argument("configs", nargs="+", help="App definition files (YAML)")
    s_run.add_argument("--serve-api", action="store_true", default=settings.enable_api, help="Expose the status API")

    sub.add_parser("processes", help="List managed processes")

    s_ev = sub.add_parser("events", help="Show lifecycle events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--uid", default=None)

    s_cmd = sub.add_parser("command", help="Send a control command to a running orchestrator")
    s_cmd.add_argument("name", choices=["shutdown", "reload", "status"])

    args = p.parse_args(argv)

    if args.cmd == "run":
        return _run(args.configs, args.serve_api)

    base = args.api.rstrip("/")

    if args.cmd == "processes":
        _print(requests.get(f"{base}/processes", timeout=10).json())
        return 0

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.uid:
            params["uid"] = args.uid
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    if args.cmd == "command":
        r = requests.post(f"{base}/control/{args.name}", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
