from __future__ import annotations

import argparse
import asyncio
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _desired() -> int:
    from fleet.settings import settings
    from fleet.source import ConfigSourceClient

    missing = settings.missing()
    if missing:
        print(f"Missing {' or '.join(missing)}", file=sys.stderr)
        return 2
    client = ConfigSourceClient(
        settings.source_url,
        settings.backend_key or "",
        path=settings.source_path,
        timeout_s=settings.source_timeout_s,
    )
    specs = asyncio.run(client.fetch_desired())
    _print([{"agentId": s.identity, "clientId": s.client_id} for s in specs])
    return 0


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Bot Fleet Supervisor CLI")
    p.add_argument("--api", default="http://localhost:8080", help="Supervisor liveness base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("status", help="Show liveness snapshot (running agent ids)")
    sub.add_parser("workers", help="Show running workers with pid and uptime")

    s_ev = sub.add_parser("events", help="Show recent lifecycle events")
    s_ev.add_argument("--limit", type=int, default=20)

    sub.add_parser("desired", help="Fetch the desired worker set from the config source once (dry run)")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "status":
        _print(requests.get(f"{base}/health", timeout=10).json())
        return 0

    if args.cmd == "workers":
        _print(requests.get(f"{base}/workers", timeout=10).json())
        return 0

    if args.cmd == "events":
        _print(requests.get(f"{base}/events", params={"limit": args.limit}, timeout=10).json())
        return 0

    if args.cmd == "desired":
        return _desired()

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
