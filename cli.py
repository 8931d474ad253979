from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def parse_step(raw: str) -> dict:
    """``10:60`` -> 10% canary held for 60 seconds."""
    weight, _, pause = raw.partition(":")
    try:
        return {"weight": int(weight), "pause_s": float(pause) if pause else 60.0}
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid step '{raw}', expected WEIGHT[:PAUSE_S]")


def parse_check(raw: str) -> dict:
    """``error_rate:max:0.01[:INTERVAL_S[:CONSECUTIVE]]``."""
    parts = raw.split(":")
    if len(parts) < 3 or parts[1] not in {"max", "min"}:
        raise argparse.ArgumentTypeError(f"invalid check '{raw}', expected NAME:max|min:THRESHOLD[:INTERVAL_S[:N]]")
    try:
        check = {"name": parts[0], "comparison": parts[1], "threshold": float(parts[2])}
        if len(parts) > 3:
            check["interval_s"] = float(parts[3])
        if len(parts) > 4:
            check["consecutive_failures_to_abort"] = int(parts[4])
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number in check '{raw}'")
    return check


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Progressive Delivery Controller CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    p.add_argument("--user", help="API user (basic auth)")
    p.add_argument("--password", help="API password (basic auth)")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_start = sub.add_parser("start", help="Start a canary rollout")
    s_start.add_argument("--file", help="JSON rollout spec; other flags are ignored when given")
    s_start.add_argument("--service")
    s_start.add_argument("--step", type=parse_step, action="append", default=[], help="WEIGHT[:PAUSE_S], repeatable")
    s_start.add_argument(
        "--check", type=parse_check, action="append", default=[], help="NAME:max|min:THRESHOLD[:INTERVAL_S[:N]]"
    )
    s_start.add_argument("--failure-budget", type=int, default=0)

    s_status = sub.add_parser("status", help="Show one rollout")
    s_status.add_argument("rollout_id")

    sub.add_parser("list", help="List rollouts")

    s_cancel = sub.add_parser("cancel", help="Cancel a rollout (reverts to baseline)")
    s_cancel.add_argument("rollout_id")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--service")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")
    auth = (args.user, args.password) if args.user else None

    if args.cmd == "start":
        if args.file:
            with open(args.file, encoding="utf-8") as fh:
                payload = json.load(fh)
        else:
            if not args.service or not args.step or not args.check:
                p.error("start needs --file, or --service with at least one --step and --check")
            payload = {
                "service": args.service,
                "steps": args.step,
                "metric_checks": args.check,
                "analysis_failure_budget": args.failure_budget,
            }
        r = requests.post(f"{base}/rollouts", json=payload, auth=auth, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "status":
        r = requests.get(f"{base}/rollouts/{args.rollout_id}", auth=auth, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "list":
        _print(requests.get(f"{base}/rollouts", auth=auth, timeout=10).json())
        return 0

    if args.cmd == "cancel":
        r = requests.post(f"{base}/rollouts/{args.rollout_id}/cancel", auth=auth, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.service:
            params["service"] = args.service
        _print(requests.get(f"{base}/events", params=params, auth=auth, timeout=10).json())
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
