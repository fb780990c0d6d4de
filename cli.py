from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _parse_env(pairs: list[str]) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep:
            raise SystemExit(f"--env expects KEY=VALUE, got {pair!r}")
        env[key] = value
    return env


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="XDeployment controller CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("list", help="List XDeployments")

    s_get = sub.add_parser("get", help="Show one XDeployment")
    s_get.add_argument("name")
    s_get.add_argument("-n", "--namespace", default="default")

    s_apply = sub.add_parser("apply", help="Create or update an XDeployment")
    s_apply.add_argument("name")
    s_apply.add_argument("-n", "--namespace", default="default")
    s_apply.add_argument("--image", required=True)
    s_apply.add_argument("--replicas", type=int)
    s_apply.add_argument("--port", type=int)
    s_apply.add_argument("--hostname")
    s_apply.add_argument("--env", action="append", default=[], metavar="KEY=VALUE")

    s_del = sub.add_parser("delete", help="Delete an XDeployment (children are finalized first)")
    s_del.add_argument("name")
    s_del.add_argument("-n", "--namespace", default="default")

    s_ev = sub.add_parser("events", help="Show controller events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--resource", help="Filter by namespace/name")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "list":
        _print(requests.get(f"{base}/xdeployments", timeout=10).json())
        return 0

    if args.cmd == "get":
        r = requests.get(f"{base}/xdeployments/{args.namespace}/{args.name}", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "apply":
        spec: dict = {"image": args.image, "env": _parse_env(args.env)}
        if args.replicas is not None:
            spec["replicas"] = args.replicas
        if args.port is not None:
            spec["port"] = args.port
        if args.hostname:
            spec["hostname"] = args.hostname
        r = requests.put(f"{base}/xdeployments/{args.namespace}/{args.name}", json={"spec": spec}, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "delete":
        r = requests.delete(f"{base}/xdeployments/{args.namespace}/{args.name}", timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        params: dict = {"limit": args.limit}
        if args.resource:
            params["resource"] = args.resource
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
