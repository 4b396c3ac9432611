from __future__ import annotations

import argparse
import json
import sys

import requests
import yaml


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _collection(args) -> str:
    return "standalones" if args.standalone else "clusters"


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Milvus Cluster Operator CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    p.add_argument("--standalone", action="store_true", help="Target standalone Milvus instead of clusters")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_list = sub.add_parser("list", help="List instances and their status")
    s_list.add_argument("--namespace", "-n")

    s_get = sub.add_parser("get", help="Show one instance")
    s_get.add_argument("name")
    s_get.add_argument("--namespace", "-n", default="default")

    s_apply = sub.add_parser("apply", help="Create/update an instance from a YAML or JSON spec file")
    s_apply.add_argument("name")
    s_apply.add_argument("--namespace", "-n", default="default")
    s_apply.add_argument("-f", "--file", required=True, help="Spec file (the 'spec' section of the instance)")

    s_sync = sub.add_parser("sync", help="Re-probe health and update status now")
    s_sync.add_argument("name")
    s_sync.add_argument("--namespace", "-n", default="default")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)

    args = p.parse_args(argv)

    base = args.api.rstrip("/")
    col = _collection(args)

    if args.cmd == "list":
        params = {"namespace": args.namespace} if args.namespace else None
        r = requests.get(f"{base}/{col}", params=params, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "get":
        r = requests.get(f"{base}/{col}/{args.namespace}/{args.name}", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "apply":
        with open(args.file, encoding="utf-8") as f:
            spec = yaml.safe_load(f) or {}
        # Accept a full instance document as well as a bare spec.
        if isinstance(spec, dict) and "spec" in spec:
            spec = spec["spec"]
        r = requests.put(f"{base}/{col}/{args.namespace}/{args.name}", json=spec, timeout=60)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "sync":
        r = requests.post(f"{base}/{col}/{args.namespace}/{args.name}/sync", timeout=60)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        r = requests.get(f"{base}/events", params={"limit": args.limit}, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
