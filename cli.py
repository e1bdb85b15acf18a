from __future__ import annotations

import argparse
import json
import os
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _parse_service(raw: str) -> dict:
    """NO:NAME[:Running|Stopped]"""
    parts = raw.split(":")
    if len(parts) not in (2, 3):
        raise argparse.ArgumentTypeError(f"expected NO:NAME[:EXPECTED], got {raw!r}")
    try:
        no = int(parts[0])
    except ValueError:
        raise argparse.ArgumentTypeError(f"service number must be an integer, got {parts[0]!r}")
    out = {"no": no, "name": parts[1]}
    if len(parts) == 3:
        out["expected_status"] = parts[2]
    return out


def _machine_path(machine: str) -> str:
    owner, sep, name = machine.partition("/")
    if not sep or not owner or not name:
        raise SystemExit(f"machine must be OWNER/NAME, got {machine!r}")
    return f"{owner}/{name}"


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Machine Service Reconciler CLI")
    p.add_argument("--api", default=os.getenv("MSR_API", "http://localhost:8000"), help="API base URL")
    p.add_argument("--user", default=os.getenv("MSR_ADMIN_USER", "admin"))
    p.add_argument("--password", default=os.getenv("MSR_ADMIN_PASSWORD", "admin"))
    sub = p.add_subparsers(dest="cmd", required=True)

    s_list = sub.add_parser("machines", help="List machines")
    s_list.add_argument("--owner")

    s_show = sub.add_parser("show", help="Show a machine with freshly observed service state")
    s_show.add_argument("machine", help="OWNER/NAME")

    s_reg = sub.add_parser("register", help="Register a machine")
    s_reg.add_argument("--owner", required=True)
    s_reg.add_argument("--name", required=True)
    s_reg.add_argument("--ip", required=True)
    s_reg.add_argument("--username", required=True)
    s_reg.add_argument("--secret", required=True, help="SSH password of the machine")
    s_reg.add_argument("--service", action="append", type=_parse_service, default=[], help="NO:NAME[:EXPECTED]")

    s_del = sub.add_parser("delete", help="Delete a machine")
    s_del.add_argument("machine", help="OWNER/NAME")

    s_exp = sub.add_parser("expect", help="Set the expected status of a service")
    s_exp.add_argument("machine", help="OWNER/NAME")
    s_exp.add_argument("no", type=int)
    s_exp.add_argument("expected_status", choices=["Running", "Stopped"])

    s_act = sub.add_parser("action", help="Run a phase on a service now")
    s_act.add_argument("machine", help="OWNER/NAME")
    s_act.add_argument("no", type=int)
    s_act.add_argument("action", choices=["pull", "build", "deploy", "start", "stop"])

    s_rec = sub.add_parser("reconcile", help="Run one reconciliation pass on a machine")
    s_rec.add_argument("machine", help="OWNER/NAME")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--machine")

    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    base = args.api.rstrip("/")
    auth = (args.user, args.password)

    if args.cmd == "machines":
        params = {"owner": args.owner} if args.owner else None
        r = requests.get(f"{base}/machines", params=params, auth=auth, timeout=10)
    elif args.cmd == "show":
        r = requests.get(f"{base}/machines/{_machine_path(args.machine)}", auth=auth, timeout=120)
    elif args.cmd == "register":
        payload = {
            "owner": args.owner,
            "name": args.name,
            "ip": args.ip,
            "username": args.username,
            "password": args.secret,
            "services": args.service,
        }
        r = requests.post(f"{base}/machines", json=payload, auth=auth, timeout=30)
    elif args.cmd == "delete":
        r = requests.delete(f"{base}/machines/{_machine_path(args.machine)}", auth=auth, timeout=30)
    elif args.cmd == "expect":
        r = requests.put(
            f"{base}/machines/{_machine_path(args.machine)}/services/{args.no}/expected",
            json={"expected_status": args.expected_status},
            auth=auth,
            timeout=30,
        )
    elif args.cmd == "action":
        # Build and deploy can take minutes.
        r = requests.post(
            f"{base}/machines/{_machine_path(args.machine)}/services/{args.no}/{args.action}",
            auth=auth,
            timeout=1800,
        )
    elif args.cmd == "reconcile":
        r = requests.post(f"{base}/machines/{_machine_path(args.machine)}/reconcile", auth=auth, timeout=600)
    elif args.cmd == "events":
        params = {"limit": args.limit}
        if args.machine:
            params["machine"] = args.machine
        r = requests.get(f"{base}/events", params=params, auth=auth, timeout=10)
    else:
        return 2

    _print(r.json())
    if args.cmd == "action" and r.ok and not r.json().get("ok", True):
        return 1
    return 0 if r.ok else 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
