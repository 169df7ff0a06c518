import argparse
import json
import sys
from typing import Any, Dict, List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"
STATUS_MARKS = {"pending": " ", "executing": ">", "completed": "x", "failed": "!"}


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _print_plan(plan: dict, progress: Optional[dict] = None) -> None:
    print(f"{plan.get('title')} [{plan.get('id')}] - {plan.get('status')}")
    for step in plan.get("steps") or []:
        mark = STATUS_MARKS.get(step.get("status"), "?")
        line = f"  [{mark}] {step.get('description')} ({step.get('tool')})"
        if step.get("error"):
            line += f": {step['error']}"
        print(line)
    if progress:
        print(f"Progress: {progress.get('current')}/{progress.get('total')} ({progress.get('percentage')}%)")
    if plan.get("final_result"):
        print()
        print(plan["final_result"])
    elif plan.get("error"):
        print(f"Error: {plan['error']}")


def _print_event(event: dict) -> None:
    event_type = event.get("event_type")
    payload = event.get("payload") or {}
    progress = payload.get("progress") or {}
    if event_type == "step_update":
        step = payload.get("step") or {}
        print(f"[{progress.get('percentage', 0):>3}%] {step.get('status'):<9} {step.get('description')}")
    elif event_type == "plan_complete":
        print()
        print(payload.get("final_result") or "")
    elif event_type == "plan_failed":
        print(f"Plan failed: {payload.get('error')}")


def _watch_events(client: httpx.Client, base: str, plan_id: str) -> int:
    with client.stream("GET", _join_url(base, f"/api/plans/{plan_id}/events"), timeout=None) as resp:
        if resp.status_code >= 400:
            print(f"Failed to stream events: HTTP {resp.status_code}")
            return 1
        for line in resp.iter_lines():
            if not line.startswith("data: "):
                continue
            event = json.loads(line[len("data: "):])
            _print_event(event)
            if event.get("event_type") == "plan_complete":
                return 0
            if event.get("event_type") == "plan_failed":
                return 1
    return 1


def _plan_payload(args: argparse.Namespace) -> Dict[str, Any]:
    context: Dict[str, Any] = {}
    if args.owner and args.repo:
        context = {"owner": args.owner, "repo": args.repo}
    return {
        "plan_type": args.plan_type,
        "query": args.query,
        "context": context or None,
        "suggested_steps": args.step or [],
    }


def run_detect(args: argparse.Namespace) -> int:
    payload = {"message": args.message, "use_model": args.model}
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, "/api/detect"), json=payload, timeout=args.timeout)
        if resp.status_code >= 400:
            print(f"Detection failed: HTTP {resp.status_code}")
            return 1
        detection = resp.json().get("detection") or {}
    verdict = "plan" if detection.get("should_use_plan") else "no plan"
    print(f"{verdict}: {detection.get('plan_type')} ({detection.get('confidence')})")
    print(detection.get("reasoning") or "")
    for step in detection.get("suggested_steps") or []:
        print(f"- {step}")
    return 0


def run_plan(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, "/api/plans"), json=_plan_payload(args), timeout=args.timeout)
        if resp.status_code >= 400:
            print(f"Failed to create plan: HTTP {resp.status_code} {resp.text}")
            return 1
        data = resp.json()
        plan = data.get("plan") or {}
        _print_plan(plan, data.get("progress"))
        if args.create_only:
            return 0
        plan_id = plan.get("id")
        resp = client.post(
            _join_url(args.base_url, f"/api/plans/{plan_id}/execute"),
            json={"original_request": args.query},
            timeout=args.timeout,
        )
        if resp.status_code >= 400:
            print(f"Failed to start plan: HTTP {resp.status_code}")
            return 1
        return _watch_events(client, args.base_url, plan_id)


def run_status(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, f"/api/plans/{args.plan_id}"), timeout=args.timeout)
        if resp.status_code >= 400:
            print(f"Failed to fetch plan: HTTP {resp.status_code}")
            return 1
        data = resp.json()
    _print_plan(data.get("plan") or {}, data.get("progress"))
    return 0


def run_cancel(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, f"/api/plans/{args.plan_id}/cancel"), timeout=args.timeout)
        if resp.status_code >= 400:
            print(f"Failed to cancel plan: HTTP {resp.status_code}")
            return 1
        data = resp.json()
    print(f"Plan {args.plan_id}: {data.get('status')}")
    return 0 if data.get("ok") else 1


def run_executions(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(
            _join_url(args.base_url, "/api/executions"), params={"limit": args.limit}, timeout=args.timeout
        )
        if resp.status_code >= 400:
            print(f"Failed to fetch executions: HTTP {resp.status_code}")
            return 1
        executions = resp.json().get("executions") or []
    if not executions:
        print("No tool executions recorded.")
    for record in executions:
        line = f"{record.get('created_at')} {record.get('tool'):<16} {record.get('status')}"
        if record.get("error"):
            line += f" - {record['error']}"
        print(line)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ZeroLoop CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    parser.add_argument("--timeout", type=float, default=30, help="Request timeout in seconds")
    subparsers = parser.add_subparsers(dest="command")

    detect = subparsers.add_parser("detect", help="Classify a message")
    detect.add_argument("message")
    detect.add_argument("--model", action="store_true", help="Use the model-assisted detector")

    plan = subparsers.add_parser("plan", help="Create and run a plan")
    plan.add_argument("plan_type", help="news-search, repo-analysis, comprehensive-search, ...")
    plan.add_argument("query")
    plan.add_argument("--step", action="append", help="Suggested step (repeatable); builds an adaptive plan")
    plan.add_argument("--owner", help="GitHub owner for repository plans")
    plan.add_argument("--repo", help="GitHub repository for repository plans")
    plan.add_argument("--create-only", action="store_true", help="Build the plan without running it")

    status = subparsers.add_parser("status", help="Show a plan")
    status.add_argument("plan_id")

    cancel = subparsers.add_parser("cancel", help="Cancel a plan")
    cancel.add_argument("plan_id")

    executions = subparsers.add_parser("executions", help="Recent tool executions")
    executions.add_argument("--limit", type=int, default=20)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handlers = {
        "detect": run_detect,
        "plan": run_plan,
        "status": run_status,
        "cancel": run_cancel,
        "executions": run_executions,
    }
    handler = handlers.get(args.command)
    if handler is None:
        parser.print_help()
        return 1
    return handler(args)


if __name__ == "__main__":
    sys.exit(main())
