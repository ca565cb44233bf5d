#!/usr/bin/env python3
"""
vibe — CLI for submitting jobs to the Vibe executor.

Usage:
    vibe submit "Add a dark mode toggle to the header" --repo https://github.com/your-org/your-repo -f
    vibe submit "Fix the typo on the pricing page" --project <project-id>
    vibe status
    vibe status <job-id>
    vibe logs <job-id>
    vibe diff <job-id>
    vibe cancel <job-id>
    vibe projects
    vibe projects add my-app https://github.com/your-org/my-app
"""

from __future__ import annotations

import argparse
import json
import os
import sys

import httpx

API_BASE = os.getenv("VIBE_API", "http://localhost:8000")

SEVERITY_COLORS = {"info": "0", "success": "32", "warning": "33", "error": "31"}
STATE_COLORS = {"completed": "32", "failed": "31", "queued": "33"}


def _headers(args) -> dict:
    headers = {"X-Tenant-ID": args.tenant}
    if args.api_key:
        headers["Authorization"] = f"Bearer {args.api_key}"
    return headers


def _fail(resp: httpx.Response):
    try:
        detail = resp.json().get("detail", resp.text)
    except ValueError:
        detail = resp.text
    print(f"\033[31m✗ Error ({resp.status_code}): {detail}\033[0m")
    sys.exit(1)


def submit_job(args):
    """Submit a new job."""
    payload = {"prompt": args.prompt, "source_branch": args.branch}
    if args.project:
        payload["project_id"] = args.project
    else:
        payload["repository_url"] = args.repo
    if args.dest:
        payload["destination_branch"] = args.dest
    if args.provider:
        payload["llm_provider"] = args.provider
    if args.model:
        payload["llm_model"] = args.model

    resp = httpx.post(f"{API_BASE}/api/jobs", json=payload, headers=_headers(args))
    if resp.status_code != 201:
        _fail(resp)

    job = resp.json()
    print("\033[32m✓ Job submitted!\033[0m")
    print(f"  ID:          {job['task_id']}")
    print(f"  Prompt:      {job['user_prompt'][:60]}")
    print(f"  State:       {job['execution_state']}")
    print(f"  Repo:        {job['repository_url']}")
    print(f"  Branch:      {job['source_branch']} → {job['destination_branch']}")
    print(f"\n  Track progress: vibe status {job['task_id']}")
    print(f"  Stream logs:    vibe logs {job['task_id']}")

    if args.follow:
        follow_job(args, job["task_id"])


def show_status(args):
    """Show job status."""
    if args.task_id:
        resp = httpx.get(f"{API_BASE}/api/jobs/{args.task_id}", headers=_headers(args))
        if resp.status_code != 200:
            _fail(resp)
        job = resp.json()
        color = STATE_COLORS.get(job["execution_state"], "34")
        print(f"\033[{color}m● {job['execution_state']}\033[0m  {job['user_prompt'][:60]}")
        print(f"  ID:         {job['task_id']}")
        print(f"  Iterations: {job['iteration_count']}")
        print(f"  Tokens:     {job['llm_total_tokens']} ({job.get('llm_provider') or '—'})")
        print(f"  Files:      {job['files_changed_count']}")
        if job.get("pull_request_link"):
            print(f"  PR:         {job['pull_request_link']}")
        if job.get("preview_url"):
            print(f"  Preview:    {job['preview_url']}")
        if job.get("total_job_seconds"):
            print(f"  Duration:   {job['total_job_seconds']:.0f}s")
        if job.get("error_message"):
            print(f"  Error:      {job['error_message']}")
        return

    resp = httpx.get(f"{API_BASE}/api/jobs", params={"limit": args.limit}, headers=_headers(args))
    if resp.status_code != 200:
        _fail(resp)
    data = resp.json()
    jobs = data.get("tasks", [])
    if not jobs:
        print("No jobs yet.")
        return

    print(f"\n{'ID':<38} {'State':<18} {'Prompt':<40} {'PR'}")
    print("─" * 110)
    for j in jobs:
        color = STATE_COLORS.get(j["execution_state"], "34")
        pr = j["pull_request_link"] or "—"
        print(
            f"{j['task_id']:<38} \033[{color}m{j['execution_state']:<18}\033[0m {j['user_prompt'][:38]:<40} {pr}"
        )
    print(f"\n{data.get('total', len(jobs))} jobs")


def show_logs(args):
    """Stream a job's events until it finishes."""
    follow_job(args, args.task_id)


def show_diff(args):
    resp = httpx.get(f"{API_BASE}/api/jobs/{args.task_id}/diff", headers=_headers(args))
    if resp.status_code != 200:
        _fail(resp)
    diff = resp.json().get("diff")
    if not diff:
        print("No diff yet.")
        return
    for line in diff.splitlines():
        if line.startswith("+") and not line.startswith("+++"):
            print(f"\033[32m{line}\033[0m")
        elif line.startswith("-") and not line.startswith("---"):
            print(f"\033[31m{line}\033[0m")
        elif line.startswith("@@"):
            print(f"\033[36m{line}\033[0m")
        else:
            print(line)


def cancel_job(args):
    resp = httpx.delete(f"{API_BASE}/api/jobs/{args.task_id}", headers=_headers(args))
    if resp.status_code != 200:
        _fail(resp)
    print(f"\033[33m● Cancellation requested for {args.task_id}\033[0m")


def manage_projects(args):
    if args.name:
        if not args.repo:
            print("\033[31m✗ Usage: vibe projects add <name> <repository-url>\033[0m")
            sys.exit(1)
        resp = httpx.post(
            f"{API_BASE}/api/projects",
            json={"name": args.name, "repository_url": args.repo},
            headers=_headers(args),
        )
        if resp.status_code != 201:
            _fail(resp)
        project = resp.json()
        print(f"\033[32m✓ Project registered:\033[0m {project['id']}  {project['name']}")
        return

    resp = httpx.get(f"{API_BASE}/api/projects", headers=_headers(args))
    if resp.status_code != 200:
        _fail(resp)
    projects = resp.json()
    if not projects:
        print("No projects registered.")
        return
    print(f"\n{'ID':<38} {'Name':<24} {'Repository'}")
    print("─" * 100)
    for p in projects:
        print(f"{p['id']:<38} {p['name'][:22]:<24} {p['repository_url']}")


def follow_job(args, task_id: str):
    """Tail the job's SSE log stream."""
    print("\nFollowing job progress (Ctrl+C to stop)...")
    try:
        with httpx.stream(
            "GET",
            f"{API_BASE}/api/jobs/{task_id}/logs",
            headers=_headers(args),
            timeout=httpx.Timeout(10.0, read=None),
        ) as resp:
            if resp.status_code != 200:
                resp.read()
                _fail(resp)
            for line in resp.iter_lines():
                if not line.startswith("data: "):
                    continue
                payload = json.loads(line[len("data: "):])
                if payload.get("type") == "complete":
                    state = payload["execution_state"]
                    print(f"\n\033[{STATE_COLORS.get(state, '34')}m● Job {state}\033[0m")
                    break
                color = SEVERITY_COLORS.get(payload.get("severity"), "0")
                stamp = payload.get("event_time", "")[11:19]
                print(f"  {stamp} \033[{color}m{payload['event_message']}\033[0m")
    except KeyboardInterrupt:
        print("\nStopped following.")


def main():
    global API_BASE

    parser = argparse.ArgumentParser(
        prog="vibe",
        description="Vibe CLI — turn prompts into reviewed pull requests",
    )
    parser.add_argument("--api", default=API_BASE, help="API base URL")
    parser.add_argument("--api-key", default=os.getenv("VIBE_API_KEY", ""), help="Bearer API key")
    parser.add_argument("--tenant", default=os.getenv("VIBE_TENANT", "default"), help="Tenant ID")
    subparsers = parser.add_subparsers(dest="command")

    # Submit
    submit_parser = subparsers.add_parser("submit", aliases=["run"], help="Submit a new job")
    submit_parser.add_argument("prompt", help="What to change")
    target = submit_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--repo", help="Repository URL")
    target.add_argument("--project", help="Registered project ID")
    submit_parser.add_argument("--branch", default="main", help="Source branch")
    submit_parser.add_argument("--dest", help="Destination branch (default vibe/<id>)")
    submit_parser.add_argument("--provider", choices=["anthropic", "openai", "gemini"])
    submit_parser.add_argument("--model", help="LLM model override")
    submit_parser.add_argument("-f", "--follow", action="store_true", help="Follow job progress")

    # Status
    status_parser = subparsers.add_parser("status", aliases=["ls"], help="Show job status")
    status_parser.add_argument("task_id", nargs="?", help="Specific job ID")
    status_parser.add_argument("--limit", type=int, default=20)

    # Logs
    logs_parser = subparsers.add_parser("logs", aliases=["log"], help="Stream job events")
    logs_parser.add_argument("task_id", help="Job ID")

    # Diff
    diff_parser = subparsers.add_parser("diff", help="Show the job's diff")
    diff_parser.add_argument("task_id", help="Job ID")

    # Cancel
    cancel_parser = subparsers.add_parser("cancel", help="Cancel a job")
    cancel_parser.add_argument("task_id", help="Job ID")

    # Projects
    projects_parser = subparsers.add_parser("projects", help="List or register projects")
    projects_parser.add_argument("action", nargs="?", choices=["add"])
    projects_parser.add_argument("name", nargs="?")
    projects_parser.add_argument("repo", nargs="?")

    args = parser.parse_args()
    API_BASE = args.api.rstrip("/")

    if args.command in ("submit", "run"):
        submit_job(args)
    elif args.command in ("status", "ls"):
        show_status(args)
    elif args.command in ("logs", "log"):
        show_logs(args)
    elif args.command == "diff":
        show_diff(args)
    elif args.command == "cancel":
        cancel_job(args)
    elif args.command == "projects":
        manage_projects(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
