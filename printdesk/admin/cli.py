"""Administrative CLI utilities."""
from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from typing import List, Optional

from printdesk.admin.status import failure_reasons, load_jobs, summarise_jobs
from printdesk.config import load_settings
from printdesk.observability.log import configure_logging
from printdesk.orchestrator.jobs import JobStatus


def _store_path(args: argparse.Namespace) -> Path:
    if args.store:
        return Path(args.store)
    settings = load_settings(Path(os.getenv("PRINTDESK_SETTINGS", "config/settings.toml")))
    return settings.queue.store_path


def cmd_jobs(args: argparse.Namespace) -> None:
    jobs = load_jobs(_store_path(args))
    if args.status:
        wanted = JobStatus(args.status)
        jobs = [job for job in jobs if job.status is wanted]
    rows = [
        {
            "id": job.id,
            "status": job.status.value,
            "priority": job.priority,
            "progress": job.progress,
            "printer_id": job.printer_id,
            "submitter": job.submitter,
            "error": job.error,
        }
        for job in jobs
    ]
    print(json.dumps({"stats": summarise_jobs(jobs), "jobs": rows}, indent=2))


def cmd_show(args: argparse.Namespace) -> None:
    jobs = {job.id: job for job in load_jobs(_store_path(args))}
    job = jobs.get(args.job_id)
    if job is None:
        print(json.dumps({"id": args.job_id, "found": False}))
        raise SystemExit(1)
    print(json.dumps(job.to_dict(), indent=2))


def cmd_failures(args: argparse.Namespace) -> None:
    reasons = failure_reasons(load_jobs(_store_path(args)), printer_id=args.printer_id, days=args.last)
    print(json.dumps(reasons, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="printdesk-admin", description="Read-only administration commands")
    parser.add_argument("--store", help="Path to the job snapshot (defaults to settings)")
    sub = parser.add_subparsers(dest="command", required=True)

    jobs = sub.add_parser("jobs", help="List jobs with queue counters")
    jobs.add_argument("--status", choices=[status.value for status in JobStatus])

    show = sub.add_parser("show", help="Show one job including its history")
    show.add_argument("job_id")

    failures = sub.add_parser("inspect-failures", help="Summarise failure reasons")
    failures.add_argument("--printer-id")
    failures.add_argument("--last", type=int, default=7, help="Lookback window in days")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    configure_logging(Path("config/logging.yaml"))
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "jobs":
        cmd_jobs(args)
        return
    if args.command == "show":
        cmd_show(args)
        return
    if args.command == "inspect-failures":
        cmd_failures(args)
        return


if __name__ == "__main__":
    main()
