#!/usr/bin/env python3
"""Entry point for the match-and-notify pipeline and its operator commands.

  python run_pipeline.py serve                 # scheduler + trigger consumers + dispatch workers
  python run_pipeline.py stats                 # queue depth per status
  python run_pipeline.py retry JOB_ID
  python run_pipeline.py cron list
  python run_pipeline.py match-stats --range 7d
  python run_pipeline.py bulk notifications.yaml   # list of {type, recipient_id, payload}
"""
from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
from pathlib import Path

import yaml

sys.path.insert(0, str(Path(__file__).resolve().parent))

from matchflow.config import ensure_dirs, load_settings
from matchflow.errors import MatchflowError
from matchflow.log import get_logger

log = get_logger(__name__)


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _load_items(path: str) -> list:
    with open(path, "r", encoding="utf-8") as f:
        items = yaml.safe_load(f) or []
    if not isinstance(items, list):
        raise ValueError(f"{path} must contain a list of notifications")
    return items


def _parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Resume/job matching and notification pipeline")
    p.add_argument("--config", help="settings YAML (default: config/pipeline.yaml)")
    sub = p.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="run the pipeline until interrupted")
    serve.add_argument("--no-scheduler", action="store_true", help="do not run scheduled tasks")

    sub.add_parser("stats", help="queue statistics")
    sub.add_parser("health", help="health report")
    sub.add_parser("summary", help="print the daily summary report")

    jobs = sub.add_parser("jobs", help="list notification jobs")
    jobs.add_argument("--status")
    jobs.add_argument("--limit", type=int, default=20)

    retry = sub.add_parser("retry", help="reset a failed/dead-lettered job")
    retry.add_argument("job_id")
    sub.add_parser("retry-all", help="reset every failed/dead-lettered job")

    cron = sub.add_parser("cron", help="scheduled tasks")
    cron.add_argument("action", choices=["list", "enable", "disable", "run"])
    cron.add_argument("name", nargs="?")

    ms = sub.add_parser("match-stats", help="match counts over a time range")
    ms.add_argument("--range", dest="time_range", default="24h", help="e.g. 24h, 7d, 2w, all")

    trig = sub.add_parser("trigger", help="evaluate one job or resume now")
    trig.add_argument("kind", choices=["job", "resume"])
    trig.add_argument("entity_id")

    sub.add_parser("sweep", help="re-evaluate stale and never-matched pairs")

    track = sub.add_parser("track", help="record a provider open/click event")
    track.add_argument("job_id")
    track.add_argument("event", choices=["opened", "clicked"])

    bulk = sub.add_parser("bulk", help="queue the notifications listed in a YAML/JSON file")
    bulk.add_argument("path")
    return p


def _serve(pipeline, with_scheduler: bool) -> None:
    stop = threading.Event()

    def _shutdown(signum, frame):
        log.info("Signal %s received, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
    pipeline.start(scheduler=with_scheduler)
    try:
        while not stop.wait(1.0):
            pass
    finally:
        pipeline.stop()


def main(argv: list[str] | None = None) -> int:
    args = _parser().parse_args(argv)

    from matchflow.pipeline import build_pipeline

    try:
        settings = load_settings(args.config)
        ensure_dirs(settings)
        pipeline = build_pipeline(settings)
    except MatchflowError as exc:
        log.error("Startup failed: %s", exc)
        return 2

    control = pipeline.control
    if args.command == "serve":
        _serve(pipeline, not args.no_scheduler)
        return 0

    try:
        if args.command == "stats":
            _print(control.get_queue_stats())
        elif args.command == "health":
            _print(control.get_health())
        elif args.command == "summary":
            print(control.build_daily_summary())
        elif args.command == "jobs":
            _print(control.list_jobs(args.status, args.limit))
        elif args.command == "retry":
            _print({"job_id": args.job_id, "retried": control.retry_job(args.job_id)})
        elif args.command == "retry-all":
            _print(control.retry_all_failed())
        elif args.command == "cron":
            if args.action == "list":
                _print(control.list_cron_jobs())
            elif not args.name:
                log.error("cron %s needs a task name", args.action)
                return 2
            elif args.action == "run":
                _print({"name": args.name, "ran": control.run_cron_job_now(args.name)})
            else:
                _print(control.set_cron_job_enabled(args.name, args.action == "enable"))
        elif args.command == "match-stats":
            _print(control.get_match_stats(args.time_range))
        elif args.command == "trigger":
            if args.kind == "job":
                results = pipeline.evaluator.evaluate_job(args.entity_id)
            else:
                results = pipeline.evaluator.evaluate_resume(args.entity_id)
            _print([{"resume_id": r.resume_id, "job_id": r.job_id, "score": r.score} for r in results])
        elif args.command == "sweep":
            _print({"evaluated": len(pipeline.evaluator.sweep())})
        elif args.command == "track":
            _print({"job_id": args.job_id, "updated": control.record_delivery_event(args.job_id, args.event)})
        elif args.command == "bulk":
            _print(pipeline.send_bulk(_load_items(args.path)))
    except (MatchflowError, ValueError, OSError, yaml.YAMLError) as exc:
        log.error("%s failed: %s", args.command, exc)
        return 1
    finally:
        pipeline.store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
