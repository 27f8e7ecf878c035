from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import threading
from datetime import timedelta

from .app_logging import log_with_fields, setup_logger
from .config import AppConfig, ensure_local_paths, load_config
from .errors import DigestqError, NotFoundError
from .handlers import register_builtin_handlers
from .models import JobFilter, JobPriority, JobStatus
from .service import JobService


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="digestq", description="Job queue, workers and scheduler for digests")
    parser.add_argument("--config", required=True, help="Path to digestq YAML config")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Run workers, scheduler and monitor until interrupted")
    subparsers.add_parser("status", help="Show job counts and health")

    enqueue = subparsers.add_parser("enqueue", help="Create a job")
    enqueue.add_argument("--type", required=True, dest="job_type", help="Job type")
    enqueue.add_argument("--payload", default="{}", help="Job payload as a JSON object")
    enqueue.add_argument(
        "--priority",
        default="normal",
        choices=[name.lower() for name in JobPriority.__members__],
        help="Job priority",
    )
    enqueue.add_argument("--max-retries", type=int, default=None, help="Override the default retry budget")
    enqueue.add_argument("--delay", type=float, default=0.0, help="Seconds to wait before the job is eligible")
    enqueue.add_argument("--correlation-id", default=None, help="Correlation id for grouping jobs")
    enqueue.add_argument("--tag", action="append", default=[], help="Tag to attach (repeatable)")
    enqueue.add_argument(
        "--depends-on", action="append", default=[], help="Job id that must complete first (repeatable)"
    )

    jobs = subparsers.add_parser("jobs", help="List recent jobs")
    jobs.add_argument("--status", choices=[item.value for item in JobStatus], default=None)
    jobs.add_argument("--type", dest="job_type", default=None)
    jobs.add_argument("--limit", type=int, default=20)

    cancel = subparsers.add_parser("cancel", help="Cancel a job")
    cancel.add_argument("--job-id", required=True, help="Job id to cancel")

    retry = subparsers.add_parser("retry", help="Re-arm a failed job")
    retry.add_argument("--job-id", required=True, help="Job id to retry")
    retry.add_argument("--force", action="store_true", help="Reset the attempt counter")
    return parser


def _open_service(config: AppConfig) -> JobService:
    ensure_local_paths(config)
    service = JobService(config)
    register_builtin_handlers(service)
    return service


def cmd_run(config: AppConfig) -> int:
    ensure_local_paths(config)
    logger = setup_logger(config.paths.log)
    service = _open_service(config)
    stop = threading.Event()

    def request_stop(signum: int, _frame: object) -> None:
        log_with_fields(logger, logging.INFO, "shutdown_requested", signal=signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)

    service.initialize()
    while not stop.wait(1.0):
        pass

    # a handler that ignores its cancellation token must not keep the process alive
    force_exit = threading.Timer(config.shutdown.force_exit_seconds, os._exit, args=(1,))
    force_exit.daemon = True
    force_exit.start()
    try:
        drained = service.shutdown()
    finally:
        service.store.close()
        force_exit.cancel()
    log_with_fields(logger, logging.INFO, "shutdown", drained=drained)
    return 0


def cmd_status(config: AppConfig) -> int:
    service = _open_service(config)
    try:
        metrics = service.get_metrics()
        print("Jobs:")
        for status in JobStatus:
            print(f"  {status.value:10} {metrics.counts.get(status.value, 0)}")
        print(f"\nQueue depth: {metrics.queue_depth}")

        health = service.get_health_check()
        print(f"\nHealth: {health.status.value}")
        for component in health.components.values():
            print(f"  {component.name:10} {component.status.value:10} {component.detail}")
        if health.oldest_pending_at is not None:
            print(f"\nOldest pending: {health.oldest_pending_at.isoformat()}")
        return 0
    finally:
        service.close()


def cmd_enqueue(config: AppConfig, args: argparse.Namespace) -> int:
    try:
        payload = json.loads(args.payload)
    except json.JSONDecodeError as exc:
        print(f"invalid --payload JSON: {exc}", file=sys.stderr)
        return 2
    service = _open_service(config)
    try:
        scheduled_for = None
        if args.delay > 0:
            scheduled_for = service.clock() + timedelta(seconds=args.delay)
        job = service.create_job(
            args.job_type,
            payload,
            priority=args.priority,
            max_retries=args.max_retries,
            scheduled_for=scheduled_for,
            correlation_id=args.correlation_id,
            tags=args.tag,
            dependencies=args.depends_on,
        )
        print(job.id)
        return 0
    except DigestqError as exc:
        print(f"could not enqueue job: {exc}", file=sys.stderr)
        return 2
    finally:
        service.close()


def cmd_jobs(config: AppConfig, args: argparse.Namespace) -> int:
    service = _open_service(config)
    try:
        jobs = service.query_jobs(
            JobFilter(
                status=JobStatus(args.status) if args.status else None,
                type=args.job_type,
                limit=args.limit,
            )
        )
        if not jobs:
            print("(no jobs)")
        for job in jobs:
            error = f" error={job.error}" if job.error else ""
            print(
                f"{job.id} {job.type} status={job.status.value} priority={job.priority.name.lower()} "
                f"attempts={job.attempts}/{job.max_retries + 1} progress={job.progress} "
                f"created={job.created_at.isoformat()}{error}"
            )
        return 0
    except DigestqError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    finally:
        service.close()


def cmd_cancel(config: AppConfig, job_id: str) -> int:
    service = _open_service(config)
    try:
        if not service.cancel_job(job_id):
            print(f"job already finished: {job_id}", file=sys.stderr)
            return 1
        print(f"cancel requested for {job_id}")
        return 0
    except NotFoundError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    finally:
        service.close()


def cmd_retry(config: AppConfig, job_id: str, *, force: bool = False) -> int:
    service = _open_service(config)
    try:
        if not service.retry_job(job_id, force=force):
            print(f"job status must be failed to retry: {job_id}", file=sys.stderr)
            return 1
        print(f"re-armed {job_id}")
        return 0
    except NotFoundError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    finally:
        service.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = load_config(args.config)

    if args.command == "run":
        return cmd_run(config)
    if args.command == "status":
        return cmd_status(config)
    if args.command == "enqueue":
        return cmd_enqueue(config, args)
    if args.command == "jobs":
        return cmd_jobs(config, args)
    if args.command == "cancel":
        return cmd_cancel(config, args.job_id)
    if args.command == "retry":
        return cmd_retry(config, args.job_id, force=bool(args.force))
    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
