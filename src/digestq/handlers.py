from __future__ import annotations

import logging
import shutil
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .app_logging import get_logger, log_with_fields
from .errors import HandlerError
from .models import HealthStatus, JobType
from .payloads import CleanupPayload, HealthCheckPayload
from .worker import CancellationToken, Handler, ProgressReporter

if TYPE_CHECKING:
    from .service import JobService

# checks backed by collaborators that live outside the job core
EXTERNAL_CHECKS = frozenset({"external_apis", "github_api", "notification_services"})
DISK_FREE_WARNING = 0.05


def make_cleanup_handler(service: JobService) -> Handler:
    logger = get_logger("handlers")

    def cleanup(payload: CleanupPayload, progress: ProgressReporter, token: CancellationToken) -> dict[str, Any]:
        if payload.target_table != "jobs":
            raise HandlerError(f"no cleanup registered for table {payload.target_table}", retryable=False)
        older_than = timedelta(days=payload.older_than_days)
        if payload.dry_run:
            count = service.purge_finished_jobs(older_than, dry_run=True)
            progress(100)
            return {"table": payload.target_table, "would_delete": count, "dry_run": True}

        deleted = 0
        batches = 0
        while True:
            token.raise_if_cancelled()
            count = service.purge_finished_jobs(older_than, limit=payload.batch_size)
            deleted += count
            batches += 1
            progress(min(95, batches * 10))
            if count < payload.batch_size:
                break
        log_with_fields(logger, logging.INFO, "cleanup_finished", table=payload.target_table, deleted=deleted)
        return {"table": payload.target_table, "deleted": deleted, "batches": batches, "dry_run": False}

    return cleanup


def _check_disk(path: Path) -> dict[str, Any]:
    usage = shutil.disk_usage(path)
    free_ratio = usage.free / usage.total if usage.total else 0.0
    status = HealthStatus.HEALTHY if free_ratio >= DISK_FREE_WARNING else HealthStatus.DEGRADED
    return {"status": status.value, "free_bytes": usage.free, "free_ratio": round(free_ratio, 4)}


def make_health_check_handler(service: JobService) -> Handler:
    logger = get_logger("handlers")

    def health_check(
        payload: HealthCheckPayload, progress: ProgressReporter, token: CancellationToken
    ) -> dict[str, Any]:
        results: dict[str, dict[str, Any]] = {}
        for index, name in enumerate(payload.checks, start=1):
            token.raise_if_cancelled()
            if name == "database":
                try:
                    service.store.ping()
                    results[name] = {"status": HealthStatus.HEALTHY.value}
                except Exception as exc:
                    results[name] = {"status": HealthStatus.UNHEALTHY.value, "detail": str(exc)}
            elif name == "jobs":
                report = service.get_health_check()
                results[name] = {
                    "status": report.status.value,
                    "queue_depth": report.queue_depth,
                    "running_jobs": report.running_jobs,
                    "warnings": list(report.warnings),
                    "errors": list(report.errors),
                }
            elif name == "disk":
                results[name] = _check_disk(Path(str(service.store.db_path)).resolve().parent)
            elif name == "memory":
                results[name] = {"status": HealthStatus.HEALTHY.value, "detail": "not sampled"}
            elif name in EXTERNAL_CHECKS:
                results[name] = {"status": "skipped", "detail": "checked by its own service"}
            progress(int(index / len(payload.checks) * 100))

        failing = sorted(
            name
            for name, item in results.items()
            if item["status"] in (HealthStatus.DEGRADED.value, HealthStatus.UNHEALTHY.value)
        )
        if failing and payload.alert_on_failure:
            log_with_fields(
                logger,
                logging.WARNING,
                "health_check_alert",
                failing=failing,
                recipients=payload.alert_recipients,
            )
        return {"healthy": not failing, "failing": failing, "checks": results}

    return health_check


def register_builtin_handlers(service: JobService) -> None:
    service.register_handler(JobType.CLEANUP, make_cleanup_handler(service))
    service.register_handler(JobType.HEALTH_CHECK, make_health_check_handler(service))
