from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from .app_logging import get_logger, log_with_fields
from .config import AppConfig, ScheduleConfig, WorkerConfig
from .errors import NotFoundError, ValidationError
from .models import (
    HealthReport,
    Job,
    JobFilter,
    JobPriority,
    JobStatus,
    JobType,
    MetricsSnapshot,
    Schedule,
    WorkerInfo,
    job_type_value,
)
from .monitor import Alert, Monitor
from .payloads import PAYLOAD_SCHEMAS, validate_payload
from .queue import JobQueue
from .retry import RetryPolicy
from .scheduler import Scheduler, render_payload
from .store import Store
from .utils import new_job_id, utc_now
from .worker import Handler, HandlerRegistry, WorkerPool

_BUILTIN_TYPES = frozenset(item.value for item in JobType)


class JobService:
    """Public entry point wiring store, queue, workers, scheduler and monitor."""

    def __init__(
        self,
        config: AppConfig,
        *,
        store: Store | None = None,
        clock: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.clock = clock
        self.logger = logger or get_logger("service")
        self.store = store or Store(config.paths.db)
        self.store.init_schema()
        self.retry_policy = RetryPolicy(
            base_delay=config.retry.base_delay_seconds,
            max_delay=config.retry.max_delay_seconds,
            jitter=config.retry.jitter,
        )
        self.queue = JobQueue(
            self.store,
            retry_policy=self.retry_policy,
            lease_ttl=config.queue.lease_ttl_seconds,
            aging_seconds=config.queue.aging_seconds,
            clock=clock,
        )
        self.registry = HandlerRegistry()
        self.pool = WorkerPool(
            self.queue,
            self.registry,
            timeout_for=config.timeouts.for_type,
            poll_interval=config.queue.poll_interval_seconds,
            heartbeat_interval=config.queue.heartbeat_interval_seconds,
            heartbeat_timeout=config.monitor.heartbeat_timeout_seconds,
            clock=clock,
        )
        self.scheduler = Scheduler(
            self.create_job,
            active_runs=self.store.count_active_for_correlation,
            known_type=self.is_known_type,
            tick_seconds=config.scheduler.tick_seconds,
            clock=clock,
        )
        self.monitor = Monitor(
            self.store,
            config.monitor,
            workers=self.pool.statuses,
            scheduler_running=self._scheduler_healthy,
            clock=clock,
        )
        self.queue.subscribe(self.monitor.on_event)
        self.initialized = False
        self._lock = threading.RLock()

    def _scheduler_healthy(self) -> bool:
        return not self.initialized or self.scheduler.running

    # handlers and jobs

    def register_handler(self, job_type: JobType | str, handler: Handler) -> None:
        if not job_type_value(job_type).strip():
            raise ValidationError("job type must be a non-empty string")
        self.registry.register(job_type, handler)

    def is_known_type(self, job_type: str) -> bool:
        value = job_type_value(job_type)
        return value in _BUILTIN_TYPES or value in PAYLOAD_SCHEMAS or self.registry.get(value) is not None

    def create_job(
        self,
        job_type: JobType | str,
        payload: dict[str, Any] | None = None,
        *,
        priority: JobPriority | str | int = JobPriority.NORMAL,
        max_retries: int | None = None,
        scheduled_for: datetime | None = None,
        correlation_id: str | None = None,
        tags: list[str] | None = None,
        dependencies: list[str] | None = None,
    ) -> Job:
        type_value = job_type_value(job_type).strip()
        if not type_value:
            raise ValidationError("job type must be a non-empty string")
        if not self.is_known_type(type_value):
            raise ValidationError(f"unknown job type: {type_value}")
        normalized = validate_payload(type_value, payload if payload is not None else {})
        try:
            level = JobPriority.parse(priority)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        retries = self.config.retry.default_max_retries if max_retries is None else max_retries
        if isinstance(retries, bool) or not isinstance(retries, int) or retries < 0:
            raise ValidationError("max_retries must be a non-negative integer")
        tag_list = list(tags or [])
        if any(not isinstance(item, str) for item in tag_list):
            raise ValidationError("tags must be strings")
        depends_on = list(dict.fromkeys(dependencies or []))
        if any(not isinstance(item, str) or not item for item in depends_on):
            raise ValidationError("dependencies must be job ids")
        missing = self.store.missing_ids(depends_on)
        if missing:
            raise ValidationError(f"unresolved dependencies: {', '.join(missing)}")

        now = self.clock()
        if scheduled_for is not None and scheduled_for.tzinfo is None:
            raise ValidationError("scheduled_for must be timezone-aware")
        job = Job(
            id=new_job_id(),
            type=type_value,
            priority=level,
            payload=normalized,
            status=JobStatus.PENDING,
            created_at=now,
            updated_at=now,
            scheduled_for=scheduled_for or now,
            max_retries=retries,
            correlation_id=correlation_id,
            tags=tag_list,
            dependencies=depends_on,
        )
        return self.queue.enqueue(job)

    def get_job(self, job_id: str) -> Job | None:
        return self.queue.get(job_id)

    def query_jobs(self, job_filter: JobFilter | None = None, **criteria: Any) -> list[Job]:
        if job_filter is None:
            try:
                job_filter = JobFilter(**criteria)
            except TypeError as exc:
                raise ValidationError(str(exc)) from exc
        elif criteria:
            raise ValidationError("pass either a JobFilter or keyword criteria, not both")
        if job_filter.limit is not None and job_filter.limit < 0:
            raise ValidationError("limit must be >= 0")
        if job_filter.offset < 0:
            raise ValidationError("offset must be >= 0")
        try:
            return self.queue.query(job_filter)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

    def cancel_job(self, job_id: str) -> bool:
        accepted = self.queue.cancel(job_id)
        if accepted:
            self.pool.signal_cancel(job_id)
        return accepted

    def retry_job(self, job_id: str, *, force: bool = False) -> bool:
        job = self.queue.get(job_id)
        if job is None:
            raise NotFoundError("job", job_id)
        if job.status is not JobStatus.FAILED:
            return False
        return self.queue.rearm(job_id, reset_attempts=force) is not None

    def purge_finished_jobs(
        self, older_than: timedelta, *, limit: int | None = None, dry_run: bool = False
    ) -> int:
        if older_than < timedelta(0):
            raise ValidationError("older_than must not be negative")
        return self.queue.purge_finished(older_than, limit=limit, dry_run=dry_run)

    # workers

    def add_worker(self, config: WorkerConfig) -> str:
        with self._lock:
            return self.pool.add_worker(config, start=self.initialized)

    def remove_worker(self, worker_id: str, *, graceful: bool = True, timeout: float | None = None) -> bool:
        if timeout is None:
            timeout = self.config.shutdown.grace_seconds
        return self.pool.remove_worker(worker_id, graceful=graceful, timeout=timeout)

    def get_worker_statuses(self) -> list[WorkerInfo]:
        return self.pool.statuses()

    def get_worker_pool_stats(self) -> dict[str, Any]:
        return self.pool.pool_stats()

    # schedules

    def add_schedule(
        self,
        name: str,
        cron_expression: str,
        job_type: JobType | str,
        payload_template: dict[str, Any] | None = None,
        *,
        priority: JobPriority | str | int = JobPriority.NORMAL,
        enabled: bool = True,
        max_concurrent_runs: int = 0,
    ) -> Schedule:
        type_value = job_type_value(job_type)
        if self.is_known_type(type_value):
            self._check_template(type_value, name, payload_template or {})
        return self.scheduler.add_schedule(
            name,
            cron_expression,
            type_value,
            payload_template,
            priority=priority,
            enabled=enabled,
            max_concurrent_runs=max_concurrent_runs,
        )

    def _check_template(self, job_type: str, name: str, template: dict[str, Any]) -> None:
        if not isinstance(template, dict):
            raise ValidationError("payload_template must be a mapping")
        sample = Schedule(
            id="validation",
            name=name,
            cron_expression="",
            job_type=job_type,
            payload_template=template,
            enabled=True,
            next_run_at=None,
        )
        validate_payload(job_type, render_payload(template, sample, self.clock()))

    def update_schedule(self, schedule_id: str, **patch: Any) -> Schedule | None:
        current = self.scheduler.get_schedule(schedule_id)
        if current is None:
            return None
        if "job_type" in patch or "payload_template" in patch:
            job_type = job_type_value(patch.get("job_type", current.job_type))
            if self.is_known_type(job_type):
                self._check_template(
                    job_type, patch.get("name", current.name), patch.get("payload_template", current.payload_template)
                )
        return self.scheduler.update_schedule(schedule_id, **patch)

    def remove_schedule(self, schedule_id: str) -> bool:
        return self.scheduler.remove_schedule(schedule_id)

    def get_schedule(self, schedule_id: str) -> Schedule | None:
        return self.scheduler.get_schedule(schedule_id)

    def list_schedules(self) -> list[Schedule]:
        return self.scheduler.list_schedules()

    def trigger_schedule(self, schedule_id: str) -> Job | None:
        return self.scheduler.trigger(schedule_id)

    def get_scheduler_stats(self) -> dict[str, Any]:
        return self.scheduler.stats()

    # monitoring

    def get_metrics(self) -> MetricsSnapshot:
        return self.monitor.get_metrics()

    def get_metrics_history(self, hours: float = 1.0) -> list[MetricsSnapshot]:
        return self.monitor.get_metrics_history(hours)

    def get_health_check(self) -> HealthReport:
        return self.monitor.get_health_check()

    def get_job_performance_stats(self, job_type: JobType | str | None = None) -> dict[str, Any]:
        return self.monitor.get_job_performance_stats(job_type_value(job_type) if job_type else None)

    def get_active_alerts(self) -> list[Alert]:
        return self.monitor.get_active_alerts()

    def acknowledge_alert(self, alert_id: str, acknowledged_by: str) -> bool:
        return self.monitor.acknowledge_alert(alert_id, acknowledged_by)

    def resolve_alert(self, alert_id: str) -> bool:
        return self.monitor.resolve_alert(alert_id)

    # lifecycle

    def _add_configured_schedule(self, item: ScheduleConfig) -> None:
        if self.scheduler.find_by_name(item.name) is not None:
            return
        self.add_schedule(
            item.name,
            item.cron,
            item.job_type,
            item.payload,
            priority=item.priority,
            enabled=item.enabled,
            max_concurrent_runs=item.max_concurrent_runs,
        )

    def initialize(self) -> None:
        with self._lock:
            if self.initialized:
                return
            reclaimed = self.queue.reclaim_expired()
            for worker in self.config.workers:
                if self.pool.get(worker.id) is None:
                    self.pool.add_worker(worker, start=False)
            for schedule in self.config.schedules:
                self._add_configured_schedule(schedule)
            self.initialized = True
            self.monitor.start()
            self.scheduler.start()
            self.pool.start_all()
        log_with_fields(
            self.logger,
            logging.INFO,
            "service_initialized",
            workers=len(self.pool.workers()),
            schedules=len(self.scheduler.list_schedules()),
            handlers=self.registry.types(),
            reclaimed=len(reclaimed),
        )

    def shutdown(self) -> bool:
        with self._lock:
            if not self.initialized:
                return True
            self.scheduler.stop()
            drained = self.pool.shutdown(self.config.shutdown.grace_seconds)
            self.monitor.stop()
            self.initialized = False
        log_with_fields(self.logger, logging.INFO, "service_stopped", drained=drained)
        return drained

    def close(self) -> None:
        self.shutdown()
        self.store.close()
