from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from string import Template
from typing import Any

from apscheduler.triggers.cron import CronTrigger

from .app_logging import get_logger, log_exception, log_with_fields
from .errors import ConflictError, NotFoundError, ValidationError
from .models import Job, JobPriority, Schedule, job_type_value
from .utils import new_schedule_id, utc_now

SCHEDULED_TAG = "scheduled"
_PATCHABLE = frozenset(
    {"name", "cron_expression", "job_type", "payload_template", "priority", "enabled", "max_concurrent_runs"}
)

CreateJob = Callable[..., Job]


def parse_cron(expression: str) -> CronTrigger:
    try:
        return CronTrigger.from_crontab(expression.strip(), timezone=timezone.utc)
    except (ValueError, TypeError, AttributeError) as exc:
        raise ValidationError(f"invalid cron expression {expression!r}: {exc}") from exc


def next_fire_time(expression: str | CronTrigger, after: datetime) -> datetime | None:
    """First fire time strictly after ``after``."""
    trigger = parse_cron(expression) if isinstance(expression, str) else expression
    # CronTrigger rounds up to the next whole second, so nudging past ``after``
    # excludes it even when it sits exactly on a fire time
    return trigger.get_next_fire_time(None, after + timedelta(microseconds=1))


def correlation_for(schedule_id: str) -> str:
    return f"schedule:{schedule_id}"


def render_payload(template: Any, schedule: Schedule, fired_at: datetime) -> Any:
    values = {
        "schedule_id": schedule.id,
        "schedule_name": schedule.name,
        "fired_at": fired_at.isoformat(),
    }

    def render(value: Any) -> Any:
        if isinstance(value, str):
            return Template(value).safe_substitute(values)
        if isinstance(value, dict):
            return {key: render(item) for key, item in value.items()}
        if isinstance(value, list):
            return [render(item) for item in value]
        return copy.deepcopy(value)

    return render(template)


class Scheduler:
    """Cron-driven job producer.

    A single thread calls ``tick`` every ``tick_seconds``. Runs missed while the
    process was down are not replayed: ``next_run_at`` is always recomputed
    from the current time.
    """

    def __init__(
        self,
        create_job: CreateJob,
        *,
        active_runs: Callable[[str], int] | None = None,
        known_type: Callable[[str], bool] | None = None,
        tick_seconds: float = 1.0,
        clock: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.create_job = create_job
        self.active_runs = active_runs
        self.known_type = known_type
        self.tick_seconds = tick_seconds
        self.clock = clock
        self.logger = logger or get_logger("scheduler")
        self._schedules: dict[str, Schedule] = {}
        self._triggers: dict[str, CronTrigger] = {}
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.fired_count = 0
        self.skipped_count = 0
        self.failed_count = 0

    def _check_job_type(self, job_type: str) -> str:
        value = job_type_value(job_type).strip()
        if not value:
            raise ValidationError("job_type must be a non-empty string")
        if self.known_type is not None and not self.known_type(value):
            raise ValidationError(f"unknown job type: {value}")
        return value

    def _name_taken(self, name: str, exclude: str | None = None) -> bool:
        return any(item.name == name and item.id != exclude for item in self._schedules.values())

    def add_schedule(
        self,
        name: str,
        cron_expression: str,
        job_type: str,
        payload_template: dict[str, Any] | None = None,
        *,
        priority: JobPriority | str | int = JobPriority.NORMAL,
        enabled: bool = True,
        max_concurrent_runs: int = 0,
    ) -> Schedule:
        if not name or not name.strip():
            raise ValidationError("schedule name must not be empty")
        if payload_template is not None and not isinstance(payload_template, dict):
            raise ValidationError("payload_template must be a mapping")
        if max_concurrent_runs < 0:
            raise ValidationError("max_concurrent_runs must be >= 0")
        trigger = parse_cron(cron_expression)
        job_type = self._check_job_type(job_type)
        try:
            level = JobPriority.parse(priority)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        now = self.clock()
        schedule = Schedule(
            id=new_schedule_id(),
            name=name,
            cron_expression=cron_expression.strip(),
            job_type=job_type,
            payload_template=copy.deepcopy(payload_template or {}),
            enabled=enabled,
            next_run_at=next_fire_time(trigger, now) if enabled else None,
            priority=level,
            max_concurrent_runs=max_concurrent_runs,
        )
        with self._lock:
            if self._name_taken(name):
                raise ConflictError(f"Schedule with name {name} already exists")
            self._schedules[schedule.id] = schedule
            self._triggers[schedule.id] = trigger
        log_with_fields(
            self.logger,
            logging.INFO,
            "schedule_added",
            schedule_id=schedule.id,
            name=name,
            cron=schedule.cron_expression,
            job_type=job_type,
            next_run_at=schedule.next_run_at.isoformat() if schedule.next_run_at else None,
        )
        return copy.deepcopy(schedule)

    def update_schedule(self, schedule_id: str, **patch: Any) -> Schedule | None:
        unknown = sorted(set(patch) - _PATCHABLE)
        if unknown:
            raise ValidationError(f"cannot update schedule fields: {', '.join(unknown)}")
        with self._lock:
            current = self._schedules.get(schedule_id)
            if current is None:
                return None
            updated = copy.deepcopy(current)
            trigger = self._triggers[schedule_id]
            if "name" in patch:
                if not patch["name"] or not str(patch["name"]).strip():
                    raise ValidationError("schedule name must not be empty")
                if self._name_taken(patch["name"], exclude=schedule_id):
                    raise ConflictError(f"Schedule with name {patch['name']} already exists")
                updated.name = patch["name"]
            if "cron_expression" in patch:
                trigger = parse_cron(patch["cron_expression"])
                updated.cron_expression = patch["cron_expression"].strip()
            if "job_type" in patch:
                updated.job_type = self._check_job_type(patch["job_type"])
            if "payload_template" in patch:
                if not isinstance(patch["payload_template"], dict):
                    raise ValidationError("payload_template must be a mapping")
                updated.payload_template = copy.deepcopy(patch["payload_template"])
            if "priority" in patch:
                try:
                    updated.priority = JobPriority.parse(patch["priority"])
                except ValueError as exc:
                    raise ValidationError(str(exc)) from exc
            if "enabled" in patch:
                updated.enabled = bool(patch["enabled"])
            if "max_concurrent_runs" in patch:
                if int(patch["max_concurrent_runs"]) < 0:
                    raise ValidationError("max_concurrent_runs must be >= 0")
                updated.max_concurrent_runs = int(patch["max_concurrent_runs"])
            updated.next_run_at = next_fire_time(trigger, self.clock()) if updated.enabled else None
            self._schedules[schedule_id] = updated
            self._triggers[schedule_id] = trigger
        log_with_fields(
            self.logger,
            logging.INFO,
            "schedule_updated",
            schedule_id=schedule_id,
            fields=sorted(patch),
            enabled=updated.enabled,
            next_run_at=updated.next_run_at.isoformat() if updated.next_run_at else None,
        )
        return copy.deepcopy(updated)

    def remove_schedule(self, schedule_id: str) -> bool:
        with self._lock:
            removed = self._schedules.pop(schedule_id, None)
            self._triggers.pop(schedule_id, None)
        if removed is None:
            return False
        log_with_fields(self.logger, logging.INFO, "schedule_removed", schedule_id=schedule_id, name=removed.name)
        return True

    def get_schedule(self, schedule_id: str) -> Schedule | None:
        with self._lock:
            schedule = self._schedules.get(schedule_id)
            return copy.deepcopy(schedule) if schedule is not None else None

    def find_by_name(self, name: str) -> Schedule | None:
        with self._lock:
            for schedule in self._schedules.values():
                if schedule.name == name:
                    return copy.deepcopy(schedule)
        return None

    def list_schedules(self) -> list[Schedule]:
        with self._lock:
            return [copy.deepcopy(item) for item in self._schedules.values()]

    def _fire(self, schedule: Schedule, fired_at: datetime) -> Job:
        return self.create_job(
            schedule.job_type,
            render_payload(schedule.payload_template, schedule, fired_at),
            priority=schedule.priority,
            correlation_id=correlation_for(schedule.id),
            tags=[SCHEDULED_TAG, f"schedule:{schedule.name}"],
        )

    def trigger(self, schedule_id: str) -> Job | None:
        """Run a schedule now without moving its ``next_run_at``."""
        schedule = self.get_schedule(schedule_id)
        if schedule is None:
            raise NotFoundError("schedule", schedule_id)
        if not schedule.enabled:
            log_with_fields(self.logger, logging.INFO, "schedule_trigger_ignored", schedule_id=schedule_id)
            return None
        now = self.clock()
        job = self._fire(schedule, now)
        with self._lock:
            current = self._schedules.get(schedule_id)
            if current is not None:
                current.last_run_at = now
        log_with_fields(
            self.logger,
            logging.INFO,
            "schedule_triggered",
            schedule_id=schedule_id,
            name=schedule.name,
            job_id=job.id,
        )
        return job

    def _at_run_limit(self, schedule: Schedule) -> bool:
        if schedule.max_concurrent_runs <= 0 or self.active_runs is None:
            return False
        return self.active_runs(correlation_for(schedule.id)) >= schedule.max_concurrent_runs

    def tick(self, now: datetime | None = None) -> list[Job]:
        now = now or self.clock()
        with self._lock:
            due = [
                copy.deepcopy(item)
                for item in self._schedules.values()
                if item.enabled and item.next_run_at is not None and item.next_run_at <= now
            ]
        created: list[Job] = []
        for schedule in due:
            try:
                if self._at_run_limit(schedule):
                    self.skipped_count += 1
                    log_with_fields(
                        self.logger,
                        logging.WARNING,
                        "schedule_run_skipped",
                        schedule_id=schedule.id,
                        name=schedule.name,
                        max_concurrent_runs=schedule.max_concurrent_runs,
                    )
                else:
                    job = self._fire(schedule, now)
                    created.append(job)
                    self.fired_count += 1
                    log_with_fields(
                        self.logger,
                        logging.INFO,
                        "schedule_fired",
                        schedule_id=schedule.id,
                        name=schedule.name,
                        job_id=job.id,
                        job_type=schedule.job_type,
                    )
            except Exception:
                self.failed_count += 1
                log_exception(self.logger, "schedule_fire_failed", schedule_id=schedule.id, name=schedule.name)
            self._advance(schedule.id, now)
        return created

    def _advance(self, schedule_id: str, now: datetime) -> None:
        with self._lock:
            current = self._schedules.get(schedule_id)
            if current is None:
                return
            current.last_run_at = now
            if current.enabled:
                current.next_run_at = next_fire_time(self._triggers[schedule_id], now)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="digestq-scheduler", daemon=True)
        self._thread.start()
        log_with_fields(self.logger, logging.INFO, "scheduler_started", schedules=len(self._schedules))

    def _run(self) -> None:
        while not self._stop.wait(self.tick_seconds):
            try:
                self.tick()
            except Exception:
                log_exception(self.logger, "scheduler_tick_failed")

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=max(self.tick_seconds * 5, 1.0))
            self._thread = None
        log_with_fields(self.logger, logging.INFO, "scheduler_stopped")

    def stats(self) -> dict[str, Any]:
        with self._lock:
            schedules = list(self._schedules.values())
        upcoming = [item.next_run_at for item in schedules if item.enabled and item.next_run_at is not None]
        return {
            "running": self.running,
            "total_schedules": len(schedules),
            "enabled_schedules": sum(1 for item in schedules if item.enabled),
            "disabled_schedules": sum(1 for item in schedules if not item.enabled),
            "next_run_at": min(upcoming).isoformat() if upcoming else None,
            "fired_count": self.fired_count,
            "skipped_count": self.skipped_count,
            "failed_count": self.failed_count,
        }
