from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError
from .models import JobPriority


@dataclass(slots=True)
class PathsConfig:
    db: Path
    log: Path


@dataclass(slots=True)
class QueueConfig:
    lease_ttl_seconds: float = 300.0
    poll_interval_seconds: float = 1.0
    aging_seconds: float = 0.0

    @property
    def heartbeat_interval_seconds(self) -> float:
        return self.lease_ttl_seconds / 3


@dataclass(slots=True)
class RetryConfig:
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 300.0
    default_max_retries: int = 3
    jitter: bool = True


@dataclass(slots=True)
class TimeoutConfig:
    default_seconds: float = 1800.0
    per_type: dict[str, float] = field(default_factory=dict)

    def for_type(self, job_type: str) -> float:
        return self.per_type.get(job_type, self.default_seconds)


@dataclass(slots=True)
class SchedulerConfig:
    tick_seconds: float = 1.0


@dataclass(slots=True)
class MonitorConfig:
    interval_seconds: float = 60.0
    history_size: int = 1440
    window_seconds: float = 900.0
    heartbeat_timeout_seconds: float = 90.0
    queue_depth_warning: int = 500
    queue_depth_critical: int = 1000
    error_rate_warning: float = 0.10
    error_rate_critical: float = 0.50
    stuck_job_minutes: float = 30.0


@dataclass(slots=True)
class ShutdownConfig:
    grace_seconds: float = 30.0
    force_exit_seconds: float = 30.0


@dataclass(slots=True)
class WorkerConfig:
    id: str
    capacity: int = 1
    supported_types: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ScheduleConfig:
    name: str
    cron: str
    job_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    priority: JobPriority = JobPriority.NORMAL
    max_concurrent_runs: int = 0


@dataclass(slots=True)
class AppConfig:
    paths: PathsConfig
    queue: QueueConfig = field(default_factory=QueueConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    shutdown: ShutdownConfig = field(default_factory=ShutdownConfig)
    workers: list[WorkerConfig] = field(default_factory=list)
    schedules: list[ScheduleConfig] = field(default_factory=list)


def _require(mapping: dict, key: str, section: str) -> object:
    if key not in mapping:
        raise ConfigError(f"Missing `{section}.{key}` in config")
    return mapping[key]


def _section(raw: dict, key: str) -> dict:
    value = raw.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"`{key}` must be a mapping")
    return value


def _positive(value: float, name: str, *, allow_zero: bool = False) -> float:
    if value < 0 or (value == 0 and not allow_zero):
        bound = ">= 0" if allow_zero else "> 0"
        raise ConfigError(f"`{name}` must be {bound}")
    return value


def _parse_workers(workers_raw: object) -> list[WorkerConfig]:
    if workers_raw is None:
        return []
    if not isinstance(workers_raw, list):
        raise ConfigError("`workers` must be a list")
    workers: list[WorkerConfig] = []
    seen_ids: set[str] = set()
    for idx, item in enumerate(workers_raw):
        if not isinstance(item, dict):
            raise ConfigError(f"`workers[{idx}]` must be a mapping")
        types_raw = _require(item, "supported_types", f"workers[{idx}]")
        if not isinstance(types_raw, list) or not types_raw:
            raise ConfigError(f"`workers[{idx}].supported_types` must be a non-empty list")
        worker = WorkerConfig(
            id=str(_require(item, "id", f"workers[{idx}]")),
            capacity=int(item.get("capacity", 1)),
            supported_types=[str(value) for value in types_raw],
        )
        if worker.capacity < 1:
            raise ConfigError(f"`workers[{idx}].capacity` must be >= 1")
        if worker.id in seen_ids:
            raise ConfigError(f"Duplicate worker id: {worker.id}")
        seen_ids.add(worker.id)
        workers.append(worker)
    return workers


def _parse_schedules(schedules_raw: object) -> list[ScheduleConfig]:
    if schedules_raw is None:
        return []
    if not isinstance(schedules_raw, list):
        raise ConfigError("`schedules` must be a list")
    schedules: list[ScheduleConfig] = []
    seen_names: set[str] = set()
    for idx, item in enumerate(schedules_raw):
        if not isinstance(item, dict):
            raise ConfigError(f"`schedules[{idx}]` must be a mapping")
        payload = item.get("payload", {}) or {}
        if not isinstance(payload, dict):
            raise ConfigError(f"`schedules[{idx}].payload` must be a mapping")
        try:
            priority = JobPriority.parse(item.get("priority", "normal"))
        except ValueError as exc:
            raise ConfigError(f"`schedules[{idx}].priority`: {exc}") from exc
        schedule = ScheduleConfig(
            name=str(_require(item, "name", f"schedules[{idx}]")),
            cron=str(_require(item, "cron", f"schedules[{idx}]")),
            job_type=str(_require(item, "job_type", f"schedules[{idx}]")),
            payload=payload,
            enabled=bool(item.get("enabled", True)),
            priority=priority,
            max_concurrent_runs=int(item.get("max_concurrent_runs", 0)),
        )
        if schedule.name in seen_names:
            raise ConfigError(f"Duplicate schedule name: {schedule.name}")
        seen_names.add(schedule.name)
        schedules.append(schedule)
    return schedules


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path).expanduser().resolve()
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping")

    paths_raw = _require(raw, "paths", "root")
    if not isinstance(paths_raw, dict):
        raise ConfigError("`paths` must be a mapping")

    def to_path(key: str) -> Path:
        value = _require(paths_raw, key, "paths")
        output = Path(str(value)).expanduser()
        if not output.is_absolute():
            output = config_path.parent / output
        return output

    paths = PathsConfig(db=to_path("db"), log=to_path("log"))

    queue_raw = _section(raw, "queue")
    queue = QueueConfig(
        lease_ttl_seconds=_positive(float(queue_raw.get("lease_ttl_seconds", 300)), "queue.lease_ttl_seconds"),
        poll_interval_seconds=_positive(
            float(queue_raw.get("poll_interval_seconds", 1)), "queue.poll_interval_seconds"
        ),
        aging_seconds=_positive(float(queue_raw.get("aging_seconds", 0)), "queue.aging_seconds", allow_zero=True),
    )

    retry_raw = _section(raw, "retry")
    retry = RetryConfig(
        base_delay_seconds=_positive(
            float(retry_raw.get("base_delay_seconds", 2)), "retry.base_delay_seconds", allow_zero=True
        ),
        max_delay_seconds=_positive(
            float(retry_raw.get("max_delay_seconds", 300)), "retry.max_delay_seconds", allow_zero=True
        ),
        default_max_retries=int(retry_raw.get("default_max_retries", 3)),
        jitter=bool(retry_raw.get("jitter", True)),
    )
    if retry.default_max_retries < 0:
        raise ConfigError("`retry.default_max_retries` must be >= 0")
    if retry.max_delay_seconds < retry.base_delay_seconds:
        raise ConfigError("`retry.max_delay_seconds` must be >= `retry.base_delay_seconds`")

    timeouts_raw = _section(raw, "timeouts")
    per_type_raw = timeouts_raw.get("per_type", {}) or {}
    if not isinstance(per_type_raw, dict):
        raise ConfigError("`timeouts.per_type` must be a mapping")
    timeouts = TimeoutConfig(
        default_seconds=_positive(float(timeouts_raw.get("default_seconds", 1800)), "timeouts.default_seconds"),
        per_type={
            str(key): _positive(float(value), f"timeouts.per_type.{key}") for key, value in per_type_raw.items()
        },
    )

    scheduler_raw = _section(raw, "scheduler")
    scheduler = SchedulerConfig(
        tick_seconds=_positive(float(scheduler_raw.get("tick_seconds", 1)), "scheduler.tick_seconds"),
    )

    monitor_raw = _section(raw, "monitor")
    defaults = MonitorConfig()
    monitor = MonitorConfig(
        interval_seconds=_positive(
            float(monitor_raw.get("interval_seconds", defaults.interval_seconds)), "monitor.interval_seconds"
        ),
        history_size=int(monitor_raw.get("history_size", defaults.history_size)),
        window_seconds=_positive(
            float(monitor_raw.get("window_seconds", defaults.window_seconds)), "monitor.window_seconds"
        ),
        heartbeat_timeout_seconds=_positive(
            float(monitor_raw.get("heartbeat_timeout_seconds", defaults.heartbeat_timeout_seconds)),
            "monitor.heartbeat_timeout_seconds",
        ),
        queue_depth_warning=int(monitor_raw.get("queue_depth_warning", defaults.queue_depth_warning)),
        queue_depth_critical=int(monitor_raw.get("queue_depth_critical", defaults.queue_depth_critical)),
        error_rate_warning=float(monitor_raw.get("error_rate_warning", defaults.error_rate_warning)),
        error_rate_critical=float(monitor_raw.get("error_rate_critical", defaults.error_rate_critical)),
        stuck_job_minutes=float(monitor_raw.get("stuck_job_minutes", defaults.stuck_job_minutes)),
    )
    if monitor.history_size < 1:
        raise ConfigError("`monitor.history_size` must be >= 1")
    if monitor.queue_depth_critical < monitor.queue_depth_warning:
        raise ConfigError("`monitor.queue_depth_critical` must be >= `monitor.queue_depth_warning`")

    shutdown_raw = _section(raw, "shutdown")
    shutdown = ShutdownConfig(
        grace_seconds=_positive(float(shutdown_raw.get("grace_seconds", 30)), "shutdown.grace_seconds"),
        force_exit_seconds=_positive(
            float(shutdown_raw.get("force_exit_seconds", 30)), "shutdown.force_exit_seconds"
        ),
    )

    return AppConfig(
        paths=paths,
        queue=queue,
        retry=retry,
        timeouts=timeouts,
        scheduler=scheduler,
        monitor=monitor,
        shutdown=shutdown,
        workers=_parse_workers(raw.get("workers")),
        schedules=_parse_schedules(raw.get("schedules")),
    )


def ensure_local_paths(config: AppConfig) -> None:
    config.paths.db.parent.mkdir(parents=True, exist_ok=True)
    config.paths.log.parent.mkdir(parents=True, exist_ok=True)
