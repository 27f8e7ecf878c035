from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any


class JobType(str, Enum):
    DIGEST_GENERATION = "digest_generation"
    REPOSITORY_SYNC = "repository_sync"
    WEBHOOK_PROCESSING = "webhook_processing"
    NOTIFICATION = "notification"
    CLEANUP = "cleanup"
    HEALTH_CHECK = "health_check"
    WEBHOOK_DELIVERY = "webhook_delivery"
    DATA_SYNC = "data_sync"
    BACKUP = "backup"


class JobPriority(IntEnum):
    LOW = 0
    NORMAL = 10
    HIGH = 20
    CRITICAL = 30
    URGENT = 30

    @classmethod
    def parse(cls, value: object) -> JobPriority:
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                pass
        try:
            return cls(int(value))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            raise ValueError(f"unknown priority: {value!r}") from None


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
CLAIMABLE_STATUSES = (JobStatus.PENDING, JobStatus.RETRYING)


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    RETRYABLE = "retryable"
    NON_RETRYABLE = "non_retryable"
    TIMEOUT = "timeout"
    LEASE_EXPIRED = "lease_expired"
    CANCELLED = "cancelled"
    NO_HANDLER = "no_handler"


class WorkerState(str, Enum):
    ACTIVE = "active"
    DRAINING = "draining"
    STOPPED = "stopped"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"

    @classmethod
    def worst(cls, statuses: Iterable[HealthStatus]) -> HealthStatus:
        order = [cls.HEALTHY, cls.DEGRADED, cls.UNHEALTHY]
        result = cls.HEALTHY
        for status in statuses:
            if order.index(status) > order.index(result):
                result = status
        return result


def job_type_value(value: JobType | str) -> str:
    if isinstance(value, JobType):
        return value.value
    return str(value)


@dataclass(slots=True)
class Job:
    id: str
    type: str
    priority: JobPriority
    payload: dict[str, Any]
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    scheduled_for: datetime
    progress: int = 0
    attempts: int = 0
    max_retries: int = 3
    started_at: datetime | None = None
    finished_at: datetime | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    correlation_id: str | None = None
    tags: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    cancel_requested: bool = False

    @property
    def processing_ms(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds() * 1000

    @property
    def dead_lettered(self) -> bool:
        return self.status is JobStatus.FAILED and self.attempts > self.max_retries


@dataclass(slots=True)
class JobFilter:
    status: JobStatus | Iterable[JobStatus] | None = None
    type: JobType | str | Iterable[JobType | str] | None = None
    priority: JobPriority | Iterable[JobPriority] | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    correlation_id: str | None = None
    limit: int | None = None
    offset: int = 0


@dataclass(slots=True)
class JobEvent:
    name: str
    job: Job
    previous_status: JobStatus | None
    timestamp: datetime


@dataclass(slots=True)
class WorkerInfo:
    id: str
    capacity: int
    supported_types: list[str]
    status: WorkerState
    current_load: int
    last_heartbeat: datetime
    processed_count: int
    failed_count: int
    started_at: datetime
    healthy: bool = True
    recent_errors: list[dict[str, str]] = field(default_factory=list)


@dataclass(slots=True)
class Schedule:
    id: str
    name: str
    cron_expression: str
    job_type: str
    payload_template: dict[str, Any]
    enabled: bool
    next_run_at: datetime | None
    priority: JobPriority = JobPriority.NORMAL
    last_run_at: datetime | None = None
    max_concurrent_runs: int = 0


@dataclass(slots=True)
class MetricsSnapshot:
    timestamp: datetime
    counts: dict[str, int]
    queue_depth: int
    average_processing_ms: float
    p95_processing_ms: float
    throughput_per_minute: float
    error_rate: float
    active_workers: int

    @property
    def total_jobs(self) -> int:
        return sum(self.counts.values())


@dataclass(slots=True)
class ComponentHealth:
    name: str
    status: HealthStatus
    detail: str = ""


@dataclass(slots=True)
class HealthReport:
    status: HealthStatus
    components: dict[str, ComponentHealth]
    workers: list[WorkerInfo]
    errors: list[str]
    warnings: list[str]
    checked_at: datetime
    queue_depth: int = 0
    running_jobs: int = 0
    oldest_pending_at: datetime | None = None
    last_completed_at: datetime | None = None

    @property
    def healthy(self) -> bool:
        return self.status is HealthStatus.HEALTHY
