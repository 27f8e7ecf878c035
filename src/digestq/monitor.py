from __future__ import annotations

import logging
import threading
import uuid
from collections import Counter, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from .app_logging import get_logger, log_exception, log_with_fields
from .config import MonitorConfig
from .models import (
    ComponentHealth,
    HealthReport,
    HealthStatus,
    JobEvent,
    JobFilter,
    JobStatus,
    MetricsSnapshot,
    WorkerInfo,
    job_type_value,
)
from .queue import EVENT_COMPLETED, EVENT_FAILED, EVENT_RETRYING
from .store import Store
from .utils import percentile, utc_now

ALERT_CONDITIONS = frozenset({"queue_length", "failed_rate", "processing_time", "stuck_jobs", "worker_down"})
# unresolved alerts kept in memory; acknowledged ones are dropped first
MAX_ALERTS = 100
ACKNOWLEDGED_ALERT_TTL = timedelta(hours=24)


@dataclass(slots=True)
class AlertRule:
    id: str
    name: str
    condition: str
    threshold: float
    cooldown_minutes: float = 15.0
    enabled: bool = True
    last_triggered: datetime | None = None


@dataclass(slots=True)
class Alert:
    id: str
    rule_id: str
    condition: str
    message: str
    severity: str
    value: float
    threshold: float
    triggered_at: datetime
    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None
    resolved_at: datetime | None = None


@dataclass(slots=True)
class _Sample:
    finished_at: datetime
    duration_ms: float
    succeeded: bool


@dataclass(slots=True)
class _Window:
    samples: deque[_Sample] = field(default_factory=deque)

    def prune(self, cutoff: datetime) -> None:
        while self.samples and self.samples[0].finished_at < cutoff:
            self.samples.popleft()


DEFAULT_ALERT_RULES = (
    ("High Queue Length", "queue_length", 500, 30),
    ("High Failure Rate", "failed_rate", 20, 60),
    ("Stuck Jobs", "stuck_jobs", 30, 15),
)


def _alert_message(condition: str, threshold: float) -> str:
    messages = {
        "queue_length": f"Queue length exceeded threshold: {threshold:g}",
        "failed_rate": f"Job failure rate exceeded {threshold:g}%",
        "processing_time": f"Average processing time exceeded {threshold:g}ms",
        "stuck_jobs": f"Jobs stuck for more than {threshold:g} minutes detected",
        "worker_down": f"Less than {threshold:g} healthy workers available",
    }
    return messages.get(condition, f"Alert condition {condition} triggered")


def _alert_severity(condition: str, threshold: float) -> str:
    if condition in ("worker_down", "stuck_jobs"):
        return "critical"
    if condition == "failed_rate" and threshold > 50:
        return "error"
    return "warning"


class Monitor:
    """Observes job transitions and reports metrics, health and alerts.

    Counts by status are read from the store on every collection so that
    they stay correct across restarts and other processes. The event stream
    only feeds the sliding execution window. Nothing here raises into the
    callers' execution paths.
    """

    def __init__(
        self,
        store: Store,
        config: MonitorConfig | None = None,
        *,
        workers: Callable[[], list[WorkerInfo]] | None = None,
        scheduler_running: Callable[[], bool] | None = None,
        default_rules: bool = True,
        clock: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.config = config or MonitorConfig()
        self.workers = workers
        self.scheduler_running = scheduler_running
        self.clock = clock
        self.logger = logger or get_logger("monitor")
        self.history: deque[MetricsSnapshot] = deque(maxlen=self.config.history_size)
        self.transitions: Counter[str] = Counter()
        self._window = _Window()
        self._lock = threading.Lock()
        self._rules: dict[str, AlertRule] = {}
        self._alerts: dict[str, Alert] = {}
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        if default_rules:
            for name, condition, threshold, cooldown in DEFAULT_ALERT_RULES:
                self.add_alert_rule(name, condition, threshold, cooldown_minutes=cooldown)

    # events

    def on_event(self, event: JobEvent) -> None:
        try:
            self._record(event)
        except Exception:
            log_exception(self.logger, "monitor_event_failed", event=event.name, job_id=event.job.id)

    def _record(self, event: JobEvent) -> None:
        with self._lock:
            self.transitions[event.name] += 1
            if event.name not in (EVENT_COMPLETED, EVENT_FAILED, EVENT_RETRYING):
                return
            if event.name == EVENT_RETRYING and event.previous_status is not JobStatus.RUNNING:
                return
            job = event.job
            finished = job.finished_at or event.timestamp
            duration = (finished - job.started_at).total_seconds() * 1000 if job.started_at else 0.0
            self._window.samples.append(
                _Sample(finished_at=event.timestamp, duration_ms=max(duration, 0.0), succeeded=event.name == EVENT_COMPLETED)
            )
            self._window.prune(event.timestamp - timedelta(seconds=self.config.window_seconds))

    # metrics

    def _window_stats(self, now: datetime) -> tuple[float, float, float, float]:
        with self._lock:
            self._window.prune(now - timedelta(seconds=self.config.window_seconds))
            samples = list(self._window.samples)
        if not samples:
            return 0.0, 0.0, 0.0, 0.0
        durations = [item.duration_ms for item in samples]
        failures = sum(1 for item in samples if not item.succeeded)
        minutes = self.config.window_seconds / 60
        return (
            sum(durations) / len(durations),
            percentile(durations, 95),
            sum(1 for item in samples if item.succeeded) / minutes,
            failures / len(samples),
        )

    def _worker_infos(self) -> list[WorkerInfo]:
        if self.workers is None:
            return []
        return self.workers()

    def get_metrics(self) -> MetricsSnapshot:
        now = self.clock()
        average, p95, throughput, error_rate = self._window_stats(now)
        counts = self.store.count_by_status()
        return MetricsSnapshot(
            timestamp=now,
            counts={status.value: count for status, count in counts.items()},
            queue_depth=self.store.count_eligible(now),
            average_processing_ms=round(average, 3),
            p95_processing_ms=round(p95, 3),
            throughput_per_minute=round(throughput, 3),
            error_rate=round(error_rate, 4),
            active_workers=sum(1 for info in self._worker_infos() if info.healthy),
        )

    def collect(self) -> MetricsSnapshot | None:
        try:
            snapshot = self.get_metrics()
        except Exception:
            log_exception(self.logger, "metrics_collection_failed")
            return None
        self.history.append(snapshot)
        log_with_fields(
            self.logger,
            logging.DEBUG,
            "metrics_collected",
            queue_depth=snapshot.queue_depth,
            error_rate=snapshot.error_rate,
            active_workers=snapshot.active_workers,
        )
        self.check_alerts(snapshot)
        return snapshot

    def get_metrics_history(self, hours: float = 1.0) -> list[MetricsSnapshot]:
        cutoff = self.clock() - timedelta(hours=hours)
        return [item for item in list(self.history) if item.timestamp >= cutoff]

    # health

    def get_health_check(self) -> HealthReport:
        now = self.clock()
        components: dict[str, ComponentHealth] = {}
        errors: list[str] = []
        warnings: list[str] = []

        def record(name: str, status: HealthStatus, detail: str = "") -> None:
            components[name] = ComponentHealth(name=name, status=status, detail=detail)
            if status is HealthStatus.UNHEALTHY:
                errors.append(f"{name}: {detail}")
            elif status is HealthStatus.DEGRADED:
                warnings.append(f"{name}: {detail}")

        report = HealthReport(
            status=HealthStatus.HEALTHY,
            components=components,
            workers=[],
            errors=errors,
            warnings=warnings,
            checked_at=now,
        )

        try:
            self.store.ping()
            record("store", HealthStatus.HEALTHY, "database reachable")
        except Exception as exc:
            log_exception(self.logger, "health_store_unreachable")
            record("store", HealthStatus.UNHEALTHY, f"database unreachable: {exc}")
            report.status = HealthStatus.UNHEALTHY
            return report

        try:
            self._check_queue(report, record, now)
            self._check_workers(report, record, now)
            self._check_errors(record, now)
            if self.scheduler_running is not None:
                if self.scheduler_running():
                    record("scheduler", HealthStatus.HEALTHY, "running")
                else:
                    record("scheduler", HealthStatus.DEGRADED, "scheduler is not running")
        except Exception as exc:
            log_exception(self.logger, "health_check_failed")
            record("monitor", HealthStatus.UNHEALTHY, f"health check failed: {exc}")

        report.status = HealthStatus.worst(item.status for item in components.values())
        return report

    def _check_queue(self, report: HealthReport, record: Callable[..., None], now: datetime) -> None:
        depth = self.store.count_eligible(now)
        counts = self.store.count_by_status()
        report.queue_depth = depth
        report.running_jobs = counts[JobStatus.RUNNING]
        report.oldest_pending_at = self.store.oldest_pending_created_at()
        report.last_completed_at = self.store.last_completed_at()
        stuck = self.store.count_running_started_before(now - timedelta(minutes=self.config.stuck_job_minutes))

        if depth >= self.config.queue_depth_critical:
            record("queue", HealthStatus.UNHEALTHY, f"queue depth {depth} >= {self.config.queue_depth_critical}")
        elif depth >= self.config.queue_depth_warning:
            record("queue", HealthStatus.DEGRADED, f"queue depth {depth} >= {self.config.queue_depth_warning}")
        elif stuck:
            record("queue", HealthStatus.DEGRADED, f"{stuck} jobs running longer than {self.config.stuck_job_minutes:g} minutes")
        else:
            record("queue", HealthStatus.HEALTHY, f"queue depth {depth}")

    def _check_workers(self, report: HealthReport, record: Callable[..., None], now: datetime) -> None:
        infos = self._worker_infos()
        report.workers = infos
        if not infos:
            record("workers", HealthStatus.DEGRADED, "no workers registered")
            return
        stale = [
            info.id
            for info in infos
            if not info.healthy or (now - info.last_heartbeat).total_seconds() > self.config.heartbeat_timeout_seconds
        ]
        if len(stale) == len(infos):
            record("workers", HealthStatus.UNHEALTHY, f"no healthy workers ({', '.join(stale)})")
        elif stale:
            record("workers", HealthStatus.DEGRADED, f"unhealthy workers: {', '.join(stale)}")
        else:
            record("workers", HealthStatus.HEALTHY, f"{len(infos)} workers healthy")

    def _check_errors(self, record: Callable[..., None], now: datetime) -> None:
        _, _, _, error_rate = self._window_stats(now)
        if error_rate >= self.config.error_rate_critical:
            record("errors", HealthStatus.UNHEALTHY, f"error rate {error_rate:.0%}")
        elif error_rate >= self.config.error_rate_warning:
            record("errors", HealthStatus.DEGRADED, f"error rate {error_rate:.0%}")
        else:
            record("errors", HealthStatus.HEALTHY, f"error rate {error_rate:.0%}")

    def get_job_performance_stats(self, job_type: str | None = None) -> dict[str, Any]:
        now = self.clock()
        jobs = self.store.query(
            JobFilter(
                created_after=now - timedelta(hours=24),
                type=job_type_value(job_type) if job_type else None,
            )
        )
        finished = [job for job in jobs if job.processing_ms is not None and job.status.is_terminal]
        completed = [job for job in jobs if job.status is JobStatus.COMPLETED]
        failed = [job for job in jobs if job.status is JobStatus.FAILED]
        durations = [job.processing_ms for job in completed if job.processing_ms is not None]
        decided = len(completed) + len(failed)
        slowest = sorted(finished, key=lambda job: job.processing_ms or 0.0, reverse=True)[:10]
        reasons = Counter(job.error or "unknown" for job in failed)
        return {
            "job_type": job_type_value(job_type) if job_type else None,
            "total_jobs": len(jobs),
            "completed_jobs": len(completed),
            "failed_jobs": len(failed),
            "average_processing_ms": round(sum(durations) / len(durations), 3) if durations else 0.0,
            "success_rate": round(len(completed) / decided * 100, 2) if decided else 0.0,
            "throughput_per_hour": round(len(completed) / 24, 3),
            "slowest_jobs": [
                {"id": job.id, "type": job.type, "processing_ms": round(job.processing_ms or 0.0, 3)} for job in slowest
            ],
            "failure_reasons": [{"reason": reason, "count": count} for reason, count in reasons.most_common(10)],
        }

    # alerts

    def add_alert_rule(
        self,
        name: str,
        condition: str,
        threshold: float,
        *,
        cooldown_minutes: float = 15.0,
        enabled: bool = True,
    ) -> AlertRule:
        if condition not in ALERT_CONDITIONS:
            raise ValueError(f"unknown alert condition: {condition}")
        rule = AlertRule(
            id=f"rule_{uuid.uuid4().hex[:12]}",
            name=name,
            condition=condition,
            threshold=float(threshold),
            cooldown_minutes=float(cooldown_minutes),
            enabled=enabled,
        )
        with self._lock:
            self._rules[rule.id] = rule
        log_with_fields(
            self.logger, logging.INFO, "alert_rule_added", rule_id=rule.id, condition=condition, threshold=threshold
        )
        return rule

    def remove_alert_rule(self, rule_id: str) -> bool:
        with self._lock:
            return self._rules.pop(rule_id, None) is not None

    def alert_rules(self) -> list[AlertRule]:
        with self._lock:
            return list(self._rules.values())

    def _rule_value(self, rule: AlertRule, snapshot: MetricsSnapshot) -> tuple[float, bool]:
        if rule.condition == "queue_length":
            return snapshot.queue_depth, snapshot.queue_depth > rule.threshold
        if rule.condition == "failed_rate":
            value = snapshot.error_rate * 100
            return value, value > rule.threshold
        if rule.condition == "processing_time":
            return snapshot.average_processing_ms, snapshot.average_processing_ms > rule.threshold
        if rule.condition == "stuck_jobs":
            stuck = self.store.count_running_started_before(snapshot.timestamp - timedelta(minutes=rule.threshold))
            return stuck, stuck > 0
        if self.workers is None:
            return 0, False
        return snapshot.active_workers, snapshot.active_workers < rule.threshold

    def check_alerts(self, snapshot: MetricsSnapshot | None = None) -> list[Alert]:
        triggered: list[Alert] = []
        try:
            snapshot = snapshot or self.get_metrics()
        except Exception:
            log_exception(self.logger, "alert_check_failed")
            return triggered
        for rule in self.alert_rules():
            if not rule.enabled:
                continue
            try:
                value, tripped = self._rule_value(rule, snapshot)
            except Exception:
                log_exception(self.logger, "alert_rule_failed", rule_id=rule.id, condition=rule.condition)
                continue
            if not tripped:
                continue
            if rule.last_triggered is not None and snapshot.timestamp - rule.last_triggered < timedelta(
                minutes=rule.cooldown_minutes
            ):
                continue
            rule.last_triggered = snapshot.timestamp
            alert = Alert(
                id=f"alert_{uuid.uuid4().hex[:12]}",
                rule_id=rule.id,
                condition=rule.condition,
                message=_alert_message(rule.condition, rule.threshold),
                severity=_alert_severity(rule.condition, rule.threshold),
                value=float(value),
                threshold=rule.threshold,
                triggered_at=snapshot.timestamp,
            )
            with self._lock:
                self._alerts[alert.id] = alert
                dropped = self._prune_alerts(snapshot.timestamp)
            if dropped:
                log_with_fields(self.logger, logging.INFO, "alerts_pruned", count=dropped)
            triggered.append(alert)
            log_with_fields(
                self.logger,
                logging.WARNING,
                "alert_triggered",
                alert_id=alert.id,
                rule=rule.name,
                severity=alert.severity,
                value=alert.value,
                threshold=alert.threshold,
                alert_message=alert.message,
            )
        return triggered

    def _prune_alerts(self, now: datetime) -> int:
        stale = [
            alert.id
            for alert in self._alerts.values()
            if alert.acknowledged_at is not None and now - alert.acknowledged_at > ACKNOWLEDGED_ALERT_TTL
        ]
        overflow = len(self._alerts) - len(stale) - MAX_ALERTS
        if overflow > 0:
            remaining = [alert for alert in self._alerts.values() if alert.id not in stale]
            remaining.sort(key=lambda alert: (alert.acknowledged_at is None, alert.triggered_at))
            stale.extend(alert.id for alert in remaining[:overflow])
        for alert_id in stale:
            del self._alerts[alert_id]
        return len(stale)

    def get_active_alerts(self) -> list[Alert]:
        with self._lock:
            return list(self._alerts.values())

    def acknowledge_alert(self, alert_id: str, acknowledged_by: str) -> bool:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                return False
            alert.acknowledged_at = self.clock()
            alert.acknowledged_by = acknowledged_by
        log_with_fields(self.logger, logging.INFO, "alert_acknowledged", alert_id=alert_id, by=acknowledged_by)
        return True

    def resolve_alert(self, alert_id: str) -> bool:
        with self._lock:
            alert = self._alerts.pop(alert_id, None)
        if alert is None:
            return False
        alert.resolved_at = self.clock()
        log_with_fields(self.logger, logging.INFO, "alert_resolved", alert_id=alert_id)
        return True

    # lifecycle

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self.collect()
        self._thread = threading.Thread(target=self._run, name="digestq-monitor", daemon=True)
        self._thread.start()
        log_with_fields(self.logger, logging.INFO, "monitor_started", interval_seconds=self.config.interval_seconds)

    def _run(self) -> None:
        while not self._stop.wait(self.config.interval_seconds):
            self.collect()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None
        log_with_fields(self.logger, logging.INFO, "monitor_stopped")
