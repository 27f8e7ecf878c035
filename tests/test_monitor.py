from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from digestq.config import MonitorConfig
from digestq.models import ErrorKind, HealthStatus, Job, JobPriority, JobStatus, WorkerInfo, WorkerState
from digestq.monitor import MAX_ALERTS, Monitor
from digestq.queue import JobQueue
from digestq.retry import RetryPolicy
from digestq.store import Store

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class MonitorTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp = TemporaryDirectory()
        self.store = Store(Path(self._temp.name) / "digestq.db")
        self.store.init_schema()
        self.clock = FakeClock()
        self.queue = JobQueue(self.store, retry_policy=RetryPolicy(jitter=False), clock=self.clock)
        self.worker_infos: list[WorkerInfo] = [self.worker("w1")]
        self.monitor = Monitor(
            self.store,
            MonitorConfig(
                queue_depth_warning=3,
                queue_depth_critical=5,
                error_rate_warning=0.25,
                error_rate_critical=0.75,
                stuck_job_minutes=30,
            ),
            workers=lambda: self.worker_infos,
            default_rules=False,
            clock=self.clock,
        )
        self.queue.subscribe(self.monitor.on_event)
        self.counter = 0

    def tearDown(self) -> None:
        self.store.close()
        self._temp.cleanup()

    def worker(self, worker_id: str, *, healthy: bool = True, heartbeat: datetime | None = None) -> WorkerInfo:
        return WorkerInfo(
            id=worker_id,
            capacity=1,
            supported_types=["echo"],
            status=WorkerState.ACTIVE,
            current_load=0,
            last_heartbeat=heartbeat or self.clock(),
            processed_count=0,
            failed_count=0,
            started_at=T0,
            healthy=healthy,
        )

    def enqueue(self) -> Job:
        self.counter += 1
        now = self.clock()
        return self.queue.enqueue(
            Job(
                id=f"job-{self.counter}",
                type="echo",
                priority=JobPriority.NORMAL,
                payload={},
                status=JobStatus.PENDING,
                created_at=now,
                updated_at=now,
                scheduled_for=now,
                max_retries=0,
            )
        )

    def run_job(self, *, succeed: bool, seconds: float = 2.0, error: str = "boom") -> None:
        self.enqueue()
        job = self.queue.claim("w1", ["echo"])
        assert job is not None
        self.clock.advance(seconds=seconds)
        if succeed:
            self.queue.complete(job, "w1", {})
        else:
            self.queue.fail(job, "w1", error, ErrorKind.NON_RETRYABLE)

    def test_metrics_from_window_and_store(self) -> None:
        for _ in range(3):
            self.run_job(succeed=True)
        self.run_job(succeed=False, seconds=6)
        self.enqueue()
        metrics = self.monitor.get_metrics()
        self.assertEqual(metrics.counts["completed"], 3)
        self.assertEqual(metrics.counts["failed"], 1)
        self.assertEqual(metrics.counts["pending"], 1)
        self.assertEqual(metrics.total_jobs, 5)
        self.assertEqual(metrics.queue_depth, 1)
        self.assertEqual(metrics.error_rate, 0.25)
        self.assertEqual(metrics.average_processing_ms, 3000.0)
        self.assertEqual(metrics.p95_processing_ms, 6000.0)
        self.assertEqual(metrics.active_workers, 1)
        self.assertEqual(self.monitor.transitions["job.completed"], 3)

    def test_window_expires_old_samples(self) -> None:
        self.run_job(succeed=False)
        self.assertEqual(self.monitor.get_metrics().error_rate, 1.0)
        self.clock.advance(minutes=16)
        self.assertEqual(self.monitor.get_metrics().error_rate, 0.0)

    def test_history_ring(self) -> None:
        self.monitor.collect()
        self.clock.advance(hours=2)
        self.monitor.collect()
        self.assertEqual(len(self.monitor.get_metrics_history(1)), 1)
        self.assertEqual(len(self.monitor.get_metrics_history(3)), 2)

    def test_health_follows_queue_depth(self) -> None:
        self.assertEqual(self.monitor.get_health_check().status, HealthStatus.HEALTHY)
        for _ in range(3):
            self.enqueue()
        report = self.monitor.get_health_check()
        self.assertEqual(report.status, HealthStatus.DEGRADED)
        self.assertEqual(report.components["queue"].status, HealthStatus.DEGRADED)
        self.assertEqual(report.queue_depth, 3)
        self.assertEqual(report.oldest_pending_at, T0)
        for _ in range(2):
            self.enqueue()
        report = self.monitor.get_health_check()
        self.assertEqual(report.status, HealthStatus.UNHEALTHY)
        self.assertFalse(report.healthy)
        self.assertTrue(report.errors)

    def test_health_flags_workers_and_errors(self) -> None:
        self.worker_infos = [self.worker("w1"), self.worker("w2", heartbeat=T0 - timedelta(minutes=5))]
        report = self.monitor.get_health_check()
        self.assertEqual(report.components["workers"].status, HealthStatus.DEGRADED)
        self.worker_infos = [self.worker("w1", healthy=False)]
        self.assertEqual(self.monitor.get_health_check().components["workers"].status, HealthStatus.UNHEALTHY)
        self.worker_infos = [self.worker("w1")]

        self.run_job(succeed=False)
        report = self.monitor.get_health_check()
        self.assertEqual(report.components["errors"].status, HealthStatus.UNHEALTHY)
        self.assertEqual(report.status, HealthStatus.UNHEALTHY)

    def test_stuck_jobs_degrade_queue(self) -> None:
        self.enqueue()
        self.queue.claim("w1", ["echo"])
        self.clock.advance(minutes=31)
        report = self.monitor.get_health_check()
        self.assertEqual(report.components["queue"].status, HealthStatus.DEGRADED)
        self.assertEqual(report.running_jobs, 1)

    def test_alerts_with_cooldown(self) -> None:
        rule = self.monitor.add_alert_rule("Deep queue", "queue_length", 1, cooldown_minutes=10)
        self.enqueue()
        self.assertEqual(self.monitor.check_alerts(), [])
        self.enqueue()
        with self.assertLogs("digestq.monitor", level="WARNING"):
            alerts = self.monitor.check_alerts()
        self.assertEqual(len(alerts), 1)
        self.assertEqual(alerts[0].rule_id, rule.id)
        self.assertEqual(alerts[0].severity, "warning")
        self.assertEqual(self.monitor.check_alerts(), [])
        self.clock.advance(minutes=11)
        self.assertEqual(len(self.monitor.check_alerts()), 1)

        active = self.monitor.get_active_alerts()
        self.assertEqual(len(active), 2)
        self.assertTrue(self.monitor.acknowledge_alert(active[0].id, "oncall"))
        self.assertEqual(self.monitor.get_active_alerts()[0].acknowledged_by, "oncall")
        self.assertTrue(self.monitor.resolve_alert(active[0].id))
        self.assertFalse(self.monitor.resolve_alert(active[0].id))
        self.assertEqual(len(self.monitor.get_active_alerts()), 1)
        with self.assertRaises(ValueError):
            self.monitor.add_alert_rule("bad", "cpu", 90)

    def test_processing_time_and_worker_down_rules(self) -> None:
        slow = self.monitor.add_alert_rule("Slow jobs", "processing_time", 1500)
        short = self.monitor.add_alert_rule("Workers missing", "worker_down", 2)
        self.run_job(succeed=True, seconds=2)
        with self.assertLogs("digestq.monitor", level="WARNING"):
            alerts = {alert.rule_id: alert for alert in self.monitor.check_alerts()}
        self.assertEqual(set(alerts), {slow.id, short.id})
        self.assertEqual(alerts[slow.id].value, 2000.0)
        self.assertEqual(alerts[slow.id].severity, "warning")
        self.assertEqual(alerts[short.id].value, 1.0)
        self.assertEqual(alerts[short.id].severity, "critical")

    def test_removed_rule_stops_alerting(self) -> None:
        rule = self.monitor.add_alert_rule("Deep queue", "queue_length", 0, cooldown_minutes=0)
        self.enqueue()
        self.assertTrue(self.monitor.remove_alert_rule(rule.id))
        self.assertFalse(self.monitor.remove_alert_rule(rule.id))
        self.assertEqual(self.monitor.alert_rules(), [])
        self.assertEqual(self.monitor.check_alerts(), [])

    def test_alert_list_is_bounded(self) -> None:
        self.monitor.add_alert_rule("Deep queue", "queue_length", 0, cooldown_minutes=0)
        self.enqueue()
        with self.assertLogs("digestq.monitor", level="WARNING"):
            first = self.monitor.check_alerts()[0]
        self.monitor.acknowledge_alert(first.id, "oncall")
        with self.assertLogs("digestq.monitor", level="WARNING"):
            for _ in range(MAX_ALERTS):
                self.clock.advance(seconds=1)
                self.monitor.check_alerts()
        active = self.monitor.get_active_alerts()
        self.assertEqual(len(active), MAX_ALERTS)
        # the acknowledged alert goes before any unacknowledged one
        self.assertNotIn(first.id, [alert.id for alert in active])

        self.monitor.acknowledge_alert(active[-1].id, "oncall")
        self.clock.advance(hours=25)
        with self.assertLogs("digestq.monitor", level="WARNING"):
            self.monitor.check_alerts()
        ids = [alert.id for alert in self.monitor.get_active_alerts()]
        self.assertNotIn(active[-1].id, ids)
        self.assertEqual(len(ids), MAX_ALERTS)

    def test_default_rules(self) -> None:
        monitor = Monitor(self.store, clock=self.clock)
        conditions = sorted(rule.condition for rule in monitor.alert_rules())
        self.assertEqual(conditions, ["failed_rate", "queue_length", "stuck_jobs"])

    def test_performance_stats(self) -> None:
        self.run_job(succeed=True, seconds=1)
        self.run_job(succeed=True, seconds=4)
        self.run_job(succeed=False, seconds=2, error="github down")
        self.run_job(succeed=False, seconds=2, error="github down")
        stats = self.monitor.get_job_performance_stats()
        self.assertEqual(stats["total_jobs"], 4)
        self.assertEqual(stats["average_processing_ms"], 2500.0)
        self.assertEqual(stats["success_rate"], 50.0)
        self.assertEqual(stats["slowest_jobs"][0]["processing_ms"], 4000.0)
        self.assertEqual(stats["failure_reasons"], [{"reason": "github down", "count": 2}])
        self.assertEqual(self.monitor.get_job_performance_stats("other")["total_jobs"], 0)

    def test_broken_store_is_reported_not_raised(self) -> None:
        self.store.close()
        report = self.monitor.get_health_check()
        self.assertEqual(report.status, HealthStatus.UNHEALTHY)
        self.assertIsNone(self.monitor.collect())


if __name__ == "__main__":
    unittest.main()
