from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from tempfile import TemporaryDirectory
import time
import unittest

from digestq.config import AppConfig, PathsConfig, QueueConfig, ScheduleConfig, WorkerConfig
from digestq.errors import NotFoundError, ValidationError
from digestq.models import ErrorKind, HealthStatus, JobFilter, JobPriority, JobStatus
from digestq.service import JobService


def make_config(root: Path, **kwargs: object) -> AppConfig:
    return AppConfig(
        paths=PathsConfig(db=root / "digestq.db", log=root / "digestq.log"),
        queue=QueueConfig(poll_interval_seconds=0.02),
        **kwargs,  # type: ignore[arg-type]
    )


class JobServiceTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp = TemporaryDirectory()
        self.root = Path(self._temp.name)
        self.service = JobService(make_config(self.root))
        self.service.register_handler("echo", lambda payload, progress, token: payload)

    def tearDown(self) -> None:
        self.service.close()
        self._temp.cleanup()

    def fail_job(self, job_id: str) -> None:
        job = self.service.queue.claim("w1", ["echo"])
        assert job is not None and job.id == job_id
        self.service.queue.fail(job, "w1", "boom", ErrorKind.NON_RETRYABLE)

    def test_create_job_defaults(self) -> None:
        job = self.service.create_job("echo", {"a": 1}, tags=["manual"])
        self.assertEqual(job.status, JobStatus.PENDING)
        self.assertEqual(job.priority, JobPriority.NORMAL)
        self.assertEqual(job.max_retries, 3)
        self.assertEqual(job.attempts, 0)
        self.assertEqual(job.scheduled_for, job.created_at)
        stored = self.service.get_job(job.id)
        assert stored is not None
        self.assertEqual(stored.payload, {"a": 1})
        self.assertEqual(stored.tags, ["manual"])

    def test_create_job_rejects_bad_input_before_persisting(self) -> None:
        with self.assertRaises(ValidationError):
            self.service.create_job("no_such_type", {})
        with self.assertRaises(ValidationError):
            self.service.create_job("cleanup", {"target_table": "jobs", "older_than_days": -1})
        with self.assertRaises(ValidationError):
            self.service.create_job("echo", {}, priority="extreme")
        with self.assertRaises(ValidationError):
            self.service.create_job("echo", {}, max_retries=-1)
        with self.assertRaises(ValidationError):
            self.service.create_job("echo", {}, scheduled_for=datetime(2026, 1, 1))
        with self.assertRaises(ValidationError):
            self.service.create_job("", {})
        self.assertEqual(self.service.query_jobs(), [])

    def test_dependencies_must_exist_and_gate_claims(self) -> None:
        with self.assertRaises(ValidationError):
            self.service.create_job("echo", {}, dependencies=["missing"])
        self.assertEqual(self.service.query_jobs(), [])

        sync = self.service.create_job("echo", {"step": "sync"})
        digest = self.service.create_job(
            "echo", {"step": "digest"}, priority=JobPriority.HIGH, dependencies=[sync.id, sync.id]
        )
        self.assertEqual(digest.dependencies, [sync.id])
        first = self.service.queue.claim("w1", ["echo"])
        assert first is not None
        self.assertEqual(first.id, sync.id)
        self.assertIsNone(self.service.queue.claim("w2", ["echo"]))
        self.service.queue.complete(first, "w1", {})
        second = self.service.queue.claim("w2", ["echo"])
        assert second is not None
        self.assertEqual(second.id, digest.id)

    def test_builtin_types_are_accepted_without_handlers(self) -> None:
        job = self.service.create_job(
            "notification",
            {"channel": "email", "recipients": ["dev@example.com"], "message": "Digest ready"},
            priority=JobPriority.HIGH,
        )
        self.assertEqual(job.payload["channel"], "email")
        self.assertEqual(job.payload["data"], {})

    def test_query_jobs(self) -> None:
        low = self.service.create_job("echo", {}, priority="low", correlation_id="batch-1")
        time.sleep(0.002)
        high = self.service.create_job("echo", {}, priority="high", correlation_id="batch-1")
        time.sleep(0.002)
        other = self.service.create_job("cleanup", {"target_table": "jobs", "older_than_days": 1})

        self.assertEqual([job.id for job in self.service.query_jobs()], [other.id, high.id, low.id])
        self.assertEqual([job.id for job in self.service.query_jobs(type="echo", limit=1)], [high.id])
        self.assertEqual([job.id for job in self.service.query_jobs(type="echo", limit=1, offset=1)], [low.id])
        self.assertEqual(
            [job.id for job in self.service.query_jobs(priority=[JobPriority.LOW, JobPriority.HIGH])],
            [high.id, low.id],
        )
        self.assertEqual(len(self.service.query_jobs(JobFilter(correlation_id="batch-1"))), 2)
        self.assertEqual(
            [job.id for job in self.service.query_jobs(created_after=high.created_at)], [other.id, high.id]
        )
        with self.assertRaises(ValidationError):
            self.service.query_jobs(colour="red")
        with self.assertRaises(ValidationError):
            self.service.query_jobs(limit=-1)

    def test_cancel_job(self) -> None:
        job = self.service.create_job("echo", {})
        self.assertTrue(self.service.cancel_job(job.id))
        self.assertEqual(self.service.get_job(job.id).status, JobStatus.CANCELLED)  # type: ignore[union-attr]
        self.assertFalse(self.service.cancel_job(job.id))
        with self.assertRaises(NotFoundError):
            self.service.cancel_job("job_missing")

    def test_retry_job(self) -> None:
        job = self.service.create_job("echo", {}, max_retries=0)
        self.assertFalse(self.service.retry_job(job.id))
        self.fail_job(job.id)
        self.assertTrue(self.service.retry_job(job.id))
        rearmed = self.service.get_job(job.id)
        assert rearmed is not None
        self.assertEqual(rearmed.status, JobStatus.PENDING)
        self.assertEqual(rearmed.attempts, 1)
        self.assertLessEqual(rearmed.attempts, rearmed.max_retries)

        self.fail_job(job.id)
        self.assertTrue(self.service.retry_job(job.id, force=True))
        forced = self.service.get_job(job.id)
        assert forced is not None
        self.assertEqual(forced.attempts, 0)
        with self.assertRaises(NotFoundError):
            self.service.retry_job("job_missing")

    def test_purge_finished_jobs(self) -> None:
        job = self.service.create_job("echo", {}, max_retries=0)
        self.fail_job(job.id)
        time.sleep(0.002)
        self.assertEqual(self.service.purge_finished_jobs(timedelta(days=1)), 0)
        self.assertEqual(self.service.purge_finished_jobs(timedelta(0), dry_run=True), 1)
        self.assertEqual(self.service.purge_finished_jobs(timedelta(0)), 1)
        self.assertIsNone(self.service.get_job(job.id))
        with self.assertRaises(ValidationError):
            self.service.purge_finished_jobs(timedelta(days=-1))


class JobServiceLifecycleTest(unittest.TestCase):
    def test_initialize_and_shutdown_are_idempotent(self) -> None:
        with TemporaryDirectory() as temp_dir:
            config = make_config(
                Path(temp_dir),
                workers=[WorkerConfig(id="w1", capacity=2, supported_types=["echo"])],
                schedules=[ScheduleConfig(name="tick", cron="* * * * *", job_type="echo", payload={"n": 1})],
            )
            service = JobService(config)
            service.register_handler("echo", lambda payload, progress, token: {"seen": payload})
            service.initialize()
            service.initialize()
            self.assertEqual([info.id for info in service.get_worker_statuses()], ["w1"])
            self.assertEqual([item.name for item in service.list_schedules()], ["tick"])
            self.assertTrue(service.scheduler.running)
            self.assertTrue(service.monitor.running)

            job = service.create_job("echo", {"hello": "world"})
            deadline = time.monotonic() + 5
            while service.get_job(job.id).status is not JobStatus.COMPLETED and time.monotonic() < deadline:  # type: ignore[union-attr]
                time.sleep(0.01)
            self.assertEqual(service.get_job(job.id).result, {"seen": {"hello": "world"}})  # type: ignore[union-attr]

            report = service.get_health_check()
            self.assertIn("scheduler", report.components)
            self.assertEqual(report.components["store"].status, HealthStatus.HEALTHY)
            self.assertGreaterEqual(service.get_metrics().counts["completed"], 1)

            self.assertTrue(service.shutdown())
            self.assertTrue(service.shutdown())
            self.assertFalse(service.scheduler.running)
            self.assertEqual(service.get_worker_statuses(), [])
            service.close()

    def test_initialize_reclaims_expired_leases(self) -> None:
        with TemporaryDirectory() as temp_dir:
            service = JobService(make_config(Path(temp_dir)))
            service.register_handler("echo", lambda payload, progress, token: {})
            job = service.create_job("echo", {})
            claimed = service.queue.claim("crashed-worker", ["echo"])
            assert claimed is not None
            service.store.renew_lease(job.id, "crashed-worker", datetime.now(UTC) - timedelta(seconds=1))
            service.initialize()
            reclaimed = service.get_job(job.id)
            assert reclaimed is not None
            self.assertEqual(reclaimed.status, JobStatus.RETRYING)
            self.assertEqual(reclaimed.attempts, 1)
            service.close()


if __name__ == "__main__":
    unittest.main()
