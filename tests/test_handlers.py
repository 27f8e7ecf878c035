from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from digestq.config import AppConfig, PathsConfig
from digestq.errors import CancelledJobError, HandlerError
from digestq.handlers import make_cleanup_handler, make_health_check_handler, register_builtin_handlers
from digestq.payloads import CleanupPayload, HealthCheckPayload
from digestq.service import JobService
from digestq.worker import CancellationToken

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class BuiltinHandlersTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp = TemporaryDirectory()
        root = Path(self._temp.name)
        self.clock = FakeClock()
        self.service = JobService(
            AppConfig(paths=PathsConfig(db=root / "digestq.db", log=root / "digestq.log")),
            clock=self.clock,
        )
        self.service.register_handler("echo", lambda payload, progress, token: {})
        self.progress: list[int] = []

    def tearDown(self) -> None:
        self.service.close()
        self._temp.cleanup()

    def finish_jobs(self, count: int) -> None:
        for _ in range(count):
            self.service.create_job("echo", {})
            job = self.service.queue.claim("w1", ["echo"])
            assert job is not None
            self.service.queue.complete(job, "w1", {})

    def test_register_builtin_handlers(self) -> None:
        register_builtin_handlers(self.service)
        self.assertIn("cleanup", self.service.registry.types())
        self.assertIn("health_check", self.service.registry.types())

    def test_cleanup_purges_old_jobs_in_batches(self) -> None:
        self.finish_jobs(3)
        self.clock.advance(days=8)
        self.finish_jobs(1)
        cleanup = make_cleanup_handler(self.service)

        preview = cleanup(
            CleanupPayload(target_table="jobs", older_than_days=7, dry_run=True),
            self.progress.append,
            CancellationToken(),
        )
        self.assertEqual(preview["would_delete"], 3)

        result = cleanup(
            CleanupPayload(target_table="jobs", older_than_days=7, batch_size=2),
            self.progress.append,
            CancellationToken(),
        )
        self.assertEqual(result["deleted"], 3)
        self.assertEqual(result["batches"], 2)
        self.assertEqual(len(self.service.query_jobs()), 1)
        self.assertEqual(self.progress, [100, 10, 20])

    def test_cleanup_rejects_external_tables(self) -> None:
        cleanup = make_cleanup_handler(self.service)
        with self.assertRaises(HandlerError) as ctx:
            cleanup(CleanupPayload(target_table="sessions", older_than_days=1), self.progress.append, CancellationToken())
        self.assertFalse(ctx.exception.retryable)

    def test_cleanup_observes_cancellation(self) -> None:
        token = CancellationToken()
        token.cancel()
        with self.assertRaises(CancelledJobError):
            make_cleanup_handler(self.service)(
                CleanupPayload(target_table="jobs", older_than_days=1), self.progress.append, token
            )

    def test_health_check(self) -> None:
        health_check = make_health_check_handler(self.service)
        result = health_check(
            HealthCheckPayload(checks=["database", "disk", "jobs", "github_api"]),
            self.progress.append,
            CancellationToken(),
        )
        self.assertEqual(result["checks"]["database"]["status"], "healthy")
        self.assertIn(result["checks"]["disk"]["status"], ("healthy", "degraded"))
        self.assertEqual(result["checks"]["github_api"]["status"], "skipped")
        # no workers are registered, so the jobs check reports degraded
        self.assertEqual(result["checks"]["jobs"]["status"], "degraded")
        self.assertIn("jobs", result["failing"])
        self.assertFalse(result["healthy"])
        self.assertEqual(self.progress[-1], 100)


if __name__ == "__main__":
    unittest.main()
