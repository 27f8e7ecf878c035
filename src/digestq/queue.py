from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

from .app_logging import get_logger, log_exception, log_with_fields
from .errors import LeaseExpiredError, NotFoundError
from .models import ErrorKind, Job, JobEvent, JobFilter, JobStatus
from .retry import RetryPolicy
from .store import Store
from .utils import utc_now

EVENT_CREATED = "job.created"
EVENT_STARTED = "job.started"
EVENT_PROGRESS = "job.progress"
EVENT_COMPLETED = "job.completed"
EVENT_FAILED = "job.failed"
EVENT_RETRYING = "job.retrying"
EVENT_CANCELLED = "job.cancelled"
EVENT_REQUEUED = "job.requeued"
EVENT_TIMEOUT = "job.timeout"

_STATUS_EVENTS = {
    JobStatus.COMPLETED: EVENT_COMPLETED,
    JobStatus.FAILED: EVENT_FAILED,
    JobStatus.RETRYING: EVENT_RETRYING,
    JobStatus.CANCELLED: EVENT_CANCELLED,
}

JobListener = Callable[[JobEvent], None]


class JobQueue:
    """Claim protocol and job state transitions on top of the store.

    The store stays the source of truth; the queue adds leases, retry
    decisions and transition events for subscribers such as the monitor.
    """

    def __init__(
        self,
        store: Store,
        *,
        retry_policy: RetryPolicy | None = None,
        lease_ttl: float = 300.0,
        aging_seconds: float = 0.0,
        clock: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self.lease_ttl = lease_ttl
        self.aging_seconds = aging_seconds
        self.clock = clock
        self.logger = logger or get_logger("queue")
        self._listeners: list[JobListener] = []
        self._listeners_lock = threading.Lock()

    def subscribe(self, listener: JobListener) -> None:
        with self._listeners_lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: JobListener) -> None:
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _emit(self, name: str, job: Job, previous_status: JobStatus | None = None) -> None:
        event = JobEvent(name=name, job=job, previous_status=previous_status, timestamp=self.clock())
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                log_exception(self.logger, "job_listener_failed", event=name, job_id=job.id)

    def _emit_status(self, job: Job, previous_status: JobStatus | None) -> None:
        name = _STATUS_EVENTS.get(job.status)
        if name is not None:
            self._emit(name, job, previous_status)

    def enqueue(self, job: Job) -> Job:
        self.store.insert(job)
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_queued",
            job_id=job.id,
            job_type=job.type,
            priority=job.priority.name,
            scheduled_for=job.scheduled_for.isoformat(),
            depends_on=job.dependencies,
        )
        self._emit(EVENT_CREATED, job)
        return job

    def get(self, job_id: str) -> Job | None:
        return self.store.find(job_id)

    def query(self, job_filter: JobFilter | None = None) -> list[Job]:
        return self.store.query(job_filter)

    def depth(self) -> int:
        return self.store.count_eligible(self.clock())

    def claim(self, worker_id: str, supported_types: Iterable[str], capacity: int | None = None) -> Job | None:
        job = self.store.claim_next(
            worker_id,
            supported_types,
            self.clock(),
            self.lease_ttl,
            capacity=capacity,
            aging_seconds=self.aging_seconds,
        )
        if job is None:
            return None
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_claimed",
            job_id=job.id,
            job_type=job.type,
            worker=worker_id,
            attempt=job.attempts,
        )
        self._emit(EVENT_STARTED, job)
        return job

    def renew(self, job_id: str, worker_id: str, *, attempt: int | None = None) -> bool:
        expiry = self.clock() + timedelta(seconds=self.lease_ttl)
        return self.store.renew_lease(job_id, worker_id, expiry, attempt=attempt)

    def is_cancel_requested(self, job_id: str) -> bool:
        return self.store.is_cancel_requested(job_id)

    def report_progress(self, job_id: str, worker_id: str, percent: int, *, attempt: int | None = None) -> Job:
        job = self.store.set_progress(
            job_id, worker_id, max(0, min(100, int(percent))), self.clock(), attempt=attempt
        )
        if job is None:
            raise LeaseExpiredError(f"lease on {job_id} no longer held by {worker_id}")
        self._emit(EVENT_PROGRESS, job, JobStatus.RUNNING)
        return job

    def _finish(self, job: Job, worker_id: str, status: JobStatus, **fields: Any) -> Job:
        # only the attempt that claimed the job may record its outcome
        updated = self.store.update_status(
            job.id,
            status,
            now=self.clock(),
            expected_owner=worker_id,
            expected_statuses=[JobStatus.RUNNING],
            expected_attempts=job.attempts,
            clear_lease=True,
            **fields,
        )
        if updated is None:
            raise LeaseExpiredError(f"lease on {job.id} no longer held by {worker_id}")
        self._emit_status(updated, JobStatus.RUNNING)
        return updated

    def complete(self, job: Job, worker_id: str, result: dict[str, Any]) -> Job:
        now = self.clock()
        if self.store.is_cancel_requested(job.id):
            # a cancel request that the handler ignored lands on this transition
            updated = self._finish(
                job,
                worker_id,
                JobStatus.CANCELLED,
                result=result,
                error="cancelled by request",
                error_kind=ErrorKind.CANCELLED,
                finished_at=now,
            )
        else:
            updated = self._finish(
                job,
                worker_id,
                JobStatus.COMPLETED,
                progress=100,
                result=result,
                clear_error=True,
                finished_at=now,
            )
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_completed" if updated.status is JobStatus.COMPLETED else "job_cancelled",
            job_id=job.id,
            worker=worker_id,
            attempt=updated.attempts,
            processing_ms=updated.processing_ms,
        )
        return updated

    def fail(self, job: Job, worker_id: str, message: str, error_kind: ErrorKind) -> Job:
        now = self.clock()
        if error_kind is ErrorKind.TIMEOUT:
            self._emit(EVENT_TIMEOUT, job, JobStatus.RUNNING)
        if self.store.is_cancel_requested(job.id):
            return self.cancel_running(job, worker_id, f"cancelled by request after error: {message}")

        if self.retry_policy.should_retry(job.attempts, job.max_retries, error_kind):
            delay = self.retry_policy.delay_for(job.attempts)
            updated = self._finish(
                job,
                worker_id,
                JobStatus.RETRYING,
                progress=0,
                error=message,
                error_kind=error_kind,
                scheduled_for=now + timedelta(seconds=delay),
            )
            log_with_fields(
                self.logger,
                logging.WARNING,
                "job_retry_scheduled",
                job_id=job.id,
                worker=worker_id,
                attempt=job.attempts,
                max_retries=job.max_retries,
                delay_seconds=round(delay, 3),
                error=message,
                error_kind=error_kind.value,
            )
            return updated

        updated = self._finish(
            job,
            worker_id,
            JobStatus.FAILED,
            error=message,
            error_kind=error_kind,
            finished_at=now,
        )
        log_with_fields(
            self.logger,
            logging.ERROR,
            "job_failed",
            job_id=job.id,
            worker=worker_id,
            attempt=job.attempts,
            max_retries=job.max_retries,
            dead_lettered=updated.dead_lettered,
            error=message,
            error_kind=error_kind.value,
        )
        return updated

    def cancel_running(self, job: Job, worker_id: str, reason: str = "cancelled by request") -> Job:
        updated = self._finish(
            job,
            worker_id,
            JobStatus.CANCELLED,
            error=reason,
            error_kind=ErrorKind.CANCELLED,
            finished_at=self.clock(),
        )
        log_with_fields(self.logger, logging.INFO, "job_cancelled", job_id=job.id, worker=worker_id, reason=reason)
        return updated

    def release(self, job: Job, worker_id: str, reason: str) -> Job | None:
        """Hand a held job back without counting it as a failure."""
        now = self.clock()
        if job.attempts > job.max_retries:
            fields: dict[str, Any] = {"finished_at": now}
            status = JobStatus.FAILED
        else:
            fields = {"scheduled_for": now, "progress": 0}
            status = JobStatus.RETRYING
        try:
            updated = self._finish(
                job,
                worker_id,
                status,
                error=reason,
                error_kind=ErrorKind.LEASE_EXPIRED,
                **fields,
            )
        except LeaseExpiredError:
            return None
        log_with_fields(
            self.logger,
            logging.WARNING,
            "job_released",
            job_id=job.id,
            worker=worker_id,
            status=updated.status.value,
            reason=reason,
        )
        return updated

    def reclaim_expired(self) -> list[Job]:
        released = self.store.release_expired(self.clock())
        output: list[Job] = []
        for before, after in released:
            log_with_fields(
                self.logger,
                logging.WARNING,
                "job_lease_expired",
                job_id=after.id,
                previous_owner=before.lease_owner,
                status=after.status.value,
                attempts=after.attempts,
            )
            if after.status is JobStatus.RETRYING:
                self._emit(EVENT_REQUEUED, after, JobStatus.RUNNING)
            else:
                self._emit_status(after, JobStatus.RUNNING)
            output.append(after)
        return output

    def cancel(self, job_id: str) -> bool:
        outcome = self.store.request_cancel(job_id, self.clock())
        if outcome is None:
            raise NotFoundError("job", job_id)
        before, after = outcome
        if before.status.is_terminal:
            return False
        if after.status is JobStatus.CANCELLED:
            log_with_fields(self.logger, logging.INFO, "job_cancelled", job_id=job_id, previous=before.status.value)
            self._emit(EVENT_CANCELLED, after, before.status)
        else:
            log_with_fields(self.logger, logging.INFO, "job_cancel_requested", job_id=job_id, worker=after.lease_owner)
        return True

    def rearm(self, job_id: str, *, reset_attempts: bool = False) -> Job | None:
        job = self.store.rearm(job_id, self.clock(), reset_attempts=reset_attempts)
        if job is None:
            return None
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_rearmed",
            job_id=job_id,
            attempts=job.attempts,
            max_retries=job.max_retries,
        )
        self._emit(EVENT_REQUEUED, job, JobStatus.FAILED)
        return job

    def purge_finished(self, older_than: timedelta, *, limit: int | None = None, dry_run: bool = False) -> int:
        cutoff = self.clock() - older_than
        count = self.store.delete_finished_before(cutoff, limit=limit, dry_run=dry_run)
        log_with_fields(
            self.logger,
            logging.INFO,
            "jobs_purged",
            count=count,
            cutoff=cutoff.isoformat(),
            dry_run=dry_run,
        )
        return count
