from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from .app_logging import get_logger, log_exception, log_with_fields
from .config import WorkerConfig
from .errors import (
    CancelledJobError,
    ConflictError,
    HandlerError,
    JobTimeoutError,
    LeaseExpiredError,
    NotFoundError,
    ValidationError,
)
from .models import ErrorKind, Job, JobStatus, WorkerInfo, WorkerState, job_type_value
from .payloads import parse_payload
from .queue import JobQueue
from .utils import utc_now

CANCEL_REQUESTED = "cancel requested"
RECENT_ERROR_WINDOW = timedelta(minutes=5)
RECENT_ERROR_LIMIT = 5


class CancellationToken:
    """Cooperative cancellation flag handed to every handler call."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = CANCEL_REQUESTED) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledJobError(self.reason or CANCEL_REQUESTED)


class ProgressReporter:
    def __init__(self, queue: JobQueue, job: Job, worker_id: str, token: CancellationToken, logger: logging.Logger):
        self.queue = queue
        self.job = job
        self.worker_id = worker_id
        self.token = token
        self.logger = logger
        self.last = 0

    def __call__(self, percent: int) -> None:
        value = max(0, min(100, int(percent)))
        if value <= self.last or self.token.cancelled:
            return
        try:
            self.queue.report_progress(self.job.id, self.worker_id, value, attempt=self.job.attempts)
        except LeaseExpiredError:
            log_with_fields(self.logger, logging.WARNING, "progress_lease_lost", job_id=self.job.id, worker=self.worker_id)
            self.token.cancel("lease lost")
            return
        self.last = value


Handler = Callable[[Any, ProgressReporter, CancellationToken], Any]


class HandlerRegistry:
    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}
        self._lock = threading.Lock()

    def register(self, job_type: str, handler: Handler) -> None:
        key = job_type_value(job_type)
        with self._lock:
            replaced = key in self._handlers
            self._handlers[key] = handler
        log_with_fields(get_logger("worker"), logging.INFO, "handler_registered", job_type=key, replaced=replaced)

    def unregister(self, job_type: str) -> None:
        with self._lock:
            self._handlers.pop(job_type_value(job_type), None)

    def get(self, job_type: str) -> Handler | None:
        with self._lock:
            return self._handlers.get(job_type)

    def types(self) -> list[str]:
        with self._lock:
            return sorted(self._handlers)


def _normalize_result(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    return {"value": value}


@dataclass(slots=True)
class _InFlight:
    job: Job
    token: CancellationToken
    thread: threading.Thread


class Worker:
    def __init__(
        self,
        config: WorkerConfig,
        queue: JobQueue,
        registry: HandlerRegistry,
        *,
        timeout_for: Callable[[str], float],
        poll_interval: float,
        heartbeat_interval: float,
        clock: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.id = config.id
        self.capacity = config.capacity
        self.supported_types = [job_type_value(item) for item in config.supported_types]
        self.queue = queue
        self.registry = registry
        self.timeout_for = timeout_for
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval
        self.clock = clock
        self.logger = logger or get_logger("worker")

        self.state = WorkerState.ACTIVE
        self.started_at = clock()
        self.last_heartbeat = self.started_at
        self.processed_count = 0
        self.failed_count = 0
        self.recent_errors: deque[dict[str, str]] = deque(maxlen=10)

        self._in_flight: dict[str, _InFlight] = {}
        self._cond = threading.Condition()
        # held across the state check, the claim and the in-flight registration
        self._claim_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_renewal = 0.0

    @property
    def current_load(self) -> int:
        with self._cond:
            return len(self._in_flight)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name=f"worker-{self.id}", daemon=True)
        self._thread.start()
        log_with_fields(
            self.logger,
            logging.INFO,
            "worker_started",
            worker=self.id,
            capacity=self.capacity,
            supported_types=self.supported_types,
        )

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                claimed = self.poll_once()
            except Exception:
                log_exception(self.logger, "worker_poll_failed", worker=self.id)
                claimed = False
            if self.state is WorkerState.DRAINING and self.current_load == 0:
                break
            if not claimed:
                self._stop.wait(self.poll_interval)
        log_with_fields(self.logger, logging.INFO, "worker_loop_exited", worker=self.id)

    def poll_once(self) -> bool:
        """One iteration of the poll loop. Returns True when a job was claimed."""
        self.heartbeat()
        with self._claim_lock:
            if self.state is not WorkerState.ACTIVE or self.current_load >= self.capacity:
                return False
            job = self.queue.claim(self.id, self.supported_types, self.capacity)
            if job is None:
                return False
            self._dispatch(job)
        return True

    def heartbeat(self) -> None:
        self.last_heartbeat = self.clock()
        now = time.monotonic()
        if now - self._last_renewal < self.heartbeat_interval:
            return
        self._last_renewal = now
        self.queue.reclaim_expired()
        with self._cond:
            in_flight = list(self._in_flight.values())
        for entry in in_flight:
            if not self.queue.renew(entry.job.id, self.id, attempt=entry.job.attempts):
                log_with_fields(self.logger, logging.WARNING, "lease_renewal_lost", worker=self.id, job_id=entry.job.id)
                entry.token.cancel("lease lost")
            elif self.queue.is_cancel_requested(entry.job.id):
                entry.token.cancel(CANCEL_REQUESTED)

    def signal_cancel(self, job_id: str) -> bool:
        with self._cond:
            entry = self._in_flight.get(job_id)
        if entry is None:
            return False
        entry.token.cancel(CANCEL_REQUESTED)
        return True

    def _dispatch(self, job: Job) -> None:
        token = CancellationToken()
        thread = threading.Thread(
            target=self._execute,
            args=(job, token),
            name=f"worker-{self.id}-{job.id}",
            daemon=True,
        )
        with self._cond:
            self._in_flight[job.id] = _InFlight(job=job, token=token, thread=thread)
        thread.start()

    def _execute(self, job: Job, token: CancellationToken) -> None:
        try:
            self._run_job(job, token)
        except LeaseExpiredError:
            log_with_fields(self.logger, logging.WARNING, "job_outcome_dropped", worker=self.id, job_id=job.id)
        except Exception:
            # the job stays RUNNING and comes back through lease expiry
            log_exception(self.logger, "job_outcome_not_recorded", worker=self.id, job_id=job.id)
        finally:
            with self._cond:
                self._in_flight.pop(job.id, None)
                self._cond.notify_all()

    def _run_job(self, job: Job, token: CancellationToken) -> None:
        handler = self.registry.get(job.type)
        if handler is None:
            self._record_failure(job, f"No handler registered for job type: {job.type}", ErrorKind.NO_HANDLER)
            return
        try:
            payload = parse_payload(job.type, job.payload)
        except ValidationError as exc:
            self._record_failure(job, f"invalid payload: {exc}", ErrorKind.VALIDATION)
            return

        reporter = ProgressReporter(self.queue, job, self.id, token, self.logger)
        outcome: dict[str, Any] = {}

        def invoke() -> None:
            try:
                outcome["result"] = handler(payload, reporter, token)
            except Exception as exc:
                outcome["error"] = exc

        timeout = self.timeout_for(job.type)
        runner = threading.Thread(target=invoke, name=f"handler-{job.id}", daemon=True)
        runner.start()
        runner.join(timeout)

        if runner.is_alive():
            token.cancel("timeout")
            self._handle_error(job, token, JobTimeoutError(f"handler exceeded {timeout:g}s timeout"))
            return

        if "error" in outcome:
            self._handle_error(job, token, outcome["error"])
            return
        if "result" not in outcome:
            self._record_failure(job, "handler exited without a result", ErrorKind.RETRYABLE)
            return
        if token.cancelled and token.reason == CANCEL_REQUESTED:
            self.queue.cancel_running(job, self.id)
            return
        self.queue.complete(job, self.id, _normalize_result(outcome["result"]))
        with self._cond:
            self.processed_count += 1

    def _handle_error(self, job: Job, token: CancellationToken, exc: Exception) -> None:
        if isinstance(exc, CancelledJobError) or (token.cancelled and token.reason == CANCEL_REQUESTED):
            self.queue.cancel_running(job, self.id, str(exc) or CANCEL_REQUESTED)
            return
        if isinstance(exc, JobTimeoutError):
            kind = ErrorKind.TIMEOUT
        elif isinstance(exc, HandlerError):
            kind = ErrorKind.RETRYABLE if exc.retryable else ErrorKind.NON_RETRYABLE
        elif isinstance(exc, ValidationError):
            kind = ErrorKind.VALIDATION
        else:
            kind = ErrorKind.RETRYABLE
        message = str(exc) or type(exc).__name__
        self._record_failure(job, message, kind)

    def _record_failure(self, job: Job, message: str, kind: ErrorKind) -> None:
        updated = self.queue.fail(job, self.id, message, kind)
        with self._cond:
            if updated.status is not JobStatus.CANCELLED:
                self.failed_count += 1
            self.recent_errors.append(
                {"timestamp": self.clock().isoformat(), "job_id": job.id, "message": message, "kind": kind.value}
            )

    def drain(self, timeout: float | None = None) -> bool:
        """Stop claiming and wait for in-flight jobs. False if the deadline hit first."""
        with self._claim_lock:
            self.state = WorkerState.DRAINING
        log_with_fields(self.logger, logging.INFO, "worker_draining", worker=self.id, in_flight=self.current_load)
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._in_flight:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    break
                self._cond.wait(remaining)
            drained = not self._in_flight
        if not drained:
            self._abandon_in_flight("drain deadline exceeded")
        self._halt()
        return drained

    def stop(self) -> None:
        with self._claim_lock:
            self.state = WorkerState.DRAINING
        self._abandon_in_flight("worker stopped")
        self._halt()

    def _abandon_in_flight(self, reason: str) -> None:
        with self._cond:
            in_flight = list(self._in_flight.values())
        for entry in in_flight:
            entry.token.cancel(reason)
            self.queue.release(entry.job, self.id, reason)

    def _halt(self) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=max(self.poll_interval * 5, 1.0))
        self.state = WorkerState.STOPPED
        log_with_fields(
            self.logger,
            logging.INFO,
            "worker_stopped",
            worker=self.id,
            processed=self.processed_count,
            failed=self.failed_count,
        )

    def is_healthy(self, now: datetime, heartbeat_timeout: float) -> bool:
        if self.state is WorkerState.STOPPED:
            return False
        if (now - self.last_heartbeat).total_seconds() > heartbeat_timeout:
            return False
        with self._cond:
            errors = list(self.recent_errors)
        recent = [
            item for item in errors if now - datetime.fromisoformat(item["timestamp"]) < RECENT_ERROR_WINDOW
        ]
        return len(recent) <= RECENT_ERROR_LIMIT

    def info(self, heartbeat_timeout: float = 90.0) -> WorkerInfo:
        with self._cond:
            load = len(self._in_flight)
            processed, failed = self.processed_count, self.failed_count
            errors = list(self.recent_errors)
        return WorkerInfo(
            id=self.id,
            capacity=self.capacity,
            supported_types=list(self.supported_types),
            status=self.state,
            current_load=load,
            last_heartbeat=self.last_heartbeat,
            processed_count=processed,
            failed_count=failed,
            started_at=self.started_at,
            healthy=self.is_healthy(self.clock(), heartbeat_timeout),
            recent_errors=errors,
        )


class WorkerPool:
    def __init__(
        self,
        queue: JobQueue,
        registry: HandlerRegistry,
        *,
        timeout_for: Callable[[str], float],
        poll_interval: float = 1.0,
        heartbeat_interval: float = 100.0,
        heartbeat_timeout: float = 90.0,
        clock: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.queue = queue
        self.registry = registry
        self.timeout_for = timeout_for
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout
        self.clock = clock
        self.logger = logger or get_logger("worker")
        self._workers: dict[str, Worker] = {}
        self._lock = threading.Lock()

    def add_worker(self, config: WorkerConfig, *, start: bool = True) -> str:
        if config.capacity < 1:
            raise ValidationError("worker capacity must be >= 1")
        if not config.supported_types:
            raise ValidationError("worker must support at least one job type")
        worker = Worker(
            config,
            self.queue,
            self.registry,
            timeout_for=self.timeout_for,
            poll_interval=self.poll_interval,
            heartbeat_interval=self.heartbeat_interval,
            clock=self.clock,
            logger=self.logger,
        )
        with self._lock:
            if config.id in self._workers:
                raise ConflictError(f"Worker with id {config.id} already exists")
            self._workers[config.id] = worker
        missing = [item for item in worker.supported_types if self.registry.get(item) is None]
        if missing:
            log_with_fields(self.logger, logging.WARNING, "worker_types_without_handler", worker=config.id, types=missing)
        if start:
            worker.start()
        return config.id

    def remove_worker(self, worker_id: str, *, graceful: bool = True, timeout: float | None = None) -> bool:
        with self._lock:
            worker = self._workers.get(worker_id)
        if worker is None:
            raise NotFoundError("worker", worker_id)
        log_with_fields(
            self.logger,
            logging.INFO,
            "worker_removing",
            worker=worker_id,
            graceful=graceful,
            in_flight=worker.current_load,
        )
        if graceful:
            drained = worker.drain(timeout)
        else:
            worker.stop()
            drained = False
        with self._lock:
            self._workers.pop(worker_id, None)
        return drained

    def get(self, worker_id: str) -> Worker | None:
        with self._lock:
            return self._workers.get(worker_id)

    def workers(self) -> list[Worker]:
        with self._lock:
            return list(self._workers.values())

    def start_all(self) -> None:
        for worker in self.workers():
            worker.start()

    def statuses(self) -> list[WorkerInfo]:
        return [worker.info(self.heartbeat_timeout) for worker in self.workers()]

    def signal_cancel(self, job_id: str) -> bool:
        return any(worker.signal_cancel(job_id) for worker in self.workers())

    def pool_stats(self) -> dict[str, Any]:
        infos = self.statuses()
        healthy = [info for info in infos if info.healthy]
        capacity = sum(info.capacity for info in infos)
        load = sum(info.current_load for info in infos)
        by_type: dict[str, int] = {}
        for info in healthy:
            for job_type in info.supported_types:
                by_type[job_type] = by_type.get(job_type, 0) + 1
        return {
            "total_workers": len(infos),
            "healthy_workers": len(healthy),
            "total_capacity": capacity,
            "current_load": load,
            "load_percentage": round(load / capacity * 100, 2) if capacity else 0.0,
            "workers_by_type": by_type,
        }

    def shutdown(self, timeout: float | None = None) -> bool:
        workers = self.workers()
        results: dict[str, bool] = {}

        def drain(worker: Worker) -> None:
            results[worker.id] = worker.drain(timeout)

        threads = [threading.Thread(target=drain, args=(worker,), daemon=True) for worker in workers]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        with self._lock:
            self._workers.clear()
        log_with_fields(
            self.logger,
            logging.INFO,
            "worker_pool_stopped",
            workers=len(workers),
            undrained=[worker_id for worker_id, ok in results.items() if not ok],
        )
        return all(results.values())
