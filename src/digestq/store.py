from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from .models import (
    CLAIMABLE_STATUSES,
    TERMINAL_STATUSES,
    ErrorKind,
    Job,
    JobFilter,
    JobPriority,
    JobStatus,
    job_type_value,
)
from .utils import from_iso, to_iso

# one tier in JobPriority units
AGING_BONUS = 10

# a job waits until every job it depends on has completed
_DEPENDENCIES_MET = f"""
    NOT EXISTS (
        SELECT 1 FROM job_dependencies AS dep
        LEFT JOIN jobs AS parent ON parent.id = dep.depends_on
        WHERE dep.job_id = jobs.id
          AND (parent.status IS NULL OR parent.status != '{JobStatus.COMPLETED.value}')
    )
"""


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        type=row["type"],
        priority=JobPriority(int(row["priority"])),
        payload=json.loads(row["payload_json"]),
        status=JobStatus(row["status"]),
        created_at=from_iso(row["created_at"]),  # type: ignore[arg-type]
        updated_at=from_iso(row["updated_at"]),  # type: ignore[arg-type]
        scheduled_for=from_iso(row["scheduled_for"]),  # type: ignore[arg-type]
        progress=int(row["progress"]),
        attempts=int(row["attempts"]),
        max_retries=int(row["max_retries"]),
        started_at=from_iso(row["started_at"]),
        finished_at=from_iso(row["finished_at"]),
        result=json.loads(row["result_json"]) if row["result_json"] is not None else None,
        error=row["error"],
        error_kind=ErrorKind(row["error_kind"]) if row["error_kind"] else None,
        correlation_id=row["correlation_id"],
        tags=json.loads(row["tags_json"]),
        dependencies=json.loads(row["dependencies_json"]),
        lease_owner=row["lease_owner"],
        lease_expires_at=from_iso(row["lease_expires_at"]),
        cancel_requested=bool(row["cancel_requested"]),
    )


def _as_values(value: object, convert: Any) -> list[Any]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        return [convert(value)]
    return [convert(item) for item in value]


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


class Store:
    """SQLite-backed job store.

    Claims run inside ``BEGIN IMMEDIATE`` so that several processes sharing one
    database file never hand the same job to two workers. Within a process the
    single connection is guarded by a lock.
    """

    def __init__(self, db_path: Path | str, *, busy_timeout: float = 30.0) -> None:
        self.db_path = db_path
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(
            str(db_path),
            timeout=busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        if str(db_path) != ":memory:":
            self.conn.execute("PRAGMA journal_mode = WAL")

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.conn
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            self.conn.execute("COMMIT")

    def init_schema(self) -> None:
        with self._lock:
            self.conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    type TEXT NOT NULL,
                    priority INTEGER NOT NULL,
                    payload_json TEXT NOT NULL,
                    status TEXT NOT NULL,
                    progress INTEGER NOT NULL DEFAULT 0,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_retries INTEGER NOT NULL DEFAULT 3,
                    scheduled_for TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    started_at TEXT,
                    finished_at TEXT,
                    result_json TEXT,
                    error TEXT,
                    error_kind TEXT,
                    correlation_id TEXT,
                    tags_json TEXT NOT NULL DEFAULT '[]',
                    lease_owner TEXT,
                    lease_expires_at TEXT,
                    cancel_requested INTEGER NOT NULL DEFAULT 0,
                    dependencies_json TEXT NOT NULL DEFAULT '[]'
                );

                CREATE TABLE IF NOT EXISTS job_dependencies (
                    job_id TEXT NOT NULL,
                    depends_on TEXT NOT NULL,
                    PRIMARY KEY (job_id, depends_on)
                );

                CREATE INDEX IF NOT EXISTS idx_jobs_status_scheduled
                    ON jobs(status, scheduled_for);
                CREATE INDEX IF NOT EXISTS idx_jobs_lease_owner
                    ON jobs(lease_owner, status);
                CREATE INDEX IF NOT EXISTS idx_jobs_correlation
                    ON jobs(correlation_id);
                CREATE INDEX IF NOT EXISTS idx_jobs_created_at
                    ON jobs(created_at);
                CREATE INDEX IF NOT EXISTS idx_job_dependencies_depends_on
                    ON job_dependencies(depends_on);
                """
            )

    def insert(self, job: Job) -> Job:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO jobs(
                    id, type, priority, payload_json, status, progress, attempts, max_retries,
                    scheduled_for, created_at, updated_at, started_at, finished_at, result_json,
                    error, error_kind, correlation_id, tags_json, lease_owner, lease_expires_at,
                    cancel_requested, dependencies_json
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL, NULL, NULL, NULL, ?, ?, NULL, NULL, 0, ?)
                """,
                (
                    job.id,
                    job.type,
                    int(job.priority),
                    json.dumps(job.payload, sort_keys=True),
                    job.status.value,
                    job.progress,
                    job.attempts,
                    job.max_retries,
                    to_iso(job.scheduled_for),
                    to_iso(job.created_at),
                    to_iso(job.updated_at),
                    job.correlation_id,
                    json.dumps(job.tags),
                    json.dumps(job.dependencies),
                ),
            )
            conn.executemany(
                "INSERT OR IGNORE INTO job_dependencies(job_id, depends_on) VALUES (?, ?)",
                [(job.id, parent) for parent in job.dependencies],
            )
        return job

    def missing_ids(self, job_ids: Iterable[str]) -> list[str]:
        wanted = list(dict.fromkeys(job_ids))
        if not wanted:
            return []
        with self._lock:
            rows = self.conn.execute(
                f"SELECT id FROM jobs WHERE id IN ({_placeholders(len(wanted))})", wanted
            ).fetchall()
        found = {row["id"] for row in rows}
        return [job_id for job_id in wanted if job_id not in found]

    def find(self, job_id: str) -> Job | None:
        with self._lock:
            row = self.conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            return None
        return _row_to_job(row)

    def _find_locked(self, conn: sqlite3.Connection, job_id: str) -> Job | None:
        row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row is not None else None

    def claim_next(
        self,
        worker_id: str,
        types: Iterable[str],
        now: datetime,
        lease_ttl: float,
        *,
        capacity: int | None = None,
        aging_seconds: float = 0.0,
    ) -> Job | None:
        type_values = sorted({job_type_value(item) for item in types})
        if not type_values:
            return None
        now_iso = to_iso(now)
        aging_cutoff = to_iso(now - timedelta(seconds=aging_seconds)) if aging_seconds > 0 else ""
        claimable = [status.value for status in CLAIMABLE_STATUSES]
        with self._transaction() as conn:
            if capacity is not None:
                held = conn.execute(
                    "SELECT COUNT(*) FROM jobs WHERE status = ? AND lease_owner = ?",
                    (JobStatus.RUNNING.value, worker_id),
                ).fetchone()[0]
                if held >= capacity:
                    return None
            row = conn.execute(
                f"""
                SELECT id FROM jobs
                WHERE status IN ({_placeholders(len(claimable))})
                  AND scheduled_for <= ?
                  AND cancel_requested = 0
                  AND attempts <= max_retries
                  AND type IN ({_placeholders(len(type_values))})
                  AND {_DEPENDENCIES_MET}
                ORDER BY
                    priority + CASE WHEN ? != '' AND created_at <= ? THEN {AGING_BONUS} ELSE 0 END DESC,
                    created_at ASC,
                    id ASC
                LIMIT 1
                """,
                (*claimable, now_iso, *type_values, aging_cutoff, aging_cutoff),
            ).fetchone()
            if row is None:
                return None
            cursor = conn.execute(
                f"""
                UPDATE jobs
                SET status = ?,
                    started_at = ?,
                    updated_at = ?,
                    finished_at = NULL,
                    attempts = attempts + 1,
                    progress = 0,
                    lease_owner = ?,
                    lease_expires_at = ?
                WHERE id = ? AND status IN ({_placeholders(len(claimable))})
                """,
                (
                    JobStatus.RUNNING.value,
                    now_iso,
                    now_iso,
                    worker_id,
                    to_iso(now + timedelta(seconds=lease_ttl)),
                    row["id"],
                    *claimable,
                ),
            )
            if cursor.rowcount != 1:
                return None
            return self._find_locked(conn, row["id"])

    def renew_lease(self, job_id: str, owner: str, new_expiry: datetime, *, attempt: int | None = None) -> bool:
        query = "UPDATE jobs SET lease_expires_at = ? WHERE id = ? AND status = ? AND lease_owner = ?"
        values: list[object] = [to_iso(new_expiry), job_id, JobStatus.RUNNING.value, owner]
        if attempt is not None:
            query += " AND attempts = ?"
            values.append(attempt)
        with self._lock:
            cursor = self.conn.execute(query, values)
        return cursor.rowcount == 1

    def set_progress(
        self, job_id: str, owner: str, progress: int, now: datetime, *, attempt: int | None = None
    ) -> Job | None:
        """Raise progress on a held lease. ``attempt`` fences out writes from an earlier attempt."""
        query = """
            UPDATE jobs
            SET progress = MAX(progress, ?), updated_at = ?
            WHERE id = ? AND status = ? AND lease_owner = ?
        """
        values: list[object] = [progress, to_iso(now), job_id, JobStatus.RUNNING.value, owner]
        if attempt is not None:
            query += " AND attempts = ?"
            values.append(attempt)
        with self._transaction() as conn:
            cursor = conn.execute(query, values)
            if cursor.rowcount != 1:
                return None
            return self._find_locked(conn, job_id)

    def update_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        now: datetime,
        expected_owner: str | None = None,
        expected_statuses: Iterable[JobStatus] | None = None,
        expected_attempts: int | None = None,
        progress: int | None = None,
        result: dict[str, Any] | None = None,
        error: str | None = None,
        error_kind: ErrorKind | None = None,
        clear_error: bool = False,
        started_at: datetime | None = None,
        finished_at: datetime | None = None,
        scheduled_for: datetime | None = None,
        attempts: int | None = None,
        max_retries: int | None = None,
        clear_lease: bool = False,
        cancel_requested: bool | None = None,
    ) -> Job | None:
        """Conditionally move a job to ``status``.

        Returns the updated job, or None when the job does not exist or no
        longer matches ``expected_owner``, ``expected_statuses`` or
        ``expected_attempts``.
        """
        updates = ["status = ?", "updated_at = ?"]
        values: list[object] = [status.value, to_iso(now)]
        if progress is not None:
            updates.append("progress = ?")
            values.append(progress)
        if result is not None:
            updates.append("result_json = ?")
            values.append(json.dumps(result, sort_keys=True, default=str))
        if clear_error:
            updates.append("error = NULL")
            updates.append("error_kind = NULL")
        else:
            if error is not None:
                updates.append("error = ?")
                values.append(error)
            if error_kind is not None:
                updates.append("error_kind = ?")
                values.append(error_kind.value)
        if started_at is not None:
            updates.append("started_at = ?")
            values.append(to_iso(started_at))
        if finished_at is not None:
            updates.append("finished_at = ?")
            values.append(to_iso(finished_at))
        if scheduled_for is not None:
            updates.append("scheduled_for = ?")
            values.append(to_iso(scheduled_for))
        if attempts is not None:
            updates.append("attempts = ?")
            values.append(attempts)
        if max_retries is not None:
            updates.append("max_retries = ?")
            values.append(max_retries)
        if clear_lease:
            updates.append("lease_owner = NULL")
            updates.append("lease_expires_at = NULL")
        if cancel_requested is not None:
            updates.append("cancel_requested = ?")
            values.append(int(cancel_requested))

        conditions = ["id = ?"]
        values.append(job_id)
        if expected_owner is not None:
            conditions.append("lease_owner = ?")
            values.append(expected_owner)
        if expected_statuses is not None:
            expected = [item.value for item in expected_statuses]
            conditions.append(f"status IN ({_placeholders(len(expected))})")
            values.extend(expected)
        if expected_attempts is not None:
            conditions.append("attempts = ?")
            values.append(expected_attempts)

        query = f"UPDATE jobs SET {', '.join(updates)} WHERE {' AND '.join(conditions)}"
        with self._transaction() as conn:
            cursor = conn.execute(query, values)
            if cursor.rowcount != 1:
                return None
            return self._find_locked(conn, job_id)

    def release_expired(self, now: datetime) -> list[tuple[Job, Job]]:
        """Return RUNNING jobs with an expired lease to the claimable pool.

        Yields ``(before, after)`` pairs. ``attempts`` is left untouched; a job
        already on its last attempt is dead-lettered instead.
        """
        now_iso = to_iso(now)
        released: list[tuple[Job, Job]] = []
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM jobs WHERE status = ? AND lease_expires_at IS NOT NULL AND lease_expires_at < ?",
                (JobStatus.RUNNING.value, now_iso),
            ).fetchall()
            for row in rows:
                before = _row_to_job(row)
                if before.cancel_requested:
                    conn.execute(
                        """
                        UPDATE jobs
                        SET status = ?, finished_at = ?, updated_at = ?, error = ?, error_kind = ?,
                            lease_owner = NULL, lease_expires_at = NULL
                        WHERE id = ?
                        """,
                        (
                            JobStatus.CANCELLED.value,
                            now_iso,
                            now_iso,
                            "cancelled after lease expiry",
                            ErrorKind.CANCELLED.value,
                            before.id,
                        ),
                    )
                elif before.attempts > before.max_retries:
                    conn.execute(
                        """
                        UPDATE jobs
                        SET status = ?, finished_at = ?, updated_at = ?, error = ?, error_kind = ?,
                            lease_owner = NULL, lease_expires_at = NULL
                        WHERE id = ?
                        """,
                        (
                            JobStatus.FAILED.value,
                            now_iso,
                            now_iso,
                            f"lease held by {before.lease_owner} expired on final attempt",
                            ErrorKind.LEASE_EXPIRED.value,
                            before.id,
                        ),
                    )
                else:
                    conn.execute(
                        """
                        UPDATE jobs
                        SET status = ?, progress = 0, scheduled_for = ?, updated_at = ?, error = ?,
                            error_kind = ?, lease_owner = NULL, lease_expires_at = NULL
                        WHERE id = ?
                        """,
                        (
                            JobStatus.RETRYING.value,
                            now_iso,
                            now_iso,
                            f"lease held by {before.lease_owner} expired",
                            ErrorKind.LEASE_EXPIRED.value,
                            before.id,
                        ),
                    )
                after = self._find_locked(conn, before.id)
                if after is not None:
                    released.append((before, after))
        return released

    def request_cancel(self, job_id: str, now: datetime) -> tuple[Job, Job] | None:
        """Cancel a queued job outright, or flag a running one.

        Returns ``(before, after)``; ``after`` equals ``before`` for terminal
        jobs. None when the job does not exist.
        """
        now_iso = to_iso(now)
        claimable = [status.value for status in CLAIMABLE_STATUSES]
        with self._transaction() as conn:
            before = self._find_locked(conn, job_id)
            if before is None:
                return None
            if before.status.value in claimable:
                conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?, finished_at = ?, updated_at = ?, error = ?, error_kind = ?
                    WHERE id = ?
                    """,
                    (
                        JobStatus.CANCELLED.value,
                        now_iso,
                        now_iso,
                        "cancelled by request",
                        ErrorKind.CANCELLED.value,
                        job_id,
                    ),
                )
            elif before.status is JobStatus.RUNNING:
                conn.execute(
                    "UPDATE jobs SET cancel_requested = 1, updated_at = ? WHERE id = ?",
                    (now_iso, job_id),
                )
            after = self._find_locked(conn, job_id)
        return before, after  # type: ignore[return-value]

    def is_cancel_requested(self, job_id: str) -> bool:
        with self._lock:
            row = self.conn.execute("SELECT cancel_requested FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return bool(row and row["cancel_requested"])

    def rearm(self, job_id: str, now: datetime, *, reset_attempts: bool) -> Job | None:
        now_iso = to_iso(now)
        with self._transaction() as conn:
            job = self._find_locked(conn, job_id)
            if job is None or job.status is not JobStatus.FAILED:
                return None
            attempts = 0 if reset_attempts else job.attempts
            max_retries = max(job.max_retries, attempts)
            conn.execute(
                """
                UPDATE jobs
                SET status = ?, attempts = ?, max_retries = ?, progress = 0, scheduled_for = ?,
                    updated_at = ?, started_at = NULL, finished_at = NULL, result_json = NULL,
                    error = NULL, error_kind = NULL, lease_owner = NULL, lease_expires_at = NULL,
                    cancel_requested = 0
                WHERE id = ? AND status = ?
                """,
                (
                    JobStatus.PENDING.value,
                    attempts,
                    max_retries,
                    now_iso,
                    now_iso,
                    job_id,
                    JobStatus.FAILED.value,
                ),
            )
            return self._find_locked(conn, job_id)

    def query(self, job_filter: JobFilter | None = None) -> list[Job]:
        job_filter = job_filter or JobFilter()
        conditions: list[str] = []
        values: list[object] = []
        if job_filter.status is not None:
            statuses = _as_values(job_filter.status, lambda item: JobStatus(item).value)
            conditions.append(f"status IN ({_placeholders(len(statuses))})")
            values.extend(statuses)
        if job_filter.type is not None:
            types = _as_values(job_filter.type, job_type_value)
            conditions.append(f"type IN ({_placeholders(len(types))})")
            values.extend(types)
        if job_filter.priority is not None:
            priorities = _as_values(job_filter.priority, lambda item: int(JobPriority.parse(item)))
            conditions.append(f"priority IN ({_placeholders(len(priorities))})")
            values.extend(priorities)
        if job_filter.created_after is not None:
            conditions.append("created_at >= ?")
            values.append(to_iso(job_filter.created_after))
        if job_filter.created_before is not None:
            conditions.append("created_at <= ?")
            values.append(to_iso(job_filter.created_before))
        if job_filter.correlation_id is not None:
            conditions.append("correlation_id = ?")
            values.append(job_filter.correlation_id)

        query = "SELECT * FROM jobs"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at DESC, id DESC"
        if job_filter.limit is not None:
            query += " LIMIT ? OFFSET ?"
            values.extend([job_filter.limit, job_filter.offset])
        elif job_filter.offset:
            query += " LIMIT -1 OFFSET ?"
            values.append(job_filter.offset)
        with self._lock:
            rows = self.conn.execute(query, values).fetchall()
        return [_row_to_job(row) for row in rows]

    def count_by_status(self) -> dict[JobStatus, int]:
        with self._lock:
            rows = self.conn.execute("SELECT status, COUNT(*) AS count FROM jobs GROUP BY status").fetchall()
        output = {status: 0 for status in JobStatus}
        for row in rows:
            output[JobStatus(row["status"])] = int(row["count"])
        return output

    def count_eligible(self, now: datetime) -> int:
        claimable = [status.value for status in CLAIMABLE_STATUSES]
        with self._lock:
            row = self.conn.execute(
                f"""
                SELECT COUNT(*) FROM jobs
                WHERE status IN ({_placeholders(len(claimable))})
                  AND scheduled_for <= ? AND cancel_requested = 0
                  AND {_DEPENDENCIES_MET}
                """,
                (*claimable, to_iso(now)),
            ).fetchone()
        return int(row[0])

    def count_active_for_correlation(self, correlation_id: str) -> int:
        active = [JobStatus.PENDING.value, JobStatus.RETRYING.value, JobStatus.RUNNING.value]
        with self._lock:
            row = self.conn.execute(
                f"SELECT COUNT(*) FROM jobs WHERE correlation_id = ? AND status IN ({_placeholders(len(active))})",
                (correlation_id, *active),
            ).fetchone()
        return int(row[0])

    def count_running_started_before(self, cutoff: datetime) -> int:
        with self._lock:
            row = self.conn.execute(
                "SELECT COUNT(*) FROM jobs WHERE status = ? AND started_at < ?",
                (JobStatus.RUNNING.value, to_iso(cutoff)),
            ).fetchone()
        return int(row[0])

    def oldest_pending_created_at(self) -> datetime | None:
        claimable = [status.value for status in CLAIMABLE_STATUSES]
        with self._lock:
            row = self.conn.execute(
                f"SELECT MIN(created_at) FROM jobs WHERE status IN ({_placeholders(len(claimable))})",
                claimable,
            ).fetchone()
        return from_iso(row[0])

    def last_completed_at(self) -> datetime | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT MAX(finished_at) FROM jobs WHERE status = ?",
                (JobStatus.COMPLETED.value,),
            ).fetchone()
        return from_iso(row[0])

    def delete_finished_before(self, cutoff: datetime, *, limit: int | None = None, dry_run: bool = False) -> int:
        terminal = sorted(status.value for status in TERMINAL_STATUSES)
        waiting = sorted(status.value for status in JobStatus if status not in TERMINAL_STATUSES)
        # jobs that an unfinished job still depends on are kept
        where = f"""
            status IN ({_placeholders(len(terminal))}) AND finished_at IS NOT NULL AND finished_at < ?
            AND id NOT IN (
                SELECT dep.depends_on FROM job_dependencies AS dep
                JOIN jobs AS child ON child.id = dep.job_id
                WHERE child.status IN ({_placeholders(len(waiting))})
            )
        """
        values: list[object] = [*terminal, to_iso(cutoff), *waiting]
        with self._transaction() as conn:
            if dry_run:
                row = conn.execute(f"SELECT COUNT(*) FROM jobs WHERE {where}", values).fetchone()
                count = int(row[0])
                return min(count, limit) if limit is not None else count
            if limit is not None:
                cursor = conn.execute(
                    f"DELETE FROM jobs WHERE id IN (SELECT id FROM jobs WHERE {where} ORDER BY finished_at LIMIT ?)",
                    (*values, limit),
                )
            else:
                cursor = conn.execute(f"DELETE FROM jobs WHERE {where}", values)
            deleted = cursor.rowcount
            conn.execute("DELETE FROM job_dependencies WHERE job_id NOT IN (SELECT id FROM jobs)")
            return deleted

    def ping(self) -> bool:
        with self._lock:
            row = self.conn.execute("SELECT 1").fetchone()
        return row is not None and row[0] == 1
