"""
Relational store for postings, sources, queue tasks, rate-limit counters and
scrape run logs.

JobStore is the contract the managers depend on. PostgresStore talks to
PostgreSQL with psycopg2, opening one short-lived connection per operation.
Every psycopg2 failure surfaces as PersistenceError.
"""
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import psycopg2
from psycopg2.extras import Json, RealDictCursor

from core.errors import PersistenceError
from core.models import (
    JobPosting,
    JobSource,
    JobType,
    QueueTask,
    RateLimitRecord,
    ScrapeRunLog,
    TaskStatus,
    ValidityStatus,
)

logger = logging.getLogger(__name__)

# fn(current record or None) -> (record to persist or None, outcome)
RateLimitTransform = Callable[[Optional[RateLimitRecord]], Tuple[Optional[RateLimitRecord], Any]]

POSTING_UPDATABLE = {
    "title", "description", "company_name", "location", "type", "salary_min",
    "salary_max", "requirements", "skills", "experience", "is_remote", "apply_url",
    "external_id", "last_scraped", "expires_at", "application_deadline", "views",
    "applications_count",
}

TASK_UPDATABLE = {
    "status", "priority", "attempts", "max_attempts", "scheduled_for", "error",
    "result", "updated_at",
}


class JobStore(ABC):
    """Storage contract shared by the PostgreSQL and in-memory stores."""

    # Sources

    @abstractmethod
    def get_source(self, source_id: str) -> Optional[JobSource]:
        ...

    @abstractmethod
    def get_source_by_name(self, name: str) -> Optional[JobSource]:
        ...

    @abstractmethod
    def ensure_source(self, name: str, base_url: Optional[str] = None) -> JobSource:
        """Return the source row for ``name``, creating it active if missing."""

    @abstractmethod
    def set_source_active(self, name: str, is_active: bool) -> Optional[JobSource]:
        ...

    @abstractmethod
    def list_sources(self) -> List[JobSource]:
        ...

    # Postings

    @abstractmethod
    def insert_posting(self, posting: JobPosting) -> JobPosting:
        ...

    @abstractmethod
    def get_posting(self, posting_id: str) -> Optional[JobPosting]:
        ...

    @abstractmethod
    def find_recent_by_fingerprint(self, fingerprint: str, since: datetime) -> Optional[JobPosting]:
        """Posting with this fingerprint created or scraped at/after ``since``."""

    @abstractmethod
    def update_posting(self, posting_id: str, fields: Dict[str, Any]) -> bool:
        ...

    @abstractmethod
    def find_expired_postings(self, now: datetime) -> List[JobPosting]:
        """
        Postings past expires_at that still need purging: every scraped row,
        and manual rows not yet deactivated as EXPIRED.
        """

    @abstractmethod
    def delete_postings(self, posting_ids: Iterable[str]) -> int:
        ...

    @abstractmethod
    def expire_postings(self, posting_ids: Iterable[str], now: datetime) -> int:
        """Deactivate postings with validity_status EXPIRED."""

    @abstractmethod
    def find_revalidation_candidates(
        self,
        validated_before: datetime,
        limit: int,
        exclude_ids: Iterable[str] = (),
    ) -> List[JobPosting]:
        """Active VALID scraped postings never validated or validated before the cutoff."""

    @abstractmethod
    def mark_validated(self, posting_id: str, now: datetime) -> None:
        ...

    @abstractmethod
    def mark_invalid(self, posting_id: str, status: ValidityStatus, now: datetime) -> None:
        """Set a non-VALID status; is_active is cleared in the same write."""

    @abstractmethod
    def posting_counts(self, now: datetime, recent: timedelta = timedelta(hours=24)) -> Dict[str, Any]:
        ...

    # Queue

    @abstractmethod
    def insert_task(self, task: QueueTask) -> QueueTask:
        ...

    @abstractmethod
    def get_task(self, task_id: str) -> Optional[QueueTask]:
        ...

    @abstractmethod
    def list_due_tasks(self, now: datetime, limit: int) -> List[QueueTask]:
        """PENDING tasks due by ``now``, highest priority first, then oldest."""

    @abstractmethod
    def claim_task(self, task_id: str, now: datetime) -> Optional[QueueTask]:
        """
        Compare-and-swap PENDING -> RUNNING, incrementing attempts.
        Returns None when another worker won the race.
        """

    @abstractmethod
    def list_expired_leases(self, claimed_before: datetime, limit: int) -> List[QueueTask]:
        """RUNNING tasks last claimed or updated before ``claimed_before``."""

    @abstractmethod
    def update_task(
        self,
        task_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[TaskStatus] = None,
    ) -> bool:
        ...

    @abstractmethod
    def list_tasks_by_type(self, task_type: str, limit: int = 50) -> List[QueueTask]:
        ...

    @abstractmethod
    def task_counts(self) -> Dict[str, int]:
        ...

    @abstractmethod
    def oldest_pending_created_at(self) -> Optional[datetime]:
        ...

    @abstractmethod
    def delete_tasks(self, statuses: Iterable[TaskStatus], updated_before: datetime) -> int:
        ...

    # Rate limits

    @abstractmethod
    def transform_rate_limit(self, identity: str, category: str, fn: RateLimitTransform) -> Any:
        """Run ``fn`` against the (identity, category) record atomically."""

    @abstractmethod
    def insert_rate_limit_event(self, identity: str, category: str, outcome: str, at: datetime) -> None:
        ...

    @abstractmethod
    def delete_rate_limits(self, window_before: datetime) -> int:
        ...

    @abstractmethod
    def rate_limit_event_totals(self) -> Dict[str, int]:
        ...

    @abstractmethod
    def top_rate_limit_records(self, limit: int) -> List[RateLimitRecord]:
        ...

    @abstractmethod
    def rate_limit_records_for(self, identity: str) -> List[RateLimitRecord]:
        ...

    # Scrape run logs

    @abstractmethod
    def insert_run_log(self, log: ScrapeRunLog) -> None:
        ...

    @abstractmethod
    def complete_run_log(self, log: ScrapeRunLog) -> None:
        ...

    @abstractmethod
    def recent_run_logs(self, limit: int = 10) -> List[ScrapeRunLog]:
        ...


def _row_to_source(row: dict) -> JobSource:
    return JobSource(
        id=str(row["id"]),
        name=row["name"],
        is_active=row["is_active"],
        base_url=row.get("base_url"),
        created_at=row["created_at"],
    )


def _row_to_posting(row: dict) -> JobPosting:
    return JobPosting(
        id=str(row["id"]),
        title=row["title"],
        description=row.get("description") or "",
        company_name=row["company_name"],
        location=row["location"],
        type=JobType(row["type"]),
        salary_min=row.get("salary_min"),
        salary_max=row.get("salary_max"),
        requirements=row.get("requirements") or [],
        skills=row.get("skills") or [],
        experience=row.get("experience"),
        is_remote=row.get("is_remote", False),
        is_active=row["is_active"],
        is_scraped=row["is_scraped"],
        source_id=str(row["source_id"]) if row.get("source_id") else None,
        apply_url=row.get("apply_url"),
        external_id=row.get("external_id"),
        fingerprint=row.get("fingerprint"),
        validity_status=ValidityStatus(row["validity_status"]),
        last_validated=row.get("last_validated"),
        last_scraped=row.get("last_scraped"),
        expires_at=row.get("expires_at"),
        application_deadline=row.get("application_deadline"),
        created_at=row["created_at"],
        views=row.get("views") or 0,
        applications_count=row.get("applications_count") or 0,
    )


def _row_to_task(row: dict) -> QueueTask:
    return QueueTask(
        id=str(row["id"]),
        type=row["type"],
        payload=row.get("payload") or {},
        priority=row["priority"],
        status=TaskStatus(row["status"]),
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        scheduled_for=row["scheduled_for"],
        error=row.get("error"),
        result=row.get("result"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_run_log(row: dict) -> ScrapeRunLog:
    return ScrapeRunLog(
        id=str(row["id"]),
        query=row.get("query") or {},
        status=row["status"],
        started_at=row["started_at"],
        completed_at=row.get("completed_at"),
        jobs_found=row["jobs_found"],
        jobs_created=row["jobs_created"],
        jobs_updated=row["jobs_updated"],
        jobs_skipped=row["jobs_skipped"],
        sources=row.get("sources") or {},
        errors=row.get("errors") or [],
    )


def _adapt(value: Any) -> Any:
    if isinstance(value, (list, dict)):
        return Json(value)
    if isinstance(value, (JobType, ValidityStatus, TaskStatus)):
        return value.value
    return value


class PostgresStore(JobStore):
    """psycopg2-backed store. Tables are described in infra/job_pipeline.sql."""

    def __init__(self, conn_params: dict, connect_timeout: int = 5):
        self.conn_params = conn_params
        self.connect_timeout = connect_timeout

    def _get_db_conn(self):
        return psycopg2.connect(**self.conn_params, connect_timeout=self.connect_timeout)

    @contextmanager
    def _cursor(self):
        conn = None
        try:
            conn = self._get_db_conn()
            cursor = conn.cursor(cursor_factory=RealDictCursor)
            yield cursor
            conn.commit()
        except psycopg2.Error as e:
            if conn:
                conn.rollback()
            logger.error(f"[store] Database error: {e}")
            raise PersistenceError(str(e)) from e
        except Exception:
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                conn.close()

    # Sources

    def get_source(self, source_id: str) -> Optional[JobSource]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM job_sources WHERE id::text = %s", (source_id,))
            row = cur.fetchone()
        return _row_to_source(row) if row else None

    def get_source_by_name(self, name: str) -> Optional[JobSource]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM job_sources WHERE name = %s", (name,))
            row = cur.fetchone()
        return _row_to_source(row) if row else None

    def ensure_source(self, name: str, base_url: Optional[str] = None) -> JobSource:
        source = JobSource(name=name, base_url=base_url)
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO job_sources (id, name, is_active, base_url, created_at)
                VALUES (%s, %s, TRUE, %s, %s)
                ON CONFLICT (name) DO UPDATE SET name = EXCLUDED.name
                RETURNING *
                """,
                (source.id, name, base_url, source.created_at),
            )
            row = cur.fetchone()
        return _row_to_source(row)

    def set_source_active(self, name: str, is_active: bool) -> Optional[JobSource]:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE job_sources SET is_active = %s WHERE name = %s RETURNING *",
                (is_active, name),
            )
            row = cur.fetchone()
        return _row_to_source(row) if row else None

    def list_sources(self) -> List[JobSource]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM job_sources ORDER BY name")
            rows = cur.fetchall()
        return [_row_to_source(r) for r in rows]

    # Postings

    def insert_posting(self, posting: JobPosting) -> JobPosting:
        columns = [
            "id", "title", "description", "company_name", "location", "type",
            "salary_min", "salary_max", "requirements", "skills", "experience",
            "is_remote", "is_active", "is_scraped", "source_id", "apply_url",
            "external_id", "fingerprint", "validity_status", "last_validated",
            "last_scraped", "expires_at", "application_deadline", "created_at",
            "views", "applications_count",
        ]
        values = [_adapt(getattr(posting, c)) for c in columns]
        placeholders = ", ".join(["%s"] * len(columns))
        with self._cursor() as cur:
            cur.execute(
                f"INSERT INTO jobs ({', '.join(columns)}) VALUES ({placeholders})",
                values,
            )
        return posting

    def get_posting(self, posting_id: str) -> Optional[JobPosting]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM jobs WHERE id::text = %s", (posting_id,))
            row = cur.fetchone()
        return _row_to_posting(row) if row else None

    def find_recent_by_fingerprint(self, fingerprint: str, since: datetime) -> Optional[JobPosting]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT * FROM jobs
                WHERE fingerprint = %s
                  AND (created_at >= %s OR last_scraped >= %s)
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (fingerprint, since, since),
            )
            row = cur.fetchone()
        return _row_to_posting(row) if row else None

    def update_posting(self, posting_id: str, fields: Dict[str, Any]) -> bool:
        unknown = set(fields) - POSTING_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update posting fields: {sorted(unknown)}")
        if not fields:
            return False
        assignments = ", ".join(f"{k} = %s" for k in fields)
        with self._cursor() as cur:
            cur.execute(
                f"UPDATE jobs SET {assignments} WHERE id::text = %s",
                [_adapt(v) for v in fields.values()] + [posting_id],
            )
            return cur.rowcount > 0

    def find_expired_postings(self, now: datetime) -> List[JobPosting]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT * FROM jobs
                WHERE expires_at < %s
                  AND (is_scraped OR is_active OR validity_status <> 'EXPIRED')
                """,
                (now,),
            )
            rows = cur.fetchall()
        return [_row_to_posting(r) for r in rows]

    def delete_postings(self, posting_ids: Iterable[str]) -> int:
        ids = list(posting_ids)
        if not ids:
            return 0
        with self._cursor() as cur:
            cur.execute("DELETE FROM jobs WHERE id::text = ANY(%s)", (ids,))
            return cur.rowcount

    def expire_postings(self, posting_ids: Iterable[str], now: datetime) -> int:
        ids = list(posting_ids)
        if not ids:
            return 0
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE jobs
                SET is_active = FALSE, validity_status = 'EXPIRED', last_validated = %s
                WHERE id::text = ANY(%s)
                """,
                (now, ids),
            )
            return cur.rowcount

    def find_revalidation_candidates(
        self,
        validated_before: datetime,
        limit: int,
        exclude_ids: Iterable[str] = (),
    ) -> List[JobPosting]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT * FROM jobs
                WHERE is_scraped AND is_active AND validity_status = 'VALID'
                  AND (last_validated IS NULL OR last_validated < %s)
                  AND NOT (id::text = ANY(%s))
                ORDER BY last_validated ASC NULLS FIRST, created_at ASC
                LIMIT %s
                """,
                (validated_before, list(exclude_ids), limit),
            )
            rows = cur.fetchall()
        return [_row_to_posting(r) for r in rows]

    def mark_validated(self, posting_id: str, now: datetime) -> None:
        with self._cursor() as cur:
            cur.execute("UPDATE jobs SET last_validated = %s WHERE id::text = %s", (now, posting_id))

    def mark_invalid(self, posting_id: str, status: ValidityStatus, now: datetime) -> None:
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE jobs
                SET validity_status = %s, is_active = FALSE, last_validated = %s
                WHERE id::text = %s
                """,
                (status.value, now, posting_id),
            )

    def posting_counts(self, now: datetime, recent: timedelta = timedelta(hours=24)) -> Dict[str, Any]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    COUNT(*) FILTER (WHERE is_active) AS active,
                    COUNT(*) FILTER (WHERE NOT is_active) AS inactive,
                    COUNT(*) FILTER (WHERE validity_status = 'EXPIRED') AS expired,
                    COUNT(*) FILTER (WHERE validity_status IN ('NOT_FOUND', 'INVALID_URL')) AS invalid,
                    COUNT(*) FILTER (WHERE last_validated >= %s) AS recently_validated,
                    COUNT(*) FILTER (WHERE is_scraped) AS scraped,
                    COUNT(*) FILTER (
                        WHERE is_active AND application_deadline >= %s AND application_deadline < %s
                    ) AS approaching_deadlines,
                    MAX(last_scraped) AS last_scraped
                FROM jobs
                """,
                (now - recent, now, now + recent),
            )
            row = cur.fetchone()
        return dict(row)

    # Queue

    def insert_task(self, task: QueueTask) -> QueueTask:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO job_queue
                    (id, type, payload, priority, status, attempts, max_attempts,
                     scheduled_for, error, result, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    task.id, task.type, Json(task.payload), task.priority, task.status.value,
                    task.attempts, task.max_attempts, task.scheduled_for, task.error,
                    Json(task.result) if task.result is not None else None,
                    task.created_at, task.updated_at,
                ),
            )
        return task

    def get_task(self, task_id: str) -> Optional[QueueTask]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM job_queue WHERE id::text = %s", (task_id,))
            row = cur.fetchone()
        return _row_to_task(row) if row else None

    def list_due_tasks(self, now: datetime, limit: int) -> List[QueueTask]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT * FROM job_queue
                WHERE status = 'PENDING' AND scheduled_for <= %s
                ORDER BY priority DESC, created_at ASC
                LIMIT %s
                """,
                (now, limit),
            )
            rows = cur.fetchall()
        return [_row_to_task(r) for r in rows]

    def claim_task(self, task_id: str, now: datetime) -> Optional[QueueTask]:
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE job_queue
                SET status = 'RUNNING', attempts = attempts + 1, updated_at = %s
                WHERE id::text = %s AND status = 'PENDING'
                RETURNING *
                """,
                (now, task_id),
            )
            row = cur.fetchone()
        return _row_to_task(row) if row else None

    def list_expired_leases(self, claimed_before: datetime, limit: int) -> List[QueueTask]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT * FROM job_queue
                WHERE status = 'RUNNING' AND updated_at < %s
                ORDER BY updated_at ASC
                LIMIT %s
                """,
                (claimed_before, limit),
            )
            rows = cur.fetchall()
        return [_row_to_task(r) for r in rows]

    def update_task(
        self,
        task_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[TaskStatus] = None,
    ) -> bool:
        unknown = set(fields) - TASK_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update task fields: {sorted(unknown)}")
        assignments = ", ".join(f"{k} = %s" for k in fields)
        params = [_adapt(v) for v in fields.values()] + [task_id]
        sql = f"UPDATE job_queue SET {assignments} WHERE id::text = %s"
        if expected_status is not None:
            sql += " AND status = %s"
            params.append(expected_status.value)
        with self._cursor() as cur:
            cur.execute(sql, params)
            return cur.rowcount > 0

    def list_tasks_by_type(self, task_type: str, limit: int = 50) -> List[QueueTask]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT * FROM job_queue WHERE type = %s ORDER BY created_at DESC LIMIT %s",
                (task_type, limit),
            )
            rows = cur.fetchall()
        return [_row_to_task(r) for r in rows]

    def task_counts(self) -> Dict[str, int]:
        with self._cursor() as cur:
            cur.execute("SELECT status, COUNT(*) AS n FROM job_queue GROUP BY status")
            rows = cur.fetchall()
        return {r["status"]: r["n"] for r in rows}

    def oldest_pending_created_at(self) -> Optional[datetime]:
        with self._cursor() as cur:
            cur.execute("SELECT MIN(created_at) AS oldest FROM job_queue WHERE status = 'PENDING'")
            row = cur.fetchone()
        return row["oldest"] if row else None

    def delete_tasks(self, statuses: Iterable[TaskStatus], updated_before: datetime) -> int:
        with self._cursor() as cur:
            cur.execute(
                "DELETE FROM job_queue WHERE status = ANY(%s) AND updated_at < %s",
                ([s.value for s in statuses], updated_before),
            )
            return cur.rowcount

    # Rate limits

    def transform_rate_limit(self, identity: str, category: str, fn: RateLimitTransform) -> Any:
        with self._cursor() as cur:
            # Serializes concurrent first hits on a key that has no row yet
            cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (f"{identity}:{category}",))
            cur.execute(
                """
                SELECT identity, category, count, window_start FROM rate_limits
                WHERE identity = %s AND category = %s
                FOR UPDATE
                """,
                (identity, category),
            )
            row = cur.fetchone()
            current = RateLimitRecord(**row) if row else None
            updated, outcome = fn(current)
            if updated is not None:
                cur.execute(
                    """
                    INSERT INTO rate_limits (identity, category, count, window_start)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (identity, category)
                    DO UPDATE SET count = EXCLUDED.count, window_start = EXCLUDED.window_start
                    """,
                    (updated.identity, updated.category, updated.count, updated.window_start),
                )
        return outcome

    def insert_rate_limit_event(self, identity: str, category: str, outcome: str, at: datetime) -> None:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO rate_limit_events (identity, category, outcome, created_at)
                VALUES (%s, %s, %s, %s)
                """,
                (identity, category, outcome, at),
            )

    def delete_rate_limits(self, window_before: datetime) -> int:
        with self._cursor() as cur:
            cur.execute("DELETE FROM rate_limits WHERE window_start < %s", (window_before,))
            removed = cur.rowcount
            cur.execute("DELETE FROM rate_limit_events WHERE created_at < %s", (window_before,))
        return removed

    def rate_limit_event_totals(self) -> Dict[str, int]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT COUNT(*) AS total,
                       COUNT(*) FILTER (WHERE outcome = 'blocked') AS blocked
                FROM rate_limit_events
                """
            )
            row = cur.fetchone()
        return {"total": row["total"], "blocked": row["blocked"]}

    def top_rate_limit_records(self, limit: int) -> List[RateLimitRecord]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT identity, category, count, window_start FROM rate_limits
                ORDER BY count DESC, window_start DESC
                LIMIT %s
                """,
                (limit,),
            )
            rows = cur.fetchall()
        return [RateLimitRecord(**r) for r in rows]

    def rate_limit_records_for(self, identity: str) -> List[RateLimitRecord]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT identity, category, count, window_start FROM rate_limits WHERE identity = %s",
                (identity,),
            )
            rows = cur.fetchall()
        return [RateLimitRecord(**r) for r in rows]

    # Scrape run logs

    def insert_run_log(self, log: ScrapeRunLog) -> None:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO scrape_runs
                    (id, status, query, started_at, jobs_found, jobs_created,
                     jobs_updated, jobs_skipped, sources, errors)
                VALUES (%s, %s, %s, %s, 0, 0, 0, 0, %s, %s)
                """,
                (log.id, log.status, Json(log.query), log.started_at, Json({}), Json([])),
            )

    def complete_run_log(self, log: ScrapeRunLog) -> None:
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE scrape_runs
                SET status = %s, completed_at = %s, jobs_found = %s, jobs_created = %s,
                    jobs_updated = %s, jobs_skipped = %s, sources = %s, errors = %s
                WHERE id::text = %s
                """,
                (
                    log.status, log.completed_at, log.jobs_found, log.jobs_created,
                    log.jobs_updated, log.jobs_skipped, Json(log.sources), Json(log.errors), log.id,
                ),
            )

    def recent_run_logs(self, limit: int = 10) -> List[ScrapeRunLog]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM scrape_runs ORDER BY started_at DESC LIMIT %s", (limit,))
            rows = cur.fetchall()
        return [_row_to_run_log(r) for r in rows]
