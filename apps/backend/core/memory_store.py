"""
In-memory JobStore.

Used by the test-suite and by local runs without DATABASE_URL. State lives in
process memory and is lost on restart. Records are copied on the way in and
out so callers never mutate stored state by accident.
"""
import copy
import threading
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from core.models import (
    JobPosting,
    JobSource,
    QueueTask,
    RateLimitRecord,
    ScrapeRunLog,
    TaskStatus,
    ValidityStatus,
)
from core.store import JobStore, POSTING_UPDATABLE, RateLimitTransform, TASK_UPDATABLE


class InMemoryStore(JobStore):
    def __init__(self):
        self._sources: Dict[str, JobSource] = {}
        self._postings: Dict[str, JobPosting] = {}
        self._tasks: Dict[str, QueueTask] = {}
        self._rate_limits: Dict[Tuple[str, str], RateLimitRecord] = {}
        self._rate_events: List[Dict[str, Any]] = []
        self._run_logs: Dict[str, ScrapeRunLog] = {}

        self._postings_lock = threading.Lock()
        self._queue_lock = threading.Lock()
        self._rate_lock = threading.Lock()
        self._key_locks: Dict[Tuple[str, str], threading.Lock] = defaultdict(threading.Lock)

    # Sources

    def get_source(self, source_id: str) -> Optional[JobSource]:
        with self._postings_lock:
            source = self._sources.get(source_id)
            return copy.deepcopy(source)

    def get_source_by_name(self, name: str) -> Optional[JobSource]:
        with self._postings_lock:
            for source in self._sources.values():
                if source.name == name:
                    return copy.deepcopy(source)
        return None

    def ensure_source(self, name: str, base_url: Optional[str] = None) -> JobSource:
        with self._postings_lock:
            for source in self._sources.values():
                if source.name == name:
                    return copy.deepcopy(source)
            source = JobSource(name=name, base_url=base_url)
            self._sources[source.id] = source
            return copy.deepcopy(source)

    def add_source(self, source: JobSource) -> JobSource:
        with self._postings_lock:
            self._sources[source.id] = copy.deepcopy(source)
        return source

    def set_source_active(self, name: str, is_active: bool) -> Optional[JobSource]:
        with self._postings_lock:
            for source in self._sources.values():
                if source.name == name:
                    source.is_active = is_active
                    return copy.deepcopy(source)
        return None

    def list_sources(self) -> List[JobSource]:
        with self._postings_lock:
            return [copy.deepcopy(s) for s in sorted(self._sources.values(), key=lambda s: s.name)]

    # Postings

    def insert_posting(self, posting: JobPosting) -> JobPosting:
        with self._postings_lock:
            self._postings[posting.id] = copy.deepcopy(posting)
        return posting

    def get_posting(self, posting_id: str) -> Optional[JobPosting]:
        with self._postings_lock:
            return copy.deepcopy(self._postings.get(posting_id))

    def all_postings(self) -> List[JobPosting]:
        with self._postings_lock:
            return [copy.deepcopy(p) for p in self._postings.values()]

    def find_recent_by_fingerprint(self, fingerprint: str, since: datetime) -> Optional[JobPosting]:
        with self._postings_lock:
            matches = [
                p for p in self._postings.values()
                if p.fingerprint == fingerprint
                and (p.created_at >= since or (p.last_scraped is not None and p.last_scraped >= since))
            ]
            if not matches:
                return None
            return copy.deepcopy(max(matches, key=lambda p: p.created_at))

    def update_posting(self, posting_id: str, fields: Dict[str, Any]) -> bool:
        unknown = set(fields) - POSTING_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update posting fields: {sorted(unknown)}")
        with self._postings_lock:
            posting = self._postings.get(posting_id)
            if posting is None:
                return False
            for key, value in fields.items():
                setattr(posting, key, copy.deepcopy(value))
            return True

    def find_expired_postings(self, now: datetime) -> List[JobPosting]:
        with self._postings_lock:
            return [
                copy.deepcopy(p) for p in self._postings.values()
                if p.expires_at is not None and p.expires_at < now
                and (p.is_scraped or p.is_active or p.validity_status != ValidityStatus.EXPIRED)
            ]

    def delete_postings(self, posting_ids: Iterable[str]) -> int:
        removed = 0
        with self._postings_lock:
            for posting_id in posting_ids:
                if self._postings.pop(posting_id, None) is not None:
                    removed += 1
        return removed

    def expire_postings(self, posting_ids: Iterable[str], now: datetime) -> int:
        updated = 0
        with self._postings_lock:
            for posting_id in posting_ids:
                posting = self._postings.get(posting_id)
                if posting is None:
                    continue
                posting.is_active = False
                posting.validity_status = ValidityStatus.EXPIRED
                posting.last_validated = now
                updated += 1
        return updated

    def find_revalidation_candidates(
        self,
        validated_before: datetime,
        limit: int,
        exclude_ids: Iterable[str] = (),
    ) -> List[JobPosting]:
        excluded = set(exclude_ids)
        with self._postings_lock:
            candidates = [
                p for p in self._postings.values()
                if p.is_scraped and p.is_active
                and p.validity_status == ValidityStatus.VALID
                and (p.last_validated is None or p.last_validated < validated_before)
                and p.id not in excluded
            ]
            candidates.sort(key=lambda p: (p.last_validated is not None, p.last_validated or p.created_at, p.created_at))
            return [copy.deepcopy(p) for p in candidates[:limit]]

    def mark_validated(self, posting_id: str, now: datetime) -> None:
        with self._postings_lock:
            posting = self._postings.get(posting_id)
            if posting is not None:
                posting.last_validated = now

    def mark_invalid(self, posting_id: str, status: ValidityStatus, now: datetime) -> None:
        with self._postings_lock:
            posting = self._postings.get(posting_id)
            if posting is not None:
                posting.validity_status = status
                posting.is_active = False
                posting.last_validated = now

    def posting_counts(self, now: datetime, recent: timedelta = timedelta(hours=24)) -> Dict[str, Any]:
        with self._postings_lock:
            postings = list(self._postings.values())
        scraped_times = [p.last_scraped for p in postings if p.last_scraped is not None]
        return {
            "total": len(postings),
            "active": sum(1 for p in postings if p.is_active),
            "inactive": sum(1 for p in postings if not p.is_active),
            "expired": sum(1 for p in postings if p.validity_status == ValidityStatus.EXPIRED),
            "invalid": sum(
                1 for p in postings
                if p.validity_status in (ValidityStatus.NOT_FOUND, ValidityStatus.INVALID_URL)
            ),
            "recently_validated": sum(
                1 for p in postings if p.last_validated is not None and p.last_validated >= now - recent
            ),
            "scraped": sum(1 for p in postings if p.is_scraped),
            "approaching_deadlines": sum(
                1 for p in postings
                if p.is_active and p.application_deadline is not None
                and now <= p.application_deadline < now + recent
            ),
            "last_scraped": max(scraped_times) if scraped_times else None,
        }

    # Queue

    def insert_task(self, task: QueueTask) -> QueueTask:
        with self._queue_lock:
            self._tasks[task.id] = copy.deepcopy(task)
        return task

    def get_task(self, task_id: str) -> Optional[QueueTask]:
        with self._queue_lock:
            return copy.deepcopy(self._tasks.get(task_id))

    def list_due_tasks(self, now: datetime, limit: int) -> List[QueueTask]:
        with self._queue_lock:
            due = [
                t for t in self._tasks.values()
                if t.status == TaskStatus.PENDING and t.scheduled_for <= now
            ]
            due.sort(key=lambda t: (-t.priority, t.created_at))
            return [copy.deepcopy(t) for t in due[:limit]]

    def claim_task(self, task_id: str, now: datetime) -> Optional[QueueTask]:
        with self._queue_lock:
            task = self._tasks.get(task_id)
            if task is None or task.status != TaskStatus.PENDING:
                return None
            task.status = TaskStatus.RUNNING
            task.attempts += 1
            task.updated_at = now
            return copy.deepcopy(task)

    def list_expired_leases(self, claimed_before: datetime, limit: int) -> List[QueueTask]:
        with self._queue_lock:
            stale = [
                t for t in self._tasks.values()
                if t.status == TaskStatus.RUNNING and t.updated_at < claimed_before
            ]
            stale.sort(key=lambda t: t.updated_at)
            return [copy.deepcopy(t) for t in stale[:limit]]

    def update_task(
        self,
        task_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[TaskStatus] = None,
    ) -> bool:
        unknown = set(fields) - TASK_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update task fields: {sorted(unknown)}")
        with self._queue_lock:
            task = self._tasks.get(task_id)
            if task is None:
                return False
            if expected_status is not None and task.status != expected_status:
                return False
            for key, value in fields.items():
                setattr(task, key, copy.deepcopy(value))
            return True

    def list_tasks_by_type(self, task_type: str, limit: int = 50) -> List[QueueTask]:
        with self._queue_lock:
            tasks = [t for t in self._tasks.values() if t.type == task_type]
            tasks.sort(key=lambda t: t.created_at, reverse=True)
            return [copy.deepcopy(t) for t in tasks[:limit]]

    def task_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = defaultdict(int)
        with self._queue_lock:
            for task in self._tasks.values():
                counts[task.status.value] += 1
        return dict(counts)

    def oldest_pending_created_at(self) -> Optional[datetime]:
        with self._queue_lock:
            pending = [t.created_at for t in self._tasks.values() if t.status == TaskStatus.PENDING]
        return min(pending) if pending else None

    def delete_tasks(self, statuses: Iterable[TaskStatus], updated_before: datetime) -> int:
        wanted = set(statuses)
        with self._queue_lock:
            doomed = [
                task_id for task_id, t in self._tasks.items()
                if t.status in wanted and t.updated_at < updated_before
            ]
            for task_id in doomed:
                del self._tasks[task_id]
        return len(doomed)

    # Rate limits

    def transform_rate_limit(self, identity: str, category: str, fn: RateLimitTransform) -> Any:
        key = (identity, category)
        while True:
            with self._rate_lock:
                key_lock = self._key_locks[key]
            with key_lock:
                # Lock was pruned by delete_rate_limits before we got it
                with self._rate_lock:
                    if self._key_locks.get(key) is not key_lock:
                        continue
                current = copy.deepcopy(self._rate_limits.get(key))
                updated, outcome = fn(current)
                if updated is not None:
                    self._rate_limits[key] = copy.deepcopy(updated)
                return outcome

    def insert_rate_limit_event(self, identity: str, category: str, outcome: str, at: datetime) -> None:
        with self._rate_lock:
            self._rate_events.append(
                {"identity": identity, "category": category, "outcome": outcome, "created_at": at}
            )

    def delete_rate_limits(self, window_before: datetime) -> int:
        with self._rate_lock:
            doomed = [k for k, r in self._rate_limits.items() if r.window_start < window_before]
            for key in doomed:
                del self._rate_limits[key]
                key_lock = self._key_locks.get(key)
                if key_lock is not None and not key_lock.locked():
                    del self._key_locks[key]
            self._rate_events = [e for e in self._rate_events if e["created_at"] >= window_before]
        return len(doomed)

    def rate_limit_event_totals(self) -> Dict[str, int]:
        with self._rate_lock:
            return {
                "total": len(self._rate_events),
                "blocked": sum(1 for e in self._rate_events if e["outcome"] == "blocked"),
            }

    def top_rate_limit_records(self, limit: int) -> List[RateLimitRecord]:
        with self._rate_lock:
            records = sorted(self._rate_limits.values(), key=lambda r: (-r.count, r.window_start))
            return [copy.deepcopy(r) for r in records[:limit]]

    def rate_limit_records_for(self, identity: str) -> List[RateLimitRecord]:
        with self._rate_lock:
            return [copy.deepcopy(r) for k, r in self._rate_limits.items() if k[0] == identity]

    # Scrape run logs

    def insert_run_log(self, log: ScrapeRunLog) -> None:
        with self._queue_lock:
            self._run_logs[log.id] = copy.deepcopy(log)

    def complete_run_log(self, log: ScrapeRunLog) -> None:
        with self._queue_lock:
            self._run_logs[log.id] = copy.deepcopy(log)

    def recent_run_logs(self, limit: int = 10) -> List[ScrapeRunLog]:
        with self._queue_lock:
            logs = sorted(self._run_logs.values(), key=lambda l: l.started_at, reverse=True)
            return [copy.deepcopy(l) for l in logs[:limit]]
