"""
Durable priority task queue with a single background worker.

Tasks are rows in the store. A worker claims a due task with a
compare-and-swap on its status, so a task is never executed by two workers.
Failed tasks are retried with exponential backoff until max_attempts.

A claim is a lease: a task left RUNNING longer than lease_seconds (worker
crash, cancelled shutdown, lost status write) is handed back to PENDING, or
FAILED once its attempts are used up.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.errors import PersistenceError, QueueBackpressure
from core.models import QueueTask, TaskStatus, TERMINAL_TASK_STATUSES, utcnow
from core.store import JobStore

logger = logging.getLogger(__name__)

PRIORITY_LOW = 1
PRIORITY_NORMAL = 5
PRIORITY_HIGH = 10

PRIORITY_BY_NAME = {
    "low": PRIORITY_LOW,
    "normal": PRIORITY_NORMAL,
    "high": PRIORITY_HIGH,
}

CLAIM_BATCH = 10

TaskHandler = Callable[[Dict[str, Any]], Awaitable[Optional[Dict[str, Any]]]]


class JobQueueManager:
    def __init__(
        self,
        store: JobStore,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: int = 3,
        retry_base_seconds: int = 60,
        retry_max_seconds: int = 3600,
        soft_limit: int = 100,
        hard_limit: int = 500,
        defer_seconds: int = 900,
        poll_seconds: float = 5.0,
        lease_seconds: int = 1800,
    ):
        self.store = store
        self.clock = clock
        self.max_attempts = max_attempts
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.soft_limit = soft_limit
        self.hard_limit = hard_limit
        self.defer_seconds = defer_seconds
        self.poll_seconds = poll_seconds
        self.lease_seconds = lease_seconds

        self._handlers: Dict[str, TaskHandler] = {}
        self.running = False
        self._worker: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    def register_handler(self, task_type: str, handler: TaskHandler) -> None:
        self._handlers[task_type] = handler

    # Admission

    def _enqueue(
        self,
        task_type: str,
        payload: Dict[str, Any],
        priority: int,
        scheduled_for: Optional[datetime],
        max_attempts: Optional[int],
    ) -> QueueTask:
        now = self.clock()
        task = QueueTask(
            type=task_type,
            payload=payload,
            priority=priority,
            max_attempts=max_attempts or self.max_attempts,
            scheduled_for=scheduled_for or now,
            created_at=now,
            updated_at=now,
        )
        self.store.insert_task(task)
        logger.info(
            f"[queue] Added {task_type} task {task.id} "
            f"(priority={priority}, scheduled_for={task.scheduled_for.isoformat()})"
        )
        return task

    async def add_job(
        self,
        task_type: str,
        payload: Dict[str, Any],
        priority: int = 0,
        scheduled_for: Optional[datetime] = None,
        max_attempts: Optional[int] = None,
    ) -> str:
        """Persist a PENDING task and return its id."""
        task = self._enqueue(task_type, payload, priority, scheduled_for, max_attempts)
        return task.id

    async def admit_job(
        self,
        task_type: str,
        payload: Dict[str, Any],
        priority: int = PRIORITY_NORMAL,
        scheduled_for: Optional[datetime] = None,
        max_attempts: Optional[int] = None,
    ) -> QueueTask:
        """
        Enqueue with backpressure.

        Past the hard limit only HIGH priority work is admitted. Past the soft
        limit, work below NORMAL priority is deferred at LOW priority.
        """
        depth = self.store.task_counts().get(TaskStatus.PENDING.value, 0)

        if depth >= self.hard_limit and priority < PRIORITY_HIGH:
            logger.warning(f"[queue] Rejecting {task_type} task: {depth} pending (hard limit {self.hard_limit})")
            raise QueueBackpressure(depth, retry_after=self.retry_base_seconds)

        if depth >= self.soft_limit and priority < PRIORITY_NORMAL:
            deferred = self.clock() + timedelta(seconds=self.defer_seconds)
            if scheduled_for is None or scheduled_for < deferred:
                scheduled_for = deferred
            priority = PRIORITY_LOW
            logger.info(f"[queue] Deferring {task_type} task: {depth} pending (soft limit {self.soft_limit})")

        return self._enqueue(task_type, payload, priority, scheduled_for, max_attempts)

    # Worker

    async def reclaim_expired(self) -> int:
        """Return RUNNING tasks whose lease ran out to PENDING, or FAILED when out of attempts."""
        now = self.clock()
        claimed_before = now - timedelta(seconds=self.lease_seconds)
        reclaimed = 0
        for task in self.store.list_expired_leases(claimed_before, CLAIM_BATCH):
            if task.attempts >= task.max_attempts:
                fields = {
                    "status": TaskStatus.FAILED,
                    "error": task.error or "Lease expired while running",
                    "updated_at": now,
                }
            else:
                fields = {"status": TaskStatus.PENDING, "scheduled_for": now, "updated_at": now}
            if self.store.update_task(task.id, fields, expected_status=TaskStatus.RUNNING):
                reclaimed += 1
                logger.warning(
                    f"[queue] Lease expired on task {task.id} ({task.type}) after attempt "
                    f"{task.attempts}/{task.max_attempts}, now {fields['status'].value}"
                )
        return reclaimed

    async def claim_next(self) -> Optional[QueueTask]:
        """Claim the highest-priority due task, or None when nothing is due."""
        await self.reclaim_expired()
        now = self.clock()
        for candidate in self.store.list_due_tasks(now, CLAIM_BATCH):
            claimed = self.store.claim_task(candidate.id, now)
            if claimed is not None:
                return claimed
            logger.debug(f"[queue] Lost claim on task {candidate.id}")
        return None

    def _retry_delay(self, attempts: int) -> int:
        delay = self.retry_base_seconds * (2 ** max(0, attempts - 1))
        return min(delay, self.retry_max_seconds)

    def _finish(self, task: QueueTask, fields: Dict[str, Any]) -> bool:
        """Write the outcome of a run. A lost write leaves the lease to expire."""
        try:
            return self.store.update_task(task.id, fields, expected_status=TaskStatus.RUNNING)
        except PersistenceError as e:
            logger.error(
                f"[queue] Could not record {fields['status'].value} for task {task.id} "
                f"({task.type}), lease expires in {self.lease_seconds}s: {e}"
            )
            return False

    async def _run_task(self, task: QueueTask) -> None:
        handler = self._handlers.get(task.type)
        if handler is None:
            logger.error(f"[queue] No handler registered for task type {task.type} ({task.id})")
            self._finish(task, {
                "status": TaskStatus.FAILED,
                "error": f"No handler registered for task type {task.type}",
                "updated_at": self.clock(),
            })
            return

        try:
            result = await handler(task.payload)
        except Exception as e:
            now = self.clock()
            if task.attempts < task.max_attempts:
                delay = self._retry_delay(task.attempts)
                logger.warning(
                    f"[queue] Task {task.id} ({task.type}) failed on attempt "
                    f"{task.attempts}/{task.max_attempts}, retrying in {delay}s: {e}"
                )
                self._finish(task, {
                    "status": TaskStatus.PENDING,
                    "scheduled_for": now + timedelta(seconds=delay),
                    "error": str(e),
                    "updated_at": now,
                })
            else:
                logger.error(f"[queue] Task {task.id} ({task.type}) failed permanently: {e}")
                self._finish(task, {"status": TaskStatus.FAILED, "error": str(e), "updated_at": now})
            return

        if self._finish(task, {"status": TaskStatus.DONE, "result": result, "error": None, "updated_at": self.clock()}):
            logger.info(f"[queue] Task {task.id} ({task.type}) completed")

    async def process_next(self) -> bool:
        """Run one due task. Returns False when the queue had nothing due."""
        task = await self.claim_next()
        if task is None:
            return False
        await self._run_task(task)
        return True

    async def _worker_loop(self):
        logger.info("[queue] Worker started")
        while not self._stop_event.is_set():
            try:
                processed = await self.process_next()
            except Exception as e:
                logger.error(f"[queue] Worker error: {e}", exc_info=True)
                processed = False

            if processed:
                continue

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("[queue] Worker stopped")

    async def start(self):
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self.running = True
        self._worker = asyncio.create_task(self._worker_loop())

    async def stop(self, timeout: float = 30.0):
        """Stop polling and wait for the in-flight task to finish."""
        if not self.running:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(self._worker, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[queue] Worker did not stop within {timeout}s, cancelled")
        self.running = False
        self._worker = None

    # Inspection and maintenance

    async def get_queue_stats(self) -> dict:
        counts = self.store.task_counts()
        oldest = self.store.oldest_pending_created_at()
        oldest_age = None
        if oldest is not None:
            oldest_age = max(0, int((self.clock() - oldest).total_seconds()))
        return {
            "pending": counts.get(TaskStatus.PENDING.value, 0),
            "running": counts.get(TaskStatus.RUNNING.value, 0),
            "done": counts.get(TaskStatus.DONE.value, 0),
            "failed": counts.get(TaskStatus.FAILED.value, 0),
            "cancelled": counts.get(TaskStatus.CANCELLED.value, 0),
            "total": sum(counts.values()),
            "oldestPendingAgeSeconds": oldest_age,
        }

    async def get_job(self, task_id: str) -> Optional[QueueTask]:
        return self.store.get_task(task_id)

    async def get_jobs_by_type(self, task_type: str, limit: int = 50) -> List[QueueTask]:
        return self.store.list_tasks_by_type(task_type, limit)

    async def cancel_job(self, task_id: str) -> bool:
        cancelled = self.store.update_task(
            task_id,
            {"status": TaskStatus.CANCELLED, "updated_at": self.clock()},
            expected_status=TaskStatus.PENDING,
        )
        if cancelled:
            logger.info(f"[queue] Cancelled task {task_id}")
        return cancelled

    async def retry_job(self, task_id: str) -> bool:
        now = self.clock()
        retried = self.store.update_task(
            task_id,
            {
                "status": TaskStatus.PENDING,
                "attempts": 0,
                "error": None,
                "scheduled_for": now,
                "updated_at": now,
            },
            expected_status=TaskStatus.FAILED,
        )
        if retried:
            logger.info(f"[queue] Requeued failed task {task_id}")
        return retried

    async def update_job_priority(self, task_id: str, priority: int) -> bool:
        return self.store.update_task(
            task_id,
            {"priority": priority, "updated_at": self.clock()},
            expected_status=TaskStatus.PENDING,
        )

    async def cleanup_old_jobs(self, days_old: int = 7) -> int:
        cutoff = self.clock() - timedelta(days=days_old)
        removed = self.store.delete_tasks(TERMINAL_TASK_STATUSES, cutoff)
        if removed:
            logger.info(f"[queue] Removed {removed} finished tasks older than {days_old} days")
        return removed
