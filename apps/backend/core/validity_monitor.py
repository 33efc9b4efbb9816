"""
Recurring reconciliation of posting validity.

Each cycle purges expired postings, re-validates a bounded batch of scraped
postings against their source and deadlines, and publishes a summary. Cycles
never overlap: the timer skips a tick while a cycle is running, and manual
triggers wait for the in-flight cycle to finish.
"""
import time
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import metrics
from core.broadcast import Broadcaster
from core.link_validator import LinkValidator
from core.models import JobPosting, ValidityStatus, utcnow
from core.store import JobStore

logger = logging.getLogger(__name__)


@dataclass
class CleanupReport:
    cycle: int
    dry_run: bool
    jobs_expired: int = 0
    jobs_invalid: int = 0
    jobs_deleted: int = 0
    jobs_deactivated: int = 0
    jobs_revalidated: int = 0
    approaching_deadlines: int = 0
    duration_ms: int = 0
    finished_at: Optional[datetime] = None

    @property
    def jobs_removed(self) -> int:
        return self.jobs_expired + self.jobs_invalid

    @property
    def message(self) -> str:
        if self.dry_run:
            return (
                f"Would remove {self.jobs_removed} jobs "
                f"({self.jobs_expired} expired, {self.jobs_invalid} invalid)"
            )
        return (
            f"Removed {self.jobs_removed} jobs "
            f"({self.jobs_expired} expired, {self.jobs_invalid} invalid)"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobsRemoved": self.jobs_removed,
            "jobsExpired": self.jobs_expired,
            "jobsInvalid": self.jobs_invalid,
            "jobsDeleted": self.jobs_deleted,
            "jobsDeactivated": self.jobs_deactivated,
            "jobsRevalidated": self.jobs_revalidated,
            "approachingDeadlines": self.approaching_deadlines,
            "dryRun": self.dry_run,
            "cycle": self.cycle,
            "durationMs": self.duration_ms,
            "message": self.message,
        }


class ValidityMonitor:
    def __init__(
        self,
        store: JobStore,
        broadcaster: Optional[Broadcaster] = None,
        link_validator: Optional[LinkValidator] = None,
        clock: Callable[[], datetime] = utcnow,
        interval_seconds: float = 300.0,
        batch_size: int = 50,
        revalidate_after_days: int = 7,
        stale_after_days: int = 90,
        check_delay_seconds: float = 0.1,
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.link_validator = link_validator
        self.clock = clock
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.revalidate_after = timedelta(days=revalidate_after_days)
        self.stale_after = timedelta(days=stale_after_days)
        self.check_delay_seconds = check_delay_seconds

        self._cycle_lock = asyncio.Lock()
        self._stop_event: Optional[asyncio.Event] = None
        self._timer: Optional[asyncio.Task] = None
        self.running = False

        self.cycles_completed = 0
        self.cycles_skipped = 0
        self.last_report: Optional[CleanupReport] = None
        self.last_error: Optional[str] = None
        self.last_cleanup_at: Optional[datetime] = None

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle_lock.locked()

    # Cycle

    async def run_cycle(self, dry_run: bool = False) -> CleanupReport:
        """Run one full cycle, waiting for any in-flight cycle first."""
        async with self._cycle_lock:
            return await self._run_cycle_locked(dry_run)

    async def run_cycle_if_idle(self) -> Optional[CleanupReport]:
        """Timer entry point: skip the tick when a cycle is already running."""
        if self._cycle_lock.locked():
            self.cycles_skipped += 1
            logger.info("[validity_monitor] Previous cycle still running, skipping tick")
            return None
        return await self.run_cycle()

    async def _run_cycle_locked(self, dry_run: bool) -> CleanupReport:
        started = time.time()
        cycle = self.cycles_completed + 1
        report = CleanupReport(cycle=cycle, dry_run=dry_run)
        now = self.clock()

        expired_ids = await self._purge(report, now, dry_run)
        await self._revalidate(report, now, dry_run, expired_ids)

        counts = self.store.posting_counts(now)
        report.approaching_deadlines = counts.get("approaching_deadlines", 0)
        report.duration_ms = int((time.time() - started) * 1000)
        report.finished_at = self.clock()

        self.cycles_completed += 1
        self.last_report = report
        self.last_error = None
        if not dry_run:
            self.last_cleanup_at = report.finished_at
            metrics.incr_removed(report.jobs_expired)
            metrics.incr_invalidated(report.jobs_invalid)

        logger.info(f"[validity_monitor] Cycle {cycle}: {report.message} ({report.duration_ms}ms)")
        await self._summarize(report)
        return report

    async def _purge(self, report: CleanupReport, now: datetime, dry_run: bool) -> List[str]:
        expired = self.store.find_expired_postings(now)
        scraped_ids = [p.id for p in expired if p.is_scraped]
        manual_ids = [p.id for p in expired if not p.is_scraped]
        report.jobs_expired = len(expired)

        if not dry_run:
            report.jobs_deleted = self.store.delete_postings(scraped_ids)
            report.jobs_deactivated = self.store.expire_postings(manual_ids, now)
            if expired:
                logger.info(
                    f"[validity_monitor] Purged {len(expired)} expired postings "
                    f"({report.jobs_deleted} deleted, {report.jobs_deactivated} deactivated)"
                )
        return scraped_ids + manual_ids

    async def _revalidate(
        self,
        report: CleanupReport,
        now: datetime,
        dry_run: bool,
        exclude_ids: List[str],
    ) -> None:
        candidates = self.store.find_revalidation_candidates(
            validated_before=now - self.revalidate_after,
            limit=self.batch_size,
            exclude_ids=exclude_ids,
        )

        for index, posting in enumerate(candidates):
            if index > 0 and self.check_delay_seconds > 0:
                await asyncio.sleep(self.check_delay_seconds)

            try:
                failure, reason = await self.check_posting(posting, now)
            except Exception as e:
                logger.warning(f"[validity_monitor] Validation of {posting.id} raised, marking invalid: {e}")
                failure, reason = ValidityStatus.INVALID_URL, f"validation error: {e}"

            if failure is None:
                report.jobs_revalidated += 1
                if not dry_run:
                    self.store.mark_validated(posting.id, now)
                continue

            report.jobs_invalid += 1
            logger.info(f"[validity_monitor] Posting {posting.id} -> {failure.value}: {reason}")
            if not dry_run:
                self.store.mark_invalid(posting.id, failure, now)

    async def check_posting(self, posting: JobPosting, now: datetime) -> Tuple[Optional[ValidityStatus], Optional[str]]:
        """
        Returns (None, None) when the posting is still valid, otherwise the
        status it should move to and a reason.
        """
        # Postings without a source are only checked on deadline, age and link
        if posting.source_id:
            source = self.store.get_source(posting.source_id)
            if source is None:
                return ValidityStatus.NOT_FOUND, "source missing"
            if not source.is_active:
                return ValidityStatus.NOT_FOUND, f"source {source.name} is inactive"

        if posting.application_deadline is not None and posting.application_deadline < now:
            return ValidityStatus.NOT_FOUND, "application deadline passed"

        stale_cutoff = now - self.stale_after
        recently_validated = posting.last_validated is not None and posting.last_validated >= stale_cutoff
        if posting.created_at < stale_cutoff and not recently_validated:
            return ValidityStatus.NOT_FOUND, "posting is stale"

        if self.link_validator is not None and posting.apply_url:
            status = await self.link_validator.check(posting.apply_url)
            if status is not None:
                return status, f"apply link check failed ({posting.apply_url})"

        return None, None

    async def _summarize(self, report: CleanupReport) -> None:
        if self.broadcaster is None:
            return
        await self.broadcaster.publish("CLEANUP_SUMMARY", report.to_dict())
        if report.approaching_deadlines:
            await self.broadcaster.publish(
                "MONITORING_ALERT",
                {
                    "kind": "approaching_deadlines",
                    "count": report.approaching_deadlines,
                    "message": f"{report.approaching_deadlines} active jobs close within 24 hours",
                },
            )

    # Timer

    async def _loop(self):
        logger.info(f"[validity_monitor] Started (interval={self.interval_seconds}s)")
        while not self._stop_event.is_set():
            try:
                await self.run_cycle_if_idle()
            except Exception as e:
                self.last_error = str(e)
                logger.error(f"[validity_monitor] Cycle failed: {e}", exc_info=True)
                if self.broadcaster is not None:
                    await self.broadcaster.publish("MONITORING_ERROR", {"error": str(e)})

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("[validity_monitor] Stopped")

    async def start(self):
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self.running = True
        self._timer = asyncio.create_task(self._loop())

    async def stop(self, timeout: float = 30.0):
        """Cancel the pending tick and wait for an in-flight cycle to finish."""
        if not self.running:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(self._timer, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[validity_monitor] In-flight cycle did not finish within {timeout}s, cancelled")
        self.running = False
        self._timer = None

    # Reporting

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "cycleInProgress": self.cycle_in_progress,
            "intervalSeconds": self.interval_seconds,
            "cyclesCompleted": self.cycles_completed,
            "cyclesSkipped": self.cycles_skipped,
            "lastCleanup": self.last_cleanup_at.isoformat() if self.last_cleanup_at else None,
            "lastReport": self.last_report.to_dict() if self.last_report else None,
            "lastError": self.last_error,
        }

    async def get_cleanup_stats(self) -> Dict[str, Any]:
        counts = self.store.posting_counts(self.clock())
        return {
            "totalJobs": counts["total"],
            "activeJobs": counts["active"],
            "inactiveJobs": counts["inactive"],
            "expiredJobs": counts["expired"],
            "invalidJobs": counts["invalid"],
            "recentlyValidated": counts["recently_validated"],
            "lastCleanup": self.last_cleanup_at.isoformat() if self.last_cleanup_at else None,
        }
