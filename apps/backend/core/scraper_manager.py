"""
Scrape orchestration across registered source adapters.

One run fans out to every requested source concurrently. Sources are isolated:
a failing source becomes an entry in the result's errors and the others still
persist their postings. Postings are deduplicated by fingerprint within a
recency window, so re-scraping a listing refreshes the existing row.
"""
import math
import time
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import metrics
from core.broadcast import Broadcaster
from core.errors import ParseError, PersistenceError, SourceFailure, SourceUnavailable
from core.job_queue import JobQueueManager, PRIORITY_BY_NAME, PRIORITY_NORMAL
from core.models import JobPosting, JobSource, QueueTask, ScrapeRunLog, utcnow
from core.schedule import next_run_time
from core.store import JobStore
from scrapers.base import RawPosting, SearchQuery, SourceAdapter
from scrapers.registry import AdapterRegistry

logger = logging.getLogger(__name__)

SCHEDULED_SCRAPING = "scheduled_scraping"

HEALTH_WARNING_ERROR_RATE = 0.10
HEALTH_CRITICAL_ERROR_RATE = 0.30
HEALTH_ORDER = ["good", "warning", "critical"]


def classify_health(runs: int, errors: int) -> str:
    if runs == 0:
        return "good"
    error_rate = errors / runs
    if error_rate < HEALTH_WARNING_ERROR_RATE:
        return "good"
    if error_rate < HEALTH_CRITICAL_ERROR_RATE:
        return "warning"
    return "critical"


@dataclass
class ScrapingConfig:
    search_query: str
    location: str
    sources: List[str]
    limit: int = 50
    priority: str = "normal"
    schedule: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "searchQuery": self.search_query,
            "location": self.location,
            "limit": self.limit,
            "sources": list(self.sources),
            "priority": self.priority,
            "schedule": self.schedule,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ScrapingConfig":
        return cls(
            search_query=payload["searchQuery"],
            location=payload["location"],
            sources=list(payload["sources"]),
            limit=payload.get("limit", 50),
            priority=payload.get("priority", "normal"),
            schedule=payload.get("schedule"),
        )


@dataclass
class ScrapeResult:
    run_id: str
    jobs_found: int = 0
    jobs_created: int = 0
    jobs_updated: int = 0
    jobs_skipped: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    sources: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "jobsFound": self.jobs_found,
            "jobsCreated": self.jobs_created,
            "jobsUpdated": self.jobs_updated,
            "jobsSkipped": self.jobs_skipped,
            "errors": self.errors,
            "sources": self.sources,
            "durationMs": self.duration_ms,
        }


class SourceStats:
    """Running success/error counters for one source."""

    def __init__(self):
        self.runs = 0
        self.successes = 0
        self.errors = 0
        self.last_success_at: Optional[datetime] = None
        self.last_error_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    def record_success(self, at: datetime):
        self.runs += 1
        self.successes += 1
        self.last_success_at = at

    def record_error(self, at: datetime, message: str):
        self.runs += 1
        self.errors += 1
        self.last_error_at = at
        self.last_error = message

    @property
    def error_rate(self) -> float:
        return self.errors / self.runs if self.runs else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runs": self.runs,
            "successes": self.successes,
            "errors": self.errors,
            "errorRate": round(self.error_rate, 3),
            "lastSuccessAt": self.last_success_at.isoformat() if self.last_success_at else None,
            "lastErrorAt": self.last_error_at.isoformat() if self.last_error_at else None,
            "lastError": self.last_error,
            "health": classify_health(self.runs, self.errors),
        }


class ScraperManager:
    def __init__(
        self,
        store: JobStore,
        registry: AdapterRegistry,
        broadcaster: Optional[Broadcaster] = None,
        queue: Optional[JobQueueManager] = None,
        clock: Callable[[], datetime] = utcnow,
        source_timeout: float = 60.0,
        max_concurrent_sources: int = 3,
        dedup_window_days: int = 30,
    ):
        self.store = store
        self.registry = registry
        self.broadcaster = broadcaster
        self.queue = queue
        self.clock = clock
        self.source_timeout = source_timeout
        self.max_concurrent_sources = max(1, max_concurrent_sources)
        self.dedup_window_days = dedup_window_days

        self._source_stats: Dict[str, SourceStats] = {}
        self.last_run_at: Optional[datetime] = None

    def _stats_for(self, name: str) -> SourceStats:
        if name not in self._source_stats:
            self._source_stats[name] = SourceStats()
        return self._source_stats[name]

    async def _fetch_source(
        self,
        adapter: SourceAdapter,
        query: SearchQuery,
        semaphore: asyncio.Semaphore,
    ) -> Tuple[List[RawPosting], Optional[SourceFailure]]:
        async with semaphore:
            try:
                raws = await asyncio.wait_for(adapter.fetch(query), timeout=self.source_timeout)
                return raws, None
            except asyncio.TimeoutError:
                return [], SourceUnavailable(adapter.name, f"Timed out after {self.source_timeout}s")
            except SourceFailure as e:
                return [], e
            except Exception as e:
                logger.error(f"[scraper] Unexpected error from {adapter.name}: {e}", exc_info=True)
                return [], SourceUnavailable(adapter.name, str(e))

    def _persist(self, posting: JobPosting) -> str:
        """Insert or refresh one posting. Returns 'created' or 'updated'."""
        since = self.clock() - timedelta(days=self.dedup_window_days)
        existing = self.store.find_recent_by_fingerprint(posting.fingerprint, since)
        if existing is None:
            self.store.insert_posting(posting)
            return "created"

        fields = {
            "description": posting.description or existing.description,
            "salary_min": posting.salary_min if posting.salary_min is not None else existing.salary_min,
            "salary_max": posting.salary_max if posting.salary_max is not None else existing.salary_max,
            "requirements": posting.requirements or existing.requirements,
            "skills": posting.skills or existing.skills,
            "apply_url": posting.apply_url or existing.apply_url,
            "last_scraped": posting.last_scraped,
            "expires_at": posting.expires_at,
        }
        self.store.update_posting(existing.id, fields)
        return "updated"

    def _write_run_log(self, writer: Callable[[ScrapeRunLog], None], log: ScrapeRunLog):
        try:
            writer(log)
        except Exception as e:
            logger.warning(f"[scraper] Failed to write run log {log.id}: {e}")

    async def scrape_jobs_with_config(self, config: ScrapingConfig) -> ScrapeResult:
        """
        Run one scrape across config.sources and persist the results.

        Raises:
            PersistenceError: the store failed while saving postings
        """
        names = list(dict.fromkeys(config.sources))
        if not names:
            raise ValueError("At least one source is required")

        started = time.time()
        now = self.clock()
        per_source_limit = max(1, math.ceil(config.limit / len(names)))
        query = SearchQuery(keywords=config.search_query, location=config.location, limit=per_source_limit)

        run_log = ScrapeRunLog(query=config.to_payload(), started_at=now)
        result = ScrapeResult(run_id=run_log.id)
        self._write_run_log(self.store.insert_run_log, run_log)

        logger.info(
            f"[scraper] Run {run_log.id}: '{config.search_query}' in '{config.location}' "
            f"from {names} ({per_source_limit} per source)"
        )

        failures: Dict[str, SourceFailure] = {}
        runnable: List[Tuple[SourceAdapter, JobSource]] = []
        try:
            for name in names:
                adapter = self.registry.get(name)
                if adapter is None:
                    failures[name] = SourceUnavailable(name, "No adapter registered for source")
                    continue
                source = self.store.ensure_source(name, adapter.base_url)
                if not source.is_active:
                    failures[name] = SourceUnavailable(name, "Source is deactivated")
                    continue
                runnable.append((adapter, source))

            semaphore = asyncio.Semaphore(self.max_concurrent_sources)
            fetched = await asyncio.gather(
                *(self._fetch_source(adapter, query, semaphore) for adapter, _ in runnable)
            )

            for (adapter, source), (raws, error) in zip(runnable, fetched):
                if error is not None:
                    failures[adapter.name] = error
                    continue
                result.sources[adapter.name] = self._store_postings(adapter, source, raws[:per_source_limit], result)
                self._stats_for(adapter.name).record_success(self.clock())
        except PersistenceError:
            run_log.status = "failed"
            run_log.completed_at = self.clock()
            run_log.errors = [{"source": None, "cause": "PersistenceError", "message": "Store unavailable"}]
            self._write_run_log(self.store.complete_run_log, run_log)
            logger.error(f"[scraper] Run {run_log.id} aborted: store unavailable")
            raise

        for name, error in failures.items():
            logger.warning(f"[scraper] {error.cause} from {name}: {error.message}")
            result.errors.append(error.to_dict())
            result.sources[name] = {"status": "failed", "cause": error.cause, "error": error.message}
            self._stats_for(name).record_error(self.clock(), error.message)

        result.duration_ms = int((time.time() - started) * 1000)
        self.last_run_at = self.clock()

        if result.errors and len(failures) == len(names):
            run_log.status = "failed"
        elif result.errors:
            run_log.status = "partial"
        else:
            run_log.status = "ok"
        run_log.completed_at = self.last_run_at
        run_log.jobs_found = result.jobs_found
        run_log.jobs_created = result.jobs_created
        run_log.jobs_updated = result.jobs_updated
        run_log.jobs_skipped = result.jobs_skipped
        run_log.sources = result.sources
        run_log.errors = result.errors
        self._write_run_log(self.store.complete_run_log, run_log)

        metrics.incr_inserted(result.jobs_created)
        metrics.incr_updated(result.jobs_updated)
        metrics.incr_skipped(result.jobs_skipped)
        metrics.incr_failed(len(result.errors))

        logger.info(
            f"[scraper] Run {run_log.id} {run_log.status}: found={result.jobs_found} "
            f"created={result.jobs_created} updated={result.jobs_updated} "
            f"skipped={result.jobs_skipped} errors={len(result.errors)} ({result.duration_ms}ms)"
        )

        if self.broadcaster is not None:
            await self.broadcaster.publish("SCRAPE_SUMMARY", {**result.to_dict(), "status": run_log.status})

        return result

    def _store_postings(
        self,
        adapter: SourceAdapter,
        source: JobSource,
        raws: List[RawPosting],
        result: ScrapeResult,
    ) -> Dict[str, Any]:
        counts = {"status": "ok", "found": len(raws), "created": 0, "updated": 0, "skipped": 0}
        for raw in raws:
            try:
                posting = adapter.normalize(raw, source_id=source.id, now=self.clock())
            except (ParseError, ValueError) as e:
                logger.debug(f"[scraper] Skipping posting from {adapter.name}: {e}")
                counts["skipped"] += 1
                continue
            counts[self._persist(posting)] += 1

        result.jobs_found += counts["found"]
        result.jobs_created += counts["created"]
        result.jobs_updated += counts["updated"]
        result.jobs_skipped += counts["skipped"]
        return counts

    # Scheduling

    async def schedule_scraping(self, config: ScrapingConfig) -> QueueTask:
        """Enqueue the next occurrence of a cron-scheduled scrape."""
        if self.queue is None:
            raise RuntimeError("Scheduling requires a job queue")
        if not config.schedule:
            raise ValueError("Config has no schedule")

        run_at = next_run_time(config.schedule, self.clock())
        task = await self.queue.admit_job(
            SCHEDULED_SCRAPING,
            config.to_payload(),
            priority=PRIORITY_BY_NAME.get(config.priority, PRIORITY_NORMAL),
            scheduled_for=run_at,
        )
        logger.info(f"[scraper] Scheduled '{config.search_query}' ({config.schedule}) for {run_at.isoformat()}")
        return task

    async def handle_scheduled_scraping(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Queue handler: run the scrape, then enqueue the next cron occurrence."""
        config = ScrapingConfig.from_payload(payload)
        result = await self.scrape_jobs_with_config(config)
        outcome = result.to_dict()

        if config.schedule and self.queue is not None:
            try:
                next_task = await self.schedule_scraping(config)
                outcome["nextTaskId"] = next_task.id
            except Exception as e:
                logger.error(f"[scraper] Could not schedule next run of '{config.search_query}': {e}")
        return outcome

    # Stats

    async def get_scraping_stats(self) -> Dict[str, Any]:
        now = self.clock()
        counts = self.store.posting_counts(now)
        recent_runs = self.store.recent_run_logs(10)

        sources = {name: self._stats_for(name).to_dict() for name in self.registry.names()}
        for name, stats in self._source_stats.items():
            sources.setdefault(name, stats.to_dict())

        worst = "good"
        for stats in sources.values():
            if HEALTH_ORDER.index(stats["health"]) > HEALTH_ORDER.index(worst):
                worst = stats["health"]

        last_scraped = counts.get("last_scraped")
        return {
            "totalJobs": counts.get("scraped", 0),
            "lastScraped": last_scraped.isoformat() if last_scraped else None,
            "lastRunAt": self.last_run_at.isoformat() if self.last_run_at else None,
            "health": worst,
            "sources": sources,
            "recentRuns": [log.to_dict() for log in recent_runs],
        }
