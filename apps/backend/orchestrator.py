"""
Pipeline orchestrator: owns the shared store and managers and runs their
background loops.

Background work:
- ValidityMonitor timer (purge / re-validate / summarize)
- JobQueueManager worker (scheduled scraping runs)
- rate-limit record cleanup timer
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from app.config import Settings, settings as default_settings
from app.db_config import db_config
from core.broadcast import Broadcaster
from core.job_queue import JobQueueManager
from core.link_validator import LinkValidator
from core.memory_store import InMemoryStore
from core.models import utcnow
from core.rate_limit_manager import RateLimitManager
from core.scraper_manager import SCHEDULED_SCRAPING, ScraperManager
from core.store import JobStore, PostgresStore
from core.validity_monitor import ValidityMonitor
from scrapers.registry import AdapterRegistry, get_adapter_registry

logger = logging.getLogger(__name__)


def build_store() -> JobStore:
    """PostgreSQL when DATABASE_URL is configured, otherwise in-memory."""
    conn_params = db_config.get_connection_params()
    if conn_params:
        return PostgresStore(conn_params)
    logger.warning("[orchestrator] No database configured, using in-memory store (state is not persisted)")
    return InMemoryStore()


class PipelineOrchestrator:
    def __init__(
        self,
        store: Optional[JobStore] = None,
        registry: Optional[AdapterRegistry] = None,
        broadcaster: Optional[Broadcaster] = None,
        link_validator: Optional[LinkValidator] = None,
        config: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or default_settings
        self.store = store if store is not None else build_store()
        self.broadcaster = broadcaster or Broadcaster()

        if link_validator is None and self.config.validate_links:
            link_validator = LinkValidator()

        self.rate_limiter = RateLimitManager(self.store, self.config.rate_policies(), clock=clock)
        self.queue = JobQueueManager(
            self.store,
            clock=clock,
            max_attempts=self.config.queue_max_attempts,
            retry_base_seconds=self.config.queue_retry_base_seconds,
            retry_max_seconds=self.config.queue_retry_max_seconds,
            soft_limit=self.config.queue_soft_limit,
            hard_limit=self.config.queue_hard_limit,
            defer_seconds=self.config.queue_defer_seconds,
            poll_seconds=self.config.queue_poll_seconds,
            lease_seconds=self.config.queue_lease_seconds,
        )
        self.scraper = ScraperManager(
            self.store,
            registry or get_adapter_registry(),
            broadcaster=self.broadcaster,
            queue=self.queue,
            clock=clock,
            source_timeout=self.config.source_timeout_seconds,
            max_concurrent_sources=self.config.max_concurrent_sources,
            dedup_window_days=self.config.dedup_window_days,
        )
        self.monitor = ValidityMonitor(
            self.store,
            broadcaster=self.broadcaster,
            link_validator=link_validator,
            clock=clock,
            interval_seconds=self.config.monitor_interval_seconds,
            batch_size=self.config.monitor_batch_size,
            revalidate_after_days=self.config.revalidate_after_days,
            stale_after_days=self.config.stale_after_days,
            check_delay_seconds=self.config.validation_delay_seconds,
        )
        self.queue.register_handler(SCHEDULED_SCRAPING, self.scraper.handle_scheduled_scraping)

        self.running = False
        self._stop_event: Optional[asyncio.Event] = None
        self._cleanup_task: Optional[asyncio.Task] = None

    @property
    def store_kind(self) -> str:
        return "postgres" if isinstance(self.store, PostgresStore) else "memory"

    async def _rate_limit_cleanup_loop(self):
        interval = self.config.rate_limit_cleanup_interval_seconds
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                await self.rate_limiter.cleanup_old_records(self.config.rate_limit_record_max_age_hours)

    async def start(self):
        """Start background loops"""
        if self.running:
            return
        self._stop_event = asyncio.Event()
        await self.monitor.start()
        await self.queue.start()
        self._cleanup_task = asyncio.create_task(self._rate_limit_cleanup_loop())
        self.running = True
        logger.info(f"[orchestrator] Started (store={self.store_kind})")

    async def stop(self):
        """Stop background loops, letting in-flight work finish"""
        if not self.running:
            return
        self._stop_event.set()
        await self.monitor.stop()
        await self.queue.stop()
        if self._cleanup_task:
            await self._cleanup_task
            self._cleanup_task = None
        self.running = False
        logger.info("[orchestrator] Stopped")


# Global orchestrator instance
_orchestrator: Optional[PipelineOrchestrator] = None


def get_orchestrator() -> PipelineOrchestrator:
    """Get or create orchestrator instance"""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = PipelineOrchestrator()
    return _orchestrator

