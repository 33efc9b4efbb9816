import os
import logging
from typing import Dict

from limits import parse as parse_rate

from app.db_config import db_config

try:
    import psycopg2
except ImportError:
    psycopg2 = None

logger = logging.getLogger(__name__)

# Monitor interval presets (seconds)
MONITOR_PROFILES = {
    "aggressive": 1,
    "standard": 300,
    "relaxed": 3600,
}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"[config] {name}={raw!r} is not an integer, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"[config] {name}={raw!r} is not a number, using {default}")
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in ("1", "true", "yes", "on")


class RatePolicy:
    """Window and request budget for one rate-limit category."""

    def __init__(self, category: str, rate: str):
        item = parse_rate(rate)
        self.category = category
        self.rate = rate
        self.max_requests = item.amount
        self.window_seconds = item.get_expiry()

    def __repr__(self):
        return f"RatePolicy({self.category!r}, {self.rate!r})"


class Settings:
    """Pipeline settings read from JOBLINK_* environment variables."""

    def __init__(self):
        self.env = os.getenv("JOBLINK_ENV", "production").lower()

        # Rate limiting
        self.rate_limit_rates = {
            "scraping": os.getenv("JOBLINK_RATE_LIMIT_SCRAPING", "10/hour"),
            "general": os.getenv("JOBLINK_RATE_LIMIT_GENERAL", "100/15 minutes"),
            "auth": os.getenv("JOBLINK_RATE_LIMIT_AUTH", "5/15 minutes"),
        }
        self.rate_limit_cleanup_interval_seconds = _env_int("JOBLINK_RATE_LIMIT_CLEANUP_SECONDS", 3600)
        self.rate_limit_record_max_age_hours = _env_int("JOBLINK_RATE_LIMIT_MAX_AGE_HOURS", 24)

        # Validity monitor
        profile = os.getenv("JOBLINK_MONITOR_PROFILE", "standard").lower()
        if profile not in MONITOR_PROFILES:
            logger.warning(f"[config] Unknown monitor profile {profile!r}, using 'standard'")
            profile = "standard"
        self.monitor_profile = profile
        self.monitor_interval_seconds = _env_float(
            "JOBLINK_MONITOR_INTERVAL_SECONDS", MONITOR_PROFILES[profile]
        )
        self.monitor_batch_size = _env_int("JOBLINK_MONITOR_BATCH_SIZE", 50)
        self.revalidate_after_days = _env_int("JOBLINK_REVALIDATE_AFTER_DAYS", 7)
        self.stale_after_days = _env_int("JOBLINK_STALE_AFTER_DAYS", 90)
        self.validation_delay_seconds = _env_int("JOBLINK_VALIDATION_DELAY_MS", 100) / 1000.0
        self.validate_links = _env_bool("JOBLINK_VALIDATE_LINKS", False)

        # Scraping
        self.source_timeout_seconds = _env_float("JOBLINK_SOURCE_TIMEOUT_SECONDS", 60.0)
        self.max_concurrent_sources = _env_int("JOBLINK_MAX_CONCURRENT_SOURCES", 3)
        self.dedup_window_days = _env_int("JOBLINK_DEDUP_WINDOW_DAYS", 30)
        self.posting_ttl_days = _env_int("JOBLINK_POSTING_TTL_DAYS", 60)
        self.application_deadline_days = _env_int("JOBLINK_APPLICATION_DEADLINE_DAYS", 30)

        # Queue
        self.queue_poll_seconds = _env_float("JOBLINK_QUEUE_POLL_SECONDS", 5.0)
        self.queue_max_attempts = _env_int("JOBLINK_QUEUE_MAX_ATTEMPTS", 3)
        self.queue_retry_base_seconds = _env_int("JOBLINK_QUEUE_RETRY_BASE_SECONDS", 60)
        self.queue_retry_max_seconds = _env_int("JOBLINK_QUEUE_RETRY_MAX_SECONDS", 3600)
        self.queue_soft_limit = _env_int("JOBLINK_QUEUE_SOFT_LIMIT", 100)
        self.queue_hard_limit = _env_int("JOBLINK_QUEUE_HARD_LIMIT", 500)
        self.queue_defer_seconds = _env_int("JOBLINK_QUEUE_DEFER_SECONDS", 900)
        self.queue_lease_seconds = _env_int("JOBLINK_QUEUE_LEASE_SECONDS", 1800)

        self.disable_scheduler = _env_bool("JOBLINK_DISABLE_SCHEDULER", False)

    @property
    def is_dev(self) -> bool:
        return self.env == "dev"

    def rate_policies(self) -> Dict[str, RatePolicy]:
        return {name: RatePolicy(name, rate) for name, rate in self.rate_limit_rates.items()}


settings = Settings()


class Capabilities:
    @staticmethod
    def is_db_enabled() -> bool:
        return db_config.is_db_enabled

    @staticmethod
    def check_db_connection() -> bool:
        """Verify database connection with a trivial query"""
        if not Capabilities.is_db_enabled():
            return False

        if not psycopg2:
            return False

        conn_params = db_config.get_connection_params()
        if not conn_params:
            return False

        try:
            conn = psycopg2.connect(**conn_params, connect_timeout=1)
            cursor = conn.cursor()
            cursor.execute("SELECT 1")
            cursor.fetchone()
            cursor.close()
            conn.close()
            return True
        except Exception:
            return False

    @classmethod
    def get_status(cls, orchestrator=None) -> dict:
        db = cls.check_db_connection()
        scheduler = bool(orchestrator and orchestrator.running)

        if db and scheduler:
            status = "green"
        else:
            status = "amber"

        return {
            "status": status,
            "components": {
                "db": db,
                "scheduler": scheduler,
                "store": orchestrator.store_kind if orchestrator else None,
            },
        }
