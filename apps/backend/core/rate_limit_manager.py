"""
Fixed-window rate limiting keyed by (identity, category).

The read-check-increment of a window runs inside JobStore.transform_rate_limit,
so concurrent requests for the same key never over-admit. When the store is
down the limiter fails open: availability of the trigger endpoints wins over
strict throttling.
"""
import math
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from app.config import RatePolicy
from core.models import RateLimitRecord, utcnow
from core.store import JobStore

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "general"


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: datetime
    limit: int
    retry_after: Optional[int] = None
    fail_open: bool = False

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "limit": self.limit,
            "resetTime": self.reset_time.isoformat(),
            "retryAfter": self.retry_after,
        }


class RateLimitManager:
    def __init__(
        self,
        store: JobStore,
        policies: Dict[str, RatePolicy],
        clock: Callable[[], datetime] = utcnow,
    ):
        if DEFAULT_CATEGORY not in policies:
            raise ValueError(f"Rate limit policies must define '{DEFAULT_CATEGORY}'")
        self.store = store
        self.policies = policies
        self.clock = clock

    def policy_for(self, category: str) -> RatePolicy:
        return self.policies.get(category) or self.policies[DEFAULT_CATEGORY]

    async def check_limit(self, identity: str, category: str) -> RateLimitResult:
        """Admit or deny one request for ``identity`` in ``category``."""
        policy = self.policy_for(category)
        window = timedelta(seconds=policy.window_seconds)
        now = self.clock()

        def apply(record: Optional[RateLimitRecord]) -> Tuple[Optional[RateLimitRecord], RateLimitResult]:
            if record is None or record.window_start + window <= now:
                fresh = RateLimitRecord(identity=identity, category=category, count=1, window_start=now)
                return fresh, RateLimitResult(
                    allowed=True,
                    remaining=policy.max_requests - 1,
                    reset_time=now + window,
                    limit=policy.max_requests,
                )

            reset_time = record.window_start + window
            if record.count < policy.max_requests:
                record.count += 1
                return record, RateLimitResult(
                    allowed=True,
                    remaining=policy.max_requests - record.count,
                    reset_time=reset_time,
                    limit=policy.max_requests,
                )

            retry_after = max(1, math.ceil((reset_time - now).total_seconds()))
            return None, RateLimitResult(
                allowed=False,
                remaining=0,
                reset_time=reset_time,
                limit=policy.max_requests,
                retry_after=retry_after,
            )

        try:
            result = self.store.transform_rate_limit(identity, category, apply)
        except Exception as e:
            logger.error(f"[rate_limit] Check failed for {identity}/{category}, allowing request: {e}")
            return RateLimitResult(
                allowed=True,
                remaining=policy.max_requests,
                reset_time=now + window,
                limit=policy.max_requests,
                fail_open=True,
            )

        if not result.allowed:
            logger.info(
                f"[rate_limit] Blocked {identity} for {category} "
                f"(limit {policy.max_requests}, retry in {result.retry_after}s)"
            )
        return result

    async def log_request(self, identity: str, category: str, outcome: str) -> None:
        """Append an audit event. Never raises."""
        try:
            self.store.insert_rate_limit_event(identity, category, outcome, self.clock())
        except Exception as e:
            logger.warning(f"[rate_limit] Failed to log {outcome} request for {identity}/{category}: {e}")

    async def cleanup_old_records(self, max_age_hours: int = 24) -> int:
        cutoff = self.clock() - timedelta(hours=max_age_hours)
        try:
            removed = self.store.delete_rate_limits(cutoff)
        except Exception as e:
            logger.error(f"[rate_limit] Cleanup failed: {e}")
            return 0
        if removed:
            logger.info(f"[rate_limit] Removed {removed} rate limit records older than {max_age_hours}h")
        return removed

    async def get_stats(self, top_n: int = 10) -> dict:
        try:
            totals = self.store.rate_limit_event_totals()
            top = self.store.top_rate_limit_records(top_n)
        except Exception as e:
            logger.error(f"[rate_limit] Failed to load stats: {e}")
            return {"totalRequests": 0, "blockedRequests": 0, "topOffenders": []}

        return {
            "totalRequests": totals["total"],
            "blockedRequests": totals["blocked"],
            "topOffenders": [
                {"identity": r.identity, "category": r.category, "count": r.count}
                for r in top
            ],
        }

    async def get_limit_status(self, identity: str) -> Dict[str, dict]:
        """Current usage of every configured category for one identity."""
        now = self.clock()
        try:
            records = {r.category: r for r in self.store.rate_limit_records_for(identity)}
        except Exception as e:
            logger.error(f"[rate_limit] Failed to load status for {identity}: {e}")
            records = {}

        status: Dict[str, dict] = {}
        for category, policy in self.policies.items():
            window = timedelta(seconds=policy.window_seconds)
            record = records.get(category)
            if record is None or record.window_start + window <= now:
                status[category] = {"used": 0, "limit": policy.max_requests, "resetTime": None}
            else:
                status[category] = {
                    "used": record.count,
                    "limit": policy.max_requests,
                    "resetTime": (record.window_start + window).isoformat(),
                }
        return status
