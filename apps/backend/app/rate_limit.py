"""
IP-based rate limiting for read-only endpoints.

Trigger endpoints are throttled by RateLimitManager instead, which keeps its
windows in the job store.
"""
import os
from slowapi import Limiter
from slowapi.util import get_remote_address

RATE_LIMIT_STATS = os.getenv(
    "JOBLINK_RATE_LIMIT_STATS",
    "240/minute" if os.getenv("JOBLINK_ENV") == "dev" else "120/minute",
)

limiter = Limiter(key_func=get_remote_address)
