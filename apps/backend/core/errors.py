"""
Exception taxonomy for the ingestion pipeline.

Source failures are isolated per adapter and never abort a scrape run.
PersistenceError means the store is unreachable: the rate limiter fails open,
everything else aborts the current unit of work.
"""
from datetime import datetime
from typing import Optional


class PipelineError(Exception):
    """Base class for pipeline errors."""


class SourceFailure(PipelineError):
    """An external job source could not be scraped."""

    cause = "SourceFailure"

    def __init__(self, source: str, message: str):
        super().__init__(f"{source}: {message}")
        self.source = source
        self.message = message

    def to_dict(self) -> dict:
        return {"source": self.source, "cause": self.cause, "message": self.message}


class SourceUnavailable(SourceFailure):
    """Network error, timeout, or non-success HTTP status."""

    cause = "SourceUnavailable"


class ParseError(SourceFailure):
    """The source responded but the payload could not be understood."""

    cause = "ParseError"


class RateLimitedBySource(SourceFailure):
    """The source throttled us (HTTP 429 or a captcha page)."""

    cause = "RateLimitedBySource"

    def __init__(self, source: str, message: str, retry_after: Optional[int] = None):
        super().__init__(source, message)
        self.retry_after = retry_after


class PersistenceError(PipelineError):
    """The job store is unavailable or rejected a write."""


class QueueBackpressure(PipelineError):
    """The task queue is too deep to admit more low-priority work."""

    def __init__(self, depth: int, retry_after: int):
        super().__init__(f"Queue depth {depth} exceeds admission limit")
        self.depth = depth
        self.retry_after = retry_after


class RateLimited(PipelineError):
    """A caller exhausted its request budget for a rate-limit category."""

    def __init__(self, category: str, retry_after: int, reset_time: datetime):
        super().__init__(f"Rate limit exceeded for {category}")
        self.category = category
        self.retry_after = retry_after
        self.reset_time = reset_time
