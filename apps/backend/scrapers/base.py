"""
Base adapter interface for external job sources.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from core.errors import ParseError, RateLimitedBySource, SourceUnavailable
from core.models import JobPosting, utcnow
from core.net import HTTPClient, parse_retry_after
from scrapers.normalize import (
    compute_fingerprint,
    detect_remote,
    extract_experience,
    extract_requirements,
    extract_skills,
    normalize_job_type,
    parse_salary,
)

logger = logging.getLogger(__name__)


@dataclass
class SearchQuery:
    keywords: str
    location: str
    limit: int = 25


@dataclass
class RawPosting:
    """A job listing as scraped, before normalization."""
    title: str
    company: str
    location: str
    description: str = ""
    salary: Optional[str] = None
    job_type: Optional[str] = None
    posted_date: Optional[str] = None
    apply_url: Optional[str] = None
    external_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


class SourceAdapter(ABC):
    """
    Fetches and normalizes postings from one external source.

    Subclasses implement fetch(). normalize() has a default implementation
    that most sources can use as is.
    """

    name: str = ""
    base_url: str = ""

    def __init__(
        self,
        http_client: Optional[HTTPClient] = None,
        posting_ttl_days: int = 60,
        deadline_days: int = 30,
    ):
        self.http_client = http_client or HTTPClient()
        self.posting_ttl_days = posting_ttl_days
        self.deadline_days = deadline_days
        self.logger = logging.getLogger(f"{__name__}.{self.name}")

    @abstractmethod
    async def fetch(self, query: SearchQuery) -> List[RawPosting]:
        """
        Fetch up to query.limit postings.

        Raises:
            SourceUnavailable, ParseError, RateLimitedBySource
        """

    async def _get_page(self, url: str, params: Dict[str, Any]) -> str:
        """GET a search page, mapping transport and status failures to source errors."""
        try:
            status, headers, text = await self.http_client.fetch(url, params=params)
        except Exception as e:
            raise SourceUnavailable(self.name, f"Request failed: {e}") from e

        if status == 429:
            raise RateLimitedBySource(self.name, "HTTP 429 from source", parse_retry_after(headers))
        if status >= 400:
            raise SourceUnavailable(self.name, f"HTTP {status} from source")
        if "captcha" in text[:5000].lower():
            raise RateLimitedBySource(self.name, "Captcha challenge returned")
        return text

    def normalize(self, raw: RawPosting, source_id: Optional[str] = None, now: Optional[datetime] = None) -> JobPosting:
        if not raw.title or not raw.title.strip():
            raise ParseError(self.name, "Posting without a title")
        if not raw.company or not raw.company.strip():
            raise ParseError(self.name, f"Posting '{raw.title}' without a company")

        now = now or utcnow()
        title = raw.title.strip()
        company = raw.company.strip()
        location = (raw.location or "").strip() or "Unspecified"
        description = (raw.description or "").strip()
        salary_min, salary_max = parse_salary(raw.salary)

        return JobPosting(
            title=title,
            company_name=company,
            location=location,
            description=description,
            type=normalize_job_type(raw.job_type),
            salary_min=salary_min,
            salary_max=salary_max,
            requirements=extract_requirements(description),
            skills=extract_skills(description),
            experience=extract_experience(title, description),
            is_remote=detect_remote(location, description),
            is_active=True,
            is_scraped=True,
            source_id=source_id,
            apply_url=raw.apply_url,
            external_id=raw.external_id,
            fingerprint=compute_fingerprint(title, company, location),
            last_scraped=now,
            expires_at=now + timedelta(days=self.posting_ttl_days),
            application_deadline=now + timedelta(days=self.deadline_days),
            created_at=now,
        )

    def __repr__(self):
        return f"{self.__class__.__name__}(name={self.name!r})"
