import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from unittest.mock import MagicMock

import pytest

from core.broadcast import Broadcaster
from core.errors import SourceFailure
from core.memory_store import InMemoryStore
from scrapers.base import RawPosting, SearchQuery, SourceAdapter
from scrapers.registry import AdapterRegistry

START = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class MutableClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeAdapter(SourceAdapter):
    """Adapter returning canned postings, or raising a canned failure."""

    def __init__(
        self,
        name: str,
        postings: Optional[List[RawPosting]] = None,
        error: Optional[SourceFailure] = None,
        delay: float = 0.0,
    ):
        self.name = name
        self.base_url = f"https://{name}.example.com"
        super().__init__(http_client=MagicMock())
        self.postings = postings or []
        self.error = error
        self.delay = delay
        self.queries: List[SearchQuery] = []

    async def fetch(self, query: SearchQuery) -> List[RawPosting]:
        self.queries.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.postings[:query.limit]


def raw_posting(title: str = "Python Developer", company: str = "Acme", location: str = "Berlin", **kwargs) -> RawPosting:
    kwargs.setdefault("description", "Experience with Python and Docker required.")
    kwargs.setdefault("apply_url", f"https://jobs.example.com/{title.lower().replace(' ', '-')}")
    return RawPosting(title=title, company=company, location=location, **kwargs)


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def broadcaster():
    return Broadcaster()


@pytest.fixture
def alpha():
    return FakeAdapter("alpha", [raw_posting("Backend Engineer"), raw_posting("Data Analyst", company="Globex")])


@pytest.fixture
def beta():
    return FakeAdapter("beta", [raw_posting("Frontend Developer", company="Initech", location="Remote")])


@pytest.fixture
def registry(alpha, beta):
    registry = AdapterRegistry()
    registry.register(alpha)
    registry.register(beta)
    return registry


@pytest.fixture(autouse=True)
def metrics_file(tmp_path, monkeypatch):
    """Keep JSON-mode metrics out of the shared temp dir."""
    monkeypatch.setattr("metrics.METRICS_FILE", tmp_path / "metrics.json")
    return tmp_path / "metrics.json"
