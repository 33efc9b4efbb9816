"""
Indeed search results adapter.

Parses the server-rendered search page. Both the current card layout
(job_seen_beacon) and the older jobsearch-SerpJobCard layout are recognized.
"""
import math
from typing import List, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from core.errors import ParseError
from .base import RawPosting, SearchQuery, SourceAdapter

PAGE_SIZE = 10
MAX_PAGES = 5

NO_RESULTS_MARKERS = ("did not match any jobs", "no jobs found")


def _text(node) -> Optional[str]:
    if node is None:
        return None
    value = node.get_text(" ", strip=True)
    return value or None


class IndeedAdapter(SourceAdapter):
    name = "indeed"
    base_url = "https://www.indeed.com"

    async def fetch(self, query: SearchQuery) -> List[RawPosting]:
        postings: List[RawPosting] = []
        pages = min(MAX_PAGES, max(1, math.ceil(query.limit / PAGE_SIZE)))

        for page in range(pages):
            html = await self._get_page(
                f"{self.base_url}/jobs",
                {"q": query.keywords, "l": query.location, "start": page * PAGE_SIZE},
            )
            batch = self.parse_results(html)
            postings.extend(batch)
            if len(batch) < PAGE_SIZE or len(postings) >= query.limit:
                break

        self.logger.info(f"[indeed] {len(postings)} postings for '{query.keywords}' in '{query.location}'")
        return postings[:query.limit]

    def parse_results(self, html: str) -> List[RawPosting]:
        try:
            soup = BeautifulSoup(html, "lxml")
        except Exception as e:
            raise ParseError(self.name, f"Unparseable HTML: {e}") from e

        cards = soup.select("div.job_seen_beacon") or soup.select("div.jobsearch-SerpJobCard")
        if not cards:
            page_text = soup.get_text(" ", strip=True).lower()
            if any(marker in page_text for marker in NO_RESULTS_MARKERS):
                return []
            raise ParseError(self.name, "No job cards found in search results page")

        postings = []
        for card in cards:
            posting = self._parse_card(card)
            if posting is not None:
                postings.append(posting)
        return postings

    def _parse_card(self, card) -> Optional[RawPosting]:
        title_link = card.select_one("h2.jobTitle a") or card.select_one(".title a")
        title = _text(card.select_one("h2.jobTitle span[title]")) or _text(title_link)
        if not title:
            return None

        job_key = card.get("data-jk") or (title_link.get("data-jk") if title_link else None)
        apply_url = None
        if job_key:
            apply_url = f"{self.base_url}/viewjob?jk={job_key}"
        elif title_link is not None and title_link.get("href"):
            apply_url = urljoin(self.base_url, title_link["href"])

        return RawPosting(
            title=title,
            company=_text(card.select_one('[data-testid="company-name"]')) or _text(card.select_one(".company")) or "",
            location=_text(card.select_one('[data-testid="text-location"]')) or _text(card.select_one(".location")) or "",
            description=_text(card.select_one(".job-snippet")) or _text(card.select_one(".summary")) or "",
            salary=_text(card.select_one(".salary-snippet-container")) or _text(card.select_one(".salary-snippet")),
            job_type=_text(card.select_one(".jobType")) or _text(card.select_one('[data-testid="attribute_snippet_testid"]')),
            posted_date=_text(card.select_one(".date")),
            apply_url=apply_url,
            external_id=job_key,
        )
