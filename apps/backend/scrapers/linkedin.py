"""
LinkedIn adapter using the public guest job-search endpoint.

The endpoint returns an HTML fragment of <li> cards, 25 per page, and an
empty body once results are exhausted.
"""
import math
import re
from typing import List, Optional

from bs4 import BeautifulSoup

from core.errors import ParseError
from .base import RawPosting, SearchQuery, SourceAdapter

PAGE_SIZE = 25
MAX_PAGES = 4

_URN_ID = re.compile(r"jobPosting:(\d+)")


def _text(node) -> Optional[str]:
    if node is None:
        return None
    value = node.get_text(" ", strip=True)
    return value or None


class LinkedInAdapter(SourceAdapter):
    name = "linkedin"
    base_url = "https://www.linkedin.com"
    search_path = "/jobs-guest/jobs/api/seeMoreJobPostings/search"

    async def fetch(self, query: SearchQuery) -> List[RawPosting]:
        postings: List[RawPosting] = []
        pages = min(MAX_PAGES, max(1, math.ceil(query.limit / PAGE_SIZE)))

        for page in range(pages):
            html = await self._get_page(
                f"{self.base_url}{self.search_path}",
                {"keywords": query.keywords, "location": query.location, "start": page * PAGE_SIZE},
            )
            batch = self.parse_results(html)
            postings.extend(batch)
            if len(batch) < PAGE_SIZE or len(postings) >= query.limit:
                break

        self.logger.info(f"[linkedin] {len(postings)} postings for '{query.keywords}' in '{query.location}'")
        return postings[:query.limit]

    def parse_results(self, html: str) -> List[RawPosting]:
        if not html or not html.strip():
            return []
        try:
            soup = BeautifulSoup(html, "lxml")
        except Exception as e:
            raise ParseError(self.name, f"Unparseable HTML: {e}") from e

        cards = soup.select("div.base-search-card") or soup.select("div.base-card")
        if not cards:
            if soup.find("li") is None:
                return []
            raise ParseError(self.name, "Result items without job cards")

        postings = []
        for card in cards:
            title = _text(card.select_one(".base-search-card__title"))
            if not title:
                continue

            link = card.select_one("a.base-card__full-link") or card.select_one("a[href]")
            apply_url = link["href"].split("?")[0] if link is not None and link.get("href") else None

            external_id = None
            urn = card.get("data-entity-urn")
            if urn:
                match = _URN_ID.search(urn)
                external_id = match.group(1) if match else None

            posted = card.select_one("time")
            postings.append(
                RawPosting(
                    title=title,
                    company=_text(card.select_one(".base-search-card__subtitle")) or "",
                    location=_text(card.select_one(".job-search-card__location")) or "",
                    salary=_text(card.select_one(".job-search-card__salary-info")),
                    posted_date=posted.get("datetime") if posted is not None else None,
                    apply_url=apply_url,
                    external_id=external_id,
                )
            )
        return postings
