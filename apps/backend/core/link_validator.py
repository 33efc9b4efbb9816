"""
Apply-URL checks used during posting re-validation.

Sends a HEAD request (falling back to GET when HEAD is refused) and maps the
outcome onto a validity status.
"""
import logging
from typing import Optional
from urllib.parse import urlparse

from core.models import ValidityStatus
from core.net import HTTPClient

logger = logging.getLogger(__name__)

GONE_STATUS_CODES = {404, 410}
HEAD_UNSUPPORTED_CODES = {403, 405, 501}


def is_well_formed(url: Optional[str]) -> bool:
    if not url or not url.strip():
        return False
    parsed = urlparse(url.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class LinkValidator:
    def __init__(self, http_client: Optional[HTTPClient] = None):
        self.http_client = http_client or HTTPClient(timeout=10.0)

    async def check(self, url: Optional[str]) -> Optional[ValidityStatus]:
        """
        Returns None when the link looks alive, otherwise the status the
        posting should move to. Network errors propagate to the caller.
        """
        if not is_well_formed(url):
            return ValidityStatus.INVALID_URL

        status_code, _ = await self.http_client.head(url)
        if status_code in HEAD_UNSUPPORTED_CODES:
            status_code, _, _ = await self.http_client.fetch(url)

        if status_code in GONE_STATUS_CODES:
            logger.info(f"[link_validator] {url} returned {status_code}")
            return ValidityStatus.NOT_FOUND
        if status_code >= 500:
            logger.warning(f"[link_validator] {url} returned {status_code}, treating as inconclusive")
        return None
