#!/usr/bin/env python3
"""
Trigger a job cleanup cycle through the API.

Intended for cron: purges expired postings and re-validates a batch of
scraped ones. Exits non-zero when the API rejects the request.

Environment:
  JOBLINK_API_URL     base URL of the pipeline API (default http://localhost:8000)
  JOBLINK_API_TOKEN   admin bearer token
"""
import os
import sys
import argparse
import logging

import httpx
from dotenv import load_dotenv

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger("cleanup_jobs")


def run_cleanup(api_url: str, token: str, dry_run: bool = False, timeout: float = 300.0) -> dict:
    """POST /api/jobs/cleanup and return the response body."""
    url = f"{api_url.rstrip('/')}/api/jobs/cleanup"
    headers = {"Authorization": f"Bearer {token}"}

    with httpx.Client(timeout=timeout) as client:
        response = client.post(url, json={"dryRun": dry_run}, headers=headers)

    try:
        body = response.json()
    except ValueError:
        body = {"success": False, "error": response.text[:200]}

    if response.status_code != 200:
        raise RuntimeError(f"Cleanup failed with HTTP {response.status_code}: {body.get('error')}")
    return body


def main():
    parser = argparse.ArgumentParser(
        description="Purge expired jobs and re-validate scraped postings",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python cleanup_jobs.py              # Run cleanup
  python cleanup_jobs.py --dry-run    # Report what would be removed
        """
    )
    parser.add_argument("--dry-run", action="store_true", help="Count without modifying postings")
    parser.add_argument("--verbose", action="store_true", help="Print the full cleanup report")
    args = parser.parse_args()

    load_dotenv()

    api_url = os.getenv("JOBLINK_API_URL", "http://localhost:8000")
    token = os.getenv("JOBLINK_API_TOKEN")
    if not token:
        logger.error("JOBLINK_API_TOKEN environment variable is not set")
        sys.exit(1)

    try:
        body = run_cleanup(api_url, token, dry_run=args.dry_run)
    except (httpx.HTTPError, RuntimeError) as e:
        logger.error(f"{e}")
        sys.exit(1)

    logger.info(body.get("message", "Cleanup complete"))
    if args.verbose:
        for key, value in (body.get("data") or {}).items():
            logger.info(f"  {key:20} {value}")


if __name__ == "__main__":
    main()
