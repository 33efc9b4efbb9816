"""
Job cleanup endpoints: run a validity cycle on demand and report lifecycle stats.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from app.dependencies import get_pipeline, ok
from app.rate_limit import limiter, RATE_LIMIT_STATS
from orchestrator import PipelineOrchestrator
from security.auth import Principal, admin_required, staff_required

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/jobs/cleanup", tags=["cleanup"])


class CleanupRequest(BaseModel):
    dryRun: bool = False


@router.post("")
async def run_cleanup(
    body: Optional[CleanupRequest] = None,
    principal: Principal = Depends(admin_required),
    pipeline: PipelineOrchestrator = Depends(get_pipeline),
):
    """
    Purge expired postings and re-validate a batch of scraped ones.

    With dryRun the counts are computed without modifying any posting.
    Waits for a cycle already in progress before starting.
    """
    dry_run = body.dryRun if body else False
    logger.info(f"[api/cleanup] Cleanup requested by {principal.user_id} (dryRun={dry_run})")

    report = await pipeline.monitor.run_cycle(dry_run=dry_run)
    data = report.to_dict()
    return ok(data, report.message)


@router.get("")
@limiter.limit(RATE_LIMIT_STATS)
async def cleanup_stats(
    request: Request,
    _: Principal = Depends(staff_required),
    pipeline: PipelineOrchestrator = Depends(get_pipeline),
):
    return ok(await pipeline.monitor.get_cleanup_stats())
