"""
Scraping trigger and status endpoints.
"""
import logging
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from slowapi.util import get_remote_address

import metrics
from app.dependencies import get_pipeline, ok
from app.rate_limit import limiter, RATE_LIMIT_STATS
from core.errors import RateLimited
from core.schedule import next_run_time
from core.scraper_manager import ScrapingConfig
from core.models import utcnow
from orchestrator import PipelineOrchestrator
from security.auth import Principal, admin_required, staff_required

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/scraping", tags=["scraping"])

RATE_LIMIT_CATEGORY = "scraping"


class ScrapingRequest(BaseModel):
    searchQuery: str = Field(..., min_length=1, max_length=100)
    location: str = Field(..., min_length=1, max_length=100)
    limit: int = Field(50, ge=1, le=500)
    sources: List[str] = Field(..., min_length=1)
    priority: Literal["low", "normal", "high"] = "normal"
    schedule: Optional[str] = None

    @field_validator("searchQuery", "location")
    @classmethod
    def not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("schedule")
    @classmethod
    def valid_cron(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        # Raises ValueError for malformed expressions
        next_run_time(value, utcnow())
        return value.strip()


class SourceUpdate(BaseModel):
    isActive: bool


@router.post("")
async def trigger_scraping(
    body: ScrapingRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(staff_required),
    pipeline: PipelineOrchestrator = Depends(get_pipeline),
):
    """
    Run a scrape now, or schedule a recurring one when a cron schedule is given.

    Throttled per client address in the 'scraping' rate-limit category.
    """
    unknown = [s for s in body.sources if s not in pipeline.scraper.registry]
    if unknown:
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "Validation error",
                "details": [
                    {
                        "loc": ["body", "sources"],
                        "msg": f"Unsupported sources: {', '.join(unknown)}",
                        "supported": pipeline.scraper.registry.names(),
                    }
                ],
            },
        )

    identity = get_remote_address(request)
    rate = await pipeline.rate_limiter.check_limit(identity, RATE_LIMIT_CATEGORY)
    if not rate.allowed:
        await pipeline.rate_limiter.log_request(identity, RATE_LIMIT_CATEGORY, "blocked")
        metrics.incr_rate_limited()
        raise RateLimited(RATE_LIMIT_CATEGORY, rate.retry_after, rate.reset_time)

    response.headers["X-RateLimit-Limit"] = str(rate.limit)
    response.headers["X-RateLimit-Remaining"] = str(rate.remaining)

    config = ScrapingConfig(
        search_query=body.searchQuery,
        location=body.location,
        sources=body.sources,
        limit=body.limit,
        priority=body.priority,
        schedule=body.schedule,
    )

    logger.info(
        f"[api/scraping] {principal.user_id} ({principal.role}) requested '{config.search_query}' "
        f"in '{config.location}' from {config.sources}"
    )

    if config.schedule:
        task = await pipeline.scraper.schedule_scraping(config)
        data = {
            "taskId": task.id,
            "type": "scheduled",
            "scheduledFor": task.scheduled_for.isoformat(),
        }
        message = f"Scraping scheduled ({config.schedule})"
    else:
        result = await pipeline.scraper.scrape_jobs_with_config(config)
        data = result.to_dict()
        message = (
            f"Scraped {result.jobs_found} jobs "
            f"({result.jobs_created} new, {result.jobs_updated} updated)"
        )

    await pipeline.rate_limiter.log_request(identity, RATE_LIMIT_CATEGORY, "allowed")
    return ok(data, message)


@router.get("")
@limiter.limit(RATE_LIMIT_STATS)
async def scraping_status(
    request: Request,
    _: Principal = Depends(staff_required),
    pipeline: PipelineOrchestrator = Depends(get_pipeline),
):
    """Scraping statistics and queue depth."""
    return ok({
        "scraping": await pipeline.scraper.get_scraping_stats(),
        "queue": await pipeline.queue.get_queue_stats(),
    })


@router.get("/sources")
async def list_sources(
    _: Principal = Depends(staff_required),
    pipeline: PipelineOrchestrator = Depends(get_pipeline),
):
    rows = {s.name: s for s in pipeline.store.list_sources()}
    sources = []
    for adapter in pipeline.scraper.registry.list_adapters():
        row = rows.get(adapter["name"])
        sources.append({
            **adapter,
            "id": row.id if row else None,
            "isActive": row.is_active if row else True,
        })
    return ok(sources)


@router.patch("/sources/{name}")
async def update_source(
    name: str,
    body: SourceUpdate,
    _: Principal = Depends(admin_required),
    pipeline: PipelineOrchestrator = Depends(get_pipeline),
):
    """Activate or deactivate a source. Postings of inactive sources fail re-validation."""
    adapter = pipeline.scraper.registry.get(name)
    if adapter is None:
        raise HTTPException(status_code=404, detail="Source not found")

    pipeline.store.ensure_source(name, adapter.base_url)
    source = pipeline.store.set_source_active(name, body.isActive)
    logger.info(f"[api/scraping] Source {name} set active={body.isActive}")
    return ok({"id": source.id, "name": source.name, "isActive": source.is_active})
