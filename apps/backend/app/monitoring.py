"""
Operational endpoints: validity monitor control, queue maintenance and
rate-limit inspection. Admin only.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from app.dependencies import get_pipeline, ok
from orchestrator import PipelineOrchestrator
from security.auth import Principal, admin_required

logger = logging.getLogger(__name__)
router = APIRouter(tags=["operations"])


class QueueCleanupRequest(BaseModel):
    daysOld: int = Field(7, ge=1, le=365)


class PriorityUpdate(BaseModel):
    priority: int = Field(..., ge=0, le=100)


# Validity monitor

@router.get("/api/monitoring/status")
async def monitoring_status(
    _: Principal = Depends(admin_required),
    pipeline: PipelineOrchestrator = Depends(get_pipeline),
):
    return ok({
        "monitor": pipeline.monitor.get_status(),
        "recentEvents": pipeline.broadcaster.recent_events(10),
    })


@router.post("/api/monitoring/start")
async def monitoring_start(
    principal: Principal = Depends(admin_required),
    pipeline: PipelineOrchestrator = Depends(get_pipeline),
):
    if pipeline.monitor.running:
        return ok(pipeline.monitor.get_status(), "Monitoring already running")
    await pipeline.monitor.start()
    logger.info(f"[api/monitoring] Monitor started by {principal.user_id}")
    return ok(pipeline.monitor.get_status(), "Monitoring started")


@router.post("/api/monitoring/stop")
async def monitoring_stop(
    principal: Principal = Depends(admin_required),
    pipeline: PipelineOrchestrator = Depends(get_pipeline),
):
    if not pipeline.monitor.running:
        return ok(pipeline.monitor.get_status(), "Monitoring not running")
    await pipeline.monitor.stop()
    logger.info(f"[api/monitoring] Monitor stopped by {principal.user_id}")
    return ok(pipeline.monitor.get_status(), "Monitoring stopped")


# Queue

@router.get("/api/queue/stats")
async def queue_stats(
    _: Principal = Depends(admin_required),
    pipeline: PipelineOrchestrator = Depends(get_pipeline),
):
    return ok(await pipeline.queue.get_queue_stats())


@router.get("/api/queue/tasks")
async def list_queue_tasks(
    type: str = Query(..., description="Task type"),
    limit: int = Query(50, ge=1, le=200),
    _: Principal = Depends(admin_required),
    pipeline: PipelineOrchestrator = Depends(get_pipeline),
):
    tasks = await pipeline.queue.get_jobs_by_type(type, limit)
    return ok([t.to_dict() for t in tasks])


@router.post("/api/queue/cleanup")
async def queue_cleanup(
    body: QueueCleanupRequest,
    _: Principal = Depends(admin_required),
    pipeline: PipelineOrchestrator = Depends(get_pipeline),
):
    removed = await pipeline.queue.cleanup_old_jobs(body.daysOld)
    return ok({"removed": removed})


@router.get("/api/queue/{task_id}")
async def get_queue_task(
    task_id: str,
    _: Principal = Depends(admin_required),
    pipeline: PipelineOrchestrator = Depends(get_pipeline),
):
    task = await pipeline.queue.get_job(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return ok(task.to_dict())


@router.post("/api/queue/{task_id}/cancel")
async def cancel_queue_task(
    task_id: str,
    _: Principal = Depends(admin_required),
    pipeline: PipelineOrchestrator = Depends(get_pipeline),
):
    if not await pipeline.queue.cancel_job(task_id):
        raise HTTPException(status_code=409, detail="Only pending tasks can be cancelled")
    return ok({"taskId": task_id, "status": "CANCELLED"})


@router.post("/api/queue/{task_id}/retry")
async def retry_queue_task(
    task_id: str,
    _: Principal = Depends(admin_required),
    pipeline: PipelineOrchestrator = Depends(get_pipeline),
):
    if not await pipeline.queue.retry_job(task_id):
        raise HTTPException(status_code=409, detail="Only failed tasks can be retried")
    return ok({"taskId": task_id, "status": "PENDING"})


@router.patch("/api/queue/{task_id}")
async def update_queue_task_priority(
    task_id: str,
    body: PriorityUpdate,
    _: Principal = Depends(admin_required),
    pipeline: PipelineOrchestrator = Depends(get_pipeline),
):
    if not await pipeline.queue.update_job_priority(task_id, body.priority):
        raise HTTPException(status_code=409, detail="Only pending tasks can be reprioritized")
    return ok({"taskId": task_id, "priority": body.priority})


# Rate limits

@router.get("/api/rate-limits/stats")
async def rate_limit_stats(
    _: Principal = Depends(admin_required),
    pipeline: PipelineOrchestrator = Depends(get_pipeline),
):
    return ok(await pipeline.rate_limiter.get_stats())


@router.get("/api/rate-limits/{identity}")
async def rate_limit_status(
    identity: str,
    _: Principal = Depends(admin_required),
    pipeline: PipelineOrchestrator = Depends(get_pipeline),
):
    return ok(await pipeline.rate_limiter.get_limit_status(identity))
