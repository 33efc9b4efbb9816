"""
Shared FastAPI dependencies and response helpers for the pipeline routers.
"""
from typing import Any, Optional

from fastapi import Request

from orchestrator import PipelineOrchestrator


def get_pipeline(request: Request) -> PipelineOrchestrator:
    """The orchestrator attached to the app during lifespan startup."""
    return request.app.state.orchestrator


def ok(data: Any, message: Optional[str] = None, **extra) -> dict:
    body = {"success": True, "data": data}
    if message:
        body["message"] = message
    body.update(extra)
    return body
