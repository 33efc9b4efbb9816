from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from typing import Optional
from contextlib import asynccontextmanager
from starlette.exceptions import HTTPException as StarletteHTTPException
import os
import logging
import traceback

from app.config import Capabilities, settings
from app.rate_limit import limiter
from app.scraping import router as scraping_router
from app.cleanup import router as cleanup_router
from app.monitoring import router as monitoring_router
from core.errors import PersistenceError, QueueBackpressure, RateLimited
from orchestrator import PipelineOrchestrator, get_orchestrator
from slowapi.errors import RateLimitExceeded
from slowapi import _rate_limit_exceeded_handler

load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(
    orchestrator: Optional[PipelineOrchestrator] = None,
    start_background: Optional[bool] = None,
) -> FastAPI:
    """
    Build the API application.

    The orchestrator is created lazily at startup unless one is injected.
    Background loops start unless JOBLINK_DISABLE_SCHEDULER is set or
    start_background is False.
    """
    if start_background is None:
        start_background = not settings.disable_scheduler

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle application lifecycle events."""
        logger.info(f"[joblink] env: JOBLINK_ENV={settings.env}")
        pipeline = orchestrator or get_orchestrator()
        app.state.orchestrator = pipeline

        if start_background:
            try:
                await pipeline.start()
            except Exception as e:
                logger.error(f"[orchestrator] Failed to start background loops: {e}")
        else:
            logger.info("[orchestrator] Background loops disabled")

        yield

        # Shutdown
        try:
            await pipeline.stop()
        except Exception as e:
            logger.error(f"[orchestrator] Error during shutdown: {e}")

    app = FastAPI(title="JobLink Pipeline API", version="0.1.0", lifespan=lifespan)

    # Add rate limiter state
    app.state.limiter = limiter

    # Rate limit exceeded handler
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "Validation error",
                "details": jsonable_encoder(exc.errors(), custom_encoder={ValueError: str}),
            },
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(PersistenceError)
    async def persistence_error_handler(request: Request, exc: PersistenceError):
        logger.error(f"[api] Store unavailable: {exc}")
        return JSONResponse(
            status_code=503,
            content={"success": False, "error": "Store unavailable"},
        )

    @app.exception_handler(QueueBackpressure)
    async def backpressure_handler(request: Request, exc: QueueBackpressure):
        logger.warning(f"[api] Rejecting work: {exc}")
        return JSONResponse(
            status_code=503,
            content={
                "success": False,
                "error": "Queue is full. Please try again later.",
                "retryAfter": exc.retry_after,
            },
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(RateLimited)
    async def rate_limited_handler(request: Request, exc: RateLimited):
        return JSONResponse(
            status_code=429,
            content={
                "success": False,
                "error": "Rate limit exceeded. Please try again later.",
                "retryAfter": exc.retry_after,
                "resetTime": exc.reset_time.isoformat(),
            },
            headers={"Retry-After": str(exc.retry_after)},
        )

    # Error masking middleware
    @app.middleware("http")
    async def error_masking_middleware(request: Request, call_next):
        """Mask detailed errors in production; show full errors in dev."""
        try:
            return await call_next(request)
        except HTTPException:
            raise
        except Exception as e:
            is_dev = os.getenv("JOBLINK_ENV", "").lower() == "dev"

            logger.error(f"Unhandled error: {str(e)}")
            if is_dev:
                logger.error(traceback.format_exc())
                return JSONResponse(
                    status_code=500,
                    content={
                        "success": False,
                        "error": str(e),
                        "traceback": traceback.format_exc(),
                    },
                )
            return JSONResponse(
                status_code=500,
                content={
                    "success": False,
                    "error": "An internal error occurred. Please try again later.",
                },
            )

    origins = os.getenv("JOBLINK_CORS_ORIGINS", "http://localhost:3000,http://localhost:5000")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in origins.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(scraping_router)
    app.include_router(cleanup_router)
    app.include_router(monitoring_router)

    @app.get("/api/healthz")
    async def healthz(request: Request):
        return Capabilities.get_status(getattr(request.app.state, "orchestrator", None))

    return app


app = create_app()
