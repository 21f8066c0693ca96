"""
FastAPI app for the ledger fraud watch.

Architecture:
- POST /: change-feed ingestion, newline-delimited JSON transfer events
- GET /health: System health check
- GET /metrics: Transfer counters and pipeline metrics
- Each event is classified and escalated asynchronously (fire-and-forget)
"""
from fastapi import FastAPI, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import time
from datetime import datetime, timezone
import logging
from typing import Dict, Optional

from ledgerwatch.api.config import settings
from ledgerwatch.api.models import (
    HealthCheckResponse,
    IngestErrorResponse,
    IngestResponse,
    MetricsResponse,
)
from ledgerwatch.api.service import LedgerService


# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_app(service: Optional[LedgerService] = None) -> FastAPI:
    """
    Build the API around a LedgerService.

    When no service is given, one is built from settings at startup and
    closed at shutdown. A service passed in is owned by the caller.
    """
    state = {"service": service, "startup_time": time.time()}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = state["service"] is None
        state["startup_time"] = time.time()
        if owned:
            logger.info("=" * 70)
            logger.info("🚀 STARTING LEDGER FRAUD WATCH")
            logger.info("=" * 70)
            try:
                state["service"] = LedgerService.from_settings(settings)
                state["service"].start()
            except Exception as e:
                logger.error(f"❌ Startup failed: {e}")
                raise
            logger.info(f"🎯 API ready at http://{settings.API_HOST}:{settings.API_PORT}")
        try:
            yield
        finally:
            if owned and state["service"] is not None:
                logger.info("Shutting down API...")
                state["service"].close()
                logger.info("✅ Shutdown complete")

    app = FastAPI(
        title=settings.API_TITLE,
        version=settings.API_VERSION,
        description=(
            "Concurrent ledger with an asynchronous fraud-detection pipeline.\n\n"
            "POST / accepts the transfer change feed (one JSON event per line)."
        ),
        lifespan=lifespan,
    )

    def current() -> LedgerService:
        return state["service"]

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        """Handle all uncaught exceptions gracefully."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "InternalServerError",
                "message": "An unexpected error occurred.",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )

    @app.post(
        "/",
        status_code=status.HTTP_202_ACCEPTED,
        response_model=IngestResponse,
        summary="Ingest transfer events",
        responses={400: {"model": IngestErrorResponse, "description": "Malformed event line"}},
    )
    async def ingest(request: Request):
        """
        Body: newline-delimited JSON, one event per line:
        {"id": "...", "key": ["..."], "source": "...", "destination": "..."}

        Events are dispatched and the response returns without waiting for
        classification. A malformed line aborts the rest of the body
        (INGEST_ON_MALFORMED=abort) or is skipped (INGEST_ON_MALFORMED=skip).
        """
        body = await request.body()
        result = await run_in_threadpool(current().pipeline.ingest, body)

        if result.aborted:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content=IngestErrorResponse(
                    message=str(result.malformed),
                    line=result.malformed.line_number,
                    accepted=result.accepted,
                ).model_dump(),
            )
        return IngestResponse(accepted=result.accepted, skipped=result.skipped)

    @app.get("/health", response_model=HealthCheckResponse, summary="Health Check")
    async def health_check() -> HealthCheckResponse:
        health = await run_in_threadpool(current().health_check)
        health["uptime_seconds"] = time.time() - state["startup_time"]
        return HealthCheckResponse(**health)

    @app.get("/metrics", response_model=MetricsResponse, summary="Transfer and pipeline metrics")
    async def get_metrics() -> MetricsResponse:
        return MetricsResponse(**current().get_metrics())

    @app.get("/", summary="Root Endpoint")
    async def root() -> Dict:
        """Root endpoint with service info."""
        service = current()
        return {
            "service": settings.API_TITLE,
            "version": settings.API_VERSION,
            "status": "running",
            "uptime_seconds": time.time() - state["startup_time"],
            "fraud_policy": service.pipeline.classifier.policy,
            "block_threshold": service.pipeline.escalation.threshold,
            "endpoints": {
                "ingest": "POST / - Newline-delimited transfer events",
                "health": "GET /health - Health check",
                "metrics": "GET /metrics - Counters and pipeline metrics",
                "docs": "GET /docs - Interactive API documentation",
            },
        }

    return app


# uvicorn ledgerwatch.api.main:app
app = create_app()
