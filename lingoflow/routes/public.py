# /lingoflow/routes/public.py

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest
from datetime import datetime, timezone

from lingoflow.config.settings import settings
from lingoflow.services.session_service import session_registry
from lingoflow.utils.dependencies import verify_metrics_access

# This file defines public-facing endpoints that do not require a provider key,
# such as health checks and the main root endpoint. The /metrics endpoint is
# conditionally protected by an API key.

router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "LingoFlow Orchestrator",
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.environment
    }


@router.get("/health", summary="Basic Health Check")
async def health_check():
    """Basic health check for load balancers."""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc)}


@router.get("/health/ready", summary="Readiness Probe")
async def readiness_check():
    """Ready once the session sweep job is scheduled."""
    if session_registry.scheduler is None:
        raise HTTPException(status_code=503, detail="Service not ready: session registry not started")
    return {"status": "ready", "sessions": len(session_registry)}


@router.get("/health/live", summary="Liveness Probe")
async def liveness_check():
    """Kubernetes/Docker liveness probe."""
    return {"status": "alive"}


@router.get("/metrics", tags=["Monitoring"])
async def metrics(request: Request, _: bool = Depends(verify_metrics_access)):
    """Secured Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type="text/plain")
