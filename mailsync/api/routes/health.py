from fastapi import APIRouter, Depends
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST
from mailsync.config import settings
from mailsync.api.dependencies import verify_api_key
from mailsync.db.database import check_database_health
from mailsync.utils.datetime_utils import format_utc_iso
from mailsync.utils.metrics import MetricsCollector

router = APIRouter()


@router.get("/health", summary="Health Check")
async def health_check():
    """Simple health check endpoint."""
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.app_version,
        "timestamp": format_utc_iso(),
    }


@router.get("/metrics", dependencies=[Depends(verify_api_key)])
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(content=MetricsCollector.export(), media_type=CONTENT_TYPE_LATEST)


@router.get("/ready", summary="Readiness Check")
async def readiness_check():
    """Readiness check for Kubernetes."""
    db_healthy = await check_database_health()
    if not db_healthy:
        return Response(content='{"status": "not ready"}', status_code=503, media_type="application/json")
    return {"status": "ready"}
