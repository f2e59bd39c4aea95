from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import Response

from app.core.config import get_settings
from app.crm.api import crm_routers
from app.metrics import generate_metrics_payload, metrics_content_type

_settings = get_settings()

router = APIRouter()
for crm_router in crm_routers:
    router.include_router(crm_router, prefix=_settings.api_prefix)


@router.get("/", tags=["system"])
def root() -> dict[str, str]:
    settings = get_settings()
    return {
        "message": settings.app_name,
        "version": settings.app_version,
        "status": "healthy",
    }


@router.get(f"{_settings.api_prefix}/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics() -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
