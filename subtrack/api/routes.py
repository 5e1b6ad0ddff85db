from fastapi import APIRouter, HTTPException, status
from fastapi.responses import Response

from subtrack.core.config import get_settings
from subtrack.lifecycle.api import router as lifecycle_router
from subtrack.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(lifecycle_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
        "timezone": settings.timezone,
    }


@router.get("/metrics", tags=["system"])
def metrics() -> Response:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
