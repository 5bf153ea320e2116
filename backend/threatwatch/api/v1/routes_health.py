from fastapi import APIRouter, Request

from threatwatch.core.config import settings

router = APIRouter()


@router.get("/health", tags=["health"])
async def health_check(request: Request) -> dict:
    """
    Simple liveness / readiness check.
    """
    scheduler = getattr(request.app.state, "scheduler", None)
    return {
        "status": "ok",
        "service": settings.APP_NAME,
        "environment": settings.ENVIRONMENT,
        "collector_running": scheduler is not None,
        "has_collected_once": bool(scheduler and scheduler.has_collected_once),
    }
