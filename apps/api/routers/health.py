"""
Health check endpoints.
"""

import shutil

from fastapi import APIRouter
from fastapi.responses import JSONResponse
import redis.asyncio as redis

from config import settings

router = APIRouter()


def _media_tools_status() -> dict:
    return {
        "ffmpeg": "available" if shutil.which(settings.FFMPEG_PATH) else "missing",
        "ffprobe": "available" if shutil.which(settings.FFPROBE_PATH) else "missing",
    }


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Returns overall system health status.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "sensitivity_provider": settings.SENSITIVITY_PROVIDER,
        **_media_tools_status(),
    }

    # Check database connection
    try:
        from database import engine
        from sqlalchemy import text
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    # Redis is only required by the rq / redis backends
    needs_redis = settings.PIPELINE_BACKEND == "rq" or settings.NOTIFIER_BACKEND == "redis"
    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        if needs_redis:
            health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = [tool for tool, state in _media_tools_status().items() if state == "missing"]
    if settings.SENSITIVITY_PROVIDER == "api" and not settings.SENSITIVITY_API_URL:
        missing.append("SENSITIVITY_API_URL")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
