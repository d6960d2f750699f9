import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from agent_vendor.db import ping_database, ping_redis

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Liveness probe. Returns 503 while draining after SIGTERM."""
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(
            status_code=503,
            content={"status": "shutting_down", "service": "agent-vendor-backend"},
        )
    return {"status": "healthy", "service": "agent-vendor-backend"}


@router.get("/ready")
async def readiness_check():
    """Readiness probe: 503 unless both Postgres and Redis answer."""
    checks = {"database": False, "redis": False}

    try:
        await ping_database()
        checks["database"] = True
    except Exception as e:
        logger.error("readiness_database_failed", error=str(e), error_type=type(e).__name__)

    try:
        await ping_redis()
        checks["redis"] = True
    except Exception as e:
        logger.error("readiness_redis_failed", error=str(e), error_type=type(e).__name__)

    all_healthy = all(checks.values())
    return JSONResponse(
        status_code=200 if all_healthy else 503,
        content={"status": "ready" if all_healthy else "degraded", "checks": checks},
    )
