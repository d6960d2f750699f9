"""Agent Vendor chat backend: FastAPI application entry point."""

import signal
import uuid
from contextlib import asynccontextmanager

# configure_structlog must run before the other app imports (structlog caches
# the processor chain on first use).
from agent_vendor.core.logging import configure_structlog
from agent_vendor.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from agent_vendor.api.routes import api_router
from agent_vendor.core import tasks
from agent_vendor.core.config import get_settings
from agent_vendor.db import close_db, close_redis, init_db, init_redis
from agent_vendor.middleware.correlation import get_correlation_id, setup_correlation_middleware

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # SIGTERM flips this so the health check returns 503 while connections drain
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, handle_sigterm)

    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    await init_db()
    logger.info("db_initialized")

    await init_redis()
    logger.info("redis_initialized")

    yield

    logger.info("shutdown_begin")
    # Let in-flight generations finish persisting and billing
    await tasks.drain(timeout=settings.chat_stream_timeout_seconds)
    await close_redis()
    await close_db()
    logger.info("shutdown_complete")


def _log_request_error(request: Request, event: str, **fields) -> str:
    """Log a request failure under a fresh debug_id and return the id."""
    debug_id = str(uuid.uuid4())
    logger.error(
        event,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        user_id=getattr(request.state, "user_id", None),
        **fields,
    )
    return debug_id


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    debug_id = _log_request_error(request, "http_exception", status_code=exc.status_code, detail=exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "debug_id": debug_id},
        headers=getattr(exc, "headers", None),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unhandled errors: traceback in the log, generic 500 to the client."""
    debug_id = _log_request_error(
        request,
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "debug_id": debug_id},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Agent Vendor - chat with configurable AI agents",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(dict.fromkeys([settings.frontend_url, *settings.allowed_origins])),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "X-Request-ID"],
    )

    # Runs first on incoming requests
    setup_correlation_middleware(app)

    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router, prefix="/api")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "agent_vendor.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
