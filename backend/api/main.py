"""
HomeFlow Backend API - Main Entry Point

FastAPI application hosting the rule and mode automation engines for
home devices: rule CRUD and execution, mode activation with snapshot
restore, and the device-event intake that drives triggers.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from backend.api.dependencies import set_engines
from backend.api.routes import api_router
from backend.config import get_settings
from backend.core.engines import AutomationEngines, build_engines
from backend.core.exceptions import AutomationError, RateLimitedError
from backend.core.scheduler import TaskScheduler
from backend.integrations.device_proxy import HTTPDeviceProxy
from backend.models.database import close_db, get_session_maker, init_db
from backend.models.repository import SQLAlchemyAutomationStore
from backend.services.notification_service import NotificationService

# Configure logging
settings_instance = get_settings()
logging.basicConfig(
    level=logging.DEBUG if settings_instance.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

_VERSION = "0.1.0"


# ============================================================================
# Application State
# ============================================================================


class AppState:
    """Centralized application state container."""

    def __init__(self) -> None:
        self.scheduler: TaskScheduler | None = None
        self.device_proxy: HTTPDeviceProxy | None = None
        self.notifications: NotificationService | None = None
        self.engines: AutomationEngines | None = None
        self.startup_time: datetime | None = None
        self.is_healthy: bool = False


app_state = AppState()


# ============================================================================
# Lifespan
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager for startup and shutdown.
    """
    logger.info("Starting HomeFlow API...")
    settings = settings_instance

    try:
        db_url = settings.database_url
        # Mask password in log output
        masked = db_url
        if settings.db_password:
            masked = db_url.replace(settings.db_password, "***")
        logger.info("Connecting to database: %s", masked)
        await init_db()

        app_state.device_proxy = HTTPDeviceProxy(
            str(settings.device_proxy_url),
            settings.device_proxy_token,
            timeout=settings.device_proxy_timeout,
        )
        await app_state.device_proxy.connect()
        app_state.notifications = NotificationService(
            settings.notification_gateway_url, timeout=settings.webhook_timeout
        )

        logger.info("Starting background scheduler...")
        app_state.scheduler = TaskScheduler(timezone=settings.timezone)
        app_state.scheduler.start()

        app_state.engines = build_engines(
            SQLAlchemyAutomationStore(get_session_maker()),
            app_state.device_proxy,
            app_state.notifications,
            app_state.scheduler,
            settings,
        )
        await app_state.engines.startup(tick_seconds=settings.time_trigger_interval_seconds)
        set_engines(app_state.engines)

        app_state.startup_time = datetime.now(UTC)
        app_state.is_healthy = True
        logger.info("HomeFlow API started successfully")

    except Exception as e:
        logger.error("Startup failed: %s", e)
        app_state.is_healthy = False
        raise

    yield

    # Shutdown
    logger.info("Shutting down HomeFlow API...")
    app_state.is_healthy = False
    set_engines(None)

    if app_state.engines:
        logger.info("Stopping automation engines...")
        await app_state.engines.shutdown()
        app_state.engines = None

    if app_state.scheduler:
        logger.info("Stopping background scheduler...")
        app_state.scheduler.shutdown(wait=False)

    if app_state.device_proxy:
        await app_state.device_proxy.disconnect()

    logger.info("Closing database connections...")
    await close_db()

    logger.info("HomeFlow API shutdown complete")


# ============================================================================
# FastAPI Application
# ============================================================================

settings = settings_instance

app = FastAPI(
    title="HomeFlow API",
    description="""
    HomeFlow automation engine for home devices.

    ## Features

    * **Rules** - Trigger / condition / action automations with cooldowns and daily limits
    * **Modes** - Named device scenes with exclusive activation and snapshot restore
    * **Events** - Device state intake that fires matching rules and modes
    """,
    version=_VERSION,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    openapi_url="/openapi.json" if settings.debug else None,
    lifespan=lifespan,
)

app.include_router(api_router)


# ============================================================================
# Health Endpoints
# ============================================================================


@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, str]:
    """Basic health check."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(UTC).isoformat(),
    }


@app.get("/health/detailed", tags=["Health"])
async def detailed_health_check() -> dict[str, object]:
    """Detailed health check with component status."""
    components: dict[str, object] = {}
    health_status: dict[str, object] = {
        "status": "healthy",
        "timestamp": datetime.now(UTC).isoformat(),
        "uptime_seconds": None,
        "components": components,
    }

    if app_state.startup_time:
        uptime = datetime.now(UTC) - app_state.startup_time
        health_status["uptime_seconds"] = uptime.total_seconds()

    # Check database
    try:
        async with get_session_maker()() as db:
            await db.execute(text("SELECT 1"))
        components["database"] = {"status": "healthy"}
    except Exception as e:
        components["database"] = {"status": "unhealthy", "error": str(e)}
        health_status["status"] = "degraded"

    # Check scheduler
    if app_state.scheduler and app_state.scheduler.running:
        components["scheduler"] = {
            "status": "healthy",
            "jobs_count": app_state.scheduler.job_count,
        }
    else:
        components["scheduler"] = {"status": "stopped"}
        health_status["status"] = "degraded"

    if app_state.engines:
        components["engines"] = {
            "status": "healthy",
            "tracked_automations": len(app_state.engines.registry),
        }
    else:
        components["engines"] = {"status": "stopped"}
        health_status["status"] = "degraded"

    return health_status


@app.get("/health/ready", tags=["Health"], response_model=None)
async def readiness_check() -> Response:
    """Kubernetes readiness probe."""
    if not app_state.is_healthy:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready"},
        )
    return JSONResponse(content={"status": "ready"})


@app.get("/health/live", tags=["Health"])
async def liveness_check() -> dict[str, str]:
    """Kubernetes liveness probe."""
    return {"status": "alive"}


# ============================================================================
# Exception Handlers
# ============================================================================


@app.exception_handler(AutomationError)
async def automation_exception_handler(request: Request, exc: AutomationError) -> JSONResponse:
    """Map engine errors to their HTTP status."""
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    headers = None
    if isinstance(exc, RateLimitedError) and exc.retry_after_seconds is not None:
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.error("Unhandled exception: %s", exc, exc_info=True)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "code": 500,
                "message": "An internal error occurred" if not settings.debug else str(exc),
            },
        },
    )


# ============================================================================
# CLI Entry Point
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "backend.api.main:app",
        host=settings.host,
        port=settings.port,
        loop="asyncio",
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
