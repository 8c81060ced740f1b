"""
Main FastAPI application entry point
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from pitchguard.api.internal_v1 import internal_api_router
from pitchguard.core.config import GateConfig, Settings, settings as default_settings
from pitchguard.core.gate import Gate
from pitchguard.core.logging import setup_logging
from pitchguard.core.store import build_state_store
from pitchguard.db.audit import SqlAuditSink, build_audit_sink
from pitchguard.db.database import init_db
from pitchguard.middleware.security import setup_security_middleware
from pitchguard.services.event_log import SecurityEventLog
from pitchguard.services.geo_anomaly import build_geo_locator
from pitchguard.tasks.sweeper import BackgroundSweeper
from pitchguard.utils.exceptions import CustomHTTPException

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler

    Builds the gate and its collaborators from settings, starts the sweeper
    and tears everything down in reverse order on shutdown. Configuration
    errors propagate and abort startup.
    """
    settings: Settings = app.state.settings
    logger.info("Starting PitchGuard gate...")

    config = GateConfig.from_settings(settings)
    store = build_state_store(settings)

    sink = build_audit_sink(settings)
    if isinstance(sink, SqlAuditSink) and sink.engine is not None:
        try:
            await init_db(sink.engine)
        except Exception as e:
            # Events still reach the ring buffer; durable writes will log their own failures
            logger.warning(f"Audit database initialization failed: {e}")

    event_log = SecurityEventLog(sink=sink, capacity=config.event_log_capacity, alert_capacity=config.alert_capacity)
    locator = build_geo_locator(settings)
    gate = Gate.build(config, store, event_log, locator=locator)
    sweeper = BackgroundSweeper(store, event_log, config)

    app.state.store = store
    app.state.event_log = event_log
    app.state.gate = gate
    app.state.sweeper = sweeper

    sweeper.start()
    logger.info("Gate started successfully")

    yield

    logger.info("Shutting down gate...")
    await sweeper.stop()
    await event_log.close()
    locator.close()
    await store.close()
    app.state.gate = None
    logger.info("Gate shutdown complete")


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(CustomHTTPException)
    async def custom_http_exception_handler(request, exc: CustomHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.error_code,
                "message": exc.detail,
                "details": exc.details,
            },
            headers=exc.headers,
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": "HTTP_ERROR",
                "message": exc.detail,
            },
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            errors.append({
                "type": error.get("type", ""),
                "location": error.get("loc", []),
                "message": error.get("msg", ""),
            })

        return JSONResponse(
            status_code=422,
            content={
                "error": "VALIDATION_ERROR",
                "message": "Invalid request data",
                "details": errors,
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "INTERNAL_SERVER_ERROR",
                "message": "An unexpected error occurred",
            },
        )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create the FastAPI application; the gate itself is built in ``lifespan``"""
    settings = settings or default_settings

    app = FastAPI(
        title=settings.APP_NAME,
        description="PitchGuard - request gating, threat scoring and abuse prevention",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.gate = None

    setup_security_middleware(app, settings=settings, enabled=settings.GATE_ENABLED)
    register_exception_handlers(app)

    app.include_router(internal_api_router, prefix="/api-internal/v1")

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "app": settings.APP_NAME,
            "version": "1.0.0",
        }

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "message": "PitchGuard request gate",
            "version": "1.0.0",
            "docs": "/docs",
        }

    return app


# Create FastAPI application
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "pitchguard.main:app",
        host=default_settings.APP_HOST,
        port=default_settings.APP_PORT,
        reload=default_settings.APP_DEBUG,
        log_level=default_settings.APP_LOG_LEVEL.lower(),
    )
