"""Main FastAPI application for the geofence notification engine."""
from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder

from geonotify.config import Settings
from geonotify.errors import GeonotifyError, ValidationError, error_payload
from geonotify.middleware.cors import add_cors_middleware
from geonotify.routers import (
    background_router, geofence_events_router, notifications_router, suppression_router,
)
from geonotify.services.engine import GeofenceEngine
from geonotify.utils.logger import configure_logging

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, engine: Optional[GeofenceEngine] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings, read from the environment when omitted
        engine: Pre-built engine (tests inject one with a manual clock)

    Returns:
        FastAPI app whose lifespan starts and stops the engine
    """
    settings = settings or (engine.settings if engine is not None else Settings.from_env())
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        geo_engine = engine or GeofenceEngine(settings)
        # A broken store or bad configuration must stop startup
        geo_engine.start()
        app.state.engine = geo_engine
        await geo_engine.start_background()
        logger.info("[SUCCESS] Application startup complete.")
        try:
            yield
        finally:
            await geo_engine.stop_background()
            geo_engine.shutdown()
            app.state.engine = None

    app = FastAPI(
        title="Geofence Notification Engine API",
        description="Geofence event processing and location-based notification scheduling",
        version="1.0.0",
        lifespan=lifespan,
    )

    add_cors_middleware(app, settings)

    @app.exception_handler(GeonotifyError)
    async def geonotify_error_handler(request: Request, exc: GeonotifyError):
        if exc.status_code >= 500:
            logger.warning("Request failed: %s %s", exc.code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(error_payload(exc)))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [{"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]} for e in exc.errors()]
        error = ValidationError("Invalid request", {"errors": errors})
        return JSONResponse(status_code=400, content=jsonable_encoder(error_payload(error)))

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        geo_engine = getattr(request.app.state, "engine", None)
        if geo_engine is None:
            return {"status": "starting", "version": "1.0.0"}
        return {**geo_engine.health(), "version": "1.0.0"}

    @app.get("/metrics")
    async def metrics(request: Request):
        """Engine counters and timers."""
        geo_engine = getattr(request.app.state, "engine", None)
        if geo_engine is None:
            return {"counters": {}, "timers": {}}
        return geo_engine.metrics.get_metrics()

    @app.get("/")
    async def root():
        """Root endpoint - API welcome message."""
        return {
            "title": "Geofence Notification Engine API",
            "version": "1.0.0",
            "docs": "/docs",
            "health": "/health",
        }

    app.include_router(geofence_events_router)
    app.include_router(suppression_router)
    app.include_router(notifications_router)
    app.include_router(background_router)
    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "geonotify.wsgi:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
