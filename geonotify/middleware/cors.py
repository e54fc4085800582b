"""CORS configuration for the mobile/web clients."""
import logging

from fastapi.middleware.cors import CORSMiddleware

from geonotify.config import Settings

logger = logging.getLogger(__name__)

# Base allowed origins for development
DEV_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]


def allowed_origins(settings: Settings):
    origins = list(DEV_ORIGINS)
    if settings.frontend_url and settings.frontend_url not in origins:
        origins.append(settings.frontend_url)
    return origins


def add_cors_middleware(app, settings: Settings):
    """Add CORS middleware to the FastAPI application."""
    if settings.environment == "production":
        # Production only trusts the configured frontend
        logger.info("[CORS] Production origin: %s", settings.frontend_url)
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[settings.frontend_url],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    else:
        origins = allowed_origins(settings)
        logger.info("[CORS] Development origins: %s", origins)
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
