"""Shared router dependencies."""
from fastapi import HTTPException, Request, status

from geonotify.services.engine import GeofenceEngine


def get_engine(request: Request) -> GeofenceEngine:
    """The engine attached to the app by the lifespan."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service is starting")
    return engine
