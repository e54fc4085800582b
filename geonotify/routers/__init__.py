"""Routers package for the geofence notification API."""

from .background import router as background_router
from .geofence_events import router as geofence_events_router
from .notifications import router as notifications_router
from .suppression import router as suppression_router

__all__ = ["background_router", "geofence_events_router", "notifications_router", "suppression_router"]
