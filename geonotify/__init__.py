"""Geofence event processing and location notification scheduling engine."""

__version__ = "1.0.0"
