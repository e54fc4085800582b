"""Small geodesy helpers shared by the bundler and notification templates."""
import math
from typing import Iterable

from geonotify.schemas.events import Location

EARTH_RADIUS_METERS = 6371000.0


def haversine_meters(a: Location, b: Location) -> float:
    """Great-circle distance between two coordinates, in meters."""
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    d_phi = math.radians(b.latitude - a.latitude)
    d_lambda = math.radians(b.longitude - a.longitude)

    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def center_point(locations: Iterable[Location]) -> Location:
    """Arithmetic centroid; fine for clusters a few hundred meters wide."""
    points = list(locations)
    if not points:
        return Location(latitude=0.0, longitude=0.0)
    return Location(
        latitude=sum(p.latitude for p in points) / len(points),
        longitude=sum(p.longitude for p in points) / len(points),
    )
