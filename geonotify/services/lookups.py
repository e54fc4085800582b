"""
External lookups used to enrich notification text.

Lookups are slow, remote and optional. They run in a small thread pool
with a timeout; any failure or timeout yields None and the templates fall
back to generic wording.
"""
import abc
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import httpx

from geonotify.schemas.events import Location
from geonotify.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PlaceInfo:
    name: Optional[str] = None
    task_title: Optional[str] = None
    distance_meters: Optional[float] = None


class PlaceLookup(abc.ABC):
    """Resolves a geofence to a human readable place (and the task's title)."""

    @abc.abstractmethod
    def describe(self, user_id: str, task_id: str, geofence_id: str, location: Location) -> Optional[PlaceInfo]:
        """
        Look up display data for a geofence crossing.

        Returns:
            PlaceInfo, or None when nothing is known
        """
        pass

    def close(self) -> None:
        pass


class NullPlaceLookup(PlaceLookup):
    """Knows nothing; every notification uses generic wording."""

    def describe(self, user_id, task_id, geofence_id, location):
        return None


class StaticPlaceLookup(PlaceLookup):
    """In-memory lookup keyed by (task_id, geofence_id)."""

    def __init__(self, places: Optional[Dict[Tuple[str, str], PlaceInfo]] = None):
        self.places = dict(places or {})

    def describe(self, user_id, task_id, geofence_id, location):
        return self.places.get((task_id, geofence_id))


class HttpPlaceLookup(PlaceLookup):
    """Queries a task/place service at GET {base_url}/places/{geofence_id}."""

    def __init__(self, base_url: str, timeout_seconds: float = 2.0):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.Client(timeout=timeout_seconds)

    def describe(self, user_id, task_id, geofence_id, location):
        response = self.client.get(
            f"{self.base_url}/places/{geofence_id}",
            params={"user_id": user_id, "task_id": task_id},
        )
        if response.status_code == 404:
            return None
        response.raise_for_status()
        data = response.json()
        return PlaceInfo(
            name=data.get("name"),
            task_title=data.get("task_title"),
            distance_meters=data.get("distance_meters"),
        )

    def close(self) -> None:
        self.client.close()


class TimedLookup:
    """Runs a PlaceLookup with a deadline."""

    def __init__(self, lookup: PlaceLookup, timeout_seconds: float = 2.0, max_workers: int = 4):
        self.lookup = lookup
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="place-lookup")

    def describe(self, user_id: str, task_id: str, geofence_id: str, location: Location) -> Optional[PlaceInfo]:
        future = self._executor.submit(self.lookup.describe, user_id, task_id, geofence_id, location)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeout:
            future.cancel()
            logger.warning("Place lookup timed out", geofence_id=geofence_id, timeout=self.timeout_seconds)
            return None
        except Exception as e:
            logger.warning("Place lookup failed", geofence_id=geofence_id, error=str(e))
            return None

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
        self.lookup.close()
