"""Shared fixtures: an engine on in-memory SQLite with a manual clock and a fake push provider."""
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import itertools

import pytest

from geonotify.config import Settings
from geonotify.services.delivery import DeliveryProvider, DeliveryResult, push_payload
from geonotify.services.engine import GeofenceEngine
from geonotify.utils.clock import ManualClock

# Monday, 12:00 UTC
START = datetime(2026, 3, 2, 12, 0, 0)

USER = "user-1"


class FakeProvider(DeliveryProvider):
    """Records payloads; can be told to fail or to run a hook mid-delivery."""

    name = "fake"

    def __init__(self):
        super().__init__()
        self.sent: List[Dict[str, Any]] = []
        self.fail_next = 0
        self.before_send: Optional[Callable] = None

    def send(self, entry):
        if self.before_send is not None:
            self.before_send(entry)
        if self.fail_next > 0:
            self.fail_next -= 1
            return DeliveryResult(success=False, error="gateway unavailable", provider=self.name)
        self.sent.append(push_payload(entry))
        return DeliveryResult(success=True, message_id=f"fake_{len(self.sent)}", provider=self.name)


@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        enable_ticker=False,
        auth_secret="test-secret",
        log_level="WARNING",
    )


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def geo(settings, clock, provider):
    engine = GeofenceEngine(settings, clock=clock, provider=provider)
    engine.start()
    yield engine
    engine.shutdown()


@pytest.fixture
def make_event():
    """Factory for raw event payloads; every call gets a fresh id."""
    counter = itertools.count(1)

    def factory(**overrides) -> Dict[str, Any]:
        event = {
            "id": f"evt-{next(counter)}",
            "task_id": "task-1",
            "geofence_id": "geo-1",
            "event_type": "enter",
            "geofence_type": "arrival",
            "location": {"latitude": 37.7749, "longitude": -122.4194},
            "confidence": 0.9,
        }
        event.update(overrides)
        return event

    return factory
