"""
Delivery Providers.

A provider pushes one scheduled notification (or bundle) to the user's
devices. The scheduler treats any exception or a result with success=False
as a failed attempt and retries it later.
"""

import abc
from dataclasses import dataclass
from typing import Any, Dict, Optional, TYPE_CHECKING

import httpx

from geonotify.utils.logger import get_logger

if TYPE_CHECKING:
    from geonotify.services.scheduler import ScheduledNotification

logger = get_logger(__name__)


@dataclass
class DeliveryResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    provider: Optional[str] = None


def push_payload(entry: "ScheduledNotification") -> Dict[str, Any]:
    """JSON body sent to the push gateway for a scheduled entry."""
    if entry.bundle is not None:
        bundle = entry.bundle
        return {
            "user_id": bundle.user_id,
            "notification_id": bundle.id,
            "kind": "bundle",
            "title": bundle.title,
            "body": bundle.body,
            "actions": [a.model_dump() for a in bundle.actions],
            "data": {
                "task_ids": bundle.task_ids,
                "notification_ids": [n.id for n in bundle.notifications],
                "location": bundle.location.model_dump(),
            },
        }
    notification = entry.notification
    return {
        "user_id": notification.user_id,
        "notification_id": notification.id,
        "kind": "notification",
        "title": notification.title,
        "body": notification.body,
        "actions": [a.model_dump() for a in notification.actions],
        "data": {
            "task_id": notification.task_id,
            "type": notification.type,
            "metadata": notification.metadata.model_dump(mode="json"),
        },
    }


class DeliveryProvider(abc.ABC):
    """Abstract base class for delivery channels."""

    name = "base"

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Initialize delivery provider.

        Args:
            config: Configuration for the provider
        """
        self.config = config or {}
        self.is_initialized = False

    @abc.abstractmethod
    def send(self, entry: "ScheduledNotification") -> DeliveryResult:
        """
        Deliver a scheduled notification or bundle.

        Args:
            entry: The in-flight scheduled entry

        Returns:
            DeliveryResult describing the outcome
        """
        pass

    def initialize(self):
        """Initialize the provider (e.g., establish connections)."""
        self.is_initialized = True
        logger.info(f"{self.__class__.__name__} initialized")

    def cleanup(self):
        """Clean up resources (e.g., close connections)."""
        self.is_initialized = False
        logger.info(f"{self.__class__.__name__} cleaned up")


class LoggingProvider(DeliveryProvider):
    """Writes deliveries to the log; used when no push gateway is configured."""

    name = "log"

    def send(self, entry):
        payload = push_payload(entry)
        logger.info(
            "Push notification (log only)",
            user_id=payload["user_id"],
            notification_id=payload["notification_id"],
            title=payload["title"],
        )
        return DeliveryResult(success=True, message_id=f"log_{payload['notification_id']}", provider=self.name)


class PushProvider(DeliveryProvider):
    """Posts notifications to an HTTP push gateway (APNs/FCM fan-out lives behind it)."""

    name = "push"

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.service_endpoint = config["service_endpoint"].rstrip("/")
        self.timeout = config.get("timeout_seconds", 10.0)
        self.client: Optional[httpx.Client] = None

    def initialize(self):
        self.client = httpx.Client(timeout=self.timeout)
        super().initialize()

    def cleanup(self):
        if self.client is not None:
            self.client.close()
            self.client = None
        super().cleanup()

    def send(self, entry):
        if self.client is None:
            self.initialize()

        payload = push_payload(entry)
        try:
            response = self.client.post(f"{self.service_endpoint}/push", json=payload)
        except httpx.HTTPError as e:
            return DeliveryResult(success=False, error=f"{type(e).__name__}: {e}", provider=self.name)

        if response.status_code >= 400:
            return DeliveryResult(
                success=False,
                error=f"Push gateway returned {response.status_code}",
                provider=self.name,
            )

        body = response.json() if response.content else {}
        return DeliveryResult(
            success=True,
            message_id=body.get("message_id", f"push_{payload['notification_id']}"),
            provider=self.name,
        )


def build_provider(push_gateway_url: Optional[str], timeout_seconds: float = 10.0) -> DeliveryProvider:
    if push_gateway_url:
        return PushProvider({"service_endpoint": push_gateway_url, "timeout_seconds": timeout_seconds})
    return LoggingProvider()
