"""Engine configuration loaded from environment variables."""
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Optional
import os

from dotenv import load_dotenv

from geonotify.errors import ConfigError

# Load environment variables from a local .env if present
load_dotenv()


@dataclass(frozen=True)
class Settings:
    """Validated engine settings. Build with `Settings.from_env()` or directly in tests."""

    database_url: str = "sqlite:///./geonotify.db"
    environment: str = "development"
    frontend_url: str = "http://localhost:3000"
    auth_secret: str = "change-me-in-production"
    log_level: str = "INFO"

    # Store access
    store_timeout_seconds: float = 5.0
    lock_timeout_seconds: float = 5.0

    # Event processing
    dedup_window_minutes: int = 15
    fingerprint_retention_hours: int = 48
    min_confidence: float = 0.5
    event_retention_days: int = 30

    # Retry queue
    max_queue_attempts: int = 5
    max_queue_per_user: int = 500
    failed_queue_retention_hours: int = 24

    # Delivery
    max_delivery_attempts: int = 3
    delivery_retry_delay_minutes: int = 5
    quiet_hours_tolerance_minutes: int = 5
    push_gateway_url: Optional[str] = None
    push_timeout_seconds: float = 10.0
    scheduled_retention_hours: int = 24

    # Bundling
    bundle_radius_meters: float = 500.0
    bundle_window_minutes: int = 5

    # Suppression
    reentry_max_age_minutes: int = 120
    suppression_retention_days: int = 30

    # Background ticker
    enable_ticker: bool = True
    tick_interval_seconds: float = 120.0

    # Plumbing
    outbox_max_size: int = 1000
    lookup_timeout_seconds: float = 2.0
    place_lookup_url: Optional[str] = None

    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.validate()

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    def validate(self) -> None:
        """Raise ConfigError for values the engine cannot run with."""
        if not self.database_url:
            raise ConfigError("DATABASE_URL must not be empty")

        positive = [
            "store_timeout_seconds", "lock_timeout_seconds", "dedup_window_minutes",
            "fingerprint_retention_hours", "event_retention_days", "max_queue_attempts",
            "max_queue_per_user", "max_delivery_attempts", "bundle_radius_meters",
            "bundle_window_minutes", "tick_interval_seconds", "outbox_max_size",
            "lookup_timeout_seconds", "push_timeout_seconds",
        ]
        for name in positive:
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive", {"field": name, "value": getattr(self, name)})

        if not 0.0 <= self.min_confidence <= 1.0:
            raise ConfigError("min_confidence must be within [0, 1]", {"field": "min_confidence"})

        # Fingerprints must outlive the bucket they were minted in
        if self.fingerprint_retention_hours * 60 < self.dedup_window_minutes:
            raise ConfigError(
                "fingerprint_retention_hours must cover at least one dedup window",
                {"field": "fingerprint_retention_hours"}
            )

    def with_overrides(self, **overrides) -> "Settings":
        return replace(self, **overrides)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "Settings":
        """
        Build settings from environment variables (upper-cased field names).

        Args:
            environ: Mapping to read from, defaults to os.environ

        Returns:
            Validated Settings

        Raises:
            ConfigError: If a variable cannot be parsed or is out of range
        """
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}

        # AUTH_SECRET keeps the name the auth middleware has always used
        if "BETTER_AUTH_SECRET" in env and "AUTH_SECRET" not in env:
            values["auth_secret"] = env["BETTER_AUTH_SECRET"]

        for f in fields(cls):
            if f.name == "extra":
                continue
            raw = env.get(f.name.upper())
            if raw is None:
                continue
            values[f.name] = _coerce(f.name, raw, type(getattr(cls, f.name, None)), f.type)

        return cls(**values)


def _coerce(name: str, raw: str, default_type: type, annotation: Any) -> Any:
    """Parse an environment string into the type of the field default."""
    try:
        if default_type is bool:
            lowered = raw.strip().lower()
            if lowered in ("1", "true", "yes", "on"):
                return True
            if lowered in ("0", "false", "no", "off"):
                return False
            raise ValueError(raw)
        if default_type is int:
            return int(raw)
        if default_type is float:
            return float(raw)
        if "Optional" in str(annotation) and raw.strip() == "":
            return None
        return raw
    except ValueError:
        raise ConfigError(f"Invalid value for {name.upper()}: {raw!r}", {"field": name})
