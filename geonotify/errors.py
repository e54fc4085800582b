"""
Engine error taxonomy.

Every error carries a machine-readable code, a human message and optional
details, so the API layer can render them uniformly:
- ValidationError: malformed event, action or duration (client fault, never retried)
- NotFoundError: unknown or not-owned resource (never retried)
- ProcessingError: transient infrastructure failure (retried via the event queue)
- LimitExceededError: rate limit / quiet hours / snooze cap
- ConfigError: invalid configuration, fatal at startup
"""

from typing import Any, Dict, Optional


class GeonotifyError(Exception):
    """Base exception for engine errors"""

    status_code = 500
    retryable = False

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(GeonotifyError):
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class NotFoundError(GeonotifyError):
    status_code = 404

    def __init__(self, message: str = "Resource not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class ProcessingError(GeonotifyError):
    status_code = 503
    retryable = True

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("PROCESSING_ERROR", message, details)


class LimitExceededError(GeonotifyError):
    """Raised when a limit suppresses an operation; `reason` is the suppression tag."""

    status_code = 429

    def __init__(self, reason: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.reason = reason
        super().__init__("LIMIT_EXCEEDED", message, details)


class ConfigError(GeonotifyError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIG_ERROR", message, details)


def error_payload(error: GeonotifyError) -> Dict[str, Any]:
    """
    Create a standardized error body

    Args:
        error: The engine error to convert

    Returns:
        Error response dictionary
    """
    return {
        "error": {
            "code": error.code,
            "message": error.message,
            "details": error.details
        }
    }
