"""
Engine logging: one JSON object per line, context passed as keyword arguments.

    logger = get_logger(__name__)
    logger.info("Event processed", user_id=user_id, reason="notify")
"""

import json
import logging
import sys
from datetime import datetime, timezone

ROOT_LOGGER = "geonotify"


class StructuredLogger:
    """Thin wrapper over a stdlib logger that renders records as JSON."""

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _emit(self, level: int, message: str, exc_info: bool = False, **context):
        if not self.logger.isEnabledFor(level):
            return
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": logging.getLevelName(level),
            "service": self.logger.name,
            "message": message,
        }
        record.update(context)
        self.logger.log(level, json.dumps(record, default=str), exc_info=exc_info)

    def debug(self, message: str, **context):
        self._emit(logging.DEBUG, message, **context)

    def info(self, message: str, **context):
        self._emit(logging.INFO, message, **context)

    def warning(self, message: str, **context):
        self._emit(logging.WARNING, message, **context)

    def error(self, message: str, **context):
        self._emit(logging.ERROR, message, **context)

    def exception(self, message: str, **context):
        """Error record with the active traceback attached."""
        self._emit(logging.ERROR, message, exc_info=True, **context)


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Attach the stdout handler once and set the engine log level from a config string."""
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
        root.addHandler(handler)

    resolved = logging.getLevelName(level.upper())
    root.setLevel(resolved if isinstance(resolved, int) else logging.INFO)
