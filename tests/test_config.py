"""Tests for settings loading and log output."""
import json
import logging

import pytest

from geonotify.config import Settings
from geonotify.errors import ConfigError
from geonotify.utils.logger import configure_logging, get_logger


def test_from_env_parses_types():
    settings = Settings.from_env({
        "DATABASE_URL": "sqlite://",
        "MAX_DELIVERY_ATTEMPTS": "4",
        "MIN_CONFIDENCE": "0.7",
        "ENABLE_TICKER": "false",
        "BETTER_AUTH_SECRET": "s3cret",
    })

    assert settings.max_delivery_attempts == 4
    assert settings.min_confidence == 0.7
    assert settings.enable_ticker is False
    assert settings.auth_secret == "s3cret"
    assert settings.is_sqlite


def test_invalid_number_is_a_config_error():
    with pytest.raises(ConfigError):
        Settings.from_env({"MAX_QUEUE_ATTEMPTS": "many"})


def test_out_of_range_values_are_rejected():
    with pytest.raises(ConfigError):
        Settings(min_confidence=1.5)
    with pytest.raises(ConfigError):
        Settings(bundle_radius_meters=0)


def test_log_lines_are_json_with_context(caplog):
    logger = get_logger("geonotify.services.sample")

    with caplog.at_level(logging.INFO, logger="geonotify"):
        logger.info("Event processed", user_id="user-1", reason="notify")
        logger.debug("Not emitted")

    assert len(caplog.records) == 1
    line = json.loads(caplog.records[0].getMessage())
    assert line["message"] == "Event processed"
    assert line["service"] == "geonotify.services.sample"
    assert line["level"] == "INFO"
    assert line["user_id"] == "user-1"


def test_exception_log_carries_the_traceback(caplog):
    logger = get_logger("geonotify.services.sample")

    with caplog.at_level(logging.ERROR, logger="geonotify"):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            logger.exception("Delivery failed", notification_id="notif-1")

    assert caplog.records[0].exc_info[0] is RuntimeError
    assert json.loads(caplog.records[0].getMessage())["notification_id"] == "notif-1"


def test_unknown_log_level_falls_back_to_info():
    configure_logging("chatty")
    try:
        assert logging.getLogger("geonotify").level == logging.INFO
    finally:
        configure_logging("WARNING")
