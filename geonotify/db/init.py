"""Initialize database tables."""
import logging

from sqlmodel import SQLModel
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from geonotify.errors import ConfigError
# Table models must be imported so they register on SQLModel.metadata
from geonotify.models.geofence_event import GeofenceEventRecord, EventFingerprint  # noqa: F401
from geonotify.models.notification import NotificationHistory  # noqa: F401
from geonotify.models.suppression import NotificationSnooze, TaskMute  # noqa: F401
from geonotify.models.preferences import NotificationPreferences  # noqa: F401

logger = logging.getLogger(__name__)


def init_db(engine: Engine) -> None:
    """
    Create all tables in the database.

    Raises:
        ConfigError: If the store cannot be reached or the schema cannot be created;
            startup must abort rather than run against a broken store.
    """
    logger.info("[DB INIT] Creating all tables...")
    try:
        SQLModel.metadata.create_all(engine)
    except SQLAlchemyError as e:
        raise ConfigError("Database initialization failed", {"cause": str(e)}) from e
    logger.info("[DB INIT] Tables created successfully.")
