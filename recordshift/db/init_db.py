from __future__ import annotations

import logging

from sqlalchemy import text

from recordshift.db.models import Base
from recordshift.db.session import get_engine

logger = logging.getLogger(__name__)

# Bump when the item_failures layout changes.
FAILURE_LOG_SCHEMA_VERSION = 1


class SchemaVersionError(RuntimeError):
    pass


def initialize_database() -> None:
    """Create the failure log tables and stamp the SQLite schema version.

    A database written by a newer release is refused rather than silently
    read with the wrong column layout.
    """
    engine = get_engine()
    Base.metadata.create_all(bind=engine)

    if not engine.url.drivername.startswith("sqlite"):
        return

    with engine.connect() as conn:
        current = int(conn.execute(text("PRAGMA user_version;")).scalar() or 0)
        if current > FAILURE_LOG_SCHEMA_VERSION:
            raise SchemaVersionError(
                f"Failure log schema version {current} is newer than supported version {FAILURE_LOG_SCHEMA_VERSION}"
            )
        if current < FAILURE_LOG_SCHEMA_VERSION:
            conn.execute(text(f"PRAGMA user_version = {FAILURE_LOG_SCHEMA_VERSION};"))
            logger.info("Failure log schema stamped at version %s", FAILURE_LOG_SCHEMA_VERSION)
        conn.execute(text("PRAGMA optimize;"))
        conn.commit()
