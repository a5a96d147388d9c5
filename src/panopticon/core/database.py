"""Database engine creation and SQLite connection tuning."""

import logging
from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

# Applied on every new connection and again after VACUUM
SQLITE_PRAGMAS: tuple[tuple[str, str], ...] = (
    ("journal_mode", "WAL"),
    ("synchronous", "NORMAL"),
    ("foreign_keys", "ON"),
    ("cache_size", "-20000"),  # ~20MB
    ("mmap_size", "134217728"),  # 128MB
    ("busy_timeout", "10000"),  # ms
)
BUSY_TIMEOUT_SECONDS = 10


def apply_pragmas(dbapi_connection: Any) -> None:
    """Apply the SQLite tuning pragmas to a raw DBAPI connection."""
    cursor = dbapi_connection.cursor()
    try:
        for name, value in SQLITE_PRAGMAS:
            cursor.execute(f"PRAGMA {name}={value}")
    finally:
        cursor.close()


def create_db_engine(path: Path, *, echo: bool = False) -> Engine:
    """Create an engine for the SQLite file at ``path``.

    The parent directory is created if it does not exist. Every pooled
    connection gets the pragmas from ``SQLITE_PRAGMAS``.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(
        f"sqlite:///{path}",
        echo=echo,
        connect_args={"check_same_thread": False, "timeout": BUSY_TIMEOUT_SECONDS},
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        apply_pragmas(dbapi_connection)

    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Create the session factory used by the store."""
    return sessionmaker(engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create the schema from the models if it does not exist yet."""
    # Import here to avoid circular imports
    from panopticon.models import Base

    logger.info("Initializing database schema at %s", engine.url.database)
    Base.metadata.create_all(engine, checkfirst=True)
