"""Database engine and helpers.

This module builds SQLModel/SQLAlchemy engines for the relational
backend. PostgreSQL URLs are routed to the psycopg driver; SQLite URLs
are accepted as well, which is what the test-suite uses.
"""

import logging

from sqlalchemy.engine import Engine, make_url
from sqlmodel import SQLModel, create_engine

from . import models  # noqa: F401  (registers tables on SQLModel.metadata)

logger = logging.getLogger("simvex.database")


def normalize_database_url(url: str) -> str:
    """Map `postgres://` and bare `postgresql://` URLs to psycopg."""
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        url = "postgresql+psycopg://" + url[len("postgresql://"):]
    return url


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine for `database_url`.

    SQLite connections are shared across FastAPI's worker threads, so
    `check_same_thread` is disabled for them.
    """
    url = make_url(normalize_database_url(database_url))
    connect_args = {}
    if url.get_backend_name() == "sqlite":
        connect_args["check_same_thread"] = False
    return create_engine(url, echo=echo, connect_args=connect_args, pool_pre_ping=True)


def create_db_and_tables(engine: Engine) -> None:
    """Create every missing table. Safe to call repeatedly.

    Versioned changes go through `simvex.migrations`; this only covers
    the baseline schema the repositories need.
    """
    SQLModel.metadata.create_all(engine)
    logger.debug("schema ensured on %s", engine.url.render_as_string(hide_password=True))
