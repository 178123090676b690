"""Database engine and session management.

Engines and session factories are built explicitly and handed to the
services, so tests and the CLI each own their store. SQLite is the default;
any SQLAlchemy URL (PostgreSQL in production) works unchanged.

Usage:
    from erpsync.db.connection import create_db_engine, create_session_factory, init_db

    engine = create_db_engine("sqlite:///erpsync.db")
    init_db(engine)
    factory = create_session_factory(engine)
    with session_scope(factory) as db:
        ConnectionRegistry(db).find_all()
"""

import logging
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from erpsync.db.models import Base

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine, enabling SQLite pragmas when applicable.

    Args:
        database_url: SQLAlchemy database URL.
        echo: Log emitted SQL.

    Returns:
        Configured Engine.
    """
    is_sqlite = database_url.startswith("sqlite")
    engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False} if is_sqlite else {},
        echo=echo,
    )

    if is_sqlite:
        is_memory = database_url in ("sqlite://", "sqlite:///:memory:")

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
            """Enforce foreign keys; use WAL for file databases."""
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            if not is_memory:
                cursor.execute("PRAGMA journal_mode=WAL;")
                cursor.execute("PRAGMA synchronous=NORMAL;")
            cursor.close()

    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Return a session factory bound to the engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create all tables. Safe to call repeatedly."""
    Base.metadata.create_all(bind=engine)
    logger.info("Database schema ensured on %s", engine.url.render_as_string(hide_password=True))


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Context manager for a unit of work outside the services.

    Usage:
        with session_scope(factory) as db:
            db.query(ErpConnection).count()
    """
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
