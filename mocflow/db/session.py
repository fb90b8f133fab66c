"""Engine and session factories.

SQLite engines begin every transaction with ``BEGIN IMMEDIATE`` so that
concurrent writers serialize on the database lock; PostgreSQL relies on the
row locks taken by ``SELECT ... FOR UPDATE``.
"""

import logging
from contextlib import contextmanager
from functools import lru_cache
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from mocflow.core.config import get_settings

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str, *, echo: bool = False) -> Engine:
    """Create an engine for ``database_url``."""
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        _serialize_sqlite_writers(engine)
        return engine
    return create_engine(database_url, echo=echo, pool_pre_ping=True, future=True)


def _serialize_sqlite_writers(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself.
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@lru_cache
def get_engine() -> Engine:
    settings = get_settings()
    return create_db_engine(settings.database_url, echo=settings.database_echo)


@lru_cache
def get_session_factory() -> sessionmaker:
    return create_session_factory(get_engine())


def init_db(engine: Engine) -> None:
    """Create all tables and seed the sequence counter."""
    from mocflow.db import models  # noqa: F401  (registers mappers)
    from mocflow.db.base import Base
    from mocflow.db.models.sequence import ensure_counter

    Base.metadata.create_all(bind=engine)
    factory = create_session_factory(engine)
    with factory() as session:
        ensure_counter(session, get_settings().sequence_name)
        session.commit()
    logger.info("Database initialised at %s", engine.url.render_as_string(hide_password=True))


@contextmanager
def session_scope(factory: sessionmaker = None) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""
    session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
