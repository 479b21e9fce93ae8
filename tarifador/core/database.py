"""
Database connection management and ORM session factory for the tariff catalog.
Supports dialect abstraction for SQLite and PostgreSQL.
"""
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from tarifador.core.config import settings
from tarifador.core.logger import logger

Base = declarative_base()


def build_engine(database_url: str = settings.DATABASE_URL, **kwargs: Any) -> Engine:
    """Creates an engine; SQLite gets cross-thread access and WAL so concurrent lookups do not block."""
    if "sqlite" in database_url:
        kwargs.setdefault("connect_args", {"check_same_thread": False})

    db_engine = create_engine(database_url, **kwargs)

    if "sqlite" in database_url and ":memory:" not in database_url:
        @event.listens_for(db_engine, "connect")
        def set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    return db_engine


engine = build_engine()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind: Engine = engine) -> None:
    """Idempotent initialization of the catalog schema."""
    logger.info("Creating catalog tables")
    Base.metadata.create_all(bind=bind)
    logger.info("Catalog tables ready")
