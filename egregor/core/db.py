from pathlib import Path
import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    pass


def create_db_engine(database_url: str) -> Engine:
    """
    Create the SQLAlchemy engine, ensuring SQLite file paths are ready beforehand.

    In-memory SQLite gets a single shared connection so every thread the
    backend offloads work to sees the same database.
    """
    try:
        url = make_url(database_url)
        if url.get_backend_name() == "sqlite":
            database = url.database
            if not database or database == ":memory:":
                return create_engine(
                    database_url,
                    connect_args={"check_same_thread": False},
                    poolclass=StaticPool,
                )
            db_path = Path(database).expanduser()
            db_path.parent.mkdir(parents=True, exist_ok=True)
            # Allow usage across the worker threads that run blocking queries
            return create_engine(
                database_url,
                pool_pre_ping=True,
                connect_args={"check_same_thread": False},
            )

        return create_engine(database_url, pool_pre_ping=True)
    except Exception as e:
        logging.error(f"Failed to create database engine: {e}", exc_info=True)
        raise


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create the room tables if they do not exist (dev / tests)."""
    from egregor.core import models  # noqa: F401  registers the mappers

    Base.metadata.create_all(engine)
