from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from platform_operator.config import settings


def make_engine(url: str | None = None) -> Engine:
    url = url or settings.database_url
    kwargs: dict = dict(pool_pre_ping=True, future=True)
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs.update(
            pool_size=10,
            max_overflow=10,
            pool_recycle=300,  # Recycle connections after 5 minutes
        )
    return create_engine(url, **kwargs)


engine = make_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def init_db(bind: Engine | None = None) -> None:
    """Create tables if they do not exist."""
    from platform_operator import models

    models.Base.metadata.create_all(bind=bind or engine)


@contextmanager
def get_session(factory: sessionmaker | None = None):
    """Get a database session with rollback-before-close cleanup.

    Usage:
        with get_session() as session:
            # do work
            session.commit()  # if needed
    """
    session = (factory or SessionLocal)()
    try:
        yield session
    finally:
        try:
            session.rollback()  # Always rollback before close to release transaction
        except Exception:
            pass  # Ignore rollback errors
        session.close()
