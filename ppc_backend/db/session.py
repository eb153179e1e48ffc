"""Engine and session management."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from functools import lru_cache
from typing import Iterator, Optional

import sqlalchemy as sa
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import get_database_settings

LOGGER = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    settings = get_database_settings()
    engine = sa.create_engine(settings.url, future=True, pool_pre_ping=True, **settings.engine_options())
    LOGGER.info("Database engine created for %s", engine.url.render_as_string(hide_password=True))
    return engine


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker:
    """Return the process-wide session factory.

    FastAPI routes depend on this so tests can substitute an in-memory
    factory through ``app.dependency_overrides``.
    """

    return sessionmaker(bind=get_engine(), autoflush=False, expire_on_commit=False, future=True)


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    """Context manager yielding a session committed on success."""

    session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

