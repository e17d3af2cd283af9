"""Database configuration and session management.

This module constructs a synchronous SQLAlchemy engine and session
factory.  The pipeline runs inside Dramatiq worker processes, so all
access goes through plain ``Session`` objects rather than the async
API.  Postgres URLs are normalised to the psycopg (v3) driver; SQLite
is accepted for development and tests.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import declarative_base, sessionmaker

from receiptscan.core.config import settings

logger = logging.getLogger(__name__)


def normalize_database_url(url: str) -> str:
    """Return ``url`` with the driver SQLAlchemy should use for it.

    ``postgres://``, ``postgresql://`` and ``postgresql+psycopg2://`` all
    become ``postgresql+psycopg://``.  Other URLs are returned as-is.
    """
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql+psycopg2://"):
        return url.replace("postgresql+psycopg2://", "postgresql+psycopg://", 1)
    return url


def build_engine(url: str, **kwargs: Any) -> Engine:
    """Create an engine with pool settings suited to the backend."""
    url = normalize_database_url(url)
    engine_kwargs: Dict[str, Any] = dict(pool_pre_ping=True)
    if url.startswith("sqlite"):
        # Worker threads share connections
        engine_kwargs["connect_args"] = {"check_same_thread": False}
    else:
        engine_kwargs.update(pool_size=5, max_overflow=10, pool_recycle=3600)
    engine_kwargs.update(kwargs)
    return create_engine(url, **engine_kwargs)


engine = build_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

# Declarative base
Base = declarative_base()

try:
    logger.info("Database URL: %s", make_url(engine.url).set(password=None))
except Exception:  # pragma: no cover - unparseable URL is reported by the engine itself
    logger.info("Database URL: <unparseable>")


def init_db(bind: Engine | None = None) -> None:
    """Create all tables on ``bind`` (defaults to the module engine)."""
    from receiptscan.models import tables  # noqa: F401  # populate metadata

    Base.metadata.create_all(bind=bind or engine)
