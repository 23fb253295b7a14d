"""
Database engine, session factory, and metadata shared across the application.
"""

from __future__ import annotations

import logging
from typing import Any, Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from careslot.core.config import settings

logger = logging.getLogger(__name__)

_DEFAULT_POOL_KWARGS: dict[str, Any] = {
    "pool_size": 5,
    "max_overflow": 10,
    # Fail fast when the pool is exhausted instead of blocking the request
    "pool_timeout": 5,
    "pool_recycle": 300,
    "pool_pre_ping": True,
}


def build_engine(url: str | None = None, **overrides: Any) -> Engine:
    """Create an engine with settings suited to the target dialect."""
    database_url = url or settings.database_url
    kwargs: dict[str, Any] = {"echo": settings.database_echo, "future": True}
    if database_url.startswith("sqlite"):
        # SQLite serialises writers; give concurrent writers room to wait for the lock
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    else:
        kwargs.update(_DEFAULT_POOL_KWARGS)
        kwargs["connect_args"] = {"connect_timeout": 5}
    kwargs.update(overrides)
    return create_engine(database_url, **kwargs)


Base = declarative_base()

engine = build_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """Yield a session and close it once the unit of work is done."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
