"""Session forge."""

from __future__ import annotations

import logging
import os
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from assessor.core.config import get_settings
from assessor.db.base import Base, load_models

logger = logging.getLogger("db.session")

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def build_engine(url: str, *, echo: bool = False) -> Engine:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **kwargs)
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "5")),
        pool_recycle=300,
        echo=echo,
    )


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        settings = get_settings()
        url = settings.get_database_url()
        if not url:
            raise RuntimeError("DATABASE_URL not configured")
        _engine = build_engine(url, echo=settings.debug)
    return _engine


def get_session_factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(autocommit=False, autoflush=False, bind=get_engine(), expire_on_commit=False)
    return _session_factory


def create_tables(engine: Optional[Engine] = None) -> None:
    load_models()
    Base.metadata.create_all(bind=engine or get_engine())


__all__ = ["build_engine", "create_tables", "get_engine", "get_session_factory"]
