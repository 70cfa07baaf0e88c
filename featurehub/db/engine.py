"""Database engine and session factories.

Components receive a session factory through their constructors; nothing
here holds a process-wide engine.
"""

from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from featurehub.db.base import Base
from featurehub.settings import get_settings


def create_sync_engine(url: Optional[str] = None, **kwargs) -> Engine:
    """Create a sync engine for the given URL (settings.database_url by default).

    In-memory SQLite URLs get a StaticPool so every session shares the one
    connection that holds the data.
    """
    url = url or get_settings().database_url
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
            kwargs.setdefault("poolclass", StaticPool)
        return create_engine(url, connect_args=connect_args, **kwargs)
    kwargs.setdefault("pool_pre_ping", True)
    kwargs.setdefault("pool_size", 20)
    kwargs.setdefault("max_overflow", 10)
    return create_engine(url, **kwargs)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_schema(engine: Engine) -> None:
    """Create all FeatureHub tables that do not exist yet."""
    # Import for side effect: registers the tables on Base.metadata
    from featurehub.db import models  # noqa: F401

    Base.metadata.create_all(engine)
