"""
Database engine and session factory

PostgreSQL in production, SQLite for local runs and tests.
"""

import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from config import Settings, get_settings
from database.models import Base

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def build_engine(database_url: str, echo: bool = False) -> Engine:
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
        )
    return create_engine(
        database_url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=10,
        max_overflow=20,
        echo=echo,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    # Services hand ORM snapshots back after commit, so keep attributes loaded
    return sessionmaker(
        bind=engine, autoflush=False, expire_on_commit=False
    )


def get_engine(settings: Optional[Settings] = None) -> Engine:
    global _engine
    if _engine is None:
        settings = settings or get_settings()
        _engine = build_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
    return _engine


def get_session_factory() -> sessionmaker:
    """
    Dependency for FastAPI routes to get the session factory
    Usage:
        @router.post("/items")
        async def create(factory: sessionmaker = Depends(get_session_factory)):
            ...
    """
    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory(get_engine())
    return _session_factory


def init_db(engine: Optional[Engine] = None) -> None:
    """
    Initialize database tables
    Call this on application startup
    """
    engine = engine or get_engine()
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created/verified")
