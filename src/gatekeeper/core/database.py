"""
Relational tables shared by the SQL-backed stores and the database log sink.
"""

import structlog
from sqlalchemy import (
    Column,
    DateTime,
    Float,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    func,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from ..config import DatabaseSettings

logger = structlog.get_logger(__name__)

metadata = MetaData()

# Longest cache key, in UTF-8 bytes, any store accepts
CACHE_KEY_MAX_LENGTH = 512

cache_entries = Table(
    "cache_entries",
    metadata,
    Column("cache_key", String(CACHE_KEY_MAX_LENGTH), primary_key=True),
    Column("payload", LargeBinary, nullable=False),
    Column("stored_at", Float, nullable=False),
    Column("ttl", Float, nullable=False),
    Column("expires_at", Float, nullable=False, index=True),
    Column("version", Integer, nullable=False),
)

rate_windows = Table(
    "rate_windows",
    metadata,
    Column("identity", String(255), primary_key=True),
    Column("window_start", Float, nullable=False),
    Column("count", Integer, nullable=False),
    Column("capacity", Integer, nullable=False),
    Column("window_length", Float, nullable=False),
)

system_logs = Table(
    "system_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("level", String(16), nullable=False, index=True),
    Column("message", Text, nullable=False),
    Column("context", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)


def create_db_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine; SQLite connections are shared with worker threads."""
    kwargs = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool

    engine = create_engine(url, echo=echo, **kwargs)
    logger.info("Database engine created", dialect=engine.dialect.name)
    return engine


def init_db(engine: Engine) -> None:
    """Create missing tables."""
    metadata.create_all(engine)


def engine_from_settings(settings: DatabaseSettings) -> Engine:
    """Build the shared engine and make sure the tables exist."""
    engine = create_db_engine(settings.url, echo=settings.echo)
    init_db(engine)
    return engine
