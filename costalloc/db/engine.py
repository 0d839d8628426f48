"""Database engine configuration.

Uses a synchronous SQLAlchemy engine with SQLite by default.
The database URL can be configured via COSTALLOC_DATABASE_URL environment variable.
"""

from sqlalchemy import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from costalloc.config import get_settings


def _is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (url.endswith(":memory:") or url.rstrip("/") == "sqlite:")


def create_db_engine(url: str | None = None, echo: bool | None = None) -> Engine:
    """Create a database engine.

    Args:
        url: SQLAlchemy database URL; defaults to the configured one.
        echo: Log SQL statements; defaults to the configured value.

    In-memory SQLite databases share one connection so that every session
    sees the same data.
    """
    settings = get_settings()
    url = url or settings.database_url
    echo = settings.sql_echo if echo is None else echo

    if _is_memory_sqlite(url):
        return create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, echo=echo, pool_pre_ping=True)


def init_db(engine: Engine) -> None:
    """Create all tables that do not exist yet."""
    SQLModel.metadata.create_all(engine)
