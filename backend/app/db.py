"""Database configuration and session management for FastAPI.

Call history is stored in PostgreSQL through SQLAlchemy's asyncio support
with asyncpg.  The connection URL is assembled from environment
variables.  On Cloud Run with Cloud SQL the driver connects through a
Unix socket; in local development it falls back to TCP.
"""

import os
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .models import Base


def _make_database_url() -> str:
    """Construct a database URL based on environment variables.

    - DATABASE_URL: used verbatim when set.
    - CLOUDSQL_INSTANCE_CONNECTION_NAME: Cloud SQL instance connection
      name (`project:region:instance`); selects the Unix socket.
    - DB_USER, DB_PASSWORD, DB_NAME: credentials and database.
    - DB_HOST, DB_PORT: TCP address when no instance name is set.
    """
    explicit = os.getenv("DATABASE_URL")
    if explicit:
        return explicit
    user = os.getenv("DB_USER", "postgres")
    password = os.getenv("DB_PASSWORD", "")
    db_name = os.getenv("DB_NAME", "postgres")
    instance_connection_name = os.getenv("CLOUDSQL_INSTANCE_CONNECTION_NAME")
    if instance_connection_name:
        return (
            f"postgresql+asyncpg://{user}:{password}@/{db_name}?host=/cloudsql/{instance_connection_name}"
        )
    host = os.getenv("DB_HOST", "127.0.0.1")
    port = os.getenv("DB_PORT", "5432")
    return f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{db_name}"


DATABASE_URL = _make_database_url()
engine = create_async_engine(DATABASE_URL, pool_pre_ping=True)
AsyncSessionLocal = async_sessionmaker(
    bind=engine, class_=AsyncSession, expire_on_commit=False
)


async def init_db() -> None:
    """Create the call history table if it does not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a session for one request; FastAPI dependency."""
    async with AsyncSessionLocal() as session:
        yield session
