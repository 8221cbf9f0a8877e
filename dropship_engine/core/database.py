"""
Database configuration and session management

Configurable connection pooling for production vs local dev.
Services take a session factory rather than a session so that work which
must commit independently (per supplier group, per supplier sweep task)
can open its own session.
"""

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from dropship_engine.core.config import settings

# Use QueuePool with configured sizes for traditional deployments
pool_config = {}

if settings.DATABASE_URL.startswith("sqlite"):
    # SQLite picks its own pool class; sizing arguments are rejected
    pool_config = {}
elif settings.ENVIRONMENT == "production":
    pool_config = {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_recycle": settings.DB_POOL_RECYCLE,
        "pool_pre_ping": True,  # Verify connections before use
    }
else:
    pool_config = {
        "pool_size": 2,
        "max_overflow": 5,
        "pool_pre_ping": True,
    }

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    future=True,
    **pool_config,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

Base = declarative_base()
