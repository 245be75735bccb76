from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from app.config import settings


def _create_engine():
    url = settings.DATABASE_URL
    common_kwargs = {
        "echo": settings.DEBUG,
        "future": True,
    }

    # SQLite (especially aiosqlite) is not well-served by connection pooling.
    if url.startswith("sqlite"):
        return create_async_engine(
            url,
            poolclass=NullPool,
            **common_kwargs,
        )

    # Postgres: use pool settings to improve stability under load.
    # Mint claims rely on single-statement conditional updates, so the default
    # READ COMMITTED isolation is sufficient.
    return create_async_engine(
        url,
        pool_pre_ping=settings.DB_POOL_PRE_PING,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT_SECONDS,
        pool_recycle=settings.DB_POOL_RECYCLE_SECONDS,
        **common_kwargs,
    )


engine = _create_engine()

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)
