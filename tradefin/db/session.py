"""
Database engine and session factory.

Each service operation opens its own ``AsyncSession`` from
:data:`AsyncSessionLocal` inside the per-invoice lock, so a transaction never
spans two requests and never outlives the lock that protects it.
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tradefin.core.config import settings


def build_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for ``url``.

    SQLite URLs get foreign keys switched on (SQLite ignores them by
    default); a bare in-memory URL additionally gets ``StaticPool`` so every
    connection sees the same database.  Anything else is treated as
    PostgreSQL and gets the configured pool.
    """
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite+aiosqlite://", "sqlite+aiosqlite:///:memory:"):
            from sqlalchemy.pool import StaticPool

            kwargs["poolclass"] = StaticPool
        engine = create_async_engine(url, echo=echo, **kwargs)

        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_async_engine(
        url,
        echo=echo,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        pool_pre_ping=True,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False: returned entities stay readable after commit
    # without a lazy (sync) reload.
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)
AsyncSessionLocal = build_session_factory(engine)
