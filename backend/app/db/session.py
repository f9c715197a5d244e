from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
from sqlalchemy.pool import NullPool, StaticPool
from app.core.config import settings


def build_engine(db_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for the given URL.
    In-memory SQLite must share one connection, so it is only safe for
    strictly sequential use; file SQLite gets a connection per session.
    Postgres uses NullPool.
    """
    if db_url.startswith("sqlite"):
        if ":memory:" in db_url or db_url.rstrip("/").endswith("sqlite+aiosqlite:"):
            return create_async_engine(
                db_url,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_async_engine(
            db_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 15},
        )
    return create_async_engine(
        db_url,
        echo=echo,
        future=True,
        poolclass=NullPool,  # Fixes asyncpg concurrency/connection issues
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


# Create Async Engine
engine = build_engine(settings.DATABASE_URL, echo=settings.ENVIRONMENT == "development")

# Create Session Factory
AsyncSessionLocal = build_session_factory(engine)
