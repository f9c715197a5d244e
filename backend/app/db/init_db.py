import asyncio
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from app.core.config import settings

logger = structlog.get_logger()


async def init_models(bind: AsyncEngine, timeout: float = 10) -> None:
    """
    Create the support tables if they do not exist yet.
    """
    from app.db.base import Base
    # Trigger model registration
    import app.models  # noqa: F401

    try:
        # Fail fast if the connection hangs (firewall/network issues)
        async with asyncio.timeout(timeout):
            async with bind.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        logger.info("db_init_complete", dialect=bind.dialect.name)
    except TimeoutError:
        logger.error("db_init_timeout", message=f"Connection to database timed out after {timeout}s.")
        raise
    except Exception as e:
        logger.error("db_init_failed", error=str(e))
        raise


async def main():
    from app.db.session import engine

    logger.info("db_init_start", database=settings.DATABASE_URL.split("@")[-1])
    await init_models(engine)
    await engine.dispose()

if __name__ == "__main__":
    asyncio.run(main())
