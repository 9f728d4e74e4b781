import asyncio
import logging

from sqlalchemy.ext.asyncio import create_async_engine

from config.settings import settings
from core.db import init_models
from core.logging import configure_logging

logger = logging.getLogger(__name__)


async def main():
    """
    One-time script to create all tables in the configured MySQL database.
    Uses a temporary async engine built from settings.DATABASE_URL.
    """
    configure_logging()
    db_url = settings.DATABASE_URL
    if not settings.db_enabled:
        raise RuntimeError(f"DATABASE_URL is not configured correctly: {db_url}")

    engine = create_async_engine(db_url, echo=False)
    try:
        await init_models(engine)
    finally:
        await engine.dispose()
    logger.info("Database schema created/updated successfully.")


if __name__ == "__main__":
    asyncio.run(main())
