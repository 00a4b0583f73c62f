import os
import sys
import logging

import uvicorn

from daily_stories.cache import get_cache
from daily_stories.core.config import settings
from daily_stories.core.logging import setup_logging
from daily_stories.database import test_database_connection

logger = logging.getLogger("daily_stories.start")


def startup_checks() -> bool:
    """Perform all startup checks"""
    logger.info("Starting application initialization...")

    logger.info("Checking database connection...")
    if not test_database_connection():
        logger.error("Failed to establish database connection")
        return False

    logger.info(f"Checking {settings.CACHE_BACKEND} cache...")
    if not get_cache().backend.ping():
        # Reads degrade to the database, but writes cannot invalidate
        logger.error("Cache backend is unreachable")
        return False

    logger.info("All startup checks passed successfully")
    return True


if __name__ == "__main__":
    setup_logging()

    if not startup_checks():
        logger.error("Startup checks failed, exiting...")
        sys.exit(1)

    port = int(os.getenv("PORT", 8080))
    uvicorn.run(
        "daily_stories.main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENVIRONMENT") == "development",
        workers=int(os.getenv("WEB_CONCURRENCY", 4)),
        log_level=settings.LOG_LEVEL.lower()
    )
