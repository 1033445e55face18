import asyncio
import logging
import sys
import os

# Add project root to sys.path to allow imports from app
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.core.config import settings
from app.db.engine import init_db

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

async def main():
    database_url = settings.DATABASE_URL
    db_type = "SQLite" if "sqlite" in database_url else "PostgreSQL"

    logger.info(f"Initializing {db_type} database...")
    logger.info(f"   URL: {database_url.split('@')[-1] if '@' in database_url else 'local'}")

    try:
        await init_db()
        logger.info("Database schema initialized successfully.")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        sys.exit(1)

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Operation cancelled.")
