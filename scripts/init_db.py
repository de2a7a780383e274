import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from sqlalchemy.ext.asyncio import create_async_engine
from core.config import settings
from models.base import Base
# Import all models to ensure they are registered
from models.job import BulkJob
from models.job_error import JobError
from models.audit import AuditRecord

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def init_database():
    logger.info("Connecting to database...")
    engine = create_async_engine(settings.DATABASE_URL, echo=True)

    async with engine.begin() as conn:
        logger.info("Creating job, job error and audit tables...")
        # Destination and reference tables are owned by the application
        # being updated and are never created here
        await conn.run_sync(Base.metadata.create_all)
        logger.info("Tables created successfully.")

    await engine.dispose()

if __name__ == "__main__":
    asyncio.run(init_database())
