"""
Script to submit a CSV bulk update from the command line and follow it

Usage:
    python scripts/submit_upload.py data/march_update.csv --actor alice
"""

import argparse
import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import engine
from core.exceptions import BulkUploadException
from core.logging import setup_logging
from ingestion.orchestrator import JobOrchestrator
from models.base import JobStatus

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Submit a CSV bulk update job")
    parser.add_argument("file", help="CSV file whose header matches the configured columns")
    parser.add_argument("--actor", default=os.getenv("USER", "cli"), help="Recorded as submitted_by and changed_by")
    return parser.parse_args(argv)


async def submit_upload(file_path: str, actor: str) -> int:
    """Run one job in-process, printing its progress events. Returns an exit code."""
    orchestrator = JobOrchestrator.from_settings()
    await orchestrator.start()

    try:
        with open(file_path, "rb") as upload:
            job_id = await orchestrator.submit(upload, actor=actor, file_name=os.path.basename(file_path))

        handle = orchestrator.handle(job_id)
        print(f"Job {job_id} submitted")

        subscription = await orchestrator.subscribe(job_id)
        if subscription is not None:
            async for event in subscription:
                print(f"[{event.event}] {event.payload}")

        if handle is not None:
            await handle

        job = await orchestrator.get_status(job_id)
        print(
            f"Job {job_id} {JobStatus(job.status).value}: "
            f"errors={job.error_count}, staged={job.rows_staged}, updated={job.rows_updated}"
        )

        if JobStatus(job.status) == JobStatus.FAILED:
            for error in await orchestrator.list_errors(job_id):
                print(f"  line {error.line_number}: {error.column_name}={error.invalid_value!r} - {error.reason}")
            return 1
        return 0

    except BulkUploadException as e:
        logger.error(f"Bulk update error: {e}")
        return 1
    finally:
        await orchestrator.shutdown()
        await engine.dispose()


if __name__ == "__main__":
    setup_logging()
    args = parse_args()
    logger.info(f"Submitting {args.file} to {settings.BULK_TARGET_TABLE}")
    sys.exit(asyncio.run(submit_upload(args.file, args.actor)))
