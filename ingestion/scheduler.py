import logging
import os
import time
from typing import Callable, Iterable
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from core.config import settings

logger = logging.getLogger(__name__)


def sweep_spool_dir(upload_dir: str, max_age_seconds: float, active_paths: Iterable[str]) -> int:
    """Delete spooled uploads older than max_age_seconds that no running job owns."""
    if not os.path.isdir(upload_dir):
        return 0

    active = {os.path.abspath(path) for path in active_paths}
    cutoff = time.time() - max_age_seconds
    removed = 0

    for entry in os.scandir(upload_dir):
        if not entry.is_file() or os.path.abspath(entry.path) in active:
            continue
        if entry.stat().st_mtime < cutoff:
            os.remove(entry.path)
            removed += 1

    return removed


class MaintenanceScheduler:
    """Periodic housekeeping for the bulk update service."""

    def __init__(self, upload_dir: str, active_paths: Callable[[], Iterable[str]]):
        self.scheduler = AsyncIOScheduler()
        self.upload_dir = upload_dir
        self.active_paths = active_paths

    async def sweep_spool_job(self):
        """Job to remove abandoned upload files"""
        try:
            removed = sweep_spool_dir(
                self.upload_dir,
                settings.BULK_SPOOL_MAX_AGE_HOURS * 3600,
                self.active_paths(),
            )
            if removed:
                logger.info(f"Scheduler: removed {removed} stale upload files")
        except OSError as e:
            logger.error(f"Scheduler: spool sweep failed - {e}")

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.sweep_spool_job,
            trigger=IntervalTrigger(minutes=settings.BULK_SPOOL_SWEEP_MINUTES),
            id="spool_sweep",
            replace_existing=True
        )
        self.scheduler.start()
        logger.info("Maintenance scheduler started")

    def stop(self):
        self.scheduler.shutdown()
        logger.info("Maintenance scheduler stopped")
