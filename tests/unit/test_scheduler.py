import os
import time
import pytest
from unittest.mock import patch
from ingestion.scheduler import MaintenanceScheduler, sweep_spool_dir


def touch(path, age_seconds=0):
    path.write_bytes(b"pk_col\n")
    mtime = time.time() - age_seconds
    os.utime(path, (mtime, mtime))
    return str(path)


def test_sweep_removes_only_stale_unowned_files(tmp_path):
    stale = touch(tmp_path / "stale.csv", age_seconds=7200)
    fresh = touch(tmp_path / "fresh.csv")
    running = touch(tmp_path / "running.csv", age_seconds=7200)

    removed = sweep_spool_dir(str(tmp_path), max_age_seconds=3600, active_paths=[running])

    assert removed == 1
    assert not os.path.exists(stale)
    assert os.path.exists(fresh)
    assert os.path.exists(running)


def test_sweep_missing_directory(tmp_path):
    assert sweep_spool_dir(str(tmp_path / "missing"), 3600, []) == 0


@pytest.mark.asyncio
async def test_scheduler_registers_sweep_job(tmp_path):
    scheduler = MaintenanceScheduler(str(tmp_path), lambda: [])
    scheduler.start()

    assert scheduler.scheduler.get_job("spool_sweep") is not None

    scheduler.stop()


@pytest.mark.asyncio
async def test_sweep_job_logs_os_errors(tmp_path):
    scheduler = MaintenanceScheduler(str(tmp_path), lambda: [])

    with patch("ingestion.scheduler.sweep_spool_dir", side_effect=OSError("permission denied")) as sweep:
        await scheduler.sweep_spool_job()

    assert sweep.called
