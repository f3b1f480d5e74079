"""Scheduled cleanup of stale staged uploads."""

import logging
import shutil
import time
from pathlib import Path

from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger(__name__)

_scheduler: BackgroundScheduler | None = None


def _remove_path(path: Path) -> None:
    if path.is_dir():
        shutil.rmtree(path)
    else:
        path.unlink(missing_ok=True)


def cleanup_stale_uploads(upload_dir: str, max_age_hours: int = 24) -> int:
    """Delete staged uploads older than max_age_hours based on mtime.

    Only the staging directory is scanned; job output directories are never touched.
    """
    base = Path(upload_dir)
    if not base.exists():
        return 0
    cutoff = time.time() - (max_age_hours * 3600)
    removed = 0
    for item in base.iterdir():
        try:
            if item.stat().st_mtime >= cutoff:
                continue
            _remove_path(item)
        except OSError as e:
            logger.warning("cleanup.failed path=%s error=%s", item, e)
            continue
        removed += 1
        logger.info("cleanup.removed path=%s", item.name)
    return removed


def setup_scheduler(upload_dir: str, max_age_hours: int = 24) -> BackgroundScheduler:
    """Create and start APScheduler with an hourly staged-upload sweep."""
    global _scheduler
    _scheduler = BackgroundScheduler()
    _scheduler.add_job(
        cleanup_stale_uploads,
        "interval",
        hours=1,
        args=[upload_dir, max_age_hours],
        id="cleanup_stale_uploads",
    )
    _scheduler.start()
    logger.info("Scheduler started: staged upload cleanup every hour, retention=%sh", max_age_hours)
    return _scheduler


def shutdown_scheduler() -> None:
    """Shut down the scheduler cleanly."""
    global _scheduler
    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Scheduler stopped")
