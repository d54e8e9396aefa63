"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from src.config import settings
from src.worker.scan_watchdog import scan_watchdog_check
from src.worker.tasks import task_runner

logger = logging.getLogger(__name__)


def setup_scheduler() -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Jobs:
    - duplicate_scan: scans tenants whose scan_frequency_hours has elapsed
    - candidate_maintenance: daily archive of reviewed candidates and old scan runs
    - scan_watchdog: fails stuck scans and clears their tenant locks

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()
    scan_interval = max(1, int(settings.scan_schedule_interval_minutes))
    watchdog_interval = max(1, int(settings.watchdog_interval_minutes))

    # Per-tenant frequency is checked inside the job; this only sets how often we look
    scheduler.add_job(
        task_runner.scan_due_organizations,
        IntervalTrigger(minutes=scan_interval),
        id="duplicate_scan",
        name="Scan due organizations for duplicate products",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=600,
        replace_existing=True,
    )

    scheduler.add_job(
        task_runner.candidate_maintenance,
        CronTrigger(hour=3, minute=30),
        id="candidate_maintenance",
        name="Archive reviewed candidates and prune scan history",
        max_instances=1,
        replace_existing=True,
    )

    scheduler.add_job(
        scan_watchdog_check,
        IntervalTrigger(minutes=watchdog_interval),
        id="scan_watchdog",
        name="Duplicate scan watchdog",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: duplicate scan check every %d minutes, "
        "candidate maintenance at 03:30, scan watchdog every %d minutes",
        scan_interval,
        watchdog_interval,
    )

    return scheduler
