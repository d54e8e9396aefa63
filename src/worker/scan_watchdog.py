"""Watchdog task that fails stuck duplicate scans and clears their locks."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src import metrics
from src.config import settings
from src.db.models import SCAN_FAILED, SCAN_RUNNING, ScanRun
from src.db.session import AsyncSessionLocal
from src.worker.scan_lock import ScanLockManager, scan_lock_manager

logger = logging.getLogger(__name__)


async def scan_watchdog_check(
    heartbeat_stale_seconds: int = 300,
    reason_prefix: str = "Watchdog",
    db: Optional[AsyncSession] = None,
    lock_manager: Optional[ScanLockManager] = None,
) -> int:
    """
    Recover scans left in 'running'.

    A running ScanRun is failed when:
    1. It has run longer than max_scan_duration_seconds, or
    2. Its tenant lock is gone or held by a different run, and it started
       more than heartbeat_stale_seconds ago (the worker died), or
    3. Its tenant lock heartbeat is older than heartbeat_stale_seconds.

    The tenant lock is force-cleared when it belongs to the failed run.

    Returns:
        Number of scan runs recovered
    """
    lock_manager = lock_manager or scan_lock_manager
    if db is None:
        async with AsyncSessionLocal() as session:
            return await _check(session, lock_manager, heartbeat_stale_seconds, reason_prefix)
    return await _check(db, lock_manager, heartbeat_stale_seconds, reason_prefix)


async def _check(
    db: AsyncSession,
    lock_manager: ScanLockManager,
    heartbeat_stale_seconds: int,
    reason_prefix: str,
) -> int:
    result = await db.execute(select(ScanRun).where(ScanRun.status == SCAN_RUNNING))
    running = result.scalars().all()
    if not running:
        return 0

    now = datetime.utcnow()
    recovered = 0
    for scan_run in running:
        elapsed = (now - scan_run.started_at).total_seconds() if scan_run.started_at else 0.0
        reason = None
        owns_lock = False

        try:
            lock_info = await lock_manager.get_lock_info(scan_run.tenant_id)
            heartbeat_age = await lock_manager.get_heartbeat_age(scan_run.tenant_id)
        except Exception as e:
            logger.error(f"{reason_prefix}: could not read scan lock: {e}")
            lock_info, heartbeat_age = None, None
            lock_unknown = True
        else:
            lock_unknown = False
            owns_lock = bool(lock_info) and lock_info.get("run_id") == scan_run.run_id

        if elapsed > settings.max_scan_duration_seconds:
            reason = (
                f"{reason_prefix}: scan ran for {elapsed:.0f} seconds "
                f"(> {settings.max_scan_duration_seconds} limit)"
            )
        elif not lock_unknown and not owns_lock and elapsed > heartbeat_stale_seconds:
            reason = f"{reason_prefix}: no scan lock held for this run after {elapsed:.0f}s"
        elif owns_lock and heartbeat_age is not None and heartbeat_age > heartbeat_stale_seconds:
            reason = (
                f"{reason_prefix}: stale heartbeat detected. "
                f"Heartbeat age {heartbeat_age:.0f}s (> {heartbeat_stale_seconds}s)"
            )

        if reason is None:
            continue

        logger.warning(
            f"{reason_prefix}: failing scan {scan_run.id} for tenant {scan_run.tenant_id} "
            f"(run_id: {(scan_run.run_id or '')[:16]}...): {reason}"
        )
        scan_run.status = SCAN_FAILED
        scan_run.completed_at = now
        scan_run.duration_seconds = round(elapsed, 3)
        scan_run.error_message = reason
        recovered += 1
        metrics.record_scan_run_recovered()

        if owns_lock:
            await lock_manager.force_unlock(scan_run.tenant_id)

    if recovered:
        await db.commit()
    return recovered


async def cleanup_stale_runs(older_than: timedelta, db: AsyncSession) -> int:
    """Fail runs stuck in 'running' longer than older_than, ignoring locks (startup recovery)."""
    cutoff = datetime.utcnow() - older_than
    result = await db.execute(
        select(ScanRun).where(ScanRun.status == SCAN_RUNNING, ScanRun.started_at < cutoff)
    )
    stale = result.scalars().all()
    for scan_run in stale:
        scan_run.status = SCAN_FAILED
        scan_run.completed_at = datetime.utcnow()
        scan_run.error_message = "Scan interrupted (service restarted)"
    if stale:
        await db.commit()
        logger.warning(f"Marked {len(stale)} interrupted scan runs failed")
    return len(stale)
