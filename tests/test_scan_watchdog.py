"""Tests for stuck scan recovery."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from src.config import settings
from src.db.models import ScanRun
from src.worker.scan_watchdog import cleanup_stale_runs, scan_watchdog_check


class StubLockManager:
    def __init__(self, lock_info=None, heartbeat_age=None):
        self.lock_info = lock_info
        self.heartbeat_age = heartbeat_age
        self.forced = []

    async def get_lock_info(self, tenant_id):
        return self.lock_info

    async def get_heartbeat_age(self, tenant_id):
        return self.heartbeat_age

    async def force_unlock(self, tenant_id):
        self.forced.append(tenant_id)
        return True


async def _running_scan(db, tenant_id, run_id, age_seconds):
    scan_run = ScanRun(
        tenant_id=tenant_id,
        run_id=run_id,
        trigger="scheduled",
        status="running",
        started_at=datetime.utcnow() - timedelta(seconds=age_seconds),
    )
    db.add(scan_run)
    await db.commit()
    return scan_run.id


async def _status(db, scan_id):
    return await db.scalar(select(ScanRun.status).where(ScanRun.id == scan_id))


@pytest.mark.asyncio
async def test_healthy_scan_is_left_alone(db_session, seed):
    org = await seed.organization()
    scan_id = await _running_scan(db_session, org.id, "run-1", age_seconds=600)
    locks = StubLockManager(lock_info={"run_id": "run-1"}, heartbeat_age=10)

    recovered = await scan_watchdog_check(db=db_session, lock_manager=locks)

    assert recovered == 0
    assert await _status(db_session, scan_id) == "running"
    assert locks.forced == []


@pytest.mark.asyncio
async def test_stale_heartbeat_fails_scan_and_clears_lock(db_session, seed):
    org = await seed.organization()
    scan_id = await _running_scan(db_session, org.id, "run-1", age_seconds=600)
    locks = StubLockManager(lock_info={"run_id": "run-1"}, heartbeat_age=900)

    recovered = await scan_watchdog_check(db=db_session, lock_manager=locks)

    assert recovered == 1
    assert await _status(db_session, scan_id) == "failed"
    error = await db_session.scalar(select(ScanRun.error_message).where(ScanRun.id == scan_id))
    assert "stale heartbeat" in error
    assert locks.forced == [org.id]


@pytest.mark.asyncio
async def test_missing_lock_fails_old_scan(db_session, seed):
    org = await seed.organization()
    scan_id = await _running_scan(db_session, org.id, "run-1", age_seconds=600)
    locks = StubLockManager(lock_info=None)

    recovered = await scan_watchdog_check(db=db_session, lock_manager=locks)

    assert recovered == 1
    assert await _status(db_session, scan_id) == "failed"
    assert locks.forced == []


@pytest.mark.asyncio
async def test_missing_lock_on_fresh_scan_waits(db_session, seed):
    org = await seed.organization()
    scan_id = await _running_scan(db_session, org.id, "run-1", age_seconds=30)

    recovered = await scan_watchdog_check(db=db_session, lock_manager=StubLockManager())

    assert recovered == 0
    assert await _status(db_session, scan_id) == "running"


@pytest.mark.asyncio
async def test_lock_held_by_newer_run_is_not_cleared(db_session, seed):
    org = await seed.organization()
    scan_id = await _running_scan(db_session, org.id, "run-old", age_seconds=600)
    locks = StubLockManager(lock_info={"run_id": "run-new"}, heartbeat_age=5)

    recovered = await scan_watchdog_check(db=db_session, lock_manager=locks)

    assert recovered == 1
    assert await _status(db_session, scan_id) == "failed"
    assert locks.forced == []


@pytest.mark.asyncio
async def test_overlong_scan_is_failed(db_session, seed):
    org = await seed.organization()
    scan_id = await _running_scan(
        db_session, org.id, "run-1", age_seconds=settings.max_scan_duration_seconds + 60
    )
    locks = StubLockManager(lock_info={"run_id": "run-1"}, heartbeat_age=1)

    recovered = await scan_watchdog_check(db=db_session, lock_manager=locks)

    assert recovered == 1
    assert await _status(db_session, scan_id) == "failed"
    assert locks.forced == [org.id]


@pytest.mark.asyncio
async def test_cleanup_stale_runs(db_session, seed):
    org = await seed.organization()
    old_id = await _running_scan(db_session, org.id, "old", age_seconds=7200)
    new_id = await _running_scan(db_session, org.id, "new", age_seconds=10)

    cleaned = await cleanup_stale_runs(timedelta(hours=1), db_session)

    assert cleaned == 1
    assert await _status(db_session, old_id) == "failed"
    assert await _status(db_session, new_id) == "running"
