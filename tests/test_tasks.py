"""Tests for scheduled dedupe tasks."""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from src.db.models import DuplicateCandidate, Organization, ScanRun
from src.dedupe.review import ReviewWorkflow
from src.worker.scan_lock import ScanLockHeld
from src.worker.tasks import DedupeTaskRunner, is_scan_due


class FakeLockManager:
    def __init__(self, busy_tenants=()):
        self.busy_tenants = set(busy_tenants)
        self.held = []

    @asynccontextmanager
    async def hold(self, tenant_id, run_id):
        if tenant_id in self.busy_tenants:
            raise ScanLockHeld(tenant_id, {"run_id": "someone-else", "ttl_seconds": 100})
        self.held.append((tenant_id, run_id))
        yield "token"

    async def close(self):
        pass


@pytest.fixture
def runner(session_factory):
    return DedupeTaskRunner(lock_manager=FakeLockManager(), session_factory=session_factory)


def test_is_scan_due():
    now = datetime(2026, 5, 1, 12, 0)
    never = Organization(name="a", duplicate_scan_enabled=True, scan_frequency_hours=24)
    recent = Organization(
        name="b",
        duplicate_scan_enabled=True,
        scan_frequency_hours=24,
        last_duplicate_scan=now - timedelta(hours=3),
    )
    old = Organization(
        name="c",
        duplicate_scan_enabled=True,
        scan_frequency_hours=24,
        last_duplicate_scan=now - timedelta(hours=24),
    )
    disabled = Organization(name="d", duplicate_scan_enabled=False, scan_frequency_hours=24)

    assert is_scan_due(never, now)
    assert not is_scan_due(recent, now)
    assert is_scan_due(old, now)
    assert not is_scan_due(disabled, now)


@pytest.mark.asyncio
async def test_scan_entrypoint_runs_under_lock(runner, seed, session_factory):
    org = await seed.organization()
    await seed.product(org.id, "Tito's Vodka 750ML", revenue=100)
    await seed.product(org.id, "Titos Handmade Vodka 750 mL", revenue=50)

    summary = await runner.scan_entrypoint(org.id, trigger="manual")

    assert summary.status == "completed"
    assert summary.candidates_found == 1
    assert runner.lock_manager.held[0][0] == org.id

    async with session_factory() as db:
        run = (await db.execute(select(ScanRun))).scalar_one()
        assert run.run_id == runner.lock_manager.held[0][1]
        assert run.trigger == "manual"


@pytest.mark.asyncio
async def test_scan_entrypoint_raises_when_locked(session_factory, seed):
    org = await seed.organization()
    runner = DedupeTaskRunner(
        lock_manager=FakeLockManager(busy_tenants=[org.id]), session_factory=session_factory
    )

    with pytest.raises(ScanLockHeld):
        await runner.scan_entrypoint(org.id)

    async with session_factory() as db:
        assert (await db.execute(select(ScanRun))).first() is None


@pytest.mark.asyncio
async def test_scan_due_organizations(runner, seed, session_factory):
    due = await seed.organization(name="Due Co")
    await seed.organization(name="Fresh Co", last_duplicate_scan=datetime.utcnow())
    await seed.organization(name="Off Co", duplicate_scan_enabled=False)

    summaries = await runner.scan_due_organizations()

    assert len(summaries) == 1
    assert [tenant for tenant, _ in runner.lock_manager.held] == [due.id]

    async with session_factory() as db:
        last_scan = await db.scalar(
            select(Organization.last_duplicate_scan).where(Organization.id == due.id)
        )
        assert last_scan is not None


@pytest.mark.asyncio
async def test_scan_due_organizations_skips_locked_tenant(session_factory, seed):
    busy = await seed.organization(name="Busy Co")
    free = await seed.organization(name="Free Co")
    runner = DedupeTaskRunner(
        lock_manager=FakeLockManager(busy_tenants=[busy.id]), session_factory=session_factory
    )

    summaries = await runner.scan_due_organizations()

    assert len(summaries) == 1
    assert [tenant for tenant, _ in runner.lock_manager.held] == [free.id]


@pytest.mark.asyncio
async def test_archive_reviewed_candidates(runner, seed, session_factory):
    org = await seed.organization()
    a = await seed.product(org.id, "Grey Goose 1L")
    b = await seed.product(org.id, "Grey Goose Vodka 1L")
    c = await seed.product(org.id, "Ketel One 750ml")
    d = await seed.product(org.id, "Ketel One Vodka 750ml")
    long_ago = datetime.utcnow() - timedelta(days=45)
    old_pending = await seed.candidate(org.id, a, b, detected_at=long_ago)
    old_dismissed = await seed.candidate(
        org.id, b, c, status="dismissed", detected_at=long_ago, reviewed_at=long_ago
    )
    old_merged = await seed.candidate(
        org.id, c, d, status="merged", detected_at=long_ago, reviewed_at=long_ago
    )
    recent_dismissed = await seed.candidate(
        org.id, a, c, status="dismissed", detected_at=long_ago, reviewed_at=datetime.utcnow()
    )

    archived = await runner.archive_reviewed_candidates(older_than_days=30)

    assert archived == 2
    async with session_factory() as db:
        rows = dict(
            (
                await db.execute(
                    select(DuplicateCandidate.id, DuplicateCandidate.archived_at)
                )
            ).all()
        )
        pending = await ReviewWorkflow(db).list_pending(org.id)
    assert rows[old_pending.id] is None
    assert rows[old_dismissed.id] is not None
    assert rows[old_merged.id] is not None
    assert rows[recent_dismissed.id] is None
    assert [candidate.id for candidate in pending] == [old_pending.id]


@pytest.mark.asyncio
async def test_prune_scan_history_keeps_candidates(runner, seed, db_session, session_factory):
    org = await seed.organization()
    old_run = ScanRun(
        tenant_id=org.id,
        run_id="old",
        status="completed",
        started_at=datetime.utcnow() - timedelta(days=120),
    )
    running = ScanRun(
        tenant_id=org.id,
        run_id="live",
        status="running",
        started_at=datetime.utcnow() - timedelta(days=120),
    )
    recent = ScanRun(tenant_id=org.id, run_id="recent", status="completed")
    db_session.add_all([old_run, running, recent])
    await db_session.commit()
    a = await seed.product(org.id, "Grey Goose 1L")
    b = await seed.product(org.id, "Grey Goose Vodka 1L")
    candidate = await seed.candidate(org.id, a, b, scan_run_id=old_run.id)
    old_run_id = old_run.id

    deleted = await runner.prune_scan_history(older_than_days=90)

    assert deleted == 1
    async with session_factory() as db:
        remaining = set((await db.execute(select(ScanRun.run_id))).scalars().all())
        assert remaining == {"live", "recent"}
        scan_run_id = await db.scalar(
            select(DuplicateCandidate.scan_run_id).where(DuplicateCandidate.id == candidate.id)
        )
        assert scan_run_id is None
        assert await db.get(ScanRun, old_run_id) is None
