"""Background tasks for duplicate scanning and candidate housekeeping."""

import logging
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import delete, select, update

from src import metrics
from src.config import settings
from src.db.models import (
    CANDIDATE_DISMISSED,
    CANDIDATE_MERGED,
    SCAN_RUNNING,
    DuplicateCandidate,
    Organization,
    ScanRun,
)
from src.db.session import AsyncSessionLocal
from src.dedupe.scanner import CandidateScanner, ScanSummary
from src.worker.scan_lock import ScanLockHeld, ScanLockManager, scan_lock_manager

logger = logging.getLogger(__name__)


def is_scan_due(org: Organization, now: Optional[datetime] = None) -> bool:
    """True when scanning is enabled and the last scan is older than the tenant's frequency."""
    if not org.duplicate_scan_enabled:
        return False
    if org.last_duplicate_scan is None:
        return True
    now = now or datetime.utcnow()
    return now - org.last_duplicate_scan >= timedelta(hours=org.scan_frequency_hours)


class DedupeTaskRunner:
    """
    Runner for background dedupe tasks.

    Every scan goes through scan_entrypoint, which holds the tenant's Redis
    lock for the whole run so scheduled and manual scans never overlap.
    """

    def __init__(self, lock_manager: Optional[ScanLockManager] = None, session_factory=None):
        self.lock_manager = lock_manager or scan_lock_manager
        self.session_factory = session_factory or AsyncSessionLocal

    async def close(self):
        await self.lock_manager.close()

    async def scan_entrypoint(
        self,
        tenant_id: int,
        trigger: str = "scheduled",
        min_confidence: Optional[float] = None,
        max_products: Optional[int] = None,
    ) -> ScanSummary:
        """
        Run one tenant scan under the tenant lock.

        Raises:
            ScanLockHeld: Another scan for this tenant is running
        """
        run_id = uuid4().hex
        logger.info(f"Starting duplicate scan for tenant {tenant_id} (trigger: {trigger}, run_id: {run_id[:16]}...)")

        try:
            async with self.lock_manager.hold(tenant_id, run_id):
                async with self.session_factory() as db:
                    scanner = CandidateScanner(db)
                    return await scanner.run_scan(
                        tenant_id,
                        min_confidence=min_confidence,
                        max_products=max_products,
                        trigger=trigger,
                        run_id=run_id,
                    )
        except ScanLockHeld as e:
            metrics.record_scan_lock_skipped(trigger)
            logger.info(
                "Scan already running for tenant %s; skipping %s run (lock_run_id: %s, ttl_s: %s)",
                tenant_id,
                trigger,
                (e.lock_info.get("run_id") or "")[:16] or None,
                e.lock_info.get("ttl_seconds"),
            )
            raise

    async def scan_due_organizations(self) -> List[ScanSummary]:
        """Scheduled job: scan every tenant whose scan interval has elapsed."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Organization).where(Organization.duplicate_scan_enabled.is_(True))
            )
            now = datetime.utcnow()
            due = [org.id for org in result.scalars().all() if is_scan_due(org, now)]

        if not due:
            logger.debug("No organizations due for a duplicate scan")
            metrics.record_scheduler_run("duplicate_scan", True)
            return []

        logger.info(f"{len(due)} organizations due for a duplicate scan")
        summaries = []
        failures = 0
        for tenant_id in due:
            try:
                summary = await self.scan_entrypoint(tenant_id, trigger="scheduled")
            except ScanLockHeld:
                continue
            except Exception as e:
                failures += 1
                logger.error(f"Scheduled scan for tenant {tenant_id} failed: {e}", exc_info=True)
                continue
            summaries.append(summary)
            if summary.status != "completed":
                failures += 1

        metrics.record_scheduler_run("duplicate_scan", failures == 0)
        return summaries

    async def archive_reviewed_candidates(self, older_than_days: Optional[int] = None) -> int:
        """Archive reviewed candidates whose decision is older than the window.

        Pending candidates are never archived; they stay in the review queue.
        """
        days = older_than_days if older_than_days is not None else settings.candidate_archive_days
        cutoff = datetime.utcnow() - timedelta(days=days)
        async with self.session_factory() as db:
            result = await db.execute(
                update(DuplicateCandidate)
                .where(
                    DuplicateCandidate.status.in_((CANDIDATE_MERGED, CANDIDATE_DISMISSED)),
                    DuplicateCandidate.archived_at.is_(None),
                    DuplicateCandidate.reviewed_at < cutoff,
                )
                .values(archived_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        archived = result.rowcount or 0
        if archived:
            logger.info(f"Archived {archived} candidates reviewed more than {days} days ago")
        return archived

    async def prune_scan_history(self, older_than_days: Optional[int] = None) -> int:
        """Delete finished scan runs past the retention window."""
        days = older_than_days if older_than_days is not None else settings.scan_history_retention_days
        cutoff = datetime.utcnow() - timedelta(days=days)
        async with self.session_factory() as db:
            # Candidates keep their rows; their scan_run_id is cleared first
            old_runs = select(ScanRun.id).where(
                ScanRun.status != SCAN_RUNNING,
                ScanRun.started_at < cutoff,
            )
            await db.execute(
                update(DuplicateCandidate)
                .where(DuplicateCandidate.scan_run_id.in_(old_runs))
                .values(scan_run_id=None)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(
                delete(ScanRun)
                .where(ScanRun.status != SCAN_RUNNING, ScanRun.started_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        deleted = result.rowcount or 0
        if deleted:
            logger.info(f"Deleted {deleted} scan runs older than {days} days")
        return deleted

    async def candidate_maintenance(self):
        """Daily job: archive reviewed candidates and prune scan history."""
        try:
            await self.archive_reviewed_candidates()
            await self.prune_scan_history()
        except Exception as e:
            logger.error(f"Candidate maintenance failed: {e}", exc_info=True)
            metrics.record_scheduler_run("candidate_maintenance", False)
            raise
        metrics.record_scheduler_run("candidate_maintenance", True)


# Global task runner instance
task_runner = DedupeTaskRunner()
