"""Duplicate scan API endpoints."""

import logging
from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src import metrics
from src.api.deps import get_database, get_scan_lock_manager, require_admin_api_key
from src.config import settings
from src.db.models import SCAN_FAILED, SCAN_RUNNING, ScanRun
from src.dedupe.errors import ConflictError, NotFoundError
from src.dedupe.scanner import CandidateScanner, scan_registry
from src.worker.scan_lock import ScanLockHeld, ScanLockManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tenants/{tenant_id}/scans", tags=["scans"])


class TriggerScanRequest(BaseModel):
    """Request model for triggering a scan."""
    min_confidence: float = Field(default=settings.dedupe_min_confidence, ge=0.0, le=1.0)
    max_products: int = Field(default=settings.dedupe_max_products, ge=1)


class ScanSummaryResponse(BaseModel):
    scan_id: int
    products_scanned: int
    candidates_found: int
    high_confidence_count: int
    duration_seconds: float
    status: str
    error: Optional[str] = None


class ScanRunResponse(BaseModel):
    """Response model for a scan run."""
    id: int
    tenant_id: int
    run_id: Optional[str]
    trigger: Optional[str]
    status: str
    started_at: datetime
    completed_at: Optional[datetime]
    products_scanned: int
    candidates_found: int
    high_confidence_count: int
    duration_seconds: Optional[float]
    scan_parameters: dict
    error_message: Optional[str]

    class Config:
        from_attributes = True


@router.post("", response_model=ScanSummaryResponse)
async def trigger_scan(
    tenant_id: int,
    request: Optional[TriggerScanRequest] = None,
    db: AsyncSession = Depends(get_database),
    lock_manager: ScanLockManager = Depends(get_scan_lock_manager),
):
    """
    Run a duplicate scan for the tenant and return its summary.

    Returns 409 while another scan for the same tenant holds the lock.
    """
    request = request or TriggerScanRequest()
    run_id = uuid4().hex
    try:
        async with lock_manager.hold(tenant_id, run_id):
            summary = await CandidateScanner(db).run_scan(
                tenant_id,
                min_confidence=request.min_confidence,
                max_products=request.max_products,
                trigger="manual",
                run_id=run_id,
            )
    except ScanLockHeld:
        metrics.record_scan_lock_skipped("manual")
        raise
    return ScanSummaryResponse(**summary.to_dict())


@router.get("", response_model=List[ScanRunResponse])
async def list_scan_runs(
    tenant_id: int,
    status: Optional[str] = None,
    limit: int = Query(default=20, ge=1, le=200),
    db: AsyncSession = Depends(get_database),
):
    """List a tenant's scan runs, newest first."""
    query = (
        select(ScanRun)
        .where(ScanRun.tenant_id == tenant_id)
        .order_by(ScanRun.started_at.desc(), ScanRun.id.desc())
        .limit(limit)
    )
    if status:
        query = query.where(ScanRun.status == status)
    result = await db.execute(query)
    return result.scalars().all()


@router.get("/{scan_id}", response_model=ScanRunResponse)
async def get_scan_run(tenant_id: int, scan_id: int, db: AsyncSession = Depends(get_database)):
    """Get a specific scan run."""
    return await _get_run(db, tenant_id, scan_id)


@router.post("/{scan_id}/cancel")
async def cancel_scan(tenant_id: int, scan_id: int, db: AsyncSession = Depends(get_database)):
    """
    Request cancellation of a running scan.

    Only scans running in this process can be cancelled; the scan marks
    itself failed at its next checkpoint.
    """
    scan_run = await _get_run(db, tenant_id, scan_id)
    if scan_run.status != SCAN_RUNNING:
        raise ConflictError(f"Scan {scan_id} is not running (status: {scan_run.status})")

    cancelled = scan_registry.cancel(scan_id)
    if cancelled:
        logger.info(f"Cancellation requested for scan {scan_id} (tenant {tenant_id})")
    return {"scan_id": scan_id, "cancelled": cancelled}


@router.post("/admin/force-unlock")
async def force_unlock_scan(
    tenant_id: int,
    db: AsyncSession = Depends(get_database),
    lock_manager: ScanLockManager = Depends(get_scan_lock_manager),
    _admin: None = Depends(require_admin_api_key),
):
    """
    Force unlock a stuck tenant scan (admin only).

    Deletes the Redis lock and marks the tenant's running scan runs failed.
    """
    lock_info = await lock_manager.get_lock_info(tenant_id)
    await lock_manager.force_unlock(tenant_id)

    result = await db.execute(
        select(ScanRun).where(ScanRun.tenant_id == tenant_id, ScanRun.status == SCAN_RUNNING)
    )
    runs = result.scalars().all()
    for scan_run in runs:
        scan_registry.cancel(scan_run.id)
        scan_run.status = SCAN_FAILED
        scan_run.completed_at = datetime.utcnow()
        scan_run.error_message = "Force unlocked by admin"
    await db.commit()

    logger.warning(f"Admin force-unlocked scans for tenant {tenant_id} ({len(runs)} runs failed)")
    return {"lock_info": lock_info, "runs_updated": len(runs)}


async def _get_run(db: AsyncSession, tenant_id: int, scan_id: int) -> ScanRun:
    scan_run = await db.get(ScanRun, scan_id)
    if scan_run is None or scan_run.tenant_id != tenant_id:
        raise NotFoundError(f"Scan {scan_id} not found")
    return scan_run
