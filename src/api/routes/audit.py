"""Merge audit log endpoints."""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.deps import get_database
from src.config import settings
from src.dedupe.audit import AuditLog

router = APIRouter(prefix="/api/tenants/{tenant_id}/audit", tags=["audit"])


class AuditEntryResponse(BaseModel):
    id: int
    merge_type: str
    source_product_names: List[str]
    canonical_name: str
    confidence_score: Optional[float]
    reasoning: Optional[str]
    records_affected: int
    performed_by: Optional[str]
    can_undo: bool
    merge_key: str
    performed_at: datetime

    class Config:
        from_attributes = True


@router.get("", response_model=List[AuditEntryResponse])
async def list_audit_entries(
    tenant_id: int,
    limit: int = Query(default=settings.audit_default_limit, ge=1, le=500),
    db: AsyncSession = Depends(get_database),
):
    """Executed merges, newest first."""
    return await AuditLog(db).list_entries(tenant_id, limit=limit)
