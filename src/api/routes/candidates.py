"""Duplicate candidate review endpoints."""

import logging
from datetime import date, datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.deps import get_database, get_reviewer_id
from src.config import settings
from src.dedupe.errors import ValidationError
from src.dedupe.review import DismissDecision, MergeDecision, ReviewWorkflow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tenants/{tenant_id}/candidates", tags=["candidates"])


class ProductSummary(BaseModel):
    id: int
    product_name: str
    total_revenue: float
    total_units: float
    total_orders: int
    first_sale_date: Optional[date]
    last_sale_date: Optional[date]

    class Config:
        from_attributes = True


class CandidateResponse(BaseModel):
    """Pending candidate with both products for reviewer context."""
    id: int
    product_a_id: int
    product_b_id: int
    product_a_name: str
    product_b_name: str
    confidence_score: float
    similarity_details: dict
    status: str
    detected_at: datetime
    product_a: ProductSummary
    product_b: ProductSummary

    class Config:
        from_attributes = True


class DecisionRequest(BaseModel):
    action: Literal["merge", "dismiss"]
    keep_product_id: Optional[int] = None
    merge_product_id: Optional[int] = None
    reason: Optional[str] = None


class AutoMergeRequest(BaseModel):
    threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class AutoMergeResponse(BaseModel):
    threshold: float
    merged: int
    failed: int
    skipped: int
    records_affected: int
    errors: List[str]


@router.get("", response_model=List[CandidateResponse])
async def list_pending_candidates(
    tenant_id: int,
    limit: int = Query(default=settings.dedupe_pending_limit),
    db: AsyncSession = Depends(get_database),
):
    """List pending candidates, highest confidence first."""
    return await ReviewWorkflow(db).list_pending(tenant_id, limit=limit)


@router.post("/auto-merge", response_model=AutoMergeResponse)
async def auto_merge_candidates(
    tenant_id: int,
    request: Optional[AutoMergeRequest] = None,
    db: AsyncSession = Depends(get_database),
    reviewer_id: Optional[str] = Depends(get_reviewer_id),
):
    """Merge every pending candidate at or above the tenant's auto-merge threshold."""
    threshold = request.threshold if request else None
    outcome = await ReviewWorkflow(db).auto_merge(
        tenant_id, threshold=threshold, performed_by=reviewer_id
    )
    return AutoMergeResponse(
        threshold=outcome.threshold,
        merged=outcome.merged,
        failed=outcome.failed,
        skipped=outcome.skipped,
        records_affected=outcome.records_affected,
        errors=outcome.errors,
    )


@router.post("/{candidate_id}/decision")
async def submit_decision(
    tenant_id: int,
    candidate_id: int,
    request: DecisionRequest,
    db: AsyncSession = Depends(get_database),
    reviewer_id: Optional[str] = Depends(get_reviewer_id),
):
    """
    Merge or dismiss a candidate.

    Merge returns {"records_affected": n}; dismiss returns {"status": "dismissed"}.
    """
    if request.action == "merge":
        if request.keep_product_id is None or request.merge_product_id is None:
            raise ValidationError("keep_product_id and merge_product_id are required to merge")
        decision = MergeDecision(
            keep_product_id=request.keep_product_id,
            merge_product_id=request.merge_product_id,
        )
    else:
        decision = DismissDecision(reason=request.reason)

    return await ReviewWorkflow(db).decide(tenant_id, candidate_id, decision, reviewer_id)
