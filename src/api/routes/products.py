"""Product merge routes."""

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.deps import get_database, get_reviewer_id
from src.dedupe.merge import MergeExecutor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tenants/{tenant_id}/products", tags=["products"])


class BulkMergeRequest(BaseModel):
    product_ids: List[int]
    canonical_name: str

    @field_validator("canonical_name")
    @classmethod
    def strip_canonical_name(cls, v: str) -> str:
        return v.strip()


class BulkMergeResponse(BaseModel):
    success: bool = True
    canonical_name: str
    variants_merged: List[str]
    total_records_affected: int
    records_per_variant: Dict[str, int]


@router.post("/merge", response_model=BulkMergeResponse)
async def bulk_merge_products(
    tenant_id: int,
    request: BulkMergeRequest,
    db: AsyncSession = Depends(get_database),
    reviewer_id: Optional[str] = Depends(get_reviewer_id),
):
    """Merge 2-20 selected products into the one named canonical_name."""
    result = await MergeExecutor(db).bulk_merge(
        tenant_id,
        request.product_ids,
        request.canonical_name,
        performed_by=reviewer_id,
    )
    return BulkMergeResponse(
        canonical_name=result.canonical_name,
        variants_merged=result.variants_merged,
        total_records_affected=result.total_records_affected,
        records_per_variant=result.records_per_variant,
    )
