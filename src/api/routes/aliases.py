"""Alias lookup endpoints used by ingest."""

from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.deps import get_database
from src.dedupe.aliases import AliasResolver

router = APIRouter(prefix="/api/tenants/{tenant_id}/aliases", tags=["aliases"])


class AliasResponse(BaseModel):
    id: int
    variant_name: str
    canonical_name: str
    confidence_score: Optional[float]
    source: str
    created_by: Optional[str]
    is_active: bool
    usage_count: int
    last_used_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class ResolveManyRequest(BaseModel):
    names: List[str] = Field(default_factory=list, max_length=1000)


@router.get("/resolve")
async def resolve_alias(
    tenant_id: int,
    name: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_database),
):
    """Canonical name for a raw product name (the name itself when unmapped)."""
    canonical = await AliasResolver(db).resolve(tenant_id, name)
    return {"name": name, "canonical_name": canonical}


@router.post("/resolve")
async def resolve_aliases(
    tenant_id: int,
    request: ResolveManyRequest,
    db: AsyncSession = Depends(get_database),
) -> Dict[str, Dict[str, str]]:
    """Resolve a batch of raw names."""
    mappings = await AliasResolver(db).resolve_many(tenant_id, request.names)
    return {"mappings": mappings}


@router.get("", response_model=List[AliasResponse])
async def list_aliases(
    tenant_id: int,
    active_only: bool = True,
    db: AsyncSession = Depends(get_database),
):
    return await AliasResolver(db).list_mappings(tenant_id, active_only=active_only)
