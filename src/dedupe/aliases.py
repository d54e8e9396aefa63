"""Variant-to-canonical product name resolution."""

import logging
from datetime import datetime
from typing import Dict, Iterable, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models import ProductAliasMapping
from src.metrics import record_alias_lookup

logger = logging.getLogger(__name__)


class AliasResolver:
    """
    Resolves names previously merged away to their canonical product name.

    Ingest calls this before creating products so merged variants stay merged.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def resolve(self, tenant_id: int, raw_name: str) -> str:
        """Return the active canonical name for raw_name, or raw_name itself."""
        if not raw_name:
            return raw_name
        resolved = await self.resolve_many(tenant_id, [raw_name])
        return resolved[raw_name]

    async def resolve_many(self, tenant_id: int, names: Iterable[str]) -> Dict[str, str]:
        """
        Resolve a batch of names in one query.

        Matched mappings get their usage counters bumped.
        """
        unique_names = list(dict.fromkeys(n for n in names if n))
        resolved = {name: name for name in unique_names}
        if not unique_names:
            return resolved

        result = await self.db.execute(
            select(ProductAliasMapping).where(
                ProductAliasMapping.tenant_id == tenant_id,
                ProductAliasMapping.is_active.is_(True),
                ProductAliasMapping.variant_name.in_(unique_names),
            )
        )
        mappings = result.scalars().all()

        now = datetime.utcnow()
        for mapping in mappings:
            resolved[mapping.variant_name] = mapping.canonical_name
            mapping.usage_count = (mapping.usage_count or 0) + 1
            mapping.last_used_at = now

        if mappings:
            await self.db.commit()

        for name in unique_names:
            record_alias_lookup(resolved[name] != name)
        logger.debug(
            f"Resolved {len(mappings)}/{len(unique_names)} names through aliases for tenant {tenant_id}"
        )
        return resolved

    async def list_mappings(
        self, tenant_id: int, active_only: bool = True
    ) -> List[ProductAliasMapping]:
        query = select(ProductAliasMapping).where(ProductAliasMapping.tenant_id == tenant_id)
        if active_only:
            query = query.where(ProductAliasMapping.is_active.is_(True))
        result = await self.db.execute(
            query.order_by(ProductAliasMapping.canonical_name, ProductAliasMapping.variant_name)
        )
        return list(result.scalars().all())
