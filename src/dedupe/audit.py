"""Append-only merge audit log."""

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.db.models import MERGE_TYPES, MergeAuditEntry
from src.dedupe.errors import ValidationError

logger = logging.getLogger(__name__)


class AuditLog:
    """
    Records every executed merge.

    Entries are keyed by (tenant_id, merge_key), so retries of the same merge
    never produce a second entry. There is no update or delete path.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def append(
        self,
        tenant_id: int,
        merge_key: str,
        merge_type: str,
        source_product_names: List[str],
        canonical_name: str,
        records_affected: int,
        confidence_score: Optional[float] = None,
        reasoning: Optional[str] = None,
        performed_by: Optional[str] = None,
        can_undo: bool = False,
    ) -> MergeAuditEntry:
        """
        Add an entry unless one already exists for this merge key.

        The entry is flushed but not committed; the caller owns the transaction.

        Returns:
            The new entry, or the existing one for a repeated merge key
        """
        if merge_type not in MERGE_TYPES:
            raise ValidationError(f"Unknown merge type: {merge_type}")

        existing = await self.get_by_merge_key(tenant_id, merge_key)
        if existing:
            logger.info(f"Audit entry for merge {merge_key} already recorded (id={existing.id})")
            return existing

        entry = MergeAuditEntry(
            tenant_id=tenant_id,
            merge_key=merge_key,
            merge_type=merge_type,
            source_product_names=list(source_product_names),
            canonical_name=canonical_name,
            confidence_score=confidence_score,
            reasoning=reasoning,
            records_affected=records_affected,
            performed_by=performed_by,
            can_undo=can_undo,
        )
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def get_by_merge_key(self, tenant_id: int, merge_key: str) -> Optional[MergeAuditEntry]:
        result = await self.db.execute(
            select(MergeAuditEntry).where(
                MergeAuditEntry.tenant_id == tenant_id,
                MergeAuditEntry.merge_key == merge_key,
            )
        )
        return result.scalar_one_or_none()

    async def list_entries(self, tenant_id: int, limit: int = None) -> List[MergeAuditEntry]:
        """Newest first."""
        limit = settings.audit_default_limit if limit is None else limit
        if limit < 1:
            raise ValidationError("limit must be at least 1")

        result = await self.db.execute(
            select(MergeAuditEntry)
            .where(MergeAuditEntry.tenant_id == tenant_id)
            .order_by(MergeAuditEntry.performed_at.desc(), MergeAuditEntry.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
