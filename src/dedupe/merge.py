"""Merge execution: folds one product into another as a journaled saga."""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.db.models import (
    ALIAS_SOURCES,
    CANDIDATE_DISMISSED,
    CANDIDATE_MERGED,
    CANDIDATE_PENDING,
    MERGE_COMPLETED,
    MERGE_FAILED,
    MERGE_IN_PROGRESS,
    MERGE_TYPES,
    DuplicateCandidate,
    InventoryDistributor,
    InventoryImporter,
    InventoryTransaction,
    MergeJournal,
    Product,
    ProductAliasMapping,
    SalesRecord,
)
from src.dedupe.audit import AuditLog
from src.dedupe.errors import ConflictError, MergeError, NotFoundError, ValidationError
from src.logging_config import get_logger
from src.metrics import record_merge

logger = logging.getLogger(__name__)

# Saga steps, in execution order
STEP_SALES = "rewrite_sales"
STEP_ALIASES = "upsert_alias"
STEP_INVENTORY = "merge_inventory"
STEP_AGGREGATES = "recompute_aggregates"
STEP_AUDIT = "append_audit"
MERGE_STEPS = (STEP_SALES, STEP_ALIASES, STEP_INVENTORY, STEP_AGGREGATES, STEP_AUDIT)

BULK_MERGE_REASONING = "User manually merged products from Products page"
MERGED_ELSEWHERE_REASON = "product merged elsewhere"


@dataclass
class MergeRequest:
    """Fold merge_product_id into keep_product_id."""

    tenant_id: int
    keep_product_id: int
    merge_product_id: int
    confidence: Optional[float] = None
    reasoning: Optional[str] = None
    performed_by: Optional[str] = None
    merge_type: str = "manual"
    alias_source: str = "manual"
    merge_key: Optional[str] = None


@dataclass
class MergeResult:
    records_affected: int
    audit_entry_id: Optional[int] = None
    already_applied: bool = False
    merge_key: Optional[str] = None


@dataclass
class BulkMergeResult:
    canonical_name: str
    variants_merged: List[str] = field(default_factory=list)
    total_records_affected: int = 0
    records_per_variant: Dict[str, int] = field(default_factory=dict)


def default_merge_key(tenant_id: int, keep_product_id: int, merge_product_id: int) -> str:
    """Stable key for a merge that has no caller-supplied identity."""
    raw = f"{tenant_id}:{keep_product_id}:{merge_product_id}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class MergeExecutor:
    """
    Merges a variant product into a canonical product.

    The five steps each commit on their own and record progress in a
    MergeJournal row, so a retry after a partial failure resumes where the
    last attempt stopped. Every step is also safe to re-run: rewritten sales
    rows no longer match the variant name, moved inventory rows are gone, and
    the audit entry is keyed by merge_key.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit_log = AuditLog(db)

    async def merge(self, request: MergeRequest) -> MergeResult:
        """
        Run (or resume) a merge.

        Returns:
            MergeResult; records_affected is 0 and already_applied is True when
            the merge key was completed by an earlier call

        Raises:
            ValidationError: Missing or identical ids, unknown merge type/source
            NotFoundError: Either product is unknown for this tenant
            ConflictError: The variant was already merged away by another merge
            MergeError: A step failed; retry with the same merge key
        """
        self._validate(request)
        merge_key = request.merge_key or default_merge_key(
            request.tenant_id, request.keep_product_id, request.merge_product_id
        )
        log = get_logger(__name__, tenant_id=request.tenant_id, merge_key=merge_key)

        journal = await self._get_journal(request.tenant_id, merge_key)
        if journal and journal.status == MERGE_COMPLETED:
            log.info(f"Merge {merge_key} already applied, nothing to do")
            record_merge(request.merge_type, "already_applied")
            return MergeResult(
                records_affected=0,
                audit_entry_id=journal.audit_entry_id,
                already_applied=True,
                merge_key=merge_key,
            )

        keep, variant = await self._load_products(request)
        if keep.merged_into_id is not None:
            raise ValidationError(
                f"Product {keep.id} was merged into {keep.merged_into_id} and cannot be kept"
            )

        if journal is None:
            if variant.merged_into_id is not None:
                raise ConflictError(
                    f"Product {variant.id} was already merged into {variant.merged_into_id}"
                )
            journal = await self._start_journal(request, merge_key, keep, variant)
        elif journal.keep_product_id != keep.id or journal.merge_product_id != variant.id:
            raise ValidationError(f"Merge key {merge_key} belongs to a different product pair")
        else:
            log.info(
                f"Resuming merge {merge_key} after step {journal.last_completed_step or 'none'}"
            )
            journal.status = MERGE_IN_PROGRESS
            journal.error_message = None

        handlers = {
            STEP_SALES: self._rewrite_sales,
            STEP_ALIASES: self._upsert_alias,
            STEP_INVENTORY: self._merge_inventory,
            STEP_AGGREGATES: self._recompute_aggregates,
            STEP_AUDIT: self._append_audit,
        }
        for step in self._remaining_steps(journal):
            await self._run_step(journal, step, handlers[step], request, keep, variant)

        log.info(
            f"Merged '{journal.variant_name}' into '{journal.canonical_name}' "
            f"({journal.records_affected} sales records)"
        )
        record_merge(request.merge_type, "success", journal.records_affected)
        return MergeResult(
            records_affected=journal.records_affected,
            audit_entry_id=journal.audit_entry_id,
            already_applied=False,
            merge_key=merge_key,
        )

    async def bulk_merge(
        self,
        tenant_id: int,
        product_ids: Sequence[int],
        canonical_name: str,
        performed_by: Optional[str] = None,
    ) -> BulkMergeResult:
        """
        Merge several products into the one named canonical_name.

        Each variant runs through its own saga and gets its own audit entry.
        """
        if not canonical_name or not canonical_name.strip():
            raise ValidationError("Canonical product name cannot be empty")
        unique_ids = list(dict.fromkeys(product_ids or []))
        if len(unique_ids) < 2:
            raise ValidationError("At least 2 products must be selected for merge")
        if len(unique_ids) > settings.bulk_merge_max_products:
            raise ValidationError(
                f"Cannot merge more than {settings.bulk_merge_max_products} products at once"
            )

        result = await self.db.execute(
            select(Product).where(Product.tenant_id == tenant_id, Product.id.in_(unique_ids))
        )
        products = {p.id: p for p in result.scalars().all()}
        missing = [pid for pid in unique_ids if pid not in products]
        if missing:
            raise NotFoundError(f"Products not found: {missing}")

        keep = next((p for p in products.values() if p.product_name == canonical_name), None)
        if keep is None:
            raise ValidationError(
                f"Canonical name '{canonical_name}' must match one of the selected products"
            )

        summary = BulkMergeResult(canonical_name=canonical_name)
        for pid in unique_ids:
            if pid == keep.id:
                continue
            variant_name = products[pid].product_name
            outcome = await self.merge(
                MergeRequest(
                    tenant_id=tenant_id,
                    keep_product_id=keep.id,
                    merge_product_id=pid,
                    confidence=1.0,
                    reasoning=BULK_MERGE_REASONING,
                    performed_by=performed_by,
                    merge_type="manual",
                    alias_source="manual",
                )
            )
            summary.variants_merged.append(variant_name)
            summary.records_per_variant[variant_name] = outcome.records_affected
            summary.total_records_affected += outcome.records_affected

        logger.info(
            f"Bulk merged {len(summary.variants_merged)} products into '{canonical_name}' "
            f"for tenant {tenant_id} ({summary.total_records_affected} records)"
        )
        return summary

    # ------------------------------------------------------------------
    # Saga plumbing
    # ------------------------------------------------------------------

    @staticmethod
    def _validate(request: MergeRequest) -> None:
        if request.keep_product_id is None or request.merge_product_id is None:
            raise ValidationError("Both keep_product_id and merge_product_id are required")
        if request.keep_product_id == request.merge_product_id:
            raise ValidationError("Cannot merge a product into itself")
        if request.merge_type not in MERGE_TYPES:
            raise ValidationError(f"Unknown merge type: {request.merge_type}")
        if request.alias_source not in ALIAS_SOURCES:
            raise ValidationError(f"Unknown alias source: {request.alias_source}")
        if request.confidence is not None and not 0.0 <= request.confidence <= 1.0:
            raise ValidationError("confidence must be between 0 and 1")

    async def _get_journal(self, tenant_id: int, merge_key: str) -> Optional[MergeJournal]:
        result = await self.db.execute(
            select(MergeJournal).where(
                MergeJournal.tenant_id == tenant_id,
                MergeJournal.merge_key == merge_key,
            )
        )
        return result.scalar_one_or_none()

    async def _load_products(self, request: MergeRequest) -> tuple[Product, Product]:
        result = await self.db.execute(
            select(Product).where(
                Product.tenant_id == request.tenant_id,
                Product.id.in_([request.keep_product_id, request.merge_product_id]),
            )
        )
        products = {p.id: p for p in result.scalars().all()}
        for product_id in (request.keep_product_id, request.merge_product_id):
            if product_id not in products:
                raise NotFoundError(f"Product {product_id} not found")
        return products[request.keep_product_id], products[request.merge_product_id]

    async def _start_journal(
        self,
        request: MergeRequest,
        merge_key: str,
        keep: Product,
        variant: Product,
    ) -> MergeJournal:
        journal = MergeJournal(
            tenant_id=request.tenant_id,
            merge_key=merge_key,
            keep_product_id=keep.id,
            merge_product_id=variant.id,
            variant_name=variant.product_name,
            canonical_name=keep.product_name,
            records_affected=0,
            status=MERGE_IN_PROGRESS,
        )
        self.db.add(journal)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise ConflictError(f"Merge {merge_key} is already in progress") from e
        return journal

    @staticmethod
    def _remaining_steps(journal: MergeJournal) -> tuple:
        if journal.last_completed_step in MERGE_STEPS:
            return MERGE_STEPS[MERGE_STEPS.index(journal.last_completed_step) + 1:]
        return MERGE_STEPS

    async def _run_step(self, journal, step, handler, request, keep, variant) -> None:
        """Run one step and commit it together with the journal progress."""
        journal_id = journal.id
        merge_key = journal.merge_key
        try:
            await handler(journal, request, keep, variant)
            journal.last_completed_step = step
            journal.updated_at = datetime.utcnow()
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            records = await self._mark_failed(journal_id, step, e)
            logger.error(
                f"Merge {merge_key} failed at step {step}: {e}",
                exc_info=True,
            )
            record_merge(request.merge_type, "failed")
            raise MergeError(
                f"Merge failed at step {step}: {e}",
                step=step,
                records_affected=records,
                merge_key=merge_key,
            ) from e

    async def _mark_failed(self, journal_id: int, step: str, error: Exception) -> int:
        """Record the failure on the journal and return the records rewritten so far."""
        await self.db.execute(
            update(MergeJournal)
            .where(MergeJournal.id == journal_id)
            .values(
                status=MERGE_FAILED,
                error_message=f"{step}: {error}"[:2000],
                updated_at=datetime.utcnow(),
            )
        )
        await self.db.commit()
        records = await self.db.scalar(
            select(MergeJournal.records_affected).where(MergeJournal.id == journal_id)
        )
        return records or 0

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _rewrite_sales(self, journal, request, keep, variant) -> None:
        """Step 1: point every sales row of the variant at the canonical name."""
        matches = (
            SalesRecord.tenant_id == journal.tenant_id,
            SalesRecord.product_name == journal.variant_name,
        )
        count = await self.db.scalar(select(func.count(SalesRecord.id)).where(*matches))
        if count:
            await self.db.execute(
                update(SalesRecord)
                .where(*matches)
                .values(product_name=journal.canonical_name)
                .execution_options(synchronize_session=False)
            )
        journal.records_affected = (journal.records_affected or 0) + (count or 0)

    async def _upsert_alias(self, journal, request, keep, variant) -> None:
        """Step 2: map variant to canonical and keep alias chains one hop long."""
        now = datetime.utcnow()
        tenant_id = journal.tenant_id
        result = await self.db.execute(
            select(ProductAliasMapping).where(
                ProductAliasMapping.tenant_id == tenant_id,
                ProductAliasMapping.variant_name == journal.variant_name,
            )
        )
        mapping = result.scalar_one_or_none()
        if mapping is None:
            mapping = ProductAliasMapping(
                tenant_id=tenant_id,
                variant_name=journal.variant_name,
                usage_count=0,
            )
            self.db.add(mapping)
        mapping.canonical_name = journal.canonical_name
        mapping.confidence_score = request.confidence
        mapping.source = request.alias_source
        mapping.created_by = request.performed_by
        mapping.is_active = True
        mapping.updated_at = now
        await self.db.flush()

        # Anything that resolved to the variant now resolves to the canonical name
        await self.db.execute(
            update(ProductAliasMapping)
            .where(
                ProductAliasMapping.tenant_id == tenant_id,
                ProductAliasMapping.canonical_name == journal.variant_name,
            )
            .values(canonical_name=journal.canonical_name, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        # The canonical name must not itself be an active variant
        await self.db.execute(
            update(ProductAliasMapping)
            .where(
                ProductAliasMapping.tenant_id == tenant_id,
                ProductAliasMapping.variant_name == journal.canonical_name,
                ProductAliasMapping.is_active.is_(True),
            )
            .values(is_active=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    async def _merge_inventory(self, journal, request, keep, variant) -> None:
        """Step 3: fold the variant's inventory into the canonical product."""
        tenant_id = journal.tenant_id
        keep_id = journal.keep_product_id
        merge_id = journal.merge_product_id
        now = datetime.utcnow()

        # Importer stock: one row per product
        result = await self.db.execute(
            select(InventoryImporter).where(
                InventoryImporter.tenant_id == tenant_id,
                InventoryImporter.product_id.in_([keep_id, merge_id]),
            )
        )
        importer_rows = {row.product_id: row for row in result.scalars().all()}
        moved_importer = importer_rows.get(merge_id)
        if moved_importer is not None:
            target = importer_rows.get(keep_id)
            if target is not None:
                target.quantity = (target.quantity or Decimal("0")) + (
                    moved_importer.quantity or Decimal("0")
                )
                target.updated_at = now
                await self.db.delete(moved_importer)
            else:
                moved_importer.product_id = keep_id
                moved_importer.updated_at = now

        # Distributor stock: one row per product and distributor
        result = await self.db.execute(
            select(InventoryDistributor).where(
                InventoryDistributor.tenant_id == tenant_id,
                InventoryDistributor.product_id.in_([keep_id, merge_id]),
            )
        )
        distributor_rows = result.scalars().all()
        keep_by_distributor = {
            row.distributor_id: row for row in distributor_rows if row.product_id == keep_id
        }
        for row in distributor_rows:
            if row.product_id != merge_id:
                continue
            target = keep_by_distributor.get(row.distributor_id)
            if target is not None:
                target.initial_quantity = (target.initial_quantity or Decimal("0")) + (
                    row.initial_quantity or Decimal("0")
                )
                target.current_quantity = (target.current_quantity or Decimal("0")) + (
                    row.current_quantity or Decimal("0")
                )
                target.last_updated = now
                await self.db.delete(row)
            else:
                row.product_id = keep_id
                row.last_updated = now
        await self.db.flush()

        await self.db.execute(
            update(InventoryTransaction)
            .where(
                InventoryTransaction.tenant_id == tenant_id,
                InventoryTransaction.product_id == merge_id,
            )
            .values(product_id=keep_id)
            .execution_options(synchronize_session=False)
        )

    async def _recompute_aggregates(self, journal, request, keep, variant) -> None:
        """Step 4: refresh both products' metrics and settle candidates on the variant."""
        for product in (keep, variant):
            row = (
                await self.db.execute(
                    select(
                        func.coalesce(func.sum(SalesRecord.revenue), 0),
                        func.coalesce(func.sum(SalesRecord.quantity), 0),
                        func.count(SalesRecord.id),
                        func.min(SalesRecord.order_date),
                        func.max(SalesRecord.order_date),
                    ).where(
                        SalesRecord.tenant_id == journal.tenant_id,
                        SalesRecord.product_name == product.product_name,
                    )
                )
            ).one()
            revenue, units, orders, first_sale, last_sale = row
            product.total_revenue = Decimal(str(revenue or 0))
            product.total_units = Decimal(str(units or 0))
            product.total_orders = orders or 0
            product.first_sale_date = first_sale
            product.last_sale_date = last_sale
            product.updated_at = datetime.utcnow()

        variant.merged_into_id = keep.id
        await self._close_candidates(journal, keep, variant)

    async def _close_candidates(self, journal, keep, variant) -> None:
        """
        Settle pending candidates that reference the merged-away product.

        Pairs with a third product are dismissed. An unclaimed candidate for
        this exact pair is marked merged; a claimed one belongs to the
        reviewer running this merge.
        """
        now = datetime.utcnow()
        involves_variant = or_(
            DuplicateCandidate.product_a_id == variant.id,
            DuplicateCandidate.product_b_id == variant.id,
        )
        same_pair = and_(
            DuplicateCandidate.product_a_id.in_((keep.id, variant.id)),
            DuplicateCandidate.product_b_id.in_((keep.id, variant.id)),
        )
        base = (
            DuplicateCandidate.tenant_id == journal.tenant_id,
            DuplicateCandidate.status == CANDIDATE_PENDING,
            involves_variant,
        )

        dismissed = await self.db.execute(
            update(DuplicateCandidate)
            .where(*base, ~same_pair)
            .values(
                status=CANDIDATE_DISMISSED,
                reviewed_at=now,
                user_decision={"action": "dismissed", "reason": MERGED_ELSEWHERE_REASON},
                claimed_at=None,
                claimed_by=None,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            update(DuplicateCandidate)
            .where(*base, same_pair, DuplicateCandidate.claimed_at.is_(None))
            .values(
                status=CANDIDATE_MERGED,
                reviewed_at=now,
                user_decision={
                    "action": "merged",
                    "kept_product": keep.id,
                    "merged_product": variant.id,
                    "records_affected": journal.records_affected,
                },
            )
            .execution_options(synchronize_session=False)
        )
        if dismissed.rowcount:
            logger.info(
                f"Dismissed {dismissed.rowcount} candidates referencing merged product {variant.id}"
            )

    async def _append_audit(self, journal, request, keep, variant) -> None:
        """Step 5: write the audit entry and close the journal."""
        reasoning = request.reasoning or (
            f"Merged '{journal.variant_name}' into '{journal.canonical_name}'"
        )
        entry = await self.audit_log.append(
            tenant_id=journal.tenant_id,
            merge_key=journal.merge_key,
            merge_type=request.merge_type,
            source_product_names=[journal.variant_name],
            canonical_name=journal.canonical_name,
            records_affected=journal.records_affected,
            confidence_score=request.confidence,
            reasoning=reasoning,
            performed_by=request.performed_by,
            can_undo=False,
        )
        journal.audit_entry_id = entry.id
        journal.status = MERGE_COMPLETED
        journal.error_message = None
