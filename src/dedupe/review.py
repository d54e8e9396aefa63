"""Reviewer decisions on duplicate candidates."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Union

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased, selectinload

from src.config import settings
from src.db.models import (
    CANDIDATE_DISMISSED,
    CANDIDATE_MERGED,
    CANDIDATE_PENDING,
    DuplicateCandidate,
    Organization,
    Product,
)
from src.dedupe.errors import ConflictError, DedupeError, NotFoundError, ValidationError
from src.dedupe.merge import MergeExecutor, MergeRequest
from src.logging_config import get_logger
from src.metrics import record_decision

logger = get_logger(__name__)

DEFAULT_DISMISS_REASON = "Not a duplicate"
SYSTEM_REVIEWER = "system"


@dataclass(frozen=True)
class MergeDecision:
    keep_product_id: int
    merge_product_id: int


@dataclass(frozen=True)
class DismissDecision:
    reason: Optional[str] = None


Decision = Union[MergeDecision, DismissDecision]


@dataclass
class AutoMergeResult:
    threshold: float
    merged: int = 0
    failed: int = 0
    skipped: int = 0
    records_affected: int = 0
    errors: List[str] = field(default_factory=list)


class ReviewWorkflow:
    """
    Moves candidates from pending to merged or dismissed.

    Both outcomes are terminal. Every transition is a compare-and-swap on
    status='pending', so two reviewers acting on the same candidate cannot
    both apply a decision. A merge additionally holds a short claim on the
    candidate while the merge saga runs.
    """

    def __init__(self, db: AsyncSession, executor: Optional[MergeExecutor] = None):
        self.db = db
        self.executor = executor or MergeExecutor(db)

    async def list_pending(self, tenant_id: int, limit: Optional[int] = None) -> List[DuplicateCandidate]:
        """
        Pending candidates, highest confidence first.

        Candidates that were archived, or whose products were merged away by
        another decision, are left out. Both products are loaded for display.
        """
        limit = settings.dedupe_pending_limit if limit is None else limit
        if not isinstance(limit, int) or not 1 <= limit <= settings.dedupe_pending_max_limit:
            raise ValidationError(
                f"limit must be between 1 and {settings.dedupe_pending_max_limit}"
            )
        return await self._pending_candidates(tenant_id, limit=limit)

    async def decide(
        self,
        tenant_id: int,
        candidate_id: int,
        decision: Decision,
        reviewer_id: Optional[str] = None,
    ) -> dict:
        """
        Apply a reviewer decision.

        Returns:
            {"records_affected": n} for a merge, {"status": "dismissed"} for a dismissal

        Raises:
            NotFoundError: Unknown candidate for this tenant
            ConflictError: Candidate already decided, or claimed by another reviewer
            ValidationError: Merge ids do not match the candidate's products
            MergeError: The merge failed; the candidate stays pending
        """
        candidate = await self._get_candidate(tenant_id, candidate_id)
        if candidate.status != CANDIDATE_PENDING:
            raise ConflictError(f"Candidate {candidate_id} is already {candidate.status}")

        if isinstance(decision, MergeDecision):
            pair = {candidate.product_a_id, candidate.product_b_id}
            if (
                decision.keep_product_id == decision.merge_product_id
                or {decision.keep_product_id, decision.merge_product_id} != pair
            ):
                raise ValidationError(
                    "keep_product_id and merge_product_id must be the candidate's two products"
                )
            records = await self._merge_candidate(
                candidate,
                keep_product_id=decision.keep_product_id,
                merge_product_id=decision.merge_product_id,
                reviewer_id=reviewer_id,
                merge_type="manual",
                alias_source="manual",
                reasoning=(
                    f"Background scan detected duplicate "
                    f"({round(candidate.confidence_score * 100)}% confidence)"
                ),
            )
            return {"records_affected": records}

        if isinstance(decision, DismissDecision):
            await self._dismiss(candidate, decision, reviewer_id)
            return {"status": CANDIDATE_DISMISSED}

        raise ValidationError(f"Unsupported decision: {decision!r}")

    async def auto_merge(
        self,
        tenant_id: int,
        threshold: Optional[float] = None,
        performed_by: Optional[str] = None,
    ) -> AutoMergeResult:
        """
        Merge every pending candidate at or above the threshold.

        The product with more revenue is kept. Candidates whose products were
        already merged away earlier in the batch are skipped.
        """
        org = await self.db.get(Organization, tenant_id)
        if org is None:
            raise NotFoundError(f"Organization {tenant_id} not found")
        if threshold is None:
            threshold = org.auto_merge_threshold or settings.auto_merge_default_threshold
        if not 0.0 <= threshold <= 1.0:
            raise ValidationError("threshold must be between 0 and 1")

        pending = await self._pending_candidates(tenant_id, min_confidence=threshold)
        work = [(c.id, c.product_a_id, c.product_b_id) for c in pending]
        outcome = AutoMergeResult(threshold=threshold)
        log = get_logger(__name__, tenant_id=tenant_id)
        log.info(f"Auto-merging {len(work)} candidates at threshold {threshold}")

        for candidate_id, a_id, b_id in work:
            candidate = await self.db.get(DuplicateCandidate, candidate_id)
            product_a = await self.db.get(Product, a_id)
            product_b = await self.db.get(Product, b_id)
            if (
                candidate is None
                or candidate.status != CANDIDATE_PENDING
                or product_a.merged_into_id is not None
                or product_b.merged_into_id is not None
            ):
                outcome.skipped += 1
                continue

            keep, variant = (product_a, product_b)
            if (product_b.total_revenue or 0) > (product_a.total_revenue or 0):
                keep, variant = product_b, product_a

            try:
                records = await self._merge_candidate(
                    candidate,
                    keep_product_id=keep.id,
                    merge_product_id=variant.id,
                    reviewer_id=performed_by or SYSTEM_REVIEWER,
                    merge_type="ai_bulk",
                    alias_source="ai_confirmed",
                    reasoning=(
                        f"Auto-merged: background scan detected duplicate "
                        f"({round(candidate.confidence_score * 100)}% confidence)"
                    ),
                )
            except DedupeError as e:
                outcome.failed += 1
                outcome.errors.append(f"candidate {candidate_id}: {e}")
                log.warning(f"Auto-merge of candidate {candidate_id} failed: {e}")
                continue

            outcome.merged += 1
            outcome.records_affected += records

        log.info(
            f"Auto-merge finished: {outcome.merged} merged, {outcome.failed} failed, "
            f"{outcome.skipped} skipped ({outcome.records_affected} records)"
        )
        return outcome

    async def _pending_candidates(
        self,
        tenant_id: int,
        limit: Optional[int] = None,
        min_confidence: Optional[float] = None,
    ) -> List[DuplicateCandidate]:
        product_a = aliased(Product)
        product_b = aliased(Product)
        query = (
            select(DuplicateCandidate)
            .join(product_a, DuplicateCandidate.product_a_id == product_a.id)
            .join(product_b, DuplicateCandidate.product_b_id == product_b.id)
            .where(
                DuplicateCandidate.tenant_id == tenant_id,
                DuplicateCandidate.status == CANDIDATE_PENDING,
                DuplicateCandidate.archived_at.is_(None),
                product_a.merged_into_id.is_(None),
                product_b.merged_into_id.is_(None),
            )
            .options(
                selectinload(DuplicateCandidate.product_a),
                selectinload(DuplicateCandidate.product_b),
            )
            .order_by(DuplicateCandidate.confidence_score.desc(), DuplicateCandidate.id)
        )
        if min_confidence is not None:
            query = query.where(DuplicateCandidate.confidence_score >= min_confidence)
        if limit is not None:
            query = query.limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def _get_candidate(self, tenant_id: int, candidate_id: int) -> DuplicateCandidate:
        result = await self.db.execute(
            select(DuplicateCandidate).where(
                DuplicateCandidate.id == candidate_id,
                DuplicateCandidate.tenant_id == tenant_id,
            )
        )
        candidate = result.scalar_one_or_none()
        if candidate is None:
            raise NotFoundError(f"Candidate {candidate_id} not found")
        return candidate

    def _claim_is_free(self, now: datetime):
        expired_before = now - timedelta(seconds=settings.review_claim_ttl_seconds)
        return or_(
            DuplicateCandidate.claimed_at.is_(None),
            DuplicateCandidate.claimed_at < expired_before,
        )

    async def _merge_candidate(
        self,
        candidate: DuplicateCandidate,
        keep_product_id: int,
        merge_product_id: int,
        reviewer_id: Optional[str],
        merge_type: str,
        alias_source: str,
        reasoning: str,
    ) -> int:
        candidate_id = candidate.id
        tenant_id = candidate.tenant_id
        confidence = candidate.confidence_score
        claimant = reviewer_id or SYSTEM_REVIEWER
        log = get_logger(__name__, tenant_id=tenant_id, candidate_id=candidate_id)

        now = datetime.utcnow()
        claimed = await self.db.execute(
            update(DuplicateCandidate)
            .where(
                DuplicateCandidate.id == candidate_id,
                DuplicateCandidate.status == CANDIDATE_PENDING,
                self._claim_is_free(now),
            )
            .values(claimed_at=now, claimed_by=claimant)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if claimed.rowcount != 1:
            record_decision("merge", False)
            raise ConflictError(f"Candidate {candidate_id} is being decided by another reviewer")

        try:
            result = await self.executor.merge(
                MergeRequest(
                    tenant_id=tenant_id,
                    keep_product_id=keep_product_id,
                    merge_product_id=merge_product_id,
                    confidence=confidence,
                    reasoning=reasoning,
                    performed_by=reviewer_id,
                    merge_type=merge_type,
                    alias_source=alias_source,
                    merge_key=f"candidate:{candidate_id}",
                )
            )
        except DedupeError:
            await self.db.rollback()
            await self._release_claim(candidate_id, claimant)
            record_decision("merge", False)
            raise

        await self.db.execute(
            update(DuplicateCandidate)
            .where(
                DuplicateCandidate.id == candidate_id,
                DuplicateCandidate.status == CANDIDATE_PENDING,
            )
            .values(
                status=CANDIDATE_MERGED,
                reviewed_by=reviewer_id,
                reviewed_at=datetime.utcnow(),
                user_decision={
                    "action": "merged",
                    "kept_product": keep_product_id,
                    "merged_product": merge_product_id,
                    "records_affected": result.records_affected,
                },
                claimed_at=None,
                claimed_by=None,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self._refresh(candidate_id)

        log.info(
            f"Candidate {candidate_id} merged: kept {keep_product_id}, "
            f"merged {merge_product_id} ({result.records_affected} records)"
        )
        record_decision("merge", True)
        return result.records_affected

    async def _release_claim(self, candidate_id: int, claimant: str) -> None:
        await self.db.execute(
            update(DuplicateCandidate)
            .where(
                DuplicateCandidate.id == candidate_id,
                DuplicateCandidate.claimed_by == claimant,
                DuplicateCandidate.status == CANDIDATE_PENDING,
            )
            .values(claimed_at=None, claimed_by=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def _dismiss(
        self,
        candidate: DuplicateCandidate,
        decision: DismissDecision,
        reviewer_id: Optional[str],
    ) -> None:
        candidate_id = candidate.id
        now = datetime.utcnow()
        dismissed = await self.db.execute(
            update(DuplicateCandidate)
            .where(
                DuplicateCandidate.id == candidate_id,
                DuplicateCandidate.status == CANDIDATE_PENDING,
                self._claim_is_free(now),
            )
            .values(
                status=CANDIDATE_DISMISSED,
                reviewed_by=reviewer_id,
                reviewed_at=now,
                user_decision={
                    "action": "dismissed",
                    "reason": decision.reason or DEFAULT_DISMISS_REASON,
                },
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if dismissed.rowcount != 1:
            record_decision("dismiss", False)
            raise ConflictError(f"Candidate {candidate_id} is no longer pending")

        await self._refresh(candidate_id)
        logger.info(f"Candidate {candidate_id} dismissed by {reviewer_id or 'unknown reviewer'}")
        record_decision("dismiss", True)

    async def _refresh(self, candidate_id: int) -> None:
        """Reload a candidate changed by a bulk UPDATE so callers see its new state."""
        candidate = await self.db.get(DuplicateCandidate, candidate_id)
        if candidate is not None:
            await self.db.refresh(candidate)
