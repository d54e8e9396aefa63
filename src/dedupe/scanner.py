"""Background duplicate scan over a tenant's product catalog."""

import asyncio
import time
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.db.models import (
    CANDIDATE_PENDING,
    SCAN_COMPLETED,
    SCAN_FAILED,
    SCAN_RUNNING,
    DuplicateCandidate,
    Organization,
    Product,
    ScanRun,
)
from src.dedupe.errors import NotFoundError, ScanError, ValidationError
from src.dedupe.similarity import SimilarityScorer, similarity_scorer
from src.logging_config import get_logger
from src.metrics import record_scan

logger = get_logger(__name__)

SCAN_CANCELLED_MESSAGE = "Scan cancelled"


class ScanCancelled(Exception):
    """Raised inside the scan loop when its token is cancelled."""


class ScanCancellationToken:
    """Cooperative cancellation flag checked between rows of the scan."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ScanRegistry:
    """In-process registry of running scans, keyed by ScanRun id."""

    def __init__(self):
        self._tokens: Dict[int, ScanCancellationToken] = {}

    def register(self, scan_id: int, token: ScanCancellationToken) -> None:
        self._tokens[scan_id] = token

    def unregister(self, scan_id: int) -> None:
        self._tokens.pop(scan_id, None)

    def cancel(self, scan_id: int) -> bool:
        """Cancel a scan running in this process. Returns False if it is not here."""
        token = self._tokens.get(scan_id)
        if token is None:
            return False
        token.cancel()
        return True

    def is_running(self, scan_id: int) -> bool:
        return scan_id in self._tokens


scan_registry = ScanRegistry()


@dataclass
class ScanSummary:
    scan_id: int
    products_scanned: int = 0
    candidates_found: int = 0
    high_confidence_count: int = 0
    duration_seconds: float = 0.0
    status: str = SCAN_RUNNING
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def _pair_key(id_a: int, id_b: int) -> Tuple[int, int]:
    return (id_a, id_b) if id_a < id_b else (id_b, id_a)


class CandidateScanner:
    """
    Finds likely duplicate products and stores them as pending candidates.

    Products are taken by revenue (highest first) up to max_products and
    compared pairwise. Pairs already recorded in any status are skipped, so
    repeated scans never resurface a dismissed pair. Large catalogs are only
    compared within brand blocks.
    """

    def __init__(self, db: AsyncSession, scorer: Optional[SimilarityScorer] = None):
        self.db = db
        self.scorer = scorer or similarity_scorer

    async def run_scan(
        self,
        tenant_id: int,
        min_confidence: Optional[float] = None,
        max_products: Optional[int] = None,
        trigger: str = "manual",
        cancel_token: Optional[ScanCancellationToken] = None,
        run_id: Optional[str] = None,
    ) -> ScanSummary:
        """
        Scan a tenant catalog for duplicate candidates.

        Failures after the ScanRun exists are recorded on it and returned as a
        failed summary instead of raised.

        Raises:
            ValidationError: min_confidence outside [0, 1] or max_products < 1
            NotFoundError: Unknown tenant
            ScanError: The ScanRun record could not be created
        """
        min_confidence = settings.dedupe_min_confidence if min_confidence is None else min_confidence
        max_products = settings.dedupe_max_products if max_products is None else max_products
        if not isinstance(min_confidence, (int, float)) or not 0.0 <= min_confidence <= 1.0:
            raise ValidationError("min_confidence must be between 0 and 1")
        if not isinstance(max_products, int) or max_products < 1:
            raise ValidationError("max_products must be a positive integer")

        org = await self.db.get(Organization, tenant_id)
        if org is None:
            raise NotFoundError(f"Organization {tenant_id} not found")

        started = time.monotonic()
        try:
            scan_run = ScanRun(
                tenant_id=tenant_id,
                run_id=run_id or uuid4().hex,
                trigger=trigger,
                status=SCAN_RUNNING,
                started_at=datetime.utcnow(),
                scan_parameters={
                    "min_confidence": min_confidence,
                    "max_products": max_products,
                },
            )
            self.db.add(scan_run)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            raise ScanError(f"Could not start scan for tenant {tenant_id}: {e}") from e

        scan_id = scan_run.id
        log = get_logger(__name__, tenant_id=tenant_id, scan_id=scan_id)
        token = cancel_token or ScanCancellationToken()
        scan_registry.register(scan_id, token)
        log.info(
            f"Starting duplicate scan {scan_id} (trigger: {trigger}, "
            f"min_confidence: {min_confidence}, max_products: {max_products})"
        )

        summary = ScanSummary(scan_id=scan_id)
        inserted: List[float] = []
        try:
            products = await self._fetch_products(tenant_id, max_products)
            summary.products_scanned = len(products)
            existing = await self._existing_pairs(tenant_id)

            staged = await self._find_candidates(
                tenant_id, scan_id, products, existing, min_confidence, token, log
            )
            inserted = await self._persist(staged, log)

            summary.candidates_found = len(inserted)
            summary.high_confidence_count = self._count_high(inserted)
            summary.duration_seconds = round(time.monotonic() - started, 3)
            summary.status = SCAN_COMPLETED

            scan_run = await self.db.get(ScanRun, scan_id)
            scan_run.status = SCAN_COMPLETED
            scan_run.completed_at = datetime.utcnow()
            scan_run.products_scanned = summary.products_scanned
            scan_run.candidates_found = summary.candidates_found
            scan_run.high_confidence_count = summary.high_confidence_count
            scan_run.duration_seconds = summary.duration_seconds
            org = await self.db.get(Organization, tenant_id)
            org.last_duplicate_scan = scan_run.completed_at
            await self.db.commit()

            log.info(
                f"Duplicate scan {scan_id} complete: {summary.products_scanned} products, "
                f"{summary.candidates_found} candidates "
                f"({summary.high_confidence_count} high confidence) "
                f"in {summary.duration_seconds:.2f}s"
            )
        except ScanCancelled:
            await self.db.rollback()
            log.info(f"Duplicate scan {scan_id} cancelled")
            await self._mark_failed(summary, SCAN_CANCELLED_MESSAGE, inserted, started)
        except Exception as e:
            await self.db.rollback()
            log.error(f"Duplicate scan {scan_id} failed: {e}", exc_info=True)
            await self._mark_failed(summary, str(e), inserted, started)
        finally:
            scan_registry.unregister(scan_id)

        record_scan(
            trigger,
            summary.status,
            summary.duration_seconds,
            summary.high_confidence_count,
            summary.candidates_found,
        )
        return summary

    async def _fetch_products(self, tenant_id: int, max_products: int) -> List[Product]:
        result = await self.db.execute(
            select(Product)
            .where(Product.tenant_id == tenant_id, Product.merged_into_id.is_(None))
            .order_by(Product.total_revenue.desc(), Product.id)
            .limit(max_products)
        )
        return list(result.scalars().all())

    async def _existing_pairs(self, tenant_id: int) -> Set[Tuple[int, int]]:
        """Every recorded pair in any status, normalized so both orderings match."""
        result = await self.db.execute(
            select(DuplicateCandidate.product_a_id, DuplicateCandidate.product_b_id).where(
                DuplicateCandidate.tenant_id == tenant_id
            )
        )
        return {_pair_key(a, b) for a, b in result.all()}

    def _comparison_plan(self, parsed) -> Optional[List[List[int]]]:
        """
        Brand blocks for large catalogs, or None to compare every pair.

        Block key is the first word of the brand guess.
        """
        if len(parsed) <= settings.dedupe_blocking_min_products:
            return None
        blocks: Dict[str, List[int]] = defaultdict(list)
        for idx, item in enumerate(parsed):
            key = item.brand_guess.split(" ", 1)[0] if item.brand_guess else ""
            blocks[key].append(idx)
        return list(blocks.values())

    async def _find_candidates(
        self,
        tenant_id: int,
        scan_id: int,
        products: List[Product],
        existing: Set[Tuple[int, int]],
        min_confidence: float,
        token: ScanCancellationToken,
        log,
    ) -> List[DuplicateCandidate]:
        parsed = [self.scorer.parser.parse(p.product_name) for p in products]
        plan = self._comparison_plan(parsed)
        if plan is not None:
            log.info(
                f"Blocking {len(products)} products into {len(plan)} brand blocks"
            )
            peers: Dict[int, List[int]] = {}
            for block in plan:
                for pos, idx in enumerate(block):
                    peers[idx] = block[pos + 1:]
        else:
            peers = None

        staged: List[DuplicateCandidate] = []
        total = len(products)
        for i, product in enumerate(products):
            # Let the event loop run (API cancel requests, heartbeats)
            await asyncio.sleep(0)
            if token.cancelled:
                raise ScanCancelled()

            others: Iterable[int] = peers[i] if peers is not None else range(i + 1, total)
            for j in others:
                other = products[j]
                key = _pair_key(product.id, other.id)
                if key in existing:
                    continue

                result = self.scorer.compare_parsed(
                    parsed[i], parsed[j], identical=product.product_name == other.product_name
                )
                confidence = round(result.confidence, 4)
                if confidence < min_confidence:
                    continue

                existing.add(key)
                staged.append(
                    DuplicateCandidate.create_normalized(
                        product.id,
                        product.product_name,
                        other.id,
                        other.product_name,
                        tenant_id=tenant_id,
                        scan_run_id=scan_id,
                        confidence_score=confidence,
                        similarity_details={
                            "component_scores": result.component_scores,
                            "reasoning": result.reasoning,
                        },
                        status=CANDIDATE_PENDING,
                        detected_at=datetime.utcnow(),
                    )
                )

            if (i + 1) % settings.dedupe_progress_log_every == 0:
                log.debug(f"Processed {i + 1}/{total} products, {len(staged)} candidates so far")

        return staged

    async def _persist(self, staged: List[DuplicateCandidate], log) -> List[float]:
        """
        Insert staged candidates and return the scores that were stored.

        A concurrent writer may have recorded some of the same pairs; on a
        unique violation the batch is retried row by row and conflicts skipped.
        """
        if not staged:
            return []

        rows = [self._candidate_values(c) for c in staged]
        try:
            self.db.add_all(staged)
            await self.db.commit()
            return [c["confidence_score"] for c in rows]
        except IntegrityError:
            await self.db.rollback()
            log.warning("Bulk candidate insert hit existing pairs, inserting one by one")

        inserted: List[float] = []
        for values in rows:
            self.db.add(DuplicateCandidate(**values))
            try:
                await self.db.commit()
                inserted.append(values["confidence_score"])
            except IntegrityError:
                await self.db.rollback()
        return inserted

    @staticmethod
    def _candidate_values(candidate: DuplicateCandidate) -> dict:
        return {
            "tenant_id": candidate.tenant_id,
            "product_a_id": candidate.product_a_id,
            "product_b_id": candidate.product_b_id,
            "product_a_name": candidate.product_a_name,
            "product_b_name": candidate.product_b_name,
            "confidence_score": candidate.confidence_score,
            "similarity_details": candidate.similarity_details,
            "status": candidate.status,
            "scan_run_id": candidate.scan_run_id,
            "detected_at": candidate.detected_at,
        }

    @staticmethod
    def _count_high(scores: List[float]) -> int:
        threshold = settings.dedupe_high_confidence_threshold
        return sum(1 for score in scores if score >= threshold)

    async def _mark_failed(
        self,
        summary: ScanSummary,
        message: str,
        inserted: List[float],
        started: float,
    ) -> None:
        summary.status = SCAN_FAILED
        summary.error = message
        summary.candidates_found = len(inserted)
        summary.high_confidence_count = self._count_high(inserted)
        summary.duration_seconds = round(time.monotonic() - started, 3)
        try:
            await self.db.execute(
                update(ScanRun)
                .where(ScanRun.id == summary.scan_id)
                .values(
                    status=SCAN_FAILED,
                    completed_at=datetime.utcnow(),
                    error_message=message[:2000],
                    products_scanned=summary.products_scanned,
                    candidates_found=summary.candidates_found,
                    high_confidence_count=summary.high_confidence_count,
                    duration_seconds=summary.duration_seconds,
                )
            )
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            # The watchdog fails runs left in 'running'
            logger.error(f"Could not mark scan {summary.scan_id} failed: {e}", exc_info=True)
