"""Tests for the duplicate candidate scanner."""

import pytest
from sqlalchemy import func, select

from src.config import settings
from src.db.models import DuplicateCandidate, Organization, ScanRun
from src.dedupe.errors import NotFoundError, ValidationError
from src.dedupe.name_parser import name_parser
from src.dedupe.scanner import (
    SCAN_CANCELLED_MESSAGE,
    CandidateScanner,
    ScanCancellationToken,
    ScanRegistry,
    scan_registry,
)


async def _candidate_count(db, tenant_id):
    return await db.scalar(
        select(func.count(DuplicateCandidate.id)).where(DuplicateCandidate.tenant_id == tenant_id)
    )


@pytest.mark.asyncio
async def test_scan_finds_duplicate_pair(db_session, seed):
    org = await seed.organization()
    titos_a = await seed.product(org.id, "Tito's Vodka 750ML", revenue=500)
    titos_b = await seed.product(org.id, "Titos Handmade Vodka 750 mL", revenue=200)
    await seed.product(org.id, "Corona Extra 12pk 12oz", revenue=300)
    await seed.product(org.id, "Heineken 12pk 12oz", revenue=100)

    summary = await CandidateScanner(db_session).run_scan(org.id)

    assert summary.status == "completed"
    assert summary.products_scanned == 4
    assert summary.candidates_found == 1
    assert summary.high_confidence_count == 1

    result = await db_session.execute(select(DuplicateCandidate))
    candidate = result.scalar_one()
    assert candidate.pair_key == (titos_a.id, titos_b.id)
    assert candidate.product_a_name == "Tito's Vodka 750ML"
    assert candidate.status == "pending"
    assert candidate.scan_run_id == summary.scan_id
    assert "same volume" in candidate.similarity_details["reasoning"]

    scan_run = await db_session.get(ScanRun, summary.scan_id)
    assert scan_run.status == "completed"
    assert scan_run.candidates_found == 1
    assert scan_run.scan_parameters["min_confidence"] == settings.dedupe_min_confidence

    org = await db_session.get(Organization, org.id)
    assert org.last_duplicate_scan is not None


@pytest.mark.asyncio
async def test_repeat_scan_adds_nothing(db_session, seed):
    org = await seed.organization()
    await seed.product(org.id, "Tito's Vodka 750ML")
    await seed.product(org.id, "Titos Handmade Vodka 750 mL")

    scanner = CandidateScanner(db_session)
    first = await scanner.run_scan(org.id)
    second = await scanner.run_scan(org.id)

    assert first.candidates_found == 1
    assert second.candidates_found == 0
    assert second.status == "completed"
    assert await _candidate_count(db_session, org.id) == 1


@pytest.mark.asyncio
async def test_dismissed_pair_is_never_resurfaced(db_session, seed):
    org = await seed.organization()
    p1 = await seed.product(org.id, "Tito's Vodka 750ML")
    p2 = await seed.product(org.id, "Titos Handmade Vodka 750 mL")
    await seed.product(org.id, "Hennessy VS Cognac")
    await seed.candidate(org.id, p2, p1, confidence=0.9, status="dismissed")

    summary = await CandidateScanner(db_session).run_scan(org.id, min_confidence=0.0)

    result = await db_session.execute(
        select(DuplicateCandidate).where(DuplicateCandidate.status == "pending")
    )
    pending_pairs = {c.pair_key for c in result.scalars().all()}
    assert (p1.id, p2.id) not in pending_pairs
    assert summary.candidates_found == 2
    assert await _candidate_count(db_session, org.id) == 3


@pytest.mark.asyncio
async def test_threshold_filters_low_scores(db_session, seed):
    org = await seed.organization()
    await seed.product(org.id, "Corona Extra 12pk 12oz")
    await seed.product(org.id, "Heineken 12pk 12oz")

    summary = await CandidateScanner(db_session).run_scan(org.id)

    assert summary.status == "completed"
    assert summary.candidates_found == 0


@pytest.mark.asyncio
async def test_max_products_takes_highest_revenue(db_session, seed):
    org = await seed.organization()
    await seed.product(org.id, "Tito's Vodka 750ML", revenue=10)
    await seed.product(org.id, "Titos Handmade Vodka 750 mL", revenue=20)
    await seed.product(org.id, "Grey Goose 1L", revenue=30)

    summary = await CandidateScanner(db_session).run_scan(org.id, max_products=2)

    assert summary.products_scanned == 2
    assert summary.candidates_found == 0


@pytest.mark.asyncio
async def test_merged_products_are_not_scanned(db_session, seed):
    org = await seed.organization()
    keep = await seed.product(org.id, "Tito's Vodka 750ML")
    await seed.product(org.id, "Titos Handmade Vodka 750 mL", merged_into_id=keep.id)

    summary = await CandidateScanner(db_session).run_scan(org.id)

    assert summary.products_scanned == 1
    assert summary.candidates_found == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs",
    [{"min_confidence": 1.5}, {"min_confidence": -0.1}, {"max_products": 0}],
)
async def test_invalid_parameters(db_session, seed, kwargs):
    org = await seed.organization()
    with pytest.raises(ValidationError):
        await CandidateScanner(db_session).run_scan(org.id, **kwargs)
    assert await db_session.scalar(select(func.count(ScanRun.id))) == 0


@pytest.mark.asyncio
async def test_unknown_tenant(db_session):
    with pytest.raises(NotFoundError):
        await CandidateScanner(db_session).run_scan(9999)


@pytest.mark.asyncio
async def test_cancelled_scan_is_marked_failed(db_session, seed):
    org = await seed.organization()
    await seed.product(org.id, "Tito's Vodka 750ML")
    await seed.product(org.id, "Titos Handmade Vodka 750 mL")

    token = ScanCancellationToken()
    token.cancel()
    tenant_id = org.id
    summary = await CandidateScanner(db_session).run_scan(tenant_id, cancel_token=token)

    assert summary.status == "failed"
    assert summary.error == SCAN_CANCELLED_MESSAGE
    assert await _candidate_count(db_session, tenant_id) == 0

    status, error = (
        await db_session.execute(
            select(ScanRun.status, ScanRun.error_message).where(ScanRun.id == summary.scan_id)
        )
    ).one()
    assert status == "failed"
    assert error == SCAN_CANCELLED_MESSAGE
    assert not scan_registry.is_running(summary.scan_id)


@pytest.mark.asyncio
async def test_scoring_failure_is_recorded_not_raised(db_session, seed):
    org = await seed.organization()
    await seed.product(org.id, "Tito's Vodka 750ML")
    await seed.product(org.id, "Titos Handmade Vodka 750 mL")

    class BrokenScorer:
        parser = name_parser

        def compare_parsed(self, *args, **kwargs):
            raise RuntimeError("scorer exploded")

    summary = await CandidateScanner(db_session, scorer=BrokenScorer()).run_scan(org.id)

    assert summary.status == "failed"
    assert "scorer exploded" in summary.error
    status = await db_session.scalar(select(ScanRun.status).where(ScanRun.id == summary.scan_id))
    assert status == "failed"


@pytest.mark.asyncio
async def test_blocking_compares_within_brand(db_session, seed, monkeypatch):
    monkeypatch.setattr(settings, "dedupe_blocking_min_products", 2)
    org = await seed.organization()
    await seed.product(org.id, "Tito's Vodka 750ML")
    await seed.product(org.id, "Titos Handmade Vodka 750 mL")
    await seed.product(org.id, "Grey Goose Vodka 750ml")

    compared = []
    scanner = CandidateScanner(db_session)
    original = scanner.scorer.compare_parsed

    class CountingScorer:
        parser = name_parser

        def compare_parsed(self, a, b, identical=False):
            compared.append((a.brand_guess, b.brand_guess))
            return original(a, b, identical=identical)

    scanner.scorer = CountingScorer()
    summary = await scanner.run_scan(org.id)

    assert summary.candidates_found == 1
    assert compared == [("titos", "titos")]


def test_registry_cancel():
    registry = ScanRegistry()
    token = ScanCancellationToken()
    registry.register(7, token)

    assert registry.is_running(7)
    assert registry.cancel(7) is True
    assert token.cancelled
    registry.unregister(7)
    assert registry.cancel(7) is False
