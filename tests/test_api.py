"""API tests against the FastAPI app with an in-memory database."""

from contextlib import asynccontextmanager

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select

from src.api.deps import get_database, get_scan_lock_manager
from src.config import settings
from src.db.models import Product, ScanRun
from src.dedupe.scanner import ScanCancellationToken, scan_registry
from src.main import app
from src.worker.scan_lock import ScanLockHeld


class FakeLockManager:
    """In-memory stand-in for the Redis scan lock."""

    def __init__(self, held_by=None):
        self.held_by = held_by
        self.forced = []

    @asynccontextmanager
    async def hold(self, tenant_id, run_id):
        if self.held_by:
            raise ScanLockHeld(tenant_id, {"run_id": self.held_by, "ttl_seconds": 60})
        self.held_by = run_id
        try:
            yield "token"
        finally:
            self.held_by = None

    async def get_lock_info(self, tenant_id):
        return {"run_id": self.held_by} if self.held_by else None

    async def force_unlock(self, tenant_id):
        self.forced.append(tenant_id)
        self.held_by = None
        return True


@pytest.fixture
def lock_manager():
    return FakeLockManager()


@pytest.fixture
async def client(db_session, lock_manager):
    async def get_test_database():
        yield db_session

    app.dependency_overrides[get_database] = get_test_database
    app.dependency_overrides[get_scan_lock_manager] = lambda: lock_manager

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
async def catalog(seed):
    org = await seed.organization()
    a = await seed.product(org.id, "Tito's Vodka 750ML", revenue=100)
    b = await seed.product(org.id, "Titos Handmade Vodka 750 mL", revenue=400)
    await seed.sales(org.id, "Tito's Vodka 750ML", 10)
    return org.id, a.id, b.id


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


@pytest.mark.asyncio
async def test_scan_review_merge_flow(client, catalog, db_session):
    tenant_id, a_id, b_id = catalog

    response = await client.post(f"/api/tenants/{tenant_id}/scans", json={})
    assert response.status_code == 200
    summary = response.json()
    assert summary["status"] == "completed"
    assert summary["candidates_found"] == 1

    response = await client.get(f"/api/tenants/{tenant_id}/candidates")
    assert response.status_code == 200
    candidates = response.json()
    assert len(candidates) == 1
    candidate = candidates[0]
    assert candidate["product_a"]["product_name"] == "Tito's Vodka 750ML"
    assert candidate["product_b"]["id"] == b_id

    response = await client.post(
        f"/api/tenants/{tenant_id}/candidates/{candidate['id']}/decision",
        json={"action": "merge", "keep_product_id": b_id, "merge_product_id": a_id},
        headers={"X-User-Id": "alice"},
    )
    assert response.status_code == 200
    assert response.json() == {"records_affected": 10}

    response = await client.post(
        f"/api/tenants/{tenant_id}/candidates/{candidate['id']}/decision",
        json={"action": "dismiss"},
    )
    assert response.status_code == 409

    response = await client.get(f"/api/tenants/{tenant_id}/audit")
    entries = response.json()
    assert len(entries) == 1
    assert entries[0]["records_affected"] == 10
    assert entries[0]["performed_by"] == "alice"

    response = await client.get(
        f"/api/tenants/{tenant_id}/aliases/resolve", params={"name": "Tito's Vodka 750ML"}
    )
    assert response.json()["canonical_name"] == "Titos Handmade Vodka 750 mL"


@pytest.mark.asyncio
async def test_scan_conflicts_while_lock_held(client, catalog, lock_manager, db_session):
    tenant_id, _, _ = catalog
    lock_manager.held_by = "other-run"

    response = await client.post(f"/api/tenants/{tenant_id}/scans")

    assert response.status_code == 409
    assert response.json()["lock"]["run_id"] == "other-run"
    assert await db_session.scalar(select(func.count(ScanRun.id))) == 0


@pytest.mark.asyncio
async def test_scan_validation_and_unknown_tenant(client, catalog):
    tenant_id, _, _ = catalog

    response = await client.post(f"/api/tenants/{tenant_id}/scans", json={"min_confidence": 2})
    assert response.status_code == 422

    response = await client.post("/api/tenants/9999/scans", json={})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_list_and_get_scan_runs(client, catalog):
    tenant_id, _, _ = catalog
    summary = (await client.post(f"/api/tenants/{tenant_id}/scans", json={})).json()

    runs = (await client.get(f"/api/tenants/{tenant_id}/scans")).json()
    assert [r["id"] for r in runs] == [summary["scan_id"]]
    assert runs[0]["trigger"] == "manual"

    response = await client.get(f"/api/tenants/{tenant_id}/scans/{summary['scan_id']}")
    assert response.status_code == 200
    assert response.json()["status"] == "completed"

    response = await client.get(f"/api/tenants/9999/scans/{summary['scan_id']}")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_cancel_scan(client, catalog, db_session):
    tenant_id, _, _ = catalog
    scan_run = ScanRun(tenant_id=tenant_id, run_id="abc", trigger="manual", status="running")
    db_session.add(scan_run)
    await db_session.commit()
    token = ScanCancellationToken()
    scan_registry.register(scan_run.id, token)

    try:
        response = await client.post(f"/api/tenants/{tenant_id}/scans/{scan_run.id}/cancel")
    finally:
        scan_registry.unregister(scan_run.id)

    assert response.status_code == 200
    assert response.json() == {"scan_id": scan_run.id, "cancelled": True}
    assert token.cancelled


@pytest.mark.asyncio
async def test_cancel_finished_scan_conflicts(client, catalog):
    tenant_id, _, _ = catalog
    summary = (await client.post(f"/api/tenants/{tenant_id}/scans", json={})).json()

    response = await client.post(f"/api/tenants/{tenant_id}/scans/{summary['scan_id']}/cancel")
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_force_unlock_requires_admin_key(client, catalog, lock_manager, monkeypatch):
    tenant_id, _, _ = catalog
    monkeypatch.setattr(settings, "admin_api_key", "secret")

    response = await client.post(
        f"/api/tenants/{tenant_id}/scans/admin/force-unlock",
        headers={"X-Admin-API-Key": "wrong"},
    )
    assert response.status_code == 403

    response = await client.post(
        f"/api/tenants/{tenant_id}/scans/admin/force-unlock",
        headers={"X-Admin-API-Key": "secret"},
    )
    assert response.status_code == 200
    assert lock_manager.forced == [tenant_id]


@pytest.mark.asyncio
async def test_decision_errors(client, catalog, seed):
    tenant_id, a_id, b_id = catalog
    a = await seed.product(tenant_id, "Grey Goose 1L")
    b = await seed.product(tenant_id, "Grey Goose Vodka 1L")
    candidate = await seed.candidate(tenant_id, a, b)
    url = f"/api/tenants/{tenant_id}/candidates/{candidate.id}/decision"

    response = await client.post(url, json={"action": "merge"})
    assert response.status_code == 400

    response = await client.post(
        url, json={"action": "merge", "keep_product_id": a_id, "merge_product_id": b_id}
    )
    assert response.status_code == 400

    response = await client.post(url, json={"action": "explode"})
    assert response.status_code == 422

    response = await client.post(
        f"/api/tenants/{tenant_id}/candidates/9999/decision", json={"action": "dismiss"}
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_pending_limit_validation(client, catalog):
    tenant_id, _, _ = catalog
    response = await client.get(f"/api/tenants/{tenant_id}/candidates", params={"limit": 0})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_bulk_merge_endpoint(client, catalog, db_session):
    tenant_id, a_id, b_id = catalog

    response = await client.post(
        f"/api/tenants/{tenant_id}/products/merge",
        json={"product_ids": [a_id, b_id], "canonical_name": " Titos Handmade Vodka 750 mL "},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["variants_merged"] == ["Tito's Vodka 750ML"]
    assert body["total_records_affected"] == 10
    assert body["records_per_variant"] == {"Tito's Vodka 750ML": 10}

    response = await client.post(
        f"/api/tenants/{tenant_id}/products/merge",
        json={"product_ids": [a_id], "canonical_name": "Titos Handmade Vodka 750 mL"},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_auto_merge_endpoint(client, catalog, seed, db_session):
    tenant_id, a_id, b_id = catalog
    a = await db_session.get(Product, a_id)
    b = await db_session.get(Product, b_id)
    await seed.candidate(tenant_id, a, b, confidence=0.97)

    response = await client.post(f"/api/tenants/{tenant_id}/candidates/auto-merge", json={})

    assert response.status_code == 200
    body = response.json()
    assert body["merged"] == 1
    assert body["records_affected"] == 10


@pytest.mark.asyncio
async def test_resolve_many_endpoint(client, catalog, seed):
    tenant_id, _, _ = catalog
    await seed.alias(tenant_id, "Titos 750", "Titos Handmade Vodka 750 mL")

    response = await client.post(
        f"/api/tenants/{tenant_id}/aliases/resolve", json={"names": ["Titos 750", "Campari"]}
    )

    assert response.status_code == 200
    assert response.json() == {
        "mappings": {"Titos 750": "Titos Handmade Vodka 750 mL", "Campari": "Campari"}
    }

    response = await client.get(f"/api/tenants/{tenant_id}/aliases")
    assert [m["variant_name"] for m in response.json()] == ["Titos 750"]
