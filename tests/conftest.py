"""Shared fixtures: an in-memory SQLite database and catalog seed helpers."""

from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from src.db.models import (
    Base,
    DuplicateCandidate,
    Organization,
    Product,
    ProductAliasMapping,
    SalesRecord,
)

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def test_engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        await session.close()


class CatalogSeeder:
    """Creates tenants, products, sales rows and candidates for tests."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def organization(self, name: str = "Acme Spirits", **kwargs) -> Organization:
        org = Organization(name=name, **kwargs)
        self.db.add(org)
        await self.db.commit()
        return org

    async def product(self, tenant_id: int, name: str, revenue: float = 0, **kwargs) -> Product:
        product = Product(
            tenant_id=tenant_id,
            product_name=name,
            total_revenue=Decimal(str(revenue)),
            **kwargs,
        )
        self.db.add(product)
        await self.db.commit()
        return product

    async def sales(
        self,
        tenant_id: int,
        product_name: str,
        count: int,
        revenue_each: float = 10.0,
        order_date: date = date(2026, 3, 1),
    ) -> None:
        for i in range(count):
            self.db.add(
                SalesRecord(
                    tenant_id=tenant_id,
                    product_name=product_name,
                    account_name=f"Account {i}",
                    order_date=order_date,
                    quantity=Decimal("1"),
                    revenue=Decimal(str(revenue_each)),
                )
            )
        await self.db.commit()

    async def candidate(
        self,
        tenant_id: int,
        product_a: Product,
        product_b: Product,
        confidence: float = 0.85,
        status: str = "pending",
        **kwargs,
    ) -> DuplicateCandidate:
        candidate = DuplicateCandidate.create_normalized(
            product_a.id,
            product_a.product_name,
            product_b.id,
            product_b.product_name,
            tenant_id=tenant_id,
            confidence_score=confidence,
            similarity_details={"reasoning": ["similar brand names"]},
            status=status,
            detected_at=kwargs.pop("detected_at", datetime.utcnow()),
            **kwargs,
        )
        self.db.add(candidate)
        await self.db.commit()
        return candidate

    async def alias(self, tenant_id: int, variant: str, canonical: str, **kwargs) -> ProductAliasMapping:
        mapping = ProductAliasMapping(
            tenant_id=tenant_id,
            variant_name=variant,
            canonical_name=canonical,
            source=kwargs.pop("source", "manual"),
            **kwargs,
        )
        self.db.add(mapping)
        await self.db.commit()
        return mapping


@pytest.fixture
def seed(db_session):
    return CatalogSeeder(db_session)
