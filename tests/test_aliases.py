"""Tests for alias resolution."""

import pytest
from sqlalchemy import select

from src.db.models import ProductAliasMapping
from src.dedupe.aliases import AliasResolver


@pytest.mark.asyncio
async def test_resolve_known_and_unknown_names(db_session, seed):
    org = await seed.organization()
    await seed.alias(org.id, "Titos Vodka 750", "Tito's Handmade Vodka 750ml")
    resolver = AliasResolver(db_session)

    assert await resolver.resolve(org.id, "Titos Vodka 750") == "Tito's Handmade Vodka 750ml"
    assert await resolver.resolve(org.id, "Grey Goose 1L") == "Grey Goose 1L"
    assert await resolver.resolve(org.id, "") == ""


@pytest.mark.asyncio
async def test_inactive_mappings_are_ignored(db_session, seed):
    org = await seed.organization()
    await seed.alias(org.id, "Old Name", "New Name", is_active=False)

    assert await AliasResolver(db_session).resolve(org.id, "Old Name") == "Old Name"


@pytest.mark.asyncio
async def test_mappings_are_tenant_scoped(db_session, seed):
    org = await seed.organization()
    other = await seed.organization(name="Other Co")
    await seed.alias(other.id, "Titos Vodka 750", "Tito's Handmade Vodka 750ml")

    assert await AliasResolver(db_session).resolve(org.id, "Titos Vodka 750") == "Titos Vodka 750"


@pytest.mark.asyncio
async def test_resolve_many_bumps_usage(db_session, seed):
    org = await seed.organization()
    await seed.alias(org.id, "Absolut 1L", "Absolut Vodka 1L")
    await seed.alias(org.id, "Ketel 750", "Ketel One 750ml")

    resolved = await AliasResolver(db_session).resolve_many(
        org.id, ["Absolut 1L", "Ketel 750", "Campari 1L", "Absolut 1L"]
    )

    assert resolved == {
        "Absolut 1L": "Absolut Vodka 1L",
        "Ketel 750": "Ketel One 750ml",
        "Campari 1L": "Campari 1L",
    }
    rows = (
        await db_session.execute(
            select(ProductAliasMapping.variant_name, ProductAliasMapping.usage_count)
            .order_by(ProductAliasMapping.variant_name)
        )
    ).all()
    assert rows == [("Absolut 1L", 1), ("Ketel 750", 1)]

    mapping = (
        await db_session.execute(
            select(ProductAliasMapping).where(ProductAliasMapping.variant_name == "Absolut 1L")
        )
    ).scalar_one()
    assert mapping.last_used_at is not None


@pytest.mark.asyncio
async def test_list_mappings(db_session, seed):
    org = await seed.organization()
    await seed.alias(org.id, "B variant", "Canonical")
    await seed.alias(org.id, "A variant", "Canonical")
    await seed.alias(org.id, "Retired", "Canonical", is_active=False)
    resolver = AliasResolver(db_session)

    active = await resolver.list_mappings(org.id)
    assert [m.variant_name for m in active] == ["A variant", "B variant"]

    everything = await resolver.list_mappings(org.id, active_only=False)
    assert len(everything) == 3
