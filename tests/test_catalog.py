"""Unit tests for studiolink.catalog.Catalog against a mocked asyncpg pool."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from studiolink.catalog import Catalog, ensure_schema
from studiolink.models import Artist

pytestmark = pytest.mark.unit


def _make_pool(*, fetchrow_return=None, fetch_return=None, execute_return="UPDATE 0"):
    conn = AsyncMock()
    conn.fetchrow.return_value = fetchrow_return
    conn.fetch.return_value = fetch_return or []
    conn.execute.return_value = execute_return

    cm = AsyncMock()
    cm.__aenter__ = AsyncMock(return_value=conn)
    cm.__aexit__ = AsyncMock(return_value=False)

    pool = MagicMock()
    pool.acquire.return_value = cm
    pool._conn = conn
    return pool


def _make_row(**kwargs) -> MagicMock:
    row = MagicMock()
    row.__getitem__ = lambda self, key: kwargs[key]
    return row


def _service_row(**overrides):
    values = {
        "id": "svc-tattoo",
        "title": "Small tattoo",
        "slug": "small-tattoo",
        "base_price": Decimal("5000"),
        "duration_min": 90,
        "buffer_before_min": 15,
        "buffer_after_min": None,
        "active": True,
    }
    values.update(overrides)
    return _make_row(**values)


class TestArtists:
    async def test_get_artist(self):
        pool = _make_pool(fetchrow_return=_make_row(id="harley", name="Harley", calendar_id=None))
        assert await Catalog(pool).get_artist("harley") == Artist(id="harley", name="Harley")

    async def test_get_missing_artist(self):
        assert await Catalog(_make_pool()).get_artist("ghost") is None

    async def test_set_linked_calendar(self):
        pool = _make_pool(execute_return="UPDATE 1")
        assert await Catalog(pool).set_linked_calendar("harley", "cal@group") is True
        assert pool._conn.execute.call_args.args[1:] == ("harley", "cal@group")

    async def test_set_linked_calendar_unknown_artist(self):
        pool = _make_pool(execute_return="UPDATE 0")
        assert await Catalog(pool).set_linked_calendar("ghost", "cal") is False


class TestServices:
    async def test_get_service_keeps_raw_price(self):
        pool = _make_pool(fetchrow_return=_service_row(base_price=Decimal("0")))
        service = await Catalog(pool).get_service("svc-tattoo")

        assert service.base_price == Decimal("0")
        assert service.duration_min == 90
        assert service.buffer_after_min is None

    async def test_get_override(self):
        pool = _make_pool(
            fetchrow_return=_make_row(
                artist_id="harley", service_id="svc-tattoo", price=Decimal("4000"), active=False
            )
        )
        override = await Catalog(pool).get_override("harley", "svc-tattoo")

        assert override.price == Decimal("4000")
        assert override.active is False

    async def test_list_offered_services(self):
        row = _make_row(
            id="svc-tattoo",
            title="Small tattoo",
            slug="small-tattoo",
            base_price=Decimal("5000"),
            duration_min=90,
            buffer_before_min=0,
            buffer_after_min=0,
            active=True,
            override_price=None,
            override_active=True,
        )
        pool = _make_pool(fetch_return=[row])

        pairs = await Catalog(pool).list_offered_services("harley")

        assert len(pairs) == 1
        service, override = pairs[0]
        assert service.id == "svc-tattoo"
        assert override.artist_id == "harley"
        assert override.price is None
        sql = pool._conn.fetch.call_args.args[0]
        assert "o.active AND s.active" in sql


async def test_ensure_schema_creates_catalog_tables():
    pool = _make_pool()
    await ensure_schema(pool)
    statements = " ".join(call.args[0] for call in pool._conn.execute.call_args_list)
    for table in ("artists", "services", "service_overrides"):
        assert f"CREATE TABLE IF NOT EXISTS {table}" in statements
