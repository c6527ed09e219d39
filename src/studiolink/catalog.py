"""Artist, service and per-artist override lookups.

Read-mostly access to the studio catalog.  The only write is the artist's
chosen calendar, set by an admin after linking.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from studiolink.db import acquire_conn
from studiolink.models import Artist, Service, ServiceOverride

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_CATALOG_DDL = (
    """
    CREATE TABLE IF NOT EXISTS artists (
        id          TEXT PRIMARY KEY,
        name        TEXT NOT NULL,
        calendar_id TEXT,
        created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS services (
        id                TEXT PRIMARY KEY,
        title             TEXT NOT NULL,
        slug              TEXT NOT NULL UNIQUE,
        base_price        NUMERIC,
        duration_min      INTEGER,
        buffer_before_min INTEGER,
        buffer_after_min  INTEGER,
        active            BOOLEAN NOT NULL DEFAULT true
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS service_overrides (
        artist_id  TEXT NOT NULL REFERENCES artists (id) ON DELETE CASCADE,
        service_id TEXT NOT NULL REFERENCES services (id) ON DELETE CASCADE,
        price      NUMERIC,
        active     BOOLEAN NOT NULL DEFAULT true,
        PRIMARY KEY (artist_id, service_id)
    )
    """,
)


def _row_to_service(row: Any) -> Service:
    return Service(
        id=row["id"],
        title=row["title"],
        slug=row["slug"],
        base_price=row["base_price"],
        duration_min=row["duration_min"],
        buffer_before_min=row["buffer_before_min"],
        buffer_after_min=row["buffer_after_min"],
        active=bool(row["active"]),
    )


class Catalog:
    """Async accessor for the ``artists``, ``services`` and ``service_overrides`` tables."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def get_artist(self, artist_id: str) -> Artist | None:
        async with acquire_conn(self.pool) as conn:
            row = await conn.fetchrow(
                "SELECT id, name, calendar_id FROM artists WHERE id = $1",
                artist_id,
            )
        if row is None:
            return None
        return Artist(id=row["id"], name=row["name"], calendar_id=row["calendar_id"])

    async def set_linked_calendar(self, artist_id: str, calendar_id: str) -> bool:
        """Record which calendar busy time is read from.  Returns False for unknown artists."""
        async with acquire_conn(self.pool) as conn:
            result = await conn.execute(
                "UPDATE artists SET calendar_id = $2 WHERE id = $1",
                artist_id,
                calendar_id,
            )
        updated = result == "UPDATE 1"
        if updated:
            logger.info("Linked calendar set: artist_id=%r calendar_id=%r", artist_id, calendar_id)
        return updated

    async def get_service(self, service_id: str) -> Service | None:
        async with acquire_conn(self.pool) as conn:
            row = await conn.fetchrow(
                """
                SELECT id, title, slug, base_price, duration_min,
                       buffer_before_min, buffer_after_min, active
                FROM services
                WHERE id = $1
                """,
                service_id,
            )
        if row is None:
            return None
        return _row_to_service(row)

    async def get_override(self, artist_id: str, service_id: str) -> ServiceOverride | None:
        async with acquire_conn(self.pool) as conn:
            row = await conn.fetchrow(
                """
                SELECT artist_id, service_id, price, active
                FROM service_overrides
                WHERE artist_id = $1 AND service_id = $2
                """,
                artist_id,
                service_id,
            )
        if row is None:
            return None
        return ServiceOverride(
            artist_id=row["artist_id"],
            service_id=row["service_id"],
            price=row["price"],
            active=bool(row["active"]),
        )

    async def list_offered_services(
        self, artist_id: str
    ) -> list[tuple[Service, ServiceOverride]]:
        """Return active services joined to the artist's active overrides, by title."""
        async with acquire_conn(self.pool) as conn:
            rows = await conn.fetch(
                """
                SELECT s.id, s.title, s.slug, s.base_price, s.duration_min,
                       s.buffer_before_min, s.buffer_after_min, s.active,
                       o.price AS override_price, o.active AS override_active
                FROM service_overrides o
                JOIN services s ON s.id = o.service_id
                WHERE o.artist_id = $1 AND o.active AND s.active
                ORDER BY s.title
                """,
                artist_id,
            )
        return [
            (
                _row_to_service(row),
                ServiceOverride(
                    artist_id=artist_id,
                    service_id=row["id"],
                    price=row["override_price"],
                    active=bool(row["override_active"]),
                ),
            )
            for row in rows
        ]


async def ensure_schema(pool: asyncpg.Pool) -> None:
    """Ensure the catalog tables exist."""
    async with acquire_conn(pool) as conn:
        for ddl in _CATALOG_DDL:
            await conn.execute(ddl)
