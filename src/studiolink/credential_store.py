"""Per-artist OAuth credential store backed by the ``oauth_credentials`` table.

Each artist has at most one row.  Every operation is a single SQL statement,
so a concurrent reader never observes a half-written token pair.

Usage, persisting a fresh grant::

    credential = await store.save(
        "harley",
        grant.access_token,
        grant.refresh_token,
        grant.expiry(),
        grant.scope,
    )

Usage, compare-and-swap after a refresh::

    await store.save(
        artist_id,
        grant.access_token,
        expiry=grant.expiry(),
        expected_generation=credential.generation,
    )

Token values are NEVER logged; :class:`~studiolink.models.OAuthCredential`
redacts them in ``repr()``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from studiolink.db import acquire_conn
from studiolink.errors import ConcurrencyConflict
from studiolink.models import OAuthCredential

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_TABLE = "oauth_credentials"

_CREDENTIALS_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_TABLE} (
    artist_id     TEXT PRIMARY KEY REFERENCES artists (id) ON DELETE CASCADE,
    access_token  TEXT NOT NULL,
    refresh_token TEXT,
    expires_at    TIMESTAMPTZ NOT NULL,
    scope         TEXT,
    generation    BIGINT NOT NULL DEFAULT 1,
    created_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at    TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

_COLUMNS = "artist_id, access_token, refresh_token, expires_at, scope, generation, updated_at"


class OAuthCredentialStore:
    """Async store for artist OAuth credentials.

    Parameters
    ----------
    pool:
        An asyncpg connection pool.  Each operation acquires a connection
        for the duration of one statement.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    async def save(
        self,
        artist_id: str,
        access_token: str,
        refresh_token: str | None = None,
        expiry: datetime | None = None,
        scope: str | None = None,
        *,
        expected_generation: int | None = None,
    ) -> OAuthCredential:
        """Create or replace an artist's credential.

        A ``None`` *refresh_token* (or *scope*) keeps the stored value, so a
        refresh response that omits the refresh token never erases it.

        Parameters
        ----------
        artist_id:
            Owning artist.
        access_token:
            The new bearer token.
        refresh_token:
            New refresh token, or ``None`` to keep the stored one.
        expiry:
            Absolute expiry of *access_token*.  Required.
        scope:
            Space-separated granted scopes, or ``None`` to keep the stored value.
        expected_generation:
            When set, the write only applies if the stored row still carries
            this generation.

        Returns
        -------
        OAuthCredential
            The row as written, with its new generation.

        Raises
        ------
        ValueError
            If *artist_id* or *access_token* is empty, or *expiry* is missing.
        ConcurrencyConflict
            If *expected_generation* no longer matches the stored row.
        """
        if not artist_id:
            raise ValueError("artist_id must be a non-empty string")
        if not access_token:
            raise ValueError("access_token must be a non-empty string")
        if expiry is None:
            raise ValueError("expiry is required")
        expiry = _ensure_utc(expiry)

        async with acquire_conn(self.pool) as conn:
            if expected_generation is None:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO {_TABLE}
                        (artist_id, access_token, refresh_token, expires_at, scope)
                    VALUES ($1, $2, $3, $4, $5)
                    ON CONFLICT (artist_id) DO UPDATE SET
                        access_token  = EXCLUDED.access_token,
                        refresh_token = COALESCE(EXCLUDED.refresh_token,
                                                 {_TABLE}.refresh_token),
                        expires_at    = EXCLUDED.expires_at,
                        scope         = COALESCE(EXCLUDED.scope, {_TABLE}.scope),
                        generation    = {_TABLE}.generation + 1,
                        updated_at    = now()
                    RETURNING {_COLUMNS}
                    """,
                    artist_id,
                    access_token,
                    refresh_token,
                    expiry,
                    scope,
                )
            else:
                row = await conn.fetchrow(
                    f"""
                    UPDATE {_TABLE} SET
                        access_token  = $2,
                        refresh_token = COALESCE($3, refresh_token),
                        expires_at    = $4,
                        scope         = COALESCE($5, scope),
                        generation    = generation + 1,
                        updated_at    = now()
                    WHERE artist_id = $1 AND generation = $6
                    RETURNING {_COLUMNS}
                    """,
                    artist_id,
                    access_token,
                    refresh_token,
                    expiry,
                    scope,
                    expected_generation,
                )

        if row is None:
            logger.info(
                "Credential write lost compare-and-swap: artist_id=%r expected_generation=%r",
                artist_id,
                expected_generation,
            )
            raise ConcurrencyConflict(
                f"Credential for artist {artist_id!r} changed concurrently "
                f"(expected generation {expected_generation})"
            )

        credential = _row_to_credential(row)
        # NEVER include token values.
        logger.info(
            "OAuth credential saved: artist_id=%r generation=%r expires_at=%s",
            artist_id,
            credential.generation,
            credential.expires_at.isoformat(),
        )
        return credential

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    async def load(self, artist_id: str) -> OAuthCredential | None:
        """Return the stored credential for *artist_id*, or ``None``."""
        async with acquire_conn(self.pool) as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM {_TABLE} WHERE artist_id = $1",
                artist_id,
            )
        if row is None:
            return None
        return _row_to_credential(row)

    # ------------------------------------------------------------------
    # Delete operation
    # ------------------------------------------------------------------

    async def delete(self, artist_id: str, *, expected_generation: int | None = None) -> bool:
        """Delete an artist's credential.

        Parameters
        ----------
        artist_id:
            Owning artist.
        expected_generation:
            When set, only delete if the row still carries this generation,
            so a stale caller cannot remove a credential written after it
            last looked.

        Returns
        -------
        bool
            ``True`` if a row was deleted.
        """
        async with acquire_conn(self.pool) as conn:
            if expected_generation is None:
                result = await conn.execute(
                    f"DELETE FROM {_TABLE} WHERE artist_id = $1",
                    artist_id,
                )
            else:
                result = await conn.execute(
                    f"DELETE FROM {_TABLE} WHERE artist_id = $1 AND generation = $2",
                    artist_id,
                    expected_generation,
                )
        # asyncpg returns "DELETE N" where N is the number of deleted rows
        deleted = result == "DELETE 1"
        if deleted:
            logger.info("OAuth credential deleted: artist_id=%r", artist_id)
        else:
            logger.debug(
                "OAuth credential delete matched no row: artist_id=%r expected_generation=%r",
                artist_id,
                expected_generation,
            )
        return deleted

    def __repr__(self) -> str:
        return f"OAuthCredentialStore(pool={self.pool!r})"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _ensure_utc(dt: datetime) -> datetime:
    """Attach UTC timezone to a naive datetime returned by asyncpg."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def _row_to_credential(row: Any) -> OAuthCredential:
    updated_at = row["updated_at"]
    return OAuthCredential(
        artist_id=row["artist_id"],
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        expires_at=_ensure_utc(row["expires_at"]),
        scope=row["scope"],
        generation=int(row["generation"]),
        updated_at=_ensure_utc(updated_at) if updated_at is not None else None,
    )


async def ensure_schema(pool: asyncpg.Pool) -> None:
    """Ensure ``oauth_credentials`` exists.  Requires the ``artists`` table."""
    async with acquire_conn(pool) as conn:
        await conn.execute(_CREDENTIALS_TABLE_DDL)

