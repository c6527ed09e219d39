"""Shared fakes and builders for the studiolink test suite.

The fakes mirror the observable behavior of the PostgreSQL-backed stores
(including generation-based compare-and-swap) so that component tests can run
without a database.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime

import httpx
import pytest

from studiolink.config import AdminConfig, CalendarConfig, FeedConfig, OAuthConfig, StudioConfig
from studiolink.errors import ConcurrencyConflict
from studiolink.models import Artist, OAuthCredential, Service, ServiceOverride

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# In-memory credential store
# ---------------------------------------------------------------------------


class FakeCredentialStore:
    """Dict-backed stand-in for :class:`~studiolink.credential_store.OAuthCredentialStore`."""

    def __init__(self) -> None:
        self.rows: dict[str, OAuthCredential] = {}
        self.saves: list[dict] = []
        self.deletes: list[tuple[str, int | None]] = []
        self.load_calls = 0
        # Hook run before each load; lets a test land a concurrent write.
        self.on_load: Callable[[str], None] | None = None

    def put(self, credential: OAuthCredential) -> None:
        self.rows[credential.artist_id] = credential

    async def save(
        self,
        artist_id,
        access_token,
        refresh_token=None,
        expiry=None,
        scope=None,
        *,
        expected_generation=None,
    ):
        if not artist_id:
            raise ValueError("artist_id must be a non-empty string")
        if not access_token:
            raise ValueError("access_token must be a non-empty string")
        if expiry is None:
            raise ValueError("expiry is required")
        self.saves.append(
            {
                "artist_id": artist_id,
                "access_token": access_token,
                "refresh_token": refresh_token,
                "expected_generation": expected_generation,
            }
        )
        existing = self.rows.get(artist_id)
        if expected_generation is not None and (
            existing is None or existing.generation != expected_generation
        ):
            raise ConcurrencyConflict(f"Credential for artist {artist_id!r} changed concurrently")

        if existing is None:
            credential = OAuthCredential(
                artist_id=artist_id,
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expiry,
                scope=scope,
                generation=1,
            )
        else:
            credential = replace(
                existing,
                access_token=access_token,
                refresh_token=refresh_token or existing.refresh_token,
                expires_at=expiry,
                scope=scope or existing.scope,
                generation=existing.generation + 1,
            )
        self.rows[artist_id] = credential
        return credential

    async def load(self, artist_id):
        self.load_calls += 1
        if self.on_load is not None:
            self.on_load(artist_id)
        return self.rows.get(artist_id)

    async def delete(self, artist_id, *, expected_generation=None):
        self.deletes.append((artist_id, expected_generation))
        existing = self.rows.get(artist_id)
        if existing is None:
            return False
        if expected_generation is not None and existing.generation != expected_generation:
            return False
        del self.rows[artist_id]
        return True


# ---------------------------------------------------------------------------
# In-memory catalog
# ---------------------------------------------------------------------------


class FakeCatalog:
    """Dict-backed stand-in for :class:`~studiolink.catalog.Catalog`."""

    def __init__(
        self,
        artists: list[Artist] | None = None,
        services: list[Service] | None = None,
        overrides: list[ServiceOverride] | None = None,
    ) -> None:
        self.artists = {artist.id: artist for artist in artists or []}
        self.services = {service.id: service for service in services or []}
        self.overrides = {
            (override.artist_id, override.service_id): override for override in overrides or []
        }

    async def get_artist(self, artist_id):
        return self.artists.get(artist_id)

    async def set_linked_calendar(self, artist_id, calendar_id):
        artist = self.artists.get(artist_id)
        if artist is None:
            return False
        self.artists[artist_id] = replace(artist, calendar_id=calendar_id)
        return True

    async def get_service(self, service_id):
        return self.services.get(service_id)

    async def get_override(self, artist_id, service_id):
        return self.overrides.get((artist_id, service_id))

    async def list_offered_services(self, artist_id):
        pairs = []
        for (owner, service_id), override in self.overrides.items():
            service = self.services.get(service_id)
            if owner != artist_id or service is None:
                continue
            if override.active and service.active:
                pairs.append((service, override))
        return sorted(pairs, key=lambda pair: pair[0].title)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_credential(
    artist_id: str = "harley",
    *,
    access_token: str = "ya29.access",
    refresh_token: str | None = "1//refresh",
    expires_at: datetime | None = None,
    generation: int = 1,
    scope: str | None = "https://www.googleapis.com/auth/calendar.readonly",
) -> OAuthCredential:
    return OAuthCredential(
        artist_id=artist_id,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=expires_at or datetime(2099, 1, 1, tzinfo=UTC),
        scope=scope,
        generation=generation,
    )


def make_oauth_config(**overrides) -> OAuthConfig:
    values = {
        "client_id": "client-id.apps.googleusercontent.com",
        "client_secret": "client-secret",
        "state_secret": "state-secret-for-tests",
        "redirect_uri": "http://localhost:40300/api/oauth/google/callback",
        "confirm_url": None,
    }
    values.update(overrides)
    return OAuthConfig(**values)


def make_studio_config(
    *,
    feeds: list[FeedConfig] | None = None,
    calendar: CalendarConfig | None = None,
    admin: AdminConfig | None = None,
    timezone: str = "Europe/London",
    **oauth_overrides,
) -> StudioConfig:
    return StudioConfig(
        name="test-studio",
        oauth=make_oauth_config(**oauth_overrides),
        timezone=timezone,
        admin=admin or AdminConfig(static_token="admin-token"),
        calendar=calendar or CalendarConfig(),
        feeds=feeds or [],
    )


def mock_http_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    """Return an AsyncClient whose every request is answered by *handler*."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def token_response(
    *,
    access_token: str = "ya29.new-access",
    refresh_token: str | None = "1//new-refresh",
    expires_in: int = 3600,
    scope: str | None = "https://www.googleapis.com/auth/calendar.readonly",
) -> httpx.Response:
    body: dict = {"access_token": access_token, "expires_in": expires_in, "token_type": "Bearer"}
    if refresh_token is not None:
        body["refresh_token"] = refresh_token
    if scope is not None:
        body["scope"] = scope
    return httpx.Response(200, json=body)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> FakeCredentialStore:
    return FakeCredentialStore()


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog(artists=[Artist(id="harley", name="Harley")])
