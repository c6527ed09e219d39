"""Tests for CalendarClientFactory: freshness, single-flight refresh and CAS.

The refresh grant is replaced by a stub so each test controls exactly when and
how the provider answers.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from studiolink.calendar_client import CalendarClientFactory, GoogleCalendarClient
from studiolink.errors import ExternalProviderError, RefreshTokenRevoked
from studiolink.models import NotLinked, TokenGrant
from tests.conftest import FakeCredentialStore, make_credential

pytestmark = pytest.mark.unit


class StubOAuth:
    """Stands in for OAuthFlowController.refresh_access_token."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.gate: asyncio.Event | None = None
        self.error: Exception | None = None
        self.before_return: Callable[[], None] | None = None

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        self.calls.append(refresh_token)
        if self.gate is not None:
            await self.gate.wait()
        if self.before_return is not None:
            self.before_return()
        if self.error is not None:
            raise self.error
        return TokenGrant(access_token=f"ya29.refreshed-{len(self.calls)}", expires_in=3600)


def _stale(**kwargs):
    return make_credential(expires_at=datetime.now(UTC) + timedelta(seconds=10), **kwargs)


def _fresh(**kwargs):
    return make_credential(expires_at=datetime.now(UTC) + timedelta(hours=1), **kwargs)


@pytest.fixture
def oauth() -> StubOAuth:
    return StubOAuth()


@pytest.fixture
def factory(store: FakeCredentialStore, oauth: StubOAuth) -> CalendarClientFactory:
    return CalendarClientFactory(
        store=store,
        oauth=oauth,
        http_client=httpx.AsyncClient(),
        refresh_margin=timedelta(seconds=60),
    )


def _token(client) -> str:
    assert isinstance(client, GoogleCalendarClient)
    return client._access_token


# ---------------------------------------------------------------------------
# No refresh needed
# ---------------------------------------------------------------------------


class TestWithoutRefresh:
    async def test_never_linked(self, factory, oauth):
        result = await factory.get_client_for_artist("harley")
        assert result == NotLinked(artist_id="harley", reason="never_linked")
        assert oauth.calls == []

    async def test_fresh_credential_used_directly(self, factory, store, oauth):
        store.put(_fresh(access_token="ya29.current"))
        assert _token(await factory.get_client_for_artist("harley")) == "ya29.current"
        assert oauth.calls == []


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


class TestRefresh:
    async def test_stale_credential_refreshed_with_cas(self, factory, store, oauth):
        store.put(_stale(refresh_token="1//R", generation=4))

        client = await factory.get_client_for_artist("harley")

        assert _token(client) == "ya29.refreshed-1"
        assert oauth.calls == ["1//R"]
        assert store.saves[-1]["expected_generation"] == 4
        saved = store.rows["harley"]
        assert saved.generation == 5
        # A refresh response without a refresh token keeps the stored one.
        assert saved.refresh_token == "1//R"

    async def test_concurrent_callers_share_one_refresh(self, factory, store, oauth):
        store.put(_stale())
        oauth.gate = asyncio.Event()

        callers = [asyncio.create_task(factory.get_client_for_artist("harley")) for _ in range(5)]
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        oauth.gate.set()
        clients = await asyncio.gather(*callers)

        assert len(oauth.calls) == 1
        assert {_token(client) for client in clients} == {"ya29.refreshed-1"}
        assert factory._inflight == {}

    async def test_refresh_rereads_store_first(self, factory, store, oauth):
        store.put(_stale())

        def land_concurrent_refresh(artist_id: str) -> None:
            # The second load is the one inside the refresh task.
            if store.load_calls == 2:
                store.put(_fresh(access_token="ya29.from-other-worker", generation=2))

        store.on_load = land_concurrent_refresh

        client = await factory.get_client_for_artist("harley")

        assert _token(client) == "ya29.from-other-worker"
        assert oauth.calls == []

    async def test_lost_swap_retries_once(self, factory, store, oauth):
        store.put(_stale(generation=1))

        def concurrent_write() -> None:
            if len(oauth.calls) == 1:
                store.put(_stale(access_token="ya29.other", generation=2))

        oauth.before_return = concurrent_write

        client = await factory.get_client_for_artist("harley")

        assert len(oauth.calls) == 2
        assert [save["expected_generation"] for save in store.saves] == [1, 2]
        assert _token(client) == "ya29.refreshed-2"

    async def test_lost_swap_to_fresher_token_uses_it(self, factory, store, oauth):
        store.put(_stale(generation=1))
        oauth.before_return = lambda: store.put(_fresh(access_token="ya29.newer", generation=2))

        client = await factory.get_client_for_artist("harley")

        assert _token(client) == "ya29.newer"
        assert len(oauth.calls) == 1

    async def test_repeated_conflicts_give_up(self, factory, store, oauth):
        store.put(_stale(generation=1))

        def keep_changing() -> None:
            current = store.rows["harley"]
            store.put(_stale(generation=current.generation + 1))

        oauth.before_return = keep_changing

        with pytest.raises(ExternalProviderError, match="kept changing"):
            await factory.get_client_for_artist("harley")
        assert len(oauth.calls) == 2

    async def test_provider_failure_propagates(self, factory, store, oauth):
        store.put(_stale())
        oauth.error = ExternalProviderError("Google token refresh failed (503)")

        with pytest.raises(ExternalProviderError):
            await factory.get_client_for_artist("harley")
        assert "harley" in store.rows
        assert factory._inflight == {}

    async def test_cancelled_caller_does_not_cancel_refresh(self, factory, store, oauth):
        store.put(_stale())
        oauth.gate = asyncio.Event()

        caller = asyncio.create_task(factory.get_client_for_artist("harley"))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        oauth.gate.set()
        client = await factory.get_client_for_artist("harley")

        assert _token(client) == "ya29.refreshed-1"
        assert len(oauth.calls) == 1


# ---------------------------------------------------------------------------
# Revocation
# ---------------------------------------------------------------------------


class TestRevocation:
    async def test_revoked_refresh_token_is_deleted(self, factory, store, oauth):
        store.put(_stale(generation=3))
        oauth.error = RefreshTokenRevoked("invalid_grant")

        result = await factory.get_client_for_artist("harley")

        assert result == NotLinked(artist_id="harley", reason="revoked")
        assert store.deletes == [("harley", 3)]
        assert "harley" not in store.rows

        # The dead token is never retried.
        assert await factory.get_client_for_artist("harley") == NotLinked(artist_id="harley")
        assert len(oauth.calls) == 1

    async def test_revocation_does_not_delete_newer_credential(self, factory, store, oauth):
        store.put(_stale(generation=1))
        oauth.error = RefreshTokenRevoked("invalid_grant")
        oauth.before_return = lambda: store.put(_fresh(access_token="ya29.relinked", generation=2))

        client = await factory.get_client_for_artist("harley")

        assert _token(client) == "ya29.relinked"
        assert store.rows["harley"].generation == 2

    async def test_stale_without_refresh_token(self, factory, store, oauth):
        store.put(_stale(refresh_token=None))

        result = await factory.get_client_for_artist("harley")

        assert result == NotLinked(artist_id="harley", reason="revoked")
        assert oauth.calls == []
        assert store.rows == {}
