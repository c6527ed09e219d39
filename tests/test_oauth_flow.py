"""Tests for studiolink.oauth.OAuthFlowController.

Google's token and revoke endpoints are served by ``httpx.MockTransport``;
credentials land in the in-memory store from ``conftest``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from studiolink.errors import (
    ExternalProviderError,
    InvalidOAuthState,
    NotFound,
    RefreshTokenRevoked,
)
from studiolink.models import CredentialState
from studiolink.oauth import (
    CALENDAR_SCOPES,
    GOOGLE_REVOKE_URL,
    GOOGLE_TOKEN_URL,
    OAuthFlowController,
    safe_google_error_message,
    sanitize_provider_error,
)
from tests.conftest import (
    FakeCredentialStore,
    make_credential,
    make_oauth_config,
    mock_http_client,
    token_response,
)

pytestmark = pytest.mark.unit


def _controller(store, catalog, handler) -> OAuthFlowController:
    return OAuthFlowController(
        make_oauth_config(),
        store=store,
        catalog=catalog,
        http_client=mock_http_client(handler),
    )


def _never_called(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected request to {request.url}")


# ---------------------------------------------------------------------------
# Authorization URL
# ---------------------------------------------------------------------------


class TestAuthorizationUrl:
    async def test_url_requests_offline_access(self, store, catalog):
        controller = _controller(store, catalog, _never_called)

        request = await controller.get_authorization_url("harley")

        query = parse_qs(urlparse(request.url).query)
        assert query["access_type"] == ["offline"]
        assert query["prompt"] == ["consent"]
        assert query["response_type"] == ["code"]
        assert query["scope"] == [" ".join(CALENDAR_SCOPES)]
        assert query["state"] == [request.state]
        assert controller.resolve_state(request.state) == "harley"

    async def test_unknown_artist(self, store, catalog):
        controller = _controller(store, catalog, _never_called)
        with pytest.raises(NotFound):
            await controller.get_authorization_url("ghost")

    async def test_state_is_single_use(self, store, catalog):
        controller = _controller(store, catalog, _never_called)
        request = await controller.get_authorization_url("harley")
        controller.resolve_state(request.state)
        with pytest.raises(InvalidOAuthState):
            controller.resolve_state(request.state)


# ---------------------------------------------------------------------------
# Code exchange
# ---------------------------------------------------------------------------


class TestExchangeCode:
    async def test_persists_credential(self, store: FakeCredentialStore, catalog):
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert str(request.url) == GOOGLE_TOKEN_URL
            seen.append(parse_qs(request.content.decode()))
            return token_response(access_token="ya29.A", refresh_token="1//R")

        controller = _controller(store, catalog, handler)
        before = datetime.now(UTC)

        credential = await controller.exchange_code("harley", "auth-code")

        assert seen[0]["grant_type"] == ["authorization_code"]
        assert seen[0]["code"] == ["auth-code"]
        assert credential.access_token == "ya29.A"
        assert credential.refresh_token == "1//R"
        assert credential.expires_at >= before + timedelta(seconds=3600)
        assert store.rows["harley"].generation == 1

    async def test_provider_error_persists_nothing(self, store, catalog):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "invalid_grant"})

        controller = _controller(store, catalog, handler)

        with pytest.raises(ExternalProviderError) as exc_info:
            await controller.exchange_code("harley", "bad-code")

        assert not isinstance(exc_info.value, RefreshTokenRevoked)
        assert exc_info.value.provider_status == 400
        assert store.rows == {}

    async def test_missing_refresh_token_on_first_link(self, store, catalog):
        controller = _controller(store, catalog, lambda r: token_response(refresh_token=None))

        with pytest.raises(ExternalProviderError, match="refresh token"):
            await controller.exchange_code("harley", "code")
        assert store.rows == {}

    async def test_missing_refresh_token_keeps_existing_one(self, store, catalog):
        store.put(make_credential(refresh_token="1//old", generation=2))
        controller = _controller(store, catalog, lambda r: token_response(refresh_token=None))

        credential = await controller.exchange_code("harley", "code")

        assert credential.refresh_token == "1//old"
        assert credential.generation == 3

    async def test_missing_access_token(self, store, catalog):
        controller = _controller(
            store, catalog, lambda r: httpx.Response(200, json={"refresh_token": "1//R"})
        )
        with pytest.raises(ExternalProviderError, match="access_token"):
            await controller.exchange_code("harley", "code")
        assert store.rows == {}

    async def test_network_error(self, store, catalog):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("boom", request=request)

        controller = _controller(store, catalog, handler)
        with pytest.raises(ExternalProviderError, match="ConnectError"):
            await controller.exchange_code("harley", "code")

    async def test_secrets_not_logged(self, store, catalog, caplog):
        controller = _controller(
            store,
            catalog,
            lambda r: token_response(access_token="ya29.TOPSECRET", refresh_token="1//TOPSECRET"),
        )
        with caplog.at_level(logging.DEBUG):
            await controller.exchange_code("harley", "code")
        assert "TOPSECRET" not in caplog.text
        assert "client-secret" not in caplog.text


# ---------------------------------------------------------------------------
# Refresh grant
# ---------------------------------------------------------------------------


class TestRefresh:
    async def test_success(self, store, catalog):
        def handler(request: httpx.Request) -> httpx.Response:
            body = parse_qs(request.content.decode())
            assert body["grant_type"] == ["refresh_token"]
            assert body["refresh_token"] == ["1//R"]
            return token_response(access_token="ya29.fresh", refresh_token=None, expires_in=1800)

        grant = await _controller(store, catalog, handler).refresh_access_token("1//R")

        assert grant.access_token == "ya29.fresh"
        assert grant.refresh_token is None
        assert grant.expires_in == 1800

    async def test_invalid_grant_is_revocation(self, store, catalog):
        controller = _controller(
            store, catalog, lambda r: httpx.Response(400, json={"error": "invalid_grant"})
        )
        with pytest.raises(RefreshTokenRevoked):
            await controller.refresh_access_token("1//dead")

    async def test_other_errors_are_provider_errors(self, store, catalog):
        controller = _controller(
            store, catalog, lambda r: httpx.Response(503, json={"error": "server_error"})
        )
        with pytest.raises(ExternalProviderError) as exc_info:
            await controller.refresh_access_token("1//R")
        assert not isinstance(exc_info.value, RefreshTokenRevoked)

    @pytest.mark.parametrize("expires_in", [None, 0, -5, "abc", True])
    async def test_bad_expires_in_defaults_to_an_hour(self, store, catalog, expires_in):
        payload = {"access_token": "ya29.x", "expires_in": expires_in}
        controller = _controller(store, catalog, lambda r: httpx.Response(200, json=payload))
        grant = await controller.refresh_access_token("1//R")
        assert grant.expires_in == 3600


# ---------------------------------------------------------------------------
# Status and unlink
# ---------------------------------------------------------------------------


class TestStatusAndUnlink:
    async def test_states(self, store, catalog):
        controller = _controller(store, catalog, _never_called)
        assert await controller.credential_state("harley") == CredentialState.unlinked

        store.put(make_credential())
        assert await controller.credential_state("harley") == CredentialState.linked_valid

        store.put(make_credential(expires_at=datetime.now(UTC) + timedelta(seconds=30)))
        assert await controller.credential_state("harley") == CredentialState.linked_stale

    async def test_revoked_credential_reads_back_as_unlinked(self, store, catalog):
        controller = _controller(store, catalog, _never_called)
        store.put(make_credential(generation=4))

        # What the client factory does after the provider answers invalid_grant.
        assert await store.delete("harley", expected_generation=4) is True

        assert await controller.credential_state("harley") == CredentialState.unlinked
        assert {state.value for state in CredentialState} == {
            "unlinked",
            "linked_valid",
            "linked_stale",
        }

    async def test_unlink_revokes_and_deletes(self, store, catalog):
        revoked: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert str(request.url) == GOOGLE_REVOKE_URL
            revoked.append(parse_qs(request.content.decode())["token"][0])
            return httpx.Response(200)

        store.put(make_credential(refresh_token="1//R"))
        assert await _controller(store, catalog, handler).unlink("harley") is True
        assert revoked == ["1//R"]
        assert "harley" not in store.rows

    async def test_unlink_deletes_even_when_revoke_fails(self, store, catalog):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        store.put(make_credential())
        assert await _controller(store, catalog, handler).unlink("harley") is True
        assert store.rows == {}

    async def test_unlink_without_credential(self, store, catalog):
        assert await _controller(store, catalog, _never_called).unlink("harley") is False


# ---------------------------------------------------------------------------
# Error message helpers
# ---------------------------------------------------------------------------


class TestErrorMessages:
    def test_known_provider_error(self):
        assert "denied" in sanitize_provider_error("access_denied")

    def test_unknown_provider_error_is_generic(self):
        message = sanitize_provider_error("<script>alert(1)</script>")
        assert "script" not in message
        assert message == sanitize_provider_error(None)

    def test_safe_google_error_message_prefers_structured_message(self):
        response = httpx.Response(403, json={"error": {"message": "  Rate   limit\nexceeded "}})
        assert safe_google_error_message(response) == "Rate limit exceeded"

    def test_safe_google_error_message_truncates_text(self):
        response = httpx.Response(500, text="x" * 500)
        assert len(safe_google_error_message(response)) == 200

