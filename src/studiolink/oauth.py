"""Google OAuth authorization-code flow for linking artist calendars.

The flow:
  1. ``get_authorization_url(artist_id)``
     - Verifies the artist exists.
     - Issues a signed, single-use ``state`` bound to the artist.
     - Builds the consent URL with offline access and forced consent so that
       Google returns a refresh token.

  2. ``resolve_state(state)`` + ``exchange_code(artist_id, code)``
     - Recovers the artist from the state.
     - Exchanges the authorization code at Google's token endpoint.
     - Persists the token pair through the credential store.  Nothing is
       written when the exchange fails.

  3. ``refresh_access_token(refresh_token)``
     - Refresh grant used by the calendar client factory.  ``invalid_grant``
       means the refresh token is dead and is raised as RefreshTokenRevoked.

Security notes:
  - Client secrets and token values are never logged or echoed back.
  - Provider error messages are sanitized before they reach a client.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any
from urllib.parse import urlencode

import httpx

from studiolink.catalog import Catalog
from studiolink.config import OAuthConfig
from studiolink.core.metrics import StudioMetrics
from studiolink.core.telemetry import studio_span
from studiolink.credential_store import OAuthCredentialStore
from studiolink.errors import ExternalProviderError, NotFound, RefreshTokenRevoked
from studiolink.models import CredentialState, OAuthCredential, TokenGrant
from studiolink.oauth_state import OAuthStateSigner

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Google OAuth constants
# ---------------------------------------------------------------------------

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"

CALENDAR_SCOPES = (
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/calendar.calendarlist.readonly",
)

_DEFAULT_EXPIRES_IN_SECONDS = 3600


@dataclass(frozen=True)
class AuthorizationRequest:
    """Consent URL plus the state value embedded in it."""

    url: str
    state: str


class OAuthFlowController:
    """Runs the per-artist authorization-code and refresh grants.

    Parameters
    ----------
    config:
        OAuth client settings.
    store:
        Where credentials are persisted.
    catalog:
        Used to verify that an artist exists before starting a flow.
    http_client:
        Shared client for all token endpoint calls.
    state_signer:
        Issues and validates ``state``.  Built from *config* when omitted.
    refresh_margin:
        How close to expiry a token is treated as stale.
    request_timeout:
        Per-request timeout for token endpoint calls, in seconds.
    """

    def __init__(
        self,
        config: OAuthConfig,
        *,
        store: OAuthCredentialStore,
        catalog: Catalog,
        http_client: httpx.AsyncClient,
        state_signer: OAuthStateSigner | None = None,
        refresh_margin: timedelta = timedelta(seconds=60),
        request_timeout: float = 10.0,
        metrics: StudioMetrics | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._catalog = catalog
        self._http_client = http_client
        self._state_signer = state_signer or OAuthStateSigner(
            config.state_secret, ttl_seconds=config.state_ttl_seconds
        )
        self._refresh_margin = refresh_margin
        self._request_timeout = request_timeout
        self._metrics = metrics or StudioMetrics()

    @property
    def refresh_margin(self) -> timedelta:
        return self._refresh_margin

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def get_authorization_url(self, artist_id: str) -> AuthorizationRequest:
        """Build the consent URL for *artist_id*.

        Raises
        ------
        NotFound
            If the artist does not exist.
        """
        artist = await self._catalog.get_artist(artist_id)
        if artist is None:
            raise NotFound(f"Artist not found: {artist_id}")

        state = self._state_signer.issue(artist_id)
        params = {
            "client_id": self._config.client_id,
            "redirect_uri": self._config.redirect_uri,
            "response_type": "code",
            "scope": " ".join(CALENDAR_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
            "state": state,
        }
        logger.info("Google OAuth flow started: artist_id=%r", artist_id)
        return AuthorizationRequest(url=f"{GOOGLE_AUTH_URL}?{urlencode(params)}", state=state)

    def resolve_state(self, state: str) -> str:
        """Return the artist a callback ``state`` was issued for.

        Raises
        ------
        InvalidOAuthState
            If the state is forged, expired, replayed or malformed.
        """
        return self._state_signer.consume(state)

    async def exchange_code(self, artist_id: str, code: str) -> OAuthCredential:
        """Exchange an authorization code and persist the resulting credential.

        Raises
        ------
        ExternalProviderError
            If the token endpoint fails, returns an unusable payload, or omits
            the refresh token for an artist with no stored credential.  No
            credential is written in any of these cases.
        """
        with studio_span("oauth.exchange_code", artist_id=artist_id):
            payload = await self._post_token(
                {
                    "code": code,
                    "client_id": self._config.client_id,
                    "client_secret": self._config.client_secret,
                    "redirect_uri": self._config.redirect_uri,
                    "grant_type": "authorization_code",
                },
                action="authorization code exchange",
            )
            grant = _grant_from_payload(payload)

            if grant.refresh_token is None:
                existing = await self._store.load(artist_id)
                if existing is None or existing.refresh_token is None:
                    logger.warning(
                        "Google token response did not include a refresh token: artist_id=%r",
                        artist_id,
                    )
                    raise ExternalProviderError(
                        "Google did not return a refresh token. Restart the flow and "
                        "make sure consent is granted for offline access."
                    )

            credential = await self._store.save(
                artist_id,
                grant.access_token,
                grant.refresh_token,
                grant.expiry(),
                grant.scope,
            )
        logger.info(
            "Google OAuth link complete: artist_id=%r scope=%s", artist_id, grant.scope
        )
        return credential

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """Run a refresh grant.

        Raises
        ------
        RefreshTokenRevoked
            If Google answers ``invalid_grant``; the token must not be retried.
        ExternalProviderError
            For any other failure.
        """
        try:
            payload = await self._post_token(
                {
                    "client_id": self._config.client_id,
                    "client_secret": self._config.client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                action="token refresh",
            )
            grant = _grant_from_payload(payload)
        except RefreshTokenRevoked:
            self._metrics.record_token_refresh("revoked")
            raise
        except ExternalProviderError:
            self._metrics.record_token_refresh("error")
            raise
        self._metrics.record_token_refresh("success")
        return grant

    # ------------------------------------------------------------------
    # Status / unlink
    # ------------------------------------------------------------------

    async def credential_state(self, artist_id: str) -> CredentialState:
        """Report the stored credential's state without contacting Google."""
        credential = await self._store.load(artist_id)
        if credential is None:
            return CredentialState.unlinked
        return credential.state(margin=self._refresh_margin)

    async def unlink(self, artist_id: str) -> bool:
        """Revoke (best effort) and delete an artist's credential.

        Returns ``True`` if a stored credential was removed.
        """
        credential = await self._store.load(artist_id)
        if credential is None:
            return False

        token = credential.refresh_token or credential.access_token
        try:
            response = await self._http_client.post(
                GOOGLE_REVOKE_URL,
                data={"token": token},
                timeout=self._request_timeout,
            )
            if response.status_code >= 400:
                logger.warning(
                    "Google token revocation returned HTTP %d for artist_id=%r",
                    response.status_code,
                    artist_id,
                )
        except httpx.HTTPError as exc:
            logger.warning(
                "Google token revocation failed for artist_id=%r: %s",
                artist_id,
                type(exc).__name__,
            )

        return await self._store.delete(artist_id)

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    async def _post_token(self, data: dict[str, str], *, action: str) -> dict[str, Any]:
        try:
            response = await self._http_client.post(
                GOOGLE_TOKEN_URL,
                data=data,
                headers={"Accept": "application/json"},
                timeout=self._request_timeout,
            )
        except httpx.HTTPError as exc:
            logger.warning("Google %s failed: %s", action, type(exc).__name__)
            raise ExternalProviderError(
                f"Network error during Google {action}: {type(exc).__name__}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            error_code = _token_error_code(response)
            # Log status and error code but not the raw body
            logger.warning(
                "Google %s failed: HTTP %d error=%s",
                action,
                response.status_code,
                error_code,
            )
            if error_code == "invalid_grant" and data.get("grant_type") == "refresh_token":
                raise RefreshTokenRevoked(
                    "Google rejected the refresh token (invalid_grant); the artist must "
                    "re-link their calendar.",
                    provider_status=response.status_code,
                )
            raise ExternalProviderError(
                f"Google {action} failed ({response.status_code}): "
                f"{sanitize_provider_error(error_code)}",
                provider_status=response.status_code,
            )

        try:
            payload = response.json()
        except json.JSONDecodeError as exc:
            raise ExternalProviderError(
                f"Google token endpoint returned invalid JSON during {action}"
            ) from exc
        if not isinstance(payload, dict):
            raise ExternalProviderError(
                f"Google token endpoint returned an unexpected payload during {action}"
            )
        return payload


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _grant_from_payload(payload: dict[str, Any]) -> TokenGrant:
    access_token = payload.get("access_token")
    if not isinstance(access_token, str) or not access_token.strip():
        raise ExternalProviderError(
            "Google token response is missing a non-empty access_token"
        )
    refresh_token = payload.get("refresh_token")
    if not isinstance(refresh_token, str) or not refresh_token.strip():
        refresh_token = None
    scope = payload.get("scope")
    return TokenGrant(
        access_token=access_token.strip(),
        expires_in=_coerce_expires_in_seconds(payload.get("expires_in")),
        refresh_token=refresh_token,
        scope=scope if isinstance(scope, str) and scope.strip() else None,
    )


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return _DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else _DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or _DEFAULT_EXPIRES_IN_SECONDS
    return _DEFAULT_EXPIRES_IN_SECONDS


def _token_error_code(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, str) and error.strip():
            return error.strip()
    return None


_MAX_PROVIDER_MESSAGE = 200


def _collapse(text: str) -> str:
    return " ".join(text.split())[:_MAX_PROVIDER_MESSAGE]


def safe_google_error_message(response: httpx.Response) -> str:
    """Short single-line description of a failed Google response.

    Prefers ``error.message`` (Calendar API shape), then a string ``error``
    (token endpoint shape), then the raw body.
    """
    try:
        payload = response.json()
    except ValueError:
        payload = None

    candidates: list[Any] = []
    if isinstance(payload, dict):
        error = payload.get("error")
        candidates.append(error.get("message") if isinstance(error, dict) else error)
    candidates.append(response.text)
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return _collapse(candidate)
    return f"Google returned HTTP {response.status_code} with an empty body"


# ---------------------------------------------------------------------------
# Error sanitization
# ---------------------------------------------------------------------------

_GENERIC_PROVIDER_ERROR = "Google sign-in did not complete. Start the calendar link again."

# Messages shown to the admin for the error codes Google documents on the
# authorization redirect and the token endpoint.
_PROVIDER_ERROR_MESSAGES: dict[str, str] = {
    "access_denied": "Access was denied on the Google consent screen.",
    "invalid_request": "Google rejected the authorization request. Start the link again.",
    "invalid_grant": "The authorization code or refresh token was rejected (expired, "
    "revoked or already used). Start the link again.",
    "invalid_client": "Google rejected the studio's OAuth client id, secret or redirect URI.",
    "unauthorized_client": "The studio's OAuth client may not request calendar access. "
    "Check the Google Cloud OAuth app settings.",
    "unsupported_response_type": "Google rejected the authorization response type.",
    "invalid_scope": "Google rejected the requested calendar scope.",
    "server_error": "Google reported an internal error. Try again shortly.",
    "temporarily_unavailable": "Google sign-in is temporarily unavailable. Try again later.",
}


def sanitize_provider_error(error: str | None) -> str:
    """Map a Google error code to a fixed message; unknown codes are never echoed."""
    return _PROVIDER_ERROR_MESSAGES.get(error or "", _GENERIC_PROVIDER_ERROR)
