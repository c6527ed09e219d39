"""Google OAuth linking endpoints.

  1. GET /api/oauth/google/start?artistId=...            (admin)
     - Redirects the admin's browser to Google's consent screen with a signed
       state bound to the artist (``redirect=false`` returns JSON instead).

  2. GET /api/oauth/google/callback?code=...&state=...
     - Validates the state, exchanges the code and persists the credential.
     - Redirects to ``oauth.confirm_url`` on success, or returns JSON when no
       confirmation page is configured.
     - Any failure returns 400 and persists nothing.

  3. GET /api/oauth/google/artists/{artist_id}/status     (admin)
  4. DELETE /api/oauth/google/artists/{artist_id}         (admin)
"""

from __future__ import annotations

import contextlib
import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, RedirectResponse, Response

from studiolink.api.deps import Studio, get_catalog, get_oauth, get_studio, require_admin
from studiolink.api.middleware import error_response
from studiolink.api.models import (
    CredentialStatusResponse,
    OAuthCallbackSuccess,
    OAuthStartResponse,
    UnlinkResponse,
)
from studiolink.catalog import Catalog
from studiolink.errors import ExternalProviderError, InvalidOAuthState, NotFound
from studiolink.oauth import OAuthFlowController, sanitize_provider_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/oauth/google", tags=["oauth"])


@router.get("/start", dependencies=[Depends(require_admin)])
async def oauth_google_start(
    artist_id: str = Query(alias="artistId", min_length=1),
    redirect: bool = Query(default=True, description="Redirect to Google (default)."),
    oauth: OAuthFlowController = Depends(get_oauth),
) -> Response:
    """Begin linking *artistId*'s Google Calendar."""
    request = await oauth.get_authorization_url(artist_id)
    if not redirect:
        return JSONResponse(
            content=OAuthStartResponse(
                authorization_url=request.url,
                state=request.state,
            ).model_dump()
        )
    return RedirectResponse(url=request.url, status_code=302)


@router.get("/callback")
async def oauth_google_callback(
    code: str | None = Query(default=None, description="Authorization code from Google."),
    state: str | None = Query(default=None, description="Signed state token."),
    error: str | None = Query(default=None, description="OAuth error code from Google."),
    studio: Studio = Depends(get_studio),
) -> Response:
    """Complete the flow started by ``/start``."""
    if error:
        logger.warning("Google OAuth provider error: %s", error)
        if state:
            # Burn the state so a cancelled flow cannot be replayed.
            with contextlib.suppress(InvalidOAuthState):
                studio.oauth.resolve_state(state)
        return error_response(400, "PROVIDER_ERROR", sanitize_provider_error(error))

    if not code:
        return error_response(
            400, "VALIDATION_ERROR", "Authorization code is missing from the callback."
        )
    if not state:
        raise InvalidOAuthState("State parameter is missing from the callback.")

    artist_id = studio.oauth.resolve_state(state)

    try:
        credential = await studio.oauth.exchange_code(artist_id, code)
    except ExternalProviderError as exc:
        logger.warning("Google OAuth token exchange failed for artist_id=%r", artist_id)
        return error_response(
            400,
            "TOKEN_EXCHANGE_FAILED",
            f"{exc.message} Please restart the linking flow.",
        )

    confirm_url = studio.config.oauth.confirm_url
    if confirm_url:
        query = urlencode({"oauth": "success", "artistId": artist_id})
        separator = "&" if "?" in confirm_url else "?"
        return RedirectResponse(url=f"{confirm_url}{separator}{query}", status_code=302)

    return JSONResponse(
        content=OAuthCallbackSuccess(artist_id=artist_id, scope=credential.scope).model_dump()
    )


@router.get("/artists/{artist_id}/status", dependencies=[Depends(require_admin)])
async def oauth_google_status(
    artist_id: str,
    catalog: Catalog = Depends(get_catalog),
    oauth: OAuthFlowController = Depends(get_oauth),
) -> JSONResponse:
    """Report an artist's credential state without contacting Google."""
    if await catalog.get_artist(artist_id) is None:
        raise NotFound(f"Artist not found: {artist_id}")
    state = await oauth.credential_state(artist_id)
    return JSONResponse(
        content=CredentialStatusResponse(artist_id=artist_id, state=state).model_dump(mode="json")
    )


@router.delete("/artists/{artist_id}", dependencies=[Depends(require_admin)])
async def oauth_google_unlink(
    artist_id: str,
    catalog: Catalog = Depends(get_catalog),
    oauth: OAuthFlowController = Depends(get_oauth),
) -> JSONResponse:
    """Revoke and delete an artist's Google credential."""
    if await catalog.get_artist(artist_id) is None:
        raise NotFound(f"Artist not found: {artist_id}")
    deleted = await oauth.unlink(artist_id)
    return JSONResponse(content=UnlinkResponse(artist_id=artist_id, deleted=deleted).model_dump())
