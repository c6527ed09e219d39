"""Per-artist Google Calendar clients with single-flight token refresh.

``CalendarClientFactory.get_client_for_artist`` is the only way the rest of
the system obtains an authenticated calendar client.  It returns a client
built from a token that is fresh at the time of return, or ``NotLinked`` when
the artist has no usable credential.

Refresh invariants:
  - At most one refresh grant is in flight per artist.  Concurrent callers
    await the same task; a caller that gives up does not cancel it.
  - The refresh task re-reads the store first, so a caller that saw a stale
    row just after another refresh finished does not refresh again.
  - The refreshed token is written with compare-and-swap against the
    generation that was refreshed.  A lost swap is retried exactly once.
  - A refresh token rejected with ``invalid_grant`` is deleted (only if no
    newer credential has been written) and never retried.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from datetime import UTC, date, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx

from studiolink.core.metrics import StudioMetrics
from studiolink.core.telemetry import studio_span
from studiolink.credential_store import OAuthCredentialStore
from studiolink.errors import ConcurrencyConflict, ExternalProviderError, RefreshTokenRevoked
from studiolink.models import CalendarApiEvent, CalendarListEntry, NotLinked, OAuthCredential
from studiolink.oauth import OAuthFlowController, safe_google_error_message

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

_PAGE_SIZE = 250
# Upper bound on followed nextPageTokens per listing.
_MAX_PAGES = 40


# ---------------------------------------------------------------------------
# Google Calendar client
# ---------------------------------------------------------------------------


class GoogleCalendarClient:
    """Read-only Google Calendar API client bound to one artist's access token."""

    def __init__(
        self,
        artist_id: str,
        access_token: str,
        http_client: httpx.AsyncClient,
        *,
        request_timeout: float = 10.0,
    ) -> None:
        self.artist_id = artist_id
        self._access_token = access_token
        self._http_client = http_client
        self._request_timeout = request_timeout

    def __repr__(self) -> str:
        return f"GoogleCalendarClient(artist_id={self.artist_id!r}, access_token=<REDACTED>)"

    async def list_events(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> list[CalendarApiEvent]:
        """Return busy events overlapping ``[time_min, time_max)``.

        Recurring events are expanded by the API.  Cancelled events and events
        marked as free (``transparency: transparent``) are skipped.
        """
        normalized_calendar_id = quote(calendar_id, safe="")
        params: dict[str, Any] = {
            "singleEvents": "true",
            "showDeleted": "false",
            "orderBy": "startTime",
            "maxResults": _PAGE_SIZE,
            "timeMin": _google_rfc3339(time_min),
            "timeMax": _google_rfc3339(time_max),
        }

        events: list[CalendarApiEvent] = []
        async for item in self._paginate(f"/calendars/{normalized_calendar_id}/events", params):
            if item.get("status") == "cancelled" or item.get("transparency") == "transparent":
                continue
            event = _google_item_to_event(item, calendar_id=calendar_id)
            if event is not None:
                events.append(event)
        return events

    async def list_calendars(self) -> list[CalendarListEntry]:
        """Return every calendar the artist can see."""
        calendars: list[CalendarListEntry] = []
        async for item in self._paginate("/users/me/calendarList", {"maxResults": _PAGE_SIZE}):
            calendar_id = item.get("id")
            if not isinstance(calendar_id, str) or not calendar_id:
                continue
            calendars.append(
                CalendarListEntry(
                    id=calendar_id,
                    summary=item.get("summaryOverride") or item.get("summary"),
                    primary=bool(item.get("primary", False)),
                    access_role=item.get("accessRole"),
                    time_zone=item.get("timeZone"),
                )
            )
        return calendars

    async def _paginate(
        self, path: str, params: dict[str, Any]
    ) -> AsyncIterator[dict[str, Any]]:
        page_token: str | None = None
        for _ in range(_MAX_PAGES):
            page_params = dict(params)
            if page_token:
                page_params["pageToken"] = page_token
            payload = await self._get_json(path, page_params)
            items = payload.get("items", [])
            if not isinstance(items, list):
                raise ExternalProviderError(
                    "Google Calendar API response is missing the items array"
                )
            for item in items:
                if isinstance(item, dict):
                    yield item
            page_token = payload.get("nextPageToken")
            if not page_token:
                return
        logger.warning(
            "Stopped following Google Calendar pages after %d pages: artist_id=%r path=%s",
            _MAX_PAGES,
            self.artist_id,
            path,
        )

    async def _get_json(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._http_client.get(
                f"{GOOGLE_CALENDAR_API_BASE_URL}{path}",
                params=params,
                headers={
                    "Authorization": f"Bearer {self._access_token}",
                    "Accept": "application/json",
                },
                timeout=self._request_timeout,
            )
        except httpx.HTTPError as exc:
            raise ExternalProviderError(
                f"Google Calendar API request failed: {type(exc).__name__}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise ExternalProviderError(
                f"Google Calendar API request failed ({response.status_code}): "
                f"{safe_google_error_message(response)}",
                provider_status=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise ExternalProviderError(
                "Google Calendar API returned invalid JSON for a successful response"
            ) from exc
        if not isinstance(payload, dict):
            raise ExternalProviderError(
                "Google Calendar API returned an unexpected JSON payload shape"
            )
        return payload


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    return datetime.fromisoformat(normalized)


def _parse_google_time(payload: Any) -> datetime | date | None:
    if not isinstance(payload, dict):
        return None
    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return _parse_google_datetime(date_time)
    all_day = payload.get("date")
    if isinstance(all_day, str) and all_day.strip():
        return date.fromisoformat(all_day.strip())
    return None


def _google_item_to_event(item: dict[str, Any], *, calendar_id: str) -> CalendarApiEvent | None:
    try:
        start = _parse_google_time(item.get("start"))
        end = _parse_google_time(item.get("end"))
    except ValueError:
        logger.debug("Skipping Google event with unparsable times: id=%s", item.get("id"))
        return None
    if start is None or end is None:
        return None
    summary = item.get("summary")
    return CalendarApiEvent(
        calendar_id=calendar_id,
        summary=summary if isinstance(summary, str) else None,
        start=start,
        end=end,
    )


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


class CalendarClientFactory:
    """Builds calendar clients from stored credentials, refreshing them as needed.

    Parameters
    ----------
    store:
        Credential persistence.
    oauth:
        Runs the refresh grant.
    http_client:
        Shared client handed to every built calendar client.
    refresh_margin:
        A token expiring within this margin is refreshed before use.
    request_timeout:
        Per-request timeout for calendar API calls, in seconds.
    """

    def __init__(
        self,
        *,
        store: OAuthCredentialStore,
        oauth: OAuthFlowController,
        http_client: httpx.AsyncClient,
        refresh_margin: timedelta = timedelta(seconds=60),
        request_timeout: float = 10.0,
        metrics: StudioMetrics | None = None,
    ) -> None:
        self._store = store
        self._oauth = oauth
        self._http_client = http_client
        self._refresh_margin = refresh_margin
        self._request_timeout = request_timeout
        self._metrics = metrics or StudioMetrics()
        self._inflight: dict[str, asyncio.Task[GoogleCalendarClient | NotLinked]] = {}

    async def get_client_for_artist(self, artist_id: str) -> GoogleCalendarClient | NotLinked:
        """Return a client with a fresh token, or ``NotLinked``.

        Raises
        ------
        ExternalProviderError
            If the refresh grant fails for a reason other than revocation, or
            the refreshed token loses its compare-and-swap twice.
        """
        credential = await self._store.load(artist_id)
        if credential is None:
            return NotLinked(artist_id=artist_id)
        if credential.is_fresh(margin=self._refresh_margin):
            return self._build(credential)

        task = self._inflight.get(artist_id)
        if task is None:
            task = asyncio.create_task(
                self._refresh(artist_id), name=f"studiolink-refresh-{artist_id}"
            )
            self._inflight[artist_id] = task
            task.add_done_callback(lambda done: self._forget(artist_id, done))
        else:
            logger.debug("Joining in-flight token refresh: artist_id=%r", artist_id)
        return await asyncio.shield(task)

    def _forget(self, artist_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(artist_id) is task:
            del self._inflight[artist_id]
        # Mark the result as retrieved when every waiter has gone away.
        if not task.cancelled():
            task.exception()

    def _build(self, credential: OAuthCredential) -> GoogleCalendarClient:
        return GoogleCalendarClient(
            credential.artist_id,
            credential.access_token,
            self._http_client,
            request_timeout=self._request_timeout,
        )

    async def _refresh(self, artist_id: str) -> GoogleCalendarClient | NotLinked:
        for attempt in (1, 2):
            # Another refresh (or a re-link) may have landed since the caller looked.
            credential = await self._store.load(artist_id)
            if credential is None:
                return NotLinked(artist_id=artist_id)
            if credential.is_fresh(margin=self._refresh_margin):
                return self._build(credential)

            if credential.refresh_token is None:
                logger.warning(
                    "Stale credential has no refresh token; unlinking: artist_id=%r", artist_id
                )
                await self._store.delete(artist_id, expected_generation=credential.generation)
                return NotLinked(artist_id=artist_id, reason="revoked")

            with studio_span("oauth.refresh", artist_id=artist_id, attempt=attempt):
                try:
                    grant = await self._oauth.refresh_access_token(credential.refresh_token)
                except RefreshTokenRevoked:
                    deleted = await self._store.delete(
                        artist_id, expected_generation=credential.generation
                    )
                    logger.warning(
                        "Refresh token revoked; credential removed=%s: artist_id=%r",
                        deleted,
                        artist_id,
                    )
                    if not deleted and attempt == 1:
                        # A newer credential was written meanwhile; use it.
                        continue
                    return NotLinked(artist_id=artist_id, reason="revoked")

                try:
                    saved = await self._store.save(
                        artist_id,
                        grant.access_token,
                        grant.refresh_token,
                        grant.expiry(),
                        grant.scope,
                        expected_generation=credential.generation,
                    )
                except ConcurrencyConflict:
                    self._metrics.record_token_refresh("conflict")
                    logger.info(
                        "Refreshed credential lost compare-and-swap (attempt %d): artist_id=%r",
                        attempt,
                        artist_id,
                    )
                    continue

            logger.info("Access token refreshed: artist_id=%r", artist_id)
            return self._build(saved)

        raise ExternalProviderError(
            f"Credential for artist {artist_id!r} kept changing during token refresh"
        )
