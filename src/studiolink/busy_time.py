"""Busy-time aggregation across the authenticated calendar and public feeds.

Every source for an artist is queried concurrently and independently.  A
source that fails is reported in ``BusyTimeResult.failures`` and the others
still contribute, so one dead feed never hides another calendar's bookings.
Overlapping intervals from different sources are returned as-is.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime, timedelta
from datetime import time as dt_time
from zoneinfo import ZoneInfo

import httpx

from studiolink.calendar_client import CalendarClientFactory
from studiolink.catalog import Catalog
from studiolink.config import CalendarConfig, FeedConfig
from studiolink.core.logging import set_artist_context
from studiolink.core.metrics import StudioMetrics
from studiolink.core.telemetry import studio_span
from studiolink.errors import NotFound, StudioError
from studiolink.feeds import fetch_feed, parse_feed
from studiolink.models import (
    Artist,
    BusyInterval,
    BusySourceKind,
    BusyTimeResult,
    CalendarApiEvent,
    FeedEvent,
    NotLinked,
    SourceFailure,
)

logger = logging.getLogger(__name__)

DEFAULT_CALENDAR_ID = "primary"
DEFAULT_LABEL = "Booked"
SOURCE_TIMEOUT_CODE = "SOURCE_TIMEOUT"

_SourceRunner = Callable[[], Awaitable[list[BusyInterval] | None]]


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def _to_utc(value: datetime | date, tz: ZoneInfo) -> datetime:
    if not isinstance(value, datetime):
        # All-day values start at local midnight.
        value = datetime.combine(value, dt_time.min, tzinfo=tz)
    elif value.tzinfo is None:
        value = value.replace(tzinfo=tz)
    return value.astimezone(UTC)


def normalize_event(event: CalendarApiEvent | FeedEvent, tz: ZoneInfo) -> BusyInterval:
    """Convert a calendar API or feed event into a UTC busy interval.

    Naive datetimes and all-day dates are interpreted in *tz*.  An event
    whose end precedes its start is clamped to zero length.
    """
    match event:
        case CalendarApiEvent(calendar_id=calendar_id):
            source_kind = BusySourceKind.authenticated_calendar
            source = calendar_id
        case FeedEvent(feed_name=feed_name):
            source_kind = BusySourceKind.public_feed
            source = feed_name
        case _:
            raise TypeError(f"Unsupported event type: {type(event).__name__}")

    start = _to_utc(event.start, tz)
    end = max(_to_utc(event.end, tz), start)
    label = (event.summary or "").strip() or DEFAULT_LABEL
    return BusyInterval(source_kind=source_kind, source=source, start=start, end=end, label=label)


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------


class BusyTimeAggregator:
    """Unions busy intervals from all of an artist's sources.

    Parameters
    ----------
    catalog:
        Resolves the artist and its linked calendar.
    factory:
        Supplies the authenticated calendar client.
    http_client:
        Shared client used to download feeds.
    calendar_config:
        Window length and timeouts.
    feeds:
        Returns the feeds configured for an artist.
    timezone:
        Studio time zone for naive and all-day feed times.
    clock:
        Returns the current UTC time; overridable in tests.
    """

    def __init__(
        self,
        *,
        catalog: Catalog,
        factory: CalendarClientFactory,
        http_client: httpx.AsyncClient,
        calendar_config: CalendarConfig,
        feeds: Callable[[str], list[FeedConfig]],
        timezone: ZoneInfo,
        metrics: StudioMetrics | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._catalog = catalog
        self._factory = factory
        self._http_client = http_client
        self._calendar_config = calendar_config
        self._feeds = feeds
        self._tz = timezone
        self._metrics = metrics or StudioMetrics()
        self._clock = clock or (lambda: datetime.now(UTC))

    async def aggregate(self, artist_id: str) -> BusyTimeResult:
        """Collect busy time for *artist_id* over ``[now, now + lookahead_days]``.

        Raises
        ------
        NotFound
            If the artist does not exist.
        """
        artist = await self._catalog.get_artist(artist_id)
        if artist is None:
            raise NotFound(f"Artist not found: {artist_id}")
        set_artist_context(artist_id)

        window_start = self._clock()
        window_end = window_start + timedelta(days=self._calendar_config.lookahead_days)
        result = BusyTimeResult(
            artist_id=artist_id, window_start=window_start, window_end=window_end
        )

        calendar_id = artist.calendar_id or DEFAULT_CALENDAR_ID
        sources: list[tuple[str, BusySourceKind, _SourceRunner]] = [
            (
                calendar_id,
                BusySourceKind.authenticated_calendar,
                lambda: self._calendar_source(artist, calendar_id, window_start, window_end),
            )
        ]
        for feed in self._feeds(artist_id):
            sources.append(
                (
                    feed.name,
                    BusySourceKind.public_feed,
                    lambda feed=feed: self._feed_source(feed),
                )
            )

        outcomes = await asyncio.gather(
            *(self._run_source(name, kind, run) for name, kind, run in sources)
        )

        for name, intervals, failure in outcomes:
            if intervals is None and failure is None:
                # Source not configured for this artist (e.g. calendar never linked).
                continue
            result.attempted.append(name)
            if failure is not None:
                result.failures.append(failure)
                continue
            result.intervals.extend(
                interval
                for interval in intervals or []
                if interval.end > window_start and interval.start < window_end
            )

        result.intervals.sort(key=lambda interval: (interval.start, interval.end))
        logger.info(
            "Busy time aggregated: artist_id=%r intervals=%d attempted=%d failed=%d",
            artist_id,
            len(result.intervals),
            len(result.attempted),
            len(result.failures),
        )
        return result

    async def _run_source(
        self,
        name: str,
        kind: BusySourceKind,
        run: _SourceRunner,
    ) -> tuple[str, list[BusyInterval] | None, SourceFailure | None]:
        started = time.monotonic()
        failure: SourceFailure | None = None
        intervals: list[BusyInterval] | None = None
        with studio_span("busy.source", source=name, source_kind=str(kind)):
            try:
                async with asyncio.timeout(self._calendar_config.source_timeout_seconds):
                    intervals = await run()
            except TimeoutError:
                failure = SourceFailure(
                    source=name,
                    source_kind=kind,
                    error_code=SOURCE_TIMEOUT_CODE,
                    message=f"Source {name!r} timed out",
                )
            except StudioError as exc:
                failure = SourceFailure(
                    source=name, source_kind=kind, error_code=exc.code, message=exc.message
                )

        self._metrics.record_source_latency(str(kind), (time.monotonic() - started) * 1000)
        if failure is not None:
            self._metrics.record_source_failure(str(kind), failure.error_code)
            logger.warning(
                "Busy-time source failed: source=%s kind=%s code=%s message=%s",
                name,
                kind,
                failure.error_code,
                failure.message,
            )
        return name, intervals, failure

    async def _calendar_source(
        self,
        artist: Artist,
        calendar_id: str,
        window_start: datetime,
        window_end: datetime,
    ) -> list[BusyInterval] | None:
        client = await self._factory.get_client_for_artist(artist.id)
        if isinstance(client, NotLinked):
            logger.debug(
                "No authenticated calendar for artist_id=%r (%s)", artist.id, client.reason
            )
            return None
        events = await client.list_events(calendar_id, window_start, window_end)
        return [normalize_event(event, self._tz) for event in events]

    async def _feed_source(self, feed: FeedConfig) -> list[BusyInterval]:
        body = await fetch_feed(
            self._http_client, feed, timeout=self._calendar_config.request_timeout_seconds
        )
        return [normalize_event(event, self._tz) for event in parse_feed(feed.name, body)]
