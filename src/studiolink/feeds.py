"""Public iCalendar feed fetching and parsing.

Feeds are unauthenticated ``.ics`` URLs (for example a calendar's "secret
address in iCal format").  Events are returned as they appear in the feed;
recurrence rules are not expanded.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

import httpx
from icalendar import Calendar

from studiolink.config import FeedConfig
from studiolink.errors import FeedMalformed, FeedUnavailable
from studiolink.models import FeedEvent

logger = logging.getLogger(__name__)

_ACCEPT = "text/calendar, text/plain;q=0.8, */*;q=0.5"


async def fetch_feed(
    http_client: httpx.AsyncClient,
    feed: FeedConfig,
    *,
    timeout: float = 10.0,
) -> bytes:
    """Download a feed body.

    Raises
    ------
    FeedUnavailable
        On transport errors, timeouts and non-2xx responses.
    """
    try:
        response = await http_client.get(
            feed.url,
            headers={"Accept": _ACCEPT},
            timeout=timeout,
            follow_redirects=True,
        )
    except httpx.HTTPError as exc:
        logger.warning("Feed %s fetch failed: %s", feed.name, type(exc).__name__)
        raise FeedUnavailable(
            f"Feed {feed.name!r} could not be fetched: {type(exc).__name__}"
        ) from exc

    if response.status_code < 200 or response.status_code >= 300:
        logger.warning("Feed %s returned HTTP %d", feed.name, response.status_code)
        raise FeedUnavailable(f"Feed {feed.name!r} returned HTTP {response.status_code}")
    return response.content


def parse_feed(feed_name: str, body: bytes) -> list[FeedEvent]:
    """Parse an iCalendar document into feed events.

    Cancelled events and events marked ``TRANSP:TRANSPARENT`` are skipped.
    Events without a start are skipped.  A missing end falls back to
    ``DURATION``, then to one day for all-day events, then to the start.

    Raises
    ------
    FeedMalformed
        If *body* is not a parsable iCalendar document, or any event in it
        has an unreadable DTSTART, DTEND or DURATION.
    """
    if not body or not body.strip():
        raise FeedMalformed(f"Feed {feed_name!r} returned an empty body")
    try:
        calendar = Calendar.from_ical(body)
    except ValueError as exc:
        raise FeedMalformed(f"Feed {feed_name!r} is not a valid iCalendar document") from exc

    events: list[FeedEvent] = []
    for component in calendar.walk("VEVENT"):
        status = str(component.get("STATUS", "")).upper()
        transparency = str(component.get("TRANSP", "")).upper()
        if status == "CANCELLED" or transparency == "TRANSPARENT":
            continue

        dtstart = component.get("DTSTART")
        if dtstart is None:
            continue
        try:
            start = dtstart.dt
            end = _event_end(component, start)
        except (TypeError, ValueError) as exc:
            # icalendar keeps unparsable date properties and fails on first access.
            logger.warning(
                "Feed %s has an event with unreadable dates: %s", feed_name, type(exc).__name__
            )
            raise FeedMalformed(
                f"Feed {feed_name!r} contains an event with an unreadable start, end or duration"
            ) from exc

        summary = component.get("SUMMARY")
        events.append(
            FeedEvent(
                feed_name=feed_name,
                summary=str(summary) if summary is not None else None,
                start=start,
                end=end,
            )
        )
    logger.debug("Parsed %d events from feed %s", len(events), feed_name)
    return events


def _event_end(component, start: datetime | date) -> datetime | date:
    dtend = component.get("DTEND")
    if dtend is not None:
        return dtend.dt
    duration = component.get("DURATION")
    if duration is not None:
        return start + duration.dt
    if not isinstance(start, datetime):
        return start + timedelta(days=1)
    return start
