"""Admin endpoints for choosing which Google calendar an artist syncs."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from studiolink.api.deps import get_calendars, get_catalog, require_admin
from studiolink.api.middleware import error_response
from studiolink.api.models import (
    CalendarListItem,
    CalendarListResponse,
    OkResponse,
    SetCalendarRequest,
)
from studiolink.calendar_client import CalendarClientFactory
from studiolink.catalog import Catalog
from studiolink.errors import NotFound
from studiolink.models import NotLinked

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/google", tags=["calendars"], dependencies=[Depends(require_admin)])


@router.get("/calendar-list")
async def calendar_list(
    artist_id: str = Query(alias="artistId", min_length=1),
    catalog: Catalog = Depends(get_catalog),
    calendars: CalendarClientFactory = Depends(get_calendars),
) -> JSONResponse:
    """List the calendars visible to an artist's linked Google account.

    An artist who has not linked (or whose link was revoked) gets an empty
    list rather than an error, so the admin UI can render a "link" button.
    """
    if await catalog.get_artist(artist_id) is None:
        raise NotFound(f"Artist not found: {artist_id}")

    client = await calendars.get_client_for_artist(artist_id)
    if isinstance(client, NotLinked):
        return JSONResponse(content=CalendarListResponse(items=[]).model_dump())

    entries = await client.list_calendars()
    body = CalendarListResponse(
        items=[CalendarListItem.model_validate(entry.to_dict()) for entry in entries]
    )
    return JSONResponse(content=body.model_dump(by_alias=True))


@router.post("/set-calendar")
async def set_calendar(
    payload: SetCalendarRequest,
    catalog: Catalog = Depends(get_catalog),
) -> JSONResponse:
    """Persist the calendar an artist's busy time is read from."""
    if not payload.artist_id or not payload.calendar_id:
        return error_response(400, "VALIDATION_ERROR", "artistId and calendarId are required")

    if not await catalog.set_linked_calendar(payload.artist_id, payload.calendar_id):
        raise NotFound(f"Artist not found: {payload.artist_id}")

    logger.info(
        "Linked calendar updated: artist_id=%r calendar_id=%r",
        payload.artist_id,
        payload.calendar_id,
    )
    return JSONResponse(content=OkResponse().model_dump())
