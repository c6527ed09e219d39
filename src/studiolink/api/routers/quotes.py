"""Public pricing endpoints used by the booking frontend."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from studiolink.api.deps import get_quotes
from studiolink.api.middleware import error_response
from studiolink.api.models import (
    QuoteRequest,
    QuoteResponse,
    QuoteService,
    ServiceOfferItem,
    ServicesForArtistResponse,
)
from studiolink.quotes import QuoteResolver

router = APIRouter(tags=["quotes"])


async def _quote(
    quotes: QuoteResolver, artist_id: str | None, service_id: str | None
) -> JSONResponse:
    if not artist_id or not service_id:
        return error_response(400, "VALIDATION_ERROR", "artistId and serviceId are required")

    quote = await quotes.resolve(artist_id, service_id)
    body = QuoteResponse(
        service=QuoteService(
            id=quote.service_id, title=quote.service_title, slug=quote.service_slug
        ),
        price_pence=quote.effective_price,
        duration_min=quote.duration_minutes,
        buffer_before_min=quote.buffer_before_minutes,
        buffer_after_min=quote.buffer_after_minutes,
    )
    return JSONResponse(content=body.model_dump(by_alias=True))


@router.get("/api/bookings/quote")
async def get_quote(
    artist_id: str | None = Query(default=None, alias="artistId"),
    service_id: str | None = Query(default=None, alias="serviceId"),
    quotes: QuoteResolver = Depends(get_quotes),
) -> JSONResponse:
    return await _quote(quotes, artist_id, service_id)


@router.post("/api/bookings/quote")
async def post_quote(
    payload: QuoteRequest,
    quotes: QuoteResolver = Depends(get_quotes),
) -> JSONResponse:
    return await _quote(quotes, payload.artist_id, payload.service_id)


@router.get("/api/services/for-artist")
async def services_for_artist(
    artist_id: str | None = Query(default=None, alias="artistId"),
    quotes: QuoteResolver = Depends(get_quotes),
) -> JSONResponse:
    """List the services an artist offers with their effective prices."""
    if not artist_id:
        return error_response(400, "VALIDATION_ERROR", "artistId is required")

    offers = await quotes.list_for_artist(artist_id)
    body = ServicesForArtistResponse(
        items=[
            ServiceOfferItem(
                service_id=offer.service_id,
                title=offer.title,
                slug=offer.slug,
                price_pence=offer.effective_price,
                base_price_pence=offer.base_price,
                override_price_pence=offer.override_price,
                duration_min=offer.duration_minutes,
                buffer_before_min=offer.buffer_before_minutes,
                buffer_after_min=offer.buffer_after_minutes,
            )
            for offer in offers
        ]
    )
    return JSONResponse(content=body.model_dump(by_alias=True))
