"""Pydantic request/response models for the studio API.

Field names follow the booking frontend's camelCase contract; Python
attributes stay snake_case and are mapped with aliases.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from studiolink.models import CredentialState

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    details: dict | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class OAuthStartResponse(BaseModel):
    """Returned by the start endpoint when ``redirect=false``."""

    authorization_url: str
    state: str


class OAuthCallbackSuccess(BaseModel):
    """Returned by the callback when no confirmation page is configured."""

    success: bool = True
    artist_id: str
    scope: str | None = None


class CredentialStatusResponse(BaseModel):
    artist_id: str
    state: CredentialState


class UnlinkResponse(BaseModel):
    artist_id: str
    deleted: bool


# ---------------------------------------------------------------------------
# Calendars
# ---------------------------------------------------------------------------


class CalendarListItem(_CamelModel):
    id: str
    summary: str | None = None
    primary: bool = False
    access_role: str | None = Field(default=None, alias="accessRole")
    time_zone: str | None = Field(default=None, alias="timeZone")


class CalendarListResponse(BaseModel):
    items: list[CalendarListItem]


class SetCalendarRequest(_CamelModel):
    artist_id: str | None = Field(default=None, alias="artistId")
    calendar_id: str | None = Field(default=None, alias="calendarId")


class OkResponse(BaseModel):
    ok: bool = True


# ---------------------------------------------------------------------------
# Quotes and services
# ---------------------------------------------------------------------------


class QuoteRequest(_CamelModel):
    artist_id: str | None = Field(default=None, alias="artistId")
    service_id: str | None = Field(default=None, alias="serviceId")


class QuoteService(BaseModel):
    id: str
    title: str
    slug: str


class QuoteResponse(_CamelModel):
    ok: bool = True
    service: QuoteService
    price_pence: int = Field(alias="pricePence")
    duration_min: int = Field(alias="durationMin")
    buffer_before_min: int = Field(alias="bufferBeforeMin")
    buffer_after_min: int = Field(alias="bufferAfterMin")


class ServiceOfferItem(_CamelModel):
    service_id: str = Field(alias="serviceId")
    title: str
    slug: str
    price_pence: int | None = Field(alias="pricePence")
    base_price_pence: int | None = Field(alias="basePricePence")
    override_price_pence: int | None = Field(alias="overridePricePence")
    duration_min: int = Field(alias="durationMin")
    buffer_before_min: int = Field(alias="bufferBeforeMin")
    buffer_after_min: int = Field(alias="bufferAfterMin")


class ServicesForArtistResponse(BaseModel):
    items: list[ServiceOfferItem]


# ---------------------------------------------------------------------------
# Busy time
# ---------------------------------------------------------------------------


class BusyItem(_CamelModel):
    title: str
    start: datetime
    end: datetime
    source: str
    source_kind: str = Field(alias="sourceKind")


class BusyFailure(_CamelModel):
    source: str
    source_kind: str = Field(alias="sourceKind")
    code: str
    message: str


class BusyResponse(_CamelModel):
    artist_id: str = Field(alias="artistId")
    window_start: datetime = Field(alias="windowStart")
    window_end: datetime = Field(alias="windowEnd")
    partial: bool
    items: list[BusyItem]
    failures: list[BusyFailure]
