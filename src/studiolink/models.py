"""Domain records shared across the credential, calendar and quote layers.

Rows read from PostgreSQL are plain dataclasses; they carry whatever the
database holds (including unusable prices) so that validation happens in the
component that owns the rule, not at load time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from enum import StrEnum
from typing import Any

# ---------------------------------------------------------------------------
# Tenants and catalog
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Artist:
    """A tenant with an independently managed calendar and price list."""

    id: str
    name: str
    calendar_id: str | None = None


@dataclass(frozen=True)
class Service:
    """A bookable service with its default price and timing."""

    id: str
    title: str
    slug: str
    base_price: Decimal | int | None
    duration_min: int | None = None
    buffer_before_min: int | None = None
    buffer_after_min: int | None = None
    active: bool = True


@dataclass(frozen=True)
class ServiceOverride:
    """Per-artist exception to a service's default price."""

    artist_id: str
    service_id: str
    price: Decimal | int | None
    active: bool = True


# ---------------------------------------------------------------------------
# OAuth credentials
# ---------------------------------------------------------------------------


class CredentialState(StrEnum):
    """Lifecycle state of an artist's OAuth credential, as reported to admins.

    A revoked refresh token deletes the row, so revocation reads back as
    ``unlinked``; the revocation itself surfaces as ``NotLinked(reason="revoked")``
    from the calendar client factory.
    """

    unlinked = "unlinked"
    linked_valid = "linked_valid"
    linked_stale = "linked_stale"


@dataclass(frozen=True)
class OAuthCredential:
    """One artist's OAuth token pair.

    ``generation`` increases on every write and is the compare-and-swap
    marker used to keep a stale refresh from clobbering a fresher one.
    """

    artist_id: str
    access_token: str
    refresh_token: str | None
    expires_at: datetime
    scope: str | None = None
    generation: int = 1
    updated_at: datetime | None = None

    def is_fresh(self, *, margin: timedelta, now: datetime | None = None) -> bool:
        """Return True while the access token is usable for at least *margin*."""
        current = now or datetime.now(UTC)
        return current < self.expires_at - margin

    def state(self, *, margin: timedelta, now: datetime | None = None) -> CredentialState:
        if self.is_fresh(margin=margin, now=now):
            return CredentialState.linked_valid
        return CredentialState.linked_stale

    def __repr__(self) -> str:
        return (
            f"OAuthCredential("
            f"artist_id={self.artist_id!r}, "
            f"access_token=<REDACTED>, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"expires_at={self.expires_at.isoformat()!r}, "
            f"scope={self.scope!r}, "
            f"generation={self.generation!r})"
        )

    __str__ = __repr__


@dataclass(frozen=True)
class TokenGrant:
    """Token endpoint response for an authorization-code or refresh grant."""

    access_token: str
    expires_in: int
    refresh_token: str | None = None
    scope: str | None = None

    def expiry(self, now: datetime | None = None) -> datetime:
        return (now or datetime.now(UTC)) + timedelta(seconds=self.expires_in)

    def __repr__(self) -> str:
        return (
            f"TokenGrant(access_token=<REDACTED>, expires_in={self.expires_in!r}, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"scope={self.scope!r})"
        )

    __str__ = __repr__


@dataclass(frozen=True)
class NotLinked:
    """Returned instead of a calendar client when an artist has no usable credential.

    ``reason`` is ``"never_linked"`` when no credential is stored and
    ``"revoked"`` when the provider rejected the stored refresh token.
    """

    artist_id: str
    reason: str = "never_linked"


# ---------------------------------------------------------------------------
# Calendar data
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CalendarListEntry:
    """One calendar visible to a linked artist."""

    id: str
    summary: str | None = None
    primary: bool = False
    access_role: str | None = None
    time_zone: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "summary": self.summary,
            "primary": self.primary,
            "accessRole": self.access_role,
            "timeZone": self.time_zone,
        }


@dataclass(frozen=True)
class CalendarApiEvent:
    """An event read from the authenticated calendar API.

    ``start`` and ``end`` are dates for all-day events and datetimes otherwise;
    a naive datetime is interpreted in the studio time zone.
    """

    calendar_id: str
    summary: str | None
    start: datetime | date
    end: datetime | date


@dataclass(frozen=True)
class FeedEvent:
    """An event parsed from a public iCalendar feed."""

    feed_name: str
    summary: str | None
    start: datetime | date
    end: datetime | date


class BusySourceKind(StrEnum):
    """Origin of a busy interval."""

    authenticated_calendar = "authenticated_calendar"
    public_feed = "public_feed"


@dataclass(frozen=True)
class BusyInterval:
    """A normalized time range during which an artist is unavailable."""

    source_kind: BusySourceKind
    source: str
    start: datetime
    end: datetime
    label: str


@dataclass(frozen=True)
class SourceFailure:
    """A busy-time source that could not contribute to the result."""

    source: str
    source_kind: BusySourceKind
    error_code: str
    message: str


@dataclass
class BusyTimeResult:
    """Union of all successful sources, plus the sources that failed."""

    artist_id: str
    window_start: datetime
    window_end: datetime
    intervals: list[BusyInterval] = field(default_factory=list)
    failures: list[SourceFailure] = field(default_factory=list)
    attempted: list[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.failures)

    @property
    def all_failed(self) -> bool:
        """True only when sources were attempted and none of them succeeded."""
        return bool(self.attempted) and len(self.failures) >= len(self.attempted)


# ---------------------------------------------------------------------------
# Quotes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Quote:
    """Effective price and timing for one artist x service pair."""

    service_id: str
    service_title: str
    service_slug: str
    effective_price: int
    duration_minutes: int
    buffer_before_minutes: int
    buffer_after_minutes: int


@dataclass(frozen=True)
class ArtistServiceOffer:
    """A service an artist offers, with the price resolution made explicit."""

    service_id: str
    title: str
    slug: str
    effective_price: int | None
    base_price: int | None
    override_price: int | None
    duration_minutes: int
    buffer_before_minutes: int
    buffer_after_minutes: int
