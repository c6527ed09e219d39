"""Error taxonomy shared by the credential, calendar, feed and quote layers.

Every error carries a stable machine-readable ``code`` and the HTTP status the
API layer maps it to.  Messages are safe to log and to return to clients: they
never contain token material or raw provider payloads.
"""

from __future__ import annotations


class StudioError(Exception):
    """Base class for all domain errors raised by studiolink."""

    code = "STUDIO_ERROR"
    status_code = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class NotFound(StudioError):
    """Unknown artist, service or override."""

    code = "NOT_FOUND"
    status_code = 404


class InvalidConfiguration(StudioError):
    """A stored value or request field is missing or unusable (e.g. a zero price)."""

    code = "INVALID_CONFIGURATION"
    status_code = 400


class InvalidOAuthState(StudioError):
    """The OAuth ``state`` parameter is forged, expired, replayed or malformed."""

    code = "INVALID_STATE"
    status_code = 400


class Unauthorized(StudioError):
    """Missing or invalid admin credential."""

    code = "UNAUTHORIZED"
    status_code = 401


class ExternalProviderError(StudioError):
    """The OAuth token endpoint or the calendar API returned a non-success response."""

    code = "EXTERNAL_PROVIDER_ERROR"
    status_code = 502

    def __init__(self, message: str, *, provider_status: int | None = None) -> None:
        self.provider_status = provider_status
        super().__init__(message)


class RefreshTokenRevoked(ExternalProviderError):
    """The provider rejected a refresh token (``invalid_grant``).

    The token is dead: callers must re-run the authorization flow and never
    retry the same refresh token.
    """


class FeedUnavailable(StudioError):
    """Network or HTTP failure while fetching a public calendar feed."""

    code = "FEED_UNAVAILABLE"
    status_code = 502


class FeedMalformed(StudioError):
    """A public calendar feed body could not be parsed."""

    code = "FEED_MALFORMED"
    status_code = 502


class ConcurrencyConflict(StudioError):
    """A credential write lost its compare-and-swap against a newer generation."""

    code = "CONCURRENCY_CONFLICT"
    status_code = 409


class AllSourcesFailed(StudioError):
    """Every attempted busy-time source failed."""

    code = "ALL_SOURCES_FAILED"
    status_code = 502
