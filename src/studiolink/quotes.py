"""Price and timing resolution for artist x service pairs.

An active override with a price wins over the service's base price.  The
winning price must be a positive, finite, whole number of minor currency
units; anything else is a configuration error, never a silent zero.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

from studiolink.catalog import Catalog
from studiolink.errors import InvalidConfiguration, NotFound
from studiolink.models import ArtistServiceOffer, Quote, Service, ServiceOverride

logger = logging.getLogger(__name__)

DEFAULT_DURATION_MINUTES = 60
DEFAULT_BUFFER_MINUTES = 0


def to_minor_units(value: Decimal | int | float | None) -> int:
    """Validate a stored price and return it as an integer.

    Raises
    ------
    ValueError
        If the value is missing, non-numeric, non-finite, fractional or not
        strictly positive.
    """
    if value is None or isinstance(value, bool):
        raise ValueError("price is not set")
    try:
        amount = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueError(f"price is not numeric: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"price is not finite: {value!r}")
    if amount != amount.to_integral_value():
        raise ValueError(f"price is not a whole number of minor units: {value!r}")
    if amount <= 0:
        raise ValueError(f"price must be positive: {value!r}")
    return int(amount)


def _minor_units_or_none(value: Decimal | int | float | None) -> int | None:
    try:
        return to_minor_units(value)
    except ValueError:
        return None


def _override_applies(override: ServiceOverride | None) -> bool:
    return override is not None and override.active and override.price is not None


def _timing(service: Service) -> tuple[int, int, int]:
    return (
        service.duration_min or DEFAULT_DURATION_MINUTES,
        service.buffer_before_min or DEFAULT_BUFFER_MINUTES,
        service.buffer_after_min or DEFAULT_BUFFER_MINUTES,
    )


class QuoteResolver:
    """Computes quotes from the catalog."""

    def __init__(self, catalog: Catalog) -> None:
        self._catalog = catalog

    async def resolve(self, artist_id: str, service_id: str) -> Quote:
        """Return the effective price and timing for *artist_id* x *service_id*.

        Raises
        ------
        NotFound
            If the service does not exist or is inactive.
        InvalidConfiguration
            If the effective price is missing, zero, negative, non-finite or
            fractional.

        Notes
        -----
        Prices are stored in minor currency units (pence), so a fractional
        amount such as ``99.5`` cannot be charged and is rejected along with
        non-positive and non-finite values.
        """
        service = await self._catalog.get_service(service_id)
        if service is None or not service.active:
            raise NotFound(f"Service not found: {service_id}")

        override = await self._catalog.get_override(artist_id, service_id)
        if _override_applies(override):
            raw_price = override.price
            price_source = "override"
        else:
            raw_price = service.base_price
            price_source = "base"

        try:
            price = to_minor_units(raw_price)
        except ValueError as exc:
            logger.warning(
                "Unusable %s price: artist_id=%r service_id=%r (%s)",
                price_source,
                artist_id,
                service_id,
                exc,
            )
            raise InvalidConfiguration(
                f"Service {service_id!r} has no valid price for artist {artist_id!r}"
            ) from exc

        duration, buffer_before, buffer_after = _timing(service)
        return Quote(
            service_id=service.id,
            service_title=service.title,
            service_slug=service.slug,
            effective_price=price,
            duration_minutes=duration,
            buffer_before_minutes=buffer_before,
            buffer_after_minutes=buffer_after,
        )

    async def list_for_artist(self, artist_id: str) -> list[ArtistServiceOffer]:
        """List the services an artist offers, via their active overrides.

        Unusable prices are reported as ``None`` rather than raising, so one
        misconfigured row does not hide the rest of the list.
        """
        offers: list[ArtistServiceOffer] = []
        for service, override in await self._catalog.list_offered_services(artist_id):
            base_price = _minor_units_or_none(service.base_price)
            override_price = _minor_units_or_none(override.price)
            effective = override_price if override.price is not None else base_price
            duration, buffer_before, buffer_after = _timing(service)
            offers.append(
                ArtistServiceOffer(
                    service_id=service.id,
                    title=service.title,
                    slug=service.slug,
                    effective_price=effective,
                    base_price=base_price,
                    override_price=override_price,
                    duration_minutes=duration,
                    buffer_before_minutes=buffer_before,
                    buffer_after_minutes=buffer_after,
                )
            )
        return offers
