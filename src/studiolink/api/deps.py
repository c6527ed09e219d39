"""Component wiring and FastAPI dependencies for the studio API.

All long-lived resources (the asyncpg pool, the shared ``httpx.AsyncClient``
and the components built on them) live on one :class:`Studio` container held
in ``app.state.studio``.  Route handlers reach it only through the dependency
functions below, so tests can hand ``create_app`` a container built from fakes.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta

import httpx
from fastapi import Depends, Request

from studiolink.auth import AdminTokenVerifier
from studiolink.busy_time import BusyTimeAggregator
from studiolink.calendar_client import CalendarClientFactory
from studiolink.catalog import Catalog
from studiolink.config import StudioConfig
from studiolink.core.metrics import StudioMetrics
from studiolink.credential_store import OAuthCredentialStore
from studiolink.errors import Unauthorized
from studiolink.oauth import OAuthFlowController
from studiolink.quotes import QuoteResolver

logger = logging.getLogger(__name__)

IsAdmin = Callable[[Request], Awaitable[bool]]


@dataclass
class Studio:
    """Every component a request handler may need."""

    config: StudioConfig
    store: OAuthCredentialStore
    catalog: Catalog
    oauth: OAuthFlowController
    calendars: CalendarClientFactory
    busy_time: BusyTimeAggregator
    quotes: QuoteResolver
    is_admin: IsAdmin


def build_studio(
    config: StudioConfig,
    *,
    store: OAuthCredentialStore,
    catalog: Catalog,
    http_client: httpx.AsyncClient,
    is_admin: IsAdmin | None = None,
) -> Studio:
    """Assemble the component graph from its leaves."""
    metrics = StudioMetrics(config.name)
    refresh_margin = timedelta(seconds=config.calendar.refresh_margin_seconds)
    request_timeout = config.calendar.request_timeout_seconds

    oauth = OAuthFlowController(
        config.oauth,
        store=store,
        catalog=catalog,
        http_client=http_client,
        refresh_margin=refresh_margin,
        request_timeout=request_timeout,
        metrics=metrics,
    )
    calendars = CalendarClientFactory(
        store=store,
        oauth=oauth,
        http_client=http_client,
        refresh_margin=refresh_margin,
        request_timeout=request_timeout,
        metrics=metrics,
    )
    busy_time = BusyTimeAggregator(
        catalog=catalog,
        factory=calendars,
        http_client=http_client,
        calendar_config=config.calendar,
        feeds=config.feeds_for,
        timezone=config.zoneinfo,
        metrics=metrics,
    )
    return Studio(
        config=config,
        store=store,
        catalog=catalog,
        oauth=oauth,
        calendars=calendars,
        busy_time=busy_time,
        quotes=QuoteResolver(catalog),
        is_admin=is_admin or AdminTokenVerifier(config.admin),
    )


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


def get_studio(request: Request) -> Studio:
    """FastAPI dependency: provides the Studio container."""
    studio = getattr(request.app.state, "studio", None)
    if studio is None:
        raise RuntimeError("Studio not initialized; the app lifespan has not run")
    return studio


def get_oauth(studio: Studio = Depends(get_studio)) -> OAuthFlowController:
    return studio.oauth


def get_calendars(studio: Studio = Depends(get_studio)) -> CalendarClientFactory:
    return studio.calendars


def get_catalog(studio: Studio = Depends(get_studio)) -> Catalog:
    return studio.catalog


def get_busy_time(studio: Studio = Depends(get_studio)) -> BusyTimeAggregator:
    return studio.busy_time


def get_quotes(studio: Studio = Depends(get_studio)) -> QuoteResolver:
    return studio.quotes


async def require_admin(request: Request, studio: Studio = Depends(get_studio)) -> None:
    """FastAPI dependency: rejects the request unless ``is_admin`` accepts it."""
    if not await studio.is_admin(request):
        logger.info("Admin check failed on %s %s", request.method, request.url.path)
        raise Unauthorized("Admin credentials required")
