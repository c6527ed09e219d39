"""Fixtures for API tests: a Studio wired to fakes and a mocked Google."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import httpx
import pytest

from studiolink.api.app import create_app
from studiolink.api.deps import Studio, build_studio
from studiolink.calendar_client import GOOGLE_CALENDAR_API_BASE_URL
from studiolink.config import FeedConfig
from studiolink.models import Artist, Service, ServiceOverride
from studiolink.oauth import GOOGLE_REVOKE_URL, GOOGLE_TOKEN_URL
from tests.conftest import (
    FakeCatalog,
    FakeCredentialStore,
    make_studio_config,
    mock_http_client,
    token_response,
)

ADMIN_HEADERS = {"Authorization": "Bearer admin-token"}
FEED_URL = "https://feeds.example.com/harley.ics"


@dataclass
class GoogleStub:
    """Answers every outbound request the studio makes."""

    token: httpx.Response | None = None
    calendars: list[dict[str, Any]] = field(default_factory=list)
    events: list[dict[str, Any]] = field(default_factory=list)
    events_status: int = 200
    feeds: dict[str, httpx.Response] = field(default_factory=dict)
    requests: list[httpx.Request] = field(default_factory=list)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url == GOOGLE_TOKEN_URL:
            return self.token or token_response()
        if url == GOOGLE_REVOKE_URL:
            return httpx.Response(200)
        if url.startswith(f"{GOOGLE_CALENDAR_API_BASE_URL}/users/me/calendarList"):
            return httpx.Response(200, json={"items": self.calendars})
        if url.startswith(f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/"):
            if self.events_status != 200:
                return httpx.Response(self.events_status, json={"error": {"message": "down"}})
            return httpx.Response(200, json={"items": self.events})
        if url in self.feeds:
            return self.feeds[url]
        return httpx.Response(404)


@dataclass
class ApiHarness:
    client: httpx.AsyncClient
    studio: Studio
    store: FakeCredentialStore
    catalog: FakeCatalog
    google: GoogleStub


def _catalog() -> FakeCatalog:
    return FakeCatalog(
        artists=[Artist(id="harley", name="Harley"), Artist(id="mo", name="Mo")],
        services=[
            Service(
                id="svc-tattoo",
                title="Small tattoo",
                slug="small-tattoo",
                base_price=Decimal("5000"),
                duration_min=90,
                buffer_before_min=15,
                buffer_after_min=15,
            ),
            Service(
                id="svc-broken",
                title="Broken",
                slug="broken",
                base_price=Decimal("0"),
            ),
        ],
        overrides=[ServiceOverride("harley", "svc-tattoo", Decimal("4000"))],
    )


def make_harness(**config_overrides) -> ApiHarness:
    store = FakeCredentialStore()
    catalog = _catalog()
    google = GoogleStub()
    config = make_studio_config(
        feeds=[FeedConfig(name="harley-ics", url=FEED_URL, artist_id="harley")],
        **config_overrides,
    )
    studio = build_studio(
        config, store=store, catalog=catalog, http_client=mock_http_client(google)
    )
    client = httpx.AsyncClient(
        transport=httpx.ASGITransport(app=create_app(studio=studio)),
        base_url="http://testserver",
    )
    return ApiHarness(client=client, studio=studio, store=store, catalog=catalog, google=google)


@pytest.fixture
async def api() -> AsyncIterator[ApiHarness]:
    harness = make_harness()
    async with harness.client:
        yield harness
