"""Tests for the Trakt API client and the recommendation catalogs."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from app.cache import CacheService
from app.config import Settings
from app.models import TraktCredentials
from app.services.recommendations import TraktCatalogProvider
from app.services.tmdb import TMDBClient
from app.services.trakt import TraktClient, normalize_media


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


def build_settings(**overrides: Any) -> Settings:
    """Return a settings object with defaults suitable for tests."""

    base = {"TRAKT_CLIENT_ID": "client-id"}
    base.update(overrides)
    return Settings(_env_file=None, **base)  # type: ignore[arg-type]


def _movie(title: str, trakt_id: int, imdb: str | None = None) -> dict[str, Any]:
    ids: dict[str, Any] = {"trakt": trakt_id}
    if imdb:
        ids["imdb"] = imdb
    return {
        "title": title,
        "year": 2024,
        "overview": f"About {title}",
        "rating": 7.4,
        "genres": ["drama"],
        "ids": ids,
    }


CREDENTIALS = TraktCredentials(client_id="user-client", access_token="user-token")


def test_normalize_media_unwraps_listing_entries() -> None:
    entries = [
        {"watchers": 10, "movie": _movie("Wrapped", 1)},
        _movie("Bare", 2),
        {"watchers": 3},
        "garbage",
    ]

    normalized = normalize_media(entries, "movie")

    assert [entry["title"] for entry in normalized] == ["Wrapped", "Bare"]
    assert normalize_media({"not": "a list"}, "movie") == []


@pytest.mark.anyio("asyncio")
async def test_fetch_recommendations_sends_user_credentials() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=[_movie("Dune", 1, "tt1160419")])

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(
        transport=transport, base_url="https://api.trakt.example"
    ) as http_client:
        client = TraktClient(build_settings(), http_client)
        result = await client.fetch_recommendations(
            "series", credentials=CREDENTIALS, page=3
        )

    assert result.ok
    assert [item["title"] for item in result.items] == ["Dune"]
    request = requests[0]
    assert request.url.path == "/recommendations/shows"
    assert request.url.params["page"] == "3"
    assert request.url.params["limit"] == "20"
    assert request.url.params["ignore_collected"] == "true"
    assert request.url.params["ignore_watchlisted"] == "true"
    assert request.headers["Authorization"] == "Bearer user-token"
    assert request.headers["trakt-api-key"] == "user-client"
    assert request.headers["trakt-api-version"] == "2"


@pytest.mark.anyio("asyncio")
async def test_listing_errors_keep_the_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": "invalid token"})

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://api.trakt.example"
    ) as http_client:
        result = await TraktClient(build_settings(), http_client).fetch_recommendations(
            "movie", credentials=CREDENTIALS
        )

    assert not result.ok
    assert result.unauthorized
    assert result.items == []


@pytest.mark.anyio("asyncio")
async def test_fetch_user_tolerates_non_json_profile() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/users/me"
        return httpx.Response(200, text="<html>maintenance</html>")

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://api.trakt.example"
    ) as http_client:
        profile = await TraktClient(build_settings(), http_client).fetch_user(CREDENTIALS)

    assert profile == {}


@pytest.mark.anyio("asyncio")
async def test_add_to_history_reports_added_counts() -> None:
    payloads: list[dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        payloads.append(json.loads(request.content))
        return httpx.Response(201, json={"added": {"movies": 2, "episodes": 0}})

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://api.trakt.example"
    ) as http_client:
        result = await TraktClient(build_settings(), http_client).add_to_history(
            {"movies": [{"ids": {"imdb": "tt1"}}, {"ids": {"imdb": "tt2"}}]},
            CREDENTIALS,
        )

    assert result.ok
    assert result.added == {"movies": 2, "episodes": 0}
    assert len(payloads[0]["movies"]) == 2


class FakeSessions:
    def __init__(self, credentials: TraktCredentials | None) -> None:
        self.credentials = credentials
        self.lookups: list[str | None] = []

    async def get_credentials(self, session_id: str | None) -> TraktCredentials | None:
        self.lookups.append(session_id)
        return self.credentials


class ProviderHarness:
    def __init__(self, handler, *, credentials: TraktCredentials | None = CREDENTIALS):
        self.settings = build_settings(TRAKT_FEATURED_LIST="curator/best-of")
        self.cache = CacheService()
        self.trakt_http = httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url="https://api.trakt.example"
        )
        self.tmdb_http = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(404))
        )
        self.sessions = FakeSessions(credentials)
        self.provider = TraktCatalogProvider(
            self.settings,
            TraktClient(self.settings, self.trakt_http),
            TMDBClient(self.settings, self.tmdb_http, self.cache),
            self.sessions,  # type: ignore[arg-type]
            self.cache,
        )

    async def close(self) -> None:
        await self.trakt_http.aclose()
        await self.tmdb_http.aclose()


SESSION_ID = "0b7f4f5e-2a43-4b8e-9c55-0d7d1f1f2a11"


@pytest.mark.anyio("asyncio")
async def test_personal_recommendations_are_mapped_and_cached() -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(
            200, json=[_movie("Arrival", 1, "tt2543164"), _movie("Obscure", 2)]
        )

    harness = ProviderHarness(handler)
    try:
        items = await harness.provider.recommendations("movie", SESSION_ID)
        again = await harness.provider.recommendations("movie", SESSION_ID)
    finally:
        await harness.close()

    assert [item.id for item in items] == ["tt2543164", "trakt:2"]
    assert items[0].rating == 7.4
    assert items[0].genres == ["drama"]
    assert again == items
    assert paths == ["/recommendations/movies"]
    assert await harness.cache.get(
        f"trakt:movie:recommendations:{SESSION_ID}:page1"
    ) is not None


@pytest.mark.anyio("asyncio")
async def test_unauthorized_recommendations_fall_back_to_trending() -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        if request.url.path.startswith("/recommendations"):
            return httpx.Response(401, json={"error": "expired"})
        return httpx.Response(
            200, json=[{"watchers": 5, "show": _movie("Severance", 9, "tt11280740")}]
        )

    harness = ProviderHarness(handler)
    try:
        items = await harness.provider.recommendations("series", SESSION_ID, skip=20)
    finally:
        await harness.close()

    assert paths == ["/recommendations/shows", "/shows/trending"]
    assert [item.id for item in items] == ["tt11280740"]
    assert items[0].type == "series"
    assert await harness.cache.get("trakt:series:trending:page2") is not None


@pytest.mark.anyio("asyncio")
async def test_empty_recommendations_fall_back_to_trending() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.startswith("/recommendations"):
            return httpx.Response(200, json=[])
        return httpx.Response(200, json=[{"movie": _movie("Twisters", 4, "tt12584954")}])

    harness = ProviderHarness(handler)
    try:
        items = await harness.provider.recommendations("movie", SESSION_ID)
    finally:
        await harness.close()

    assert [item.title for item in items] == ["Twisters"]


@pytest.mark.anyio("asyncio")
async def test_anonymous_requests_go_straight_to_trending() -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(200, json=[{"movie": _movie("Hanna", 5, "tt0993842")}])

    harness = ProviderHarness(handler)
    try:
        items = await harness.provider.recommendations("movie")
    finally:
        await harness.close()

    assert paths == ["/movies/trending"]
    assert harness.sessions.lookups == []
    assert items[0].id == "tt0993842"


@pytest.mark.anyio("asyncio")
async def test_total_failure_returns_empty_list() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="down")

    harness = ProviderHarness(handler, credentials=None)
    try:
        items = await harness.provider.recommendations("movie", SESSION_ID)
    finally:
        await harness.close()

    assert items == []


@pytest.mark.anyio("asyncio")
async def test_featured_list_requests_popularity_order() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200, json=[{"type": "movie", "movie": _movie("Heat", 7, "tt0113277")}]
        )

    harness = ProviderHarness(handler)
    try:
        items = await harness.provider.featured_list()
    finally:
        await harness.close()

    assert requests[0].url.path == "/users/curator/lists/best-of/items/movie"
    assert requests[0].url.params["sort"] == "popularity,desc"
    assert requests[0].url.params["limit"] == "50"
    assert [item.title for item in items] == ["Heat"]
