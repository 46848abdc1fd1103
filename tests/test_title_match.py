"""Tests for title confidence scoring and the TMDB-backed matcher."""

from __future__ import annotations

import math

import httpx
import pytest

from app.cache import CacheService
from app.config import Settings
from app.services.title_match import (
    MatchProgress,
    TitleMatcher,
    TitleQuery,
    confidence_score,
)
from app.services.tmdb import TMDBClient


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


@pytest.mark.parametrize(
    ("search", "found", "search_year", "found_year"),
    [
        ("Squid Game", "Squid Game", 2021, 2021),
        ("", "", None, None),
        ("A", "A very long title indeed", 1900, 2100),
        ("Dark", None, 2017, None),
        ("Wednesday", "WEDNESDAY ", 2022, 2023),
    ],
)
def test_score_is_an_integer_between_zero_and_hundred(
    search: str, found: str | None, search_year: int | None, found_year: int | None
) -> None:
    score = confidence_score(search, found, search_year, found_year)

    assert isinstance(score, int)
    assert 0 <= score <= 100


def test_exact_title_and_year_scores_one_hundred() -> None:
    assert confidence_score("  The Crown ", "the crown", 2016, 2016) == 100


def test_year_proximity_points() -> None:
    assert confidence_score("Hanna", "Hanna", 2011, 2012) == 90
    assert confidence_score("Hanna", "Hanna", 2011, 2013) == 80
    assert confidence_score("Hanna", "Hanna", 2011, 2020) == 70
    assert confidence_score("Hanna", "Hanna", None, 2011) == 85


def test_containment_scores_fifty_title_points() -> None:
    assert confidence_score("Outer Banks", "Outer Banks: Season 4", None, None) == 65


def test_dissimilar_titles_without_years_stay_under_ratio_bound() -> None:
    search, found = "Frankenstein", "Twisters"
    ratio = len(found) / len(search)

    score = confidence_score(search, found, None, None)

    assert score <= math.floor(40 * ratio) + 15
    assert score == math.floor(40 * ratio) + 15


def _tmdb(handler) -> tuple[TMDBClient, httpx.AsyncClient]:
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://tmdb.example/3"
    )
    settings = Settings(_env_file=None, TMDB_API_KEY="key")
    return TMDBClient(settings, http_client, CacheService()), http_client


@pytest.mark.anyio("asyncio")
async def test_match_scores_only_the_top_search_result() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/search/multi"):
            return httpx.Response(
                200,
                json={
                    "results": [
                        {"id": 7, "media_type": "person", "name": "Someone"},
                        {
                            "id": 1,
                            "media_type": "movie",
                            "title": "Hannah and Her Sisters",
                            "release_date": "1986-02-07",
                        },
                        {
                            "id": 2,
                            "media_type": "movie",
                            "title": "Hanna",
                            "release_date": "2011-04-08",
                        },
                    ]
                },
            )
        if request.url.path.endswith("/movie/1/external_ids"):
            return httpx.Response(200, json={"imdb_id": "tt0091167"})
        return httpx.Response(404)

    tmdb, http_client = _tmdb(handler)
    async with http_client:
        match = await TitleMatcher(tmdb).match("Hanna", year=2011)

    assert match is not None
    assert match.tmdb_id == 1
    assert match.catalog_id == "tt0091167"
    assert match.media_type == "movie"
    assert match.confidence == confidence_score(
        "Hanna", "Hannah and Her Sisters", 2011, 1986
    )


@pytest.mark.anyio("asyncio")
async def test_match_returns_none_on_upstream_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"status_message": "boom"})

    tmdb, http_client = _tmdb(handler)
    async with http_client:
        assert await TitleMatcher(tmdb).match("Hanna") is None


@pytest.mark.anyio("asyncio")
async def test_match_falls_back_to_tmdb_id_without_imdb() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/search/tv"):
            return httpx.Response(
                200,
                json={"results": [{"id": 99, "name": "Dark", "first_air_date": "2017-12-01"}]},
            )
        return httpx.Response(200, json={"imdb_id": None})

    tmdb, http_client = _tmdb(handler)
    async with http_client:
        match = await TitleMatcher(tmdb).match("Dark", content_type="series")

    assert match is not None
    assert match.catalog_id == "tmdb:99"
    assert match.media_type == "series"
    assert match.year == 2017


@pytest.mark.anyio("asyncio")
async def test_batch_match_is_sequential_and_reports_progress() -> None:
    searched: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if "/search/" in request.url.path:
            query = request.url.params["query"]
            searched.append(query)
            if query == "Nothing":
                return httpx.Response(200, json={"results": []})
            return httpx.Response(
                200,
                json={"results": [{"id": len(searched), "media_type": "tv", "name": query}]},
            )
        return httpx.Response(200, json={"imdb_id": f"tt{len(searched):07d}"})

    progress: list[MatchProgress] = []
    tmdb, http_client = _tmdb(handler)
    async with http_client:
        results = await TitleMatcher(tmdb).batch_match(
            [TitleQuery("Dark"), TitleQuery("Nothing"), TitleQuery("Wednesday")],
            progress.append,
        )

    assert searched == ["Dark", "Nothing", "Wednesday"]
    assert [entry.current for entry in progress] == [1, 2, 3]
    assert results[0].match is not None and results[0].match.external_id == "tt0000001"
    assert results[1].match is None
    assert results[2].match is not None and results[2].match.media_type == "series"
