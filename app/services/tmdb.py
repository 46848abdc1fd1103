"""Utilities for resolving metadata from The Movie Database (TMDB)."""

from __future__ import annotations

import asyncio
import logging
from datetime import date, timedelta
from typing import Any, Callable

import httpx

from ..cache import CacheService
from ..config import Settings
from ..models import CatalogItem, ContentType
from ..utils import page_for_skip, parse_year

logger = logging.getLogger(__name__)

POSTER_SIZE = "w342"
BACKDROP_SIZE = "w300"
ORIGINAL_SIZE = "original"
POSTER_SOURCE_SIZE = "w500"

GENRE_NAMES: dict[int, str] = {
    28: "Action",
    12: "Adventure",
    16: "Animation",
    35: "Comedy",
    80: "Crime",
    99: "Documentary",
    18: "Drama",
    10751: "Family",
    14: "Fantasy",
    36: "History",
    27: "Horror",
    10402: "Music",
    9648: "Mystery",
    10749: "Romance",
    878: "Science Fiction",
    10770: "TV Movie",
    53: "Thriller",
    10752: "War",
    37: "Western",
    10759: "Action & Adventure",
    10762: "Kids",
    10763: "News",
    10764: "Reality",
    10765: "Sci-Fi & Fantasy",
    10766: "Soap",
    10767: "Talk",
    10768: "War & Politics",
}


def media_type_for(content_type: str) -> str:
    """Map a Stremio content type onto TMDB's ``movie``/``tv`` path segment."""

    return "movie" if content_type == "movie" else "tv"


def content_type_for(media_type: str | None) -> ContentType:
    return "movie" if media_type == "movie" else "series"


def extract_year(result: dict[str, Any]) -> int | None:
    return parse_year(result.get("release_date") or result.get("first_air_date"))


def dedupe_items(*sources: list[CatalogItem]) -> list[CatalogItem]:
    """Union several item lists by id, keeping the first-seen order."""

    seen: set[str] = set()
    merged: list[CatalogItem] = []
    for items in sources:
        for item in items:
            if item.id in seen:
                continue
            seen.add(item.id)
            merged.append(item)
    return merged


class TMDBClient:
    """Client for TMDB listings, searches and detail lookups."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        cache: CacheService,
        *,
        today: Callable[[], date] = date.today,
    ):
        self._settings = settings
        self._client = http_client
        self._cache = cache
        self._today = today
        self._semaphore = asyncio.Semaphore(8)

    @property
    def enabled(self) -> bool:
        return bool(self._settings.tmdb_api_key)

    def image_url(self, path: str | None, size: str = POSTER_SIZE) -> str | None:
        if not path:
            return None
        if path.startswith("http"):
            return path
        base = self._settings.tmdb_image_base_url.rstrip("/")
        return f"{base}/{size}{path}"

    async def _get(self, path: str, **params: Any) -> dict[str, Any] | None:
        """GET a TMDB endpoint, returning ``None`` on any failure."""

        if not self.enabled:
            logger.warning("TMDB API key not configured, skipping %s", path)
            return None
        query = {"api_key": self._settings.tmdb_api_key}
        query.update({key: value for key, value in params.items() if value is not None})
        try:
            async with self._semaphore:
                response = await self._client.get(path, params=query)
        except httpx.HTTPError as exc:
            logger.warning("TMDB request %s failed: %s", path, exc)
            return None
        if response.status_code >= 400:
            logger.warning(
                "TMDB request %s returned %s: %s",
                path,
                response.status_code,
                response.text,
            )
            return None
        try:
            data = response.json()
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    async def _results(self, path: str, **params: Any) -> list[dict[str, Any]] | None:
        data = await self._get(path, **params)
        if data is None:
            return None
        results = data.get("results")
        if not isinstance(results, list):
            return []
        return [result for result in results if isinstance(result, dict)]

    # Listings -----------------------------------------------------------

    async def _cached_listing(
        self,
        cache_key: str,
        path: str,
        content_type: ContentType,
        *,
        ttl_ms: int | None = None,
        **params: Any,
    ) -> list[CatalogItem]:
        cached = await self._cache.get(cache_key)
        if cached is not None:
            return [CatalogItem.model_validate(entry) for entry in cached]
        results = await self._results(path, **params)
        if results is None:
            return []
        items = await asyncio.gather(
            *(self.to_catalog_item(result, content_type) for result in results)
        )
        await self._cache.set(
            cache_key,
            [item.model_dump(mode="json") for item in items],
            ttl_ms or self._settings.tmdb_cache_ttl_ms,
        )
        return list(items)

    async def trending(self, content_type: ContentType) -> list[CatalogItem]:
        media = media_type_for(content_type)
        return await self._cached_listing(
            f"tmdb:{content_type}:trending",
            f"/trending/{media}/week",
            content_type,
        )

    async def now_playing(self) -> list[CatalogItem]:
        return await self._cached_listing(
            "tmdb:movie:nowplaying", "/movie/now_playing", "movie", region="US"
        )

    async def popular_series(self) -> list[CatalogItem]:
        return await self._cached_listing("tmdb:series:popular", "/tv/popular", "series")

    async def new_and_popular(self, content_type: ContentType) -> list[CatalogItem]:
        """Trending this week merged with what is currently showing."""

        if content_type == "movie":
            trending, current = await asyncio.gather(
                self.trending("movie"), self.now_playing()
            )
        else:
            trending, current = await asyncio.gather(
                self.trending("series"), self.popular_series()
            )
        return dedupe_items(trending, current)

    async def newly_released(self, skip: int = 0) -> list[CatalogItem]:
        """Popular movies released digitally or physically in the last 30 days."""

        page = page_for_skip(skip)
        end = self._today()
        start = end - timedelta(days=30)
        return await self._cached_listing(
            f"tmdb:movie:newly-released-popular:page{page}",
            "/discover/movie",
            "movie",
            ttl_ms=self._settings.newly_released_cache_ttl_ms,
            sort_by="popularity.desc",
            page=page,
            watch_region="SE",
            with_release_type="4|5",
            **{
                "release_date.gte": start.isoformat(),
                "release_date.lte": end.isoformat(),
                "vote_count.gte": 50,
            },
        )

    # Mapping ------------------------------------------------------------

    async def to_catalog_item(
        self, result: dict[str, Any], content_type: ContentType
    ) -> CatalogItem:
        """Map a TMDB list result, preferring its IMDb id as the item id."""

        tmdb_id = result.get("id")
        imdb_id = await self.fetch_imdb_id(tmdb_id, content_type) if tmdb_id else None
        genre_ids = result.get("genre_ids") or []
        vote = result.get("vote_average")
        return CatalogItem(
            id=imdb_id or f"tmdb:{tmdb_id}",
            type=content_type,
            title=result.get("title") or result.get("name") or "",
            description=result.get("overview") or "",
            release_year=extract_year(result),
            poster=self.image_url(result.get("poster_path")),
            rating=float(vote) if isinstance(vote, (int, float)) and vote else None,
            genres=[GENRE_NAMES.get(genre_id, "Unknown") for genre_id in genre_ids],
        )

    # Lookups ------------------------------------------------------------

    async def search(
        self, title: str, media_type: str = "multi", *, year: int | None = None
    ) -> list[dict[str, Any]] | None:
        """Search TMDB; ``None`` means the search itself failed."""

        params: dict[str, Any] = {"query": title, "language": "en-US"}
        if year:
            params["year" if media_type != "tv" else "first_air_date_year"] = year
        return await self._results(f"/search/{media_type}", **params)

    async def fetch_details(
        self, tmdb_id: int | str, media_type: str, *, append: str | None = None
    ) -> dict[str, Any] | None:
        return await self._get(f"/{media_type}/{tmdb_id}", append_to_response=append)

    async def fetch_imdb_id(
        self, tmdb_id: int | str, content_type: str
    ) -> str | None:
        data = await self._get(f"/{media_type_for(content_type)}/{tmdb_id}/external_ids")
        if not data:
            return None
        imdb_id = data.get("imdb_id")
        return imdb_id if isinstance(imdb_id, str) and imdb_id else None

    async def fetch_artwork(
        self, tmdb_id: int | str, content_type: str
    ) -> tuple[str | None, str | None]:
        """Return ``(poster, background)`` URLs sized for TV clients."""

        data = await self.fetch_details(tmdb_id, media_type_for(content_type))
        if not data:
            return None, None
        return (
            self.image_url(data.get("poster_path"), POSTER_SIZE),
            self.image_url(data.get("backdrop_path"), BACKDROP_SIZE),
        )

    async def find_by_imdb(
        self, imdb_id: str, content_type: str
    ) -> dict[str, Any] | None:
        data = await self._get(f"/find/{imdb_id}", external_source="imdb_id")
        if not data:
            return None
        preferred = "movie_results" if content_type == "movie" else "tv_results"
        for key in (preferred, "movie_results", "tv_results"):
            results = data.get(key) or []
            if results and isinstance(results[0], dict):
                return results[0]
        return None

    async def resolve_poster_url(self, item_id: str, content_type: str) -> str | None:
        """Resolve a catalog id (``tt…`` or ``tmdb:…``) to a source poster URL."""

        if item_id.startswith("tmdb:"):
            details = await self.fetch_details(
                item_id.split(":", 1)[1], media_type_for(content_type)
            )
        elif item_id.startswith("tt"):
            details = await self.find_by_imdb(item_id, content_type)
        else:
            return None
        if not details:
            return None
        return self.image_url(details.get("poster_path"), POSTER_SOURCE_SIZE)
