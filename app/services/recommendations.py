"""Trakt-backed catalogs: personal recommendations and public lists."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..cache import CacheService
from ..config import Settings
from ..models import CatalogItem, ContentType
from ..utils import page_for_skip
from .fallback import FallbackChain
from .sessions import SessionStore
from .tmdb import TMDBClient
from .trakt import TraktClient, TraktResult

logger = logging.getLogger(__name__)

PAGE_SIZE = 20


class TraktCatalogProvider:
    """Serve Trakt recommendations, falling back to public trending titles."""

    def __init__(
        self,
        settings: Settings,
        trakt: TraktClient,
        tmdb: TMDBClient,
        sessions: SessionStore,
        cache: CacheService,
    ) -> None:
        self._settings = settings
        self._trakt = trakt
        self._tmdb = tmdb
        self._sessions = sessions
        self._cache = cache

    async def recommendations(
        self,
        content_type: ContentType,
        session_id: str | None = None,
        *,
        skip: int = 0,
    ) -> list[CatalogItem]:
        """Return one 20-item page of recommendations for ``skip``.

        Personalised results need a session with usable credentials. A
        401 or an empty page hands over to the trending listing.
        """

        page = page_for_skip(skip, PAGE_SIZE)
        chain: FallbackChain[list[CatalogItem]] = FallbackChain(
            f"trakt-recommendations:{content_type}"
        )
        if session_id:
            chain.then(
                "personal",
                lambda: self._personal(content_type, session_id, page),
            )
        chain.then("trending", lambda: self._trending(content_type, page))
        return await chain.run([])

    async def _personal(
        self, content_type: ContentType, session_id: str, page: int
    ) -> list[CatalogItem] | None:
        cache_key = f"trakt:{content_type}:recommendations:{session_id}:page{page}"
        cached = await self._load(cache_key)
        if cached is not None:
            return cached

        credentials = await self._sessions.get_credentials(session_id)
        if credentials is None:
            logger.info("Session %s is not authenticated, using trending", session_id)
            return None
        result = await self._trakt.fetch_recommendations(
            content_type, credentials=credentials, page=page, limit=PAGE_SIZE
        )
        if result.unauthorized:
            logger.warning("Trakt rejected the token for session %s", session_id)
            return None
        return await self._store(cache_key, result, content_type)

    async def _trending(
        self, content_type: ContentType, page: int
    ) -> list[CatalogItem] | None:
        cache_key = f"trakt:{content_type}:trending:page{page}"
        cached = await self._load(cache_key)
        if cached is not None:
            return cached
        result = await self._trakt.fetch_trending(
            content_type, page=page, limit=PAGE_SIZE
        )
        return await self._store(cache_key, result, content_type)

    async def featured_list(self) -> list[CatalogItem]:
        """Movies from the configured public Trakt list, most popular first."""

        configured = self._settings.featured_list
        if configured is None:
            return []
        username, slug = configured
        cache_key = f"trakt:movie:list:{username}:{slug}"
        cached = await self._load(cache_key)
        if cached is not None:
            return cached
        result = await self._trakt.fetch_public_list(
            username, slug, sort="popularity,desc", limit=50
        )
        return await self._store(cache_key, result, "movie") or []

    async def _load(self, cache_key: str) -> list[CatalogItem] | None:
        cached = await self._cache.get(cache_key)
        if cached is None:
            return None
        return [CatalogItem.model_validate(entry) for entry in cached]

    async def _store(
        self, cache_key: str, result: TraktResult, content_type: ContentType
    ) -> list[CatalogItem] | None:
        if not result.ok or not result.items:
            return None
        items = list(
            await asyncio.gather(
                *(self.to_catalog_item(entry, content_type) for entry in result.items)
            )
        )
        await self._cache.set(
            cache_key,
            [item.model_dump(mode="json") for item in items],
            self._settings.trakt_cache_ttl_ms,
        )
        logger.info("Cached %s Trakt items under %s", len(items), cache_key)
        return items

    async def to_catalog_item(
        self, media: dict[str, Any], content_type: ContentType
    ) -> CatalogItem:
        ids = media.get("ids") or {}
        imdb_id = ids.get("imdb")
        poster = background = None
        if ids.get("tmdb"):
            poster, background = await self._tmdb.fetch_artwork(
                ids["tmdb"], content_type
            )
        rating = media.get("rating")
        genres = media.get("genres") or []
        return CatalogItem(
            id=imdb_id if isinstance(imdb_id, str) and imdb_id else f"trakt:{ids.get('trakt')}",
            type=content_type,
            title=media.get("title") or "",
            description=media.get("overview") or "",
            release_year=media.get("year") if isinstance(media.get("year"), int) else None,
            poster=poster,
            background=background,
            rating=float(rating) if isinstance(rating, (int, float)) and rating else None,
            genres=[str(genre) for genre in genres if genre],
        )
