"""Catalog definitions, the manifest and catalog request routing."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from .config import Settings
from .models import CatalogItem, ContentType
from .services.netflix import NetflixTop10Service
from .services.recommendations import TraktCatalogProvider
from .services.tmdb import TMDBClient

logger = logging.getLogger(__name__)

MANIFEST_ID = "com.stremio.catalog.trakt.netflix.tmdb"
MANIFEST_VERSION = "1.0.0"
MANIFEST_DESCRIPTION = (
    "Personalized Trakt recommendations, Netflix Top 10 and TMDB trending content"
)
PAGE_LIMIT = 100


@dataclass(frozen=True)
class CatalogDefinition:
    """Describes a catalog lane shown in Stremio."""

    key: str
    title: str
    content_type: ContentType
    paged_upstream: bool = False

    def to_manifest(self) -> dict[str, Any]:
        return {
            "type": self.content_type,
            "id": self.key,
            "name": self.title,
            "extra": [{"name": "skip", "isRequired": False}],
        }


FEATURED_LIST_KEY = "trakt-featured-list"

CATALOGS: tuple[CatalogDefinition, ...] = (
    CatalogDefinition(
        key="trakt-recommendations",
        title="Your Personal Recommendations",
        content_type="movie",
        paged_upstream=True,
    ),
    CatalogDefinition(
        key="trakt-recommendations",
        title="Your Personal Recommendations",
        content_type="series",
        paged_upstream=True,
    ),
    CatalogDefinition(key="netflix-top10", title="Netflix Top 10", content_type="movie"),
    CatalogDefinition(key="netflix-top10", title="Netflix Top 10", content_type="series"),
    CatalogDefinition(key="new-and-popular", title="New & Popular", content_type="movie"),
    CatalogDefinition(key="new-and-popular", title="New & Popular", content_type="series"),
    CatalogDefinition(
        key="newly-released",
        title="Newly Released",
        content_type="movie",
        paged_upstream=True,
    ),
)


def catalog_definitions(settings: Settings) -> tuple[CatalogDefinition, ...]:
    """Return the enabled catalogs; the featured list needs configuring."""

    if settings.featured_list is None:
        return CATALOGS
    return CATALOGS + (
        CatalogDefinition(
            key=FEATURED_LIST_KEY, title="Featured List", content_type="movie"
        ),
    )


def build_manifest(settings: Settings, *, personal: bool = False) -> dict[str, Any]:
    """Build the add-on manifest; personal manifests get a distinct id."""

    manifest_id = f"{MANIFEST_ID}.user" if personal else MANIFEST_ID
    name = f"{settings.app_name} (Personal)" if personal else settings.app_name
    return {
        "id": manifest_id,
        "version": MANIFEST_VERSION,
        "name": name,
        "description": MANIFEST_DESCRIPTION,
        "resources": ["catalog", "stream"],
        "types": ["movie", "series"],
        "idPrefixes": ["tt"],
        "catalogs": [
            definition.to_manifest() for definition in catalog_definitions(settings)
        ],
    }


class CatalogService:
    """Route catalog requests to the provider that owns them."""

    def __init__(
        self,
        settings: Settings,
        trakt: TraktCatalogProvider,
        tmdb: TMDBClient,
        netflix: NetflixTop10Service,
    ) -> None:
        self._settings = settings
        self._trakt = trakt
        self._tmdb = tmdb
        self._netflix = netflix

    def find_definition(
        self, content_type: str, catalog_id: str
    ) -> CatalogDefinition | None:
        for definition in catalog_definitions(self._settings):
            if definition.key == catalog_id and definition.content_type == content_type:
                return definition
        return None

    def _loader(
        self,
        definition: CatalogDefinition,
        *,
        skip: int,
        session_id: str | None,
    ) -> Callable[[], Awaitable[list[CatalogItem]]]:
        content_type = definition.content_type
        loaders: dict[str, Callable[[], Awaitable[list[CatalogItem]]]] = {
            "trakt-recommendations": lambda: self._trakt.recommendations(
                content_type, session_id, skip=skip
            ),
            "netflix-top10": lambda: self._netflix.top10(content_type),
            "new-and-popular": lambda: self._tmdb.new_and_popular(content_type),
            "newly-released": lambda: self._tmdb.newly_released(skip),
            FEATURED_LIST_KEY: self._trakt.featured_list,
        }
        return loaders[definition.key]

    async def get_catalog(
        self,
        content_type: str,
        catalog_id: str,
        *,
        skip: int = 0,
        session_id: str | None = None,
    ) -> dict[str, list[dict[str, Any]]]:
        """Return ``{"metas": [...]}``; unknown catalogs and failures are empty."""

        definition = self.find_definition(content_type, catalog_id)
        if definition is None:
            logger.warning("Unknown catalog %s (%s)", catalog_id, content_type)
            return {"metas": []}
        skip = max(skip, 0)
        try:
            items = await self._loader(definition, skip=skip, session_id=session_id)()
        except Exception:
            logger.exception("Catalog %s (%s) failed", catalog_id, content_type)
            return {"metas": []}

        if not definition.paged_upstream:
            items = items[skip : skip + PAGE_LIMIT]
        logger.info(
            "Returning %s items for %s (%s)", len(items), catalog_id, content_type
        )
        return {"metas": [item.to_meta() for item in items[:PAGE_LIMIT]]}
