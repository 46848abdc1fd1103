"""Scrape the public Netflix Top 10 page and reconcile it with TMDB."""

from __future__ import annotations

import logging
import re
from typing import Any
from urllib.parse import quote

import httpx
from bs4 import BeautifulSoup

from ..cache import CacheService
from ..config import Settings
from ..models import CatalogItem, ContentType, MatchCandidate, RawRankEntry
from ..utils import spelling_variants
from .fallback import FallbackChain
from .title_match import TitleMatcher
from .tmdb import ORIGINAL_SIZE, TMDBClient, media_type_for

logger = logging.getLogger(__name__)

TOP10_SIZE = 10
BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}
DEFAULT_GENRES = ["Netflix Top 10", "Popular"]

FALLBACK_TITLES: dict[str, tuple[str, ...]] = {
    "movie": (
        "Frankenstein",
        "A Merry Little Ex-Mas",
        "In Your Dreams",
        "KPop Demon Hunters",
        "Hanna",
        "Being Eddie",
        "Lilla spöket Laban spökar igen",
        "A HOUSE OF DYNAMITE",
        "Twisters",
    ),
    "series": (
        "The Beast in Me",
        "Squid Game",
        "Outer Banks",
        "The Diplomat",
        "The Crown",
        "Wednesday",
    ),
}

_ORDINAL_PREFIX_RE = re.compile(r"^\d{1,2}[.)]?\s*")
_NUMERIC_RE = re.compile(r"^\d+$")


def _title_from_row(row: Any) -> str:
    image = row.find("img")
    title = ""
    if image is not None:
        title = image.get("alt") or image.get("title") or ""
    if not title:
        for cell in row.find_all("td"):
            text = cell.get_text(strip=True)
            if len(text) > 3 and not _NUMERIC_RE.match(text):
                title = text
                break
    return _ORDINAL_PREFIX_RE.sub("", title.strip()).strip()


def parse_top10(html: str, *, limit: int = TOP10_SIZE) -> list[RawRankEntry]:
    """Extract ``(rank, title, weeks)`` rows from a Top 10 page.

    Header rows and rows without a usable title are skipped. The rank comes
    from the first cell when it is a number from 1 to 10, otherwise it
    follows extraction order.
    """

    soup = BeautifulSoup(html, "html.parser")
    entries: list[RawRankEntry] = []
    for row in soup.select("table tr"):
        if row.find("th") is not None:
            continue
        title = _title_from_row(row)
        if len(title) < 2:
            continue
        cells = row.find_all("td")
        first = cells[0].get_text(strip=True) if cells else ""
        last = cells[-1].get_text(strip=True) if cells else ""
        rank_match = re.match(r"\d+", first)
        rank = int(rank_match.group(0)) if rank_match else 0
        if not 1 <= rank <= 10:
            rank = len(entries) + 1
        entries.append(
            RawRankEntry(
                rank=rank,
                raw_title=title,
                weeks_in_top10=last if _NUMERIC_RE.match(last) else None,
            )
        )
        if len(entries) >= limit:
            break
    return entries


class NetflixTop10Service:
    """Serve the Netflix Top 10 for the configured country."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        tmdb: TMDBClient,
        matcher: TitleMatcher,
        cache: CacheService,
    ) -> None:
        self._settings = settings
        self._client = http_client
        self._tmdb = tmdb
        self._matcher = matcher
        self._cache = cache

    @property
    def _country_code(self) -> str:
        return self._settings.netflix_country_code.lower()

    def cache_key(self, content_type: ContentType) -> str:
        category = "movies" if content_type == "movie" else "series"
        return f"netflix:{self._country_code}:{category}:top10"

    def page_url(self, content_type: ContentType) -> str:
        base = str(self._settings.netflix_top10_url).rstrip("/")
        return base if content_type == "movie" else f"{base}/tv"

    async def top10(self, content_type: ContentType) -> list[CatalogItem]:
        """Return the ranked list, or the static sample when scraping fails."""

        chain: FallbackChain[list[CatalogItem]] = FallbackChain(
            f"netflix-top10:{content_type}"
        )
        chain.then("cache", lambda: self._cached(content_type))
        chain.then("scrape", lambda: self._scrape(content_type))
        return await chain.run(self.fallback_items(content_type))

    async def _cached(self, content_type: ContentType) -> list[CatalogItem] | None:
        cached = await self._cache.get(self.cache_key(content_type))
        if cached is None:
            return None
        return [CatalogItem.model_validate(entry) for entry in cached]

    async def _scrape(self, content_type: ContentType) -> list[CatalogItem] | None:
        url = self.page_url(content_type)
        logger.info("Scraping Netflix Top 10 from %s", url)
        try:
            response = await self._client.get(
                url, headers=BROWSER_HEADERS, follow_redirects=True
            )
        except httpx.HTTPError as exc:
            logger.warning("Netflix Top 10 request failed: %s", exc)
            return None
        if response.status_code >= 400:
            logger.warning("Netflix Top 10 page returned %s", response.status_code)
            return None

        entries = parse_top10(response.text)
        if not entries:
            logger.warning("Could not parse any Netflix Top 10 rows from %s", url)
            return None

        items = [await self._reconcile(entry, content_type) for entry in entries]
        matched = sum(1 for item in items if not item.id.startswith("netflix:"))
        logger.info(
            "Reconciled %s/%s Netflix %s titles with TMDB",
            matched,
            len(items),
            content_type,
        )
        await self._cache.set(
            self.cache_key(content_type),
            [item.model_dump(mode="json") for item in items],
            self._settings.netflix_cache_ttl_ms,
        )
        return items

    async def _reconcile(
        self, entry: RawRankEntry, content_type: ContentType
    ) -> CatalogItem:
        candidate: MatchCandidate | None = None
        for index, variant in enumerate(spelling_variants(entry.raw_title)):
            if index:
                logger.info("Retrying %r as %r", entry.raw_title, variant)
            candidate = await self._matcher.match(variant, content_type=content_type)
            if candidate is not None:
                break
        if candidate is None:
            logger.info("No TMDB match for #%s %r", entry.rank, entry.raw_title)
            return self._unmatched_item(entry, content_type)
        return await self._matched_item(entry, candidate, content_type)

    def poster_url(self, content_type: ContentType, rank: int, item_id: str) -> str:
        base = self._settings.public_base_url
        return f"{base}/poster/{content_type}/{rank}/{quote(item_id, safe='')}.jpg"

    async def _matched_item(
        self,
        entry: RawRankEntry,
        candidate: MatchCandidate,
        content_type: ContentType,
    ) -> CatalogItem:
        details = (
            await self._tmdb.fetch_details(
                candidate.tmdb_id, media_type_for(content_type), append="credits"
            )
            or candidate.raw
        )
        genres = [
            genre["name"]
            for genre in details.get("genres") or []
            if isinstance(genre, dict) and genre.get("name")
        ]
        cast = [
            member["name"]
            for member in ((details.get("credits") or {}).get("cast") or [])[:10]
            if isinstance(member, dict) and member.get("name")
        ]
        vote = details.get("vote_average")
        item_id = candidate.catalog_id
        return CatalogItem(
            id=item_id,
            type=content_type,
            title=candidate.canonical_title or entry.raw_title,
            description=details.get("overview")
            or f"#{entry.rank} on Netflix {self._settings.netflix_country} Top 10",
            release_year=candidate.year,
            poster=self.poster_url(content_type, entry.rank, item_id),
            background=self._tmdb.image_url(details.get("backdrop_path"), ORIGINAL_SIZE),
            rating=float(vote) if isinstance(vote, (int, float)) and vote else None,
            genres=genres or list(DEFAULT_GENRES),
            cast=cast,
        )

    def _unmatched_item(
        self, entry: RawRankEntry, content_type: ContentType
    ) -> CatalogItem:
        weeks = entry.weeks_in_top10 or "N/A"
        return CatalogItem(
            id=f"netflix:{self._country_code}:{entry.rank}:{quote(entry.raw_title, safe='')}",
            type=content_type,
            title=entry.raw_title,
            description=(
                f"#{entry.rank} on Netflix {self._settings.netflix_country} Top 10"
                f" - {weeks} weeks in top 10"
            ),
            genres=list(DEFAULT_GENRES),
        )

    def fallback_items(self, content_type: ContentType) -> list[CatalogItem]:
        """Static sample titles shown when the page cannot be scraped."""

        titles = FALLBACK_TITLES["movie" if content_type == "movie" else "series"]
        return [
            CatalogItem(
                id=f"netflix:{self._country_code}:fallback:{rank}:{quote(title, safe='')}",
                type=content_type,
                title=title,
                description=(
                    f"#{rank} on Netflix {self._settings.netflix_country}"
                    " (Sample data - scraping unavailable)"
                ),
                poster=(
                    "https://via.placeholder.com/500x750/E50914/FFFFFF"
                    f"?text=Netflix+{rank}"
                ),
                genres=list(DEFAULT_GENRES),
            )
            for rank, title in enumerate(titles[:TOP10_SIZE], start=1)
        ]
