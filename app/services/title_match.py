"""Match free-text titles to TMDB records and score the match."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, Sequence

from ..models import MatchCandidate
from ..utils import RequestPacer
from .tmdb import TMDBClient, content_type_for, extract_year

logger = logging.getLogger(__name__)

TITLE_EXACT_POINTS = 70
TITLE_CONTAINS_POINTS = 50
TITLE_RATIO_POINTS = 40
YEAR_EXACT_POINTS = 30
YEAR_NEAR_POINTS = 20
YEAR_CLOSE_POINTS = 10
YEAR_UNKNOWN_POINTS = 15


def confidence_score(
    search_title: str,
    found_title: str | None,
    search_year: int | None,
    found_year: int | None,
) -> int:
    """Score how well a found record matches a searched title, 0 to 100."""

    score = 0
    wanted = search_title.strip().lower()
    found = (found_title or "").strip().lower()

    if wanted == found:
        score += TITLE_EXACT_POINTS
    elif wanted in found or found in wanted:
        score += TITLE_CONTAINS_POINTS
    else:
        longer, shorter = (wanted, found) if len(wanted) > len(found) else (found, wanted)
        if longer:
            score += math.floor(len(shorter) / len(longer) * TITLE_RATIO_POINTS)

    if search_year and found_year:
        delta = abs(search_year - found_year)
        if delta == 0:
            score += YEAR_EXACT_POINTS
        elif delta <= 1:
            score += YEAR_NEAR_POINTS
        elif delta <= 2:
            score += YEAR_CLOSE_POINTS
    else:
        score += YEAR_UNKNOWN_POINTS

    return max(0, min(score, 100))


@dataclass(slots=True)
class TitleQuery:
    title: str
    year: int | None = None


@dataclass(slots=True)
class BatchMatch:
    query: TitleQuery
    match: MatchCandidate | None


@dataclass(slots=True)
class MatchProgress:
    current: int
    total: int
    title: str


class TitleMatcher:
    """Resolve a title to the top TMDB search hit.

    Only the first search result is scored and returned; the candidate
    set is never re-ranked by confidence.
    """

    def __init__(self, tmdb: TMDBClient, *, pacer: RequestPacer | None = None):
        self._tmdb = tmdb
        self._pacer = pacer

    async def match(
        self,
        title: str,
        *,
        year: int | None = None,
        content_type: str | None = None,
    ) -> MatchCandidate | None:
        """Return the top search result for ``title`` or ``None``.

        Without ``content_type`` the multi search is used and people are
        skipped over.
        """

        title = title.strip()
        if not title:
            return None
        media_type = {"movie": "movie", "series": "tv"}.get(content_type or "", "multi")

        if self._pacer is not None:
            await self._pacer.wait()
        results = await self._tmdb.search(title, media_type, year=year)
        if not results:
            return None

        if media_type == "multi":
            results = [r for r in results if r.get("media_type") in {"movie", "tv"}]
            if not results:
                return None
            top = results[0]
            top_media = top["media_type"]
        else:
            top = results[0]
            top_media = media_type

        tmdb_id = top.get("id")
        if tmdb_id is None:
            return None
        resolved_type = content_type_for(top_media)
        found_title = top.get("title") or top.get("name") or title
        found_year = extract_year(top)
        external_id = await self._tmdb.fetch_imdb_id(tmdb_id, resolved_type)

        candidate = MatchCandidate(
            tmdb_id=int(tmdb_id),
            canonical_title=found_title,
            media_type=resolved_type,
            confidence=confidence_score(title, found_title, year, found_year),
            external_id=external_id,
            year=found_year,
            raw=top,
        )
        logger.debug(
            "Matched %r to %s (%s) with confidence %s",
            title,
            candidate.canonical_title,
            candidate.catalog_id,
            candidate.confidence,
        )
        return candidate

    async def batch_match(
        self,
        queries: Sequence[TitleQuery],
        progress: Callable[[MatchProgress], None] | None = None,
    ) -> list[BatchMatch]:
        """Match titles one after another, respecting the search pacing."""

        results: list[BatchMatch] = []
        total = len(queries)
        for index, query in enumerate(queries, start=1):
            if progress is not None:
                progress(MatchProgress(current=index, total=total, title=query.title))
            match = await self.match(query.title, year=query.year)
            results.append(BatchMatch(query=query, match=match))
        return results
