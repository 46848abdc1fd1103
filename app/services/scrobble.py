"""Mark titles as watched on Trakt when Stremio opens them."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Sequence

from ..utils import coerce_int
from .sessions import SessionStore
from .trakt import TraktClient

logger = logging.getLogger(__name__)

BATCH_SIZE = 100
BATCH_DELAY_SECONDS = 0.5


@dataclass(slots=True, frozen=True)
class StremioId:
    imdb_id: str | None
    season: int | None = None
    episode: int | None = None


def parse_stremio_id(value: str | None) -> StremioId:
    """Split ``tt123`` or ``tt123:1:2`` into IMDb id, season and episode."""

    if not value:
        return StremioId(imdb_id=None)
    parts = value.split(":")
    return StremioId(
        imdb_id=parts[0] or None,
        season=coerce_int(parts[1]) if len(parts) > 1 and parts[1] else None,
        episode=coerce_int(parts[2]) if len(parts) > 2 and parts[2] else None,
    )


@dataclass(slots=True)
class WatchedItem:
    imdb_id: str
    content_type: str
    watched_at: str | None = None


@dataclass(slots=True)
class SyncProgress:
    current: int
    total: int
    kind: str


@dataclass(slots=True)
class BulkSyncResult:
    success: bool
    synced: int = 0
    failed: int = 0
    total: int = 0
    error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "synced": self.synced,
            "failed": self.failed,
            "total": self.total,
        }
        if self.error:
            payload["error"] = self.error
        return payload


def _utc_iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class ScrobbleService:
    """Post watch history to Trakt on behalf of a linked session."""

    def __init__(
        self,
        trakt: TraktClient,
        sessions: SessionStore,
        *,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._trakt = trakt
        self._sessions = sessions
        self._now = now
        self._sleep = sleep
        self._tasks: set[asyncio.Task[bool]] = set()

    def build_payload(
        self, stremio_id: StremioId, content_type: str
    ) -> dict[str, Any] | None:
        if not stremio_id.imdb_id:
            return None
        watched_at = _utc_iso(self._now())
        if content_type == "movie":
            return {
                "movies": [
                    {"ids": {"imdb": stremio_id.imdb_id}, "watched_at": watched_at}
                ]
            }
        if content_type == "series":
            if stremio_id.season is None or stremio_id.episode is None:
                logger.warning(
                    "Season and episode are required to sync %s, skipping",
                    stremio_id.imdb_id,
                )
                return None
            return {
                "shows": [
                    {
                        "ids": {"imdb": stremio_id.imdb_id},
                        "seasons": [
                            {
                                "number": stremio_id.season,
                                "episodes": [
                                    {
                                        "number": stremio_id.episode,
                                        "watched_at": watched_at,
                                    }
                                ],
                            }
                        ],
                    }
                ]
            }
        logger.warning("Unknown content type %s, skipping sync", content_type)
        return None

    async def mark_as_watched(
        self, session_id: str | None, stremio_id: str, content_type: str
    ) -> bool:
        """Add one movie or episode to the session's Trakt history."""

        if not session_id:
            return False
        payload = self.build_payload(parse_stremio_id(stremio_id), content_type)
        if payload is None:
            return False
        credentials = await self._sessions.get_credentials(session_id)
        if credentials is None:
            logger.info("Session %s is not authenticated, skipping sync", session_id)
            return False

        result = await self._trakt.add_to_history(payload, credentials)
        if result.status == 403:
            logger.error(
                "Trakt refused the history sync (403). Enable the scrobble "
                "permission on your Trakt application and sign in again."
            )
        if not result.ok:
            return False
        logger.info("Marked %s (%s) as watched on Trakt", stremio_id, content_type)
        return True

    def schedule_mark_as_watched(
        self, session_id: str | None, stremio_id: str, content_type: str
    ) -> asyncio.Task[bool] | None:
        """Sync in the background; the caller never awaits the outcome."""

        if not session_id or not parse_stremio_id(stremio_id).imdb_id:
            return None

        async def _runner() -> bool:
            try:
                return await self.mark_as_watched(session_id, stremio_id, content_type)
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Background scrobble of %s failed: %s", stremio_id, exc)
                return False

        task = asyncio.create_task(_runner())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for outstanding background syncs; used on shutdown."""

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def bulk_mark_as_watched(
        self,
        session_id: str | None,
        items: Sequence[WatchedItem],
        progress: Callable[[SyncProgress], None] | None = None,
    ) -> BulkSyncResult:
        """Sync many titles in batches of 100 with a short pause between them."""

        if not session_id:
            return BulkSyncResult(success=False, error="No session ID provided")
        credentials = await self._sessions.get_credentials(session_id)
        if credentials is None:
            return BulkSyncResult(success=False, error="Not authenticated")

        movies: list[dict[str, Any]] = []
        shows: list[dict[str, Any]] = []
        for item in items:
            entry: dict[str, Any] = {"ids": {"imdb": item.imdb_id}}
            if item.watched_at:
                entry["watched_at"] = item.watched_at
            if item.content_type == "movie":
                movies.append(entry)
            elif item.content_type == "series":
                shows.append(entry)

        total = len(movies) + len(shows)
        result = BulkSyncResult(success=True, total=len(items))
        done = 0
        for kind, entries in (("movies", movies), ("shows", shows)):
            for start in range(0, len(entries), BATCH_SIZE):
                batch = entries[start : start + BATCH_SIZE]
                done += len(batch)
                if progress is not None:
                    progress(SyncProgress(current=done, total=total, kind=kind))
                sync = await self._trakt.add_to_history({kind: batch}, credentials)
                if sync.ok:
                    result.synced += (
                        sync.added.get("movies", 0) if kind == "movies" else len(batch)
                    )
                else:
                    result.failed += len(batch)
                if start + BATCH_SIZE < len(entries):
                    await self._sleep(BATCH_DELAY_SECONDS)

        logger.info(
            "Bulk sync for session %s: %s synced, %s failed of %s",
            session_id,
            result.synced,
            result.failed,
            result.total,
        )
        return result
