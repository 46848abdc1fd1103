"""Import a Netflix viewing-history export into Trakt."""

from __future__ import annotations

import asyncio
import csv
import io
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable

from .scrobble import ScrobbleService, SyncProgress, WatchedItem
from .title_match import MatchProgress, TitleMatcher, TitleQuery

logger = logging.getLogger(__name__)

_TITLE_YEAR_RE = re.compile(r"\((\d{4})\)")
_DATE_YEAR_RE = re.compile(r"\d{4}")
_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%y", "%m/%d/%Y", "%d.%m.%Y")


class CSVFormatError(ValueError):
    """Raised when an uploaded viewing history cannot be read."""


@dataclass(slots=True)
class HistoryEntry:
    title: str
    original_title: str
    watched_on: str | None = None
    year: int | None = None


@dataclass(slots=True)
class ImportResult:
    success: bool
    matched: int = 0
    synced: int = 0
    skipped: int = 0
    failed: int = 0
    error: str | None = None
    message: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "matched": self.matched,
            "synced": self.synced,
            "skipped": self.skipped,
            "failed": self.failed,
        }
        if self.error:
            payload["error"] = self.error
        if self.message:
            payload["message"] = self.message
        return payload


def clean_title(title: str) -> str:
    """Drop season and episode details: ``"Dark: Season 1: Secrets"`` → ``"Dark"``."""

    return title.split(":", 1)[0].strip() if title else ""


def parse_netflix_csv(text: str) -> list[HistoryEntry]:
    """Parse the ``Title,Date`` export into unique titles, first watch kept."""

    rows = [row for row in csv.reader(io.StringIO(text.strip())) if any(row)]
    if not rows:
        raise CSVFormatError("CSV file is empty")
    header = [column.strip().lower() for column in rows[0]]
    title_index = next((i for i, name in enumerate(header) if "title" in name), None)
    date_index = next((i for i, name in enumerate(header) if "date" in name), None)
    if title_index is None:
        raise CSVFormatError('CSV must contain a "Title" column')

    entries: list[HistoryEntry] = []
    seen: set[str] = set()
    for row in rows[1:]:
        if len(row) <= title_index:
            continue
        raw_title = row[title_index].strip()
        if not raw_title:
            continue
        cleaned = clean_title(raw_title)
        if not cleaned or cleaned.lower() in seen:
            continue
        seen.add(cleaned.lower())

        watched_on = (
            row[date_index].strip()
            if date_index is not None and len(row) > date_index
            else None
        )
        year = None
        title_year = _TITLE_YEAR_RE.search(cleaned)
        if title_year:
            year = int(title_year.group(1))
        elif watched_on:
            date_year = _DATE_YEAR_RE.search(watched_on)
            if date_year:
                year = int(date_year.group(0))
        entries.append(
            HistoryEntry(
                title=_TITLE_YEAR_RE.sub("", cleaned).strip(),
                original_title=raw_title,
                watched_on=watched_on or None,
                year=year,
            )
        )
    return entries


def watched_at_iso(value: str | None, *, now: datetime | None = None) -> str:
    moment = None
    if value:
        for fmt in _DATE_FORMATS:
            try:
                moment = datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)
                break
            except ValueError:
                continue
    if moment is None:
        moment = now or datetime.now(timezone.utc)
    return moment.isoformat().replace("+00:00", "Z")


class ProgressHub:
    """Fan import progress out to server-sent event listeners per session."""

    def __init__(self) -> None:
        self._queues: dict[str, asyncio.Queue[dict[str, Any] | None]] = {}

    def subscribe(self, session_id: str) -> asyncio.Queue[dict[str, Any] | None]:
        queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self._queues[session_id] = queue
        return queue

    def unsubscribe(self, session_id: str) -> None:
        self._queues.pop(session_id, None)

    def publish(self, session_id: str, event: dict[str, Any]) -> None:
        queue = self._queues.get(session_id)
        if queue is not None:
            queue.put_nowait(event)

    def close(self, session_id: str) -> None:
        queue = self._queues.pop(session_id, None)
        if queue is not None:
            queue.put_nowait(None)

    async def stream(self, session_id: str) -> AsyncIterator[str]:
        """Yield SSE frames until the import for ``session_id`` finishes."""

        queue = self.subscribe(session_id)
        try:
            yield _sse({"type": "connected"})
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield _sse(event)
        finally:
            if self._queues.get(session_id) is queue:
                self.unsubscribe(session_id)


def _sse(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event)}\n\n"


class NetflixImporter:
    """Parse, match and sync a viewing history, reporting progress as it goes."""

    def __init__(
        self,
        matcher: TitleMatcher,
        scrobble: ScrobbleService,
        hub: ProgressHub,
    ) -> None:
        self._matcher = matcher
        self._scrobble = scrobble
        self._hub = hub

    async def run(self, csv_text: str, session_id: str) -> ImportResult:
        def send(event: dict[str, Any]) -> None:
            self._hub.publish(session_id, event)

        try:
            return await self._run(csv_text, session_id, send)
        finally:
            self._hub.close(session_id)

    async def _run(
        self,
        csv_text: str,
        session_id: str,
        send: Callable[[dict[str, Any]], None],
    ) -> ImportResult:
        send({"type": "parsing", "progress": 5, "message": "Parsing CSV file..."})
        try:
            entries = parse_netflix_csv(csv_text)
        except CSVFormatError as exc:
            send({"type": "error", "message": f"CSV parsing failed: {exc}"})
            raise
        send(
            {
                "type": "parsed",
                "progress": 10,
                "message": f"Found {len(entries)} unique titles",
                "total": len(entries),
            }
        )

        def on_match(progress: MatchProgress) -> None:
            send(
                {
                    "type": "matching",
                    "progress": 10 + progress.current * 60 // max(progress.total, 1),
                    "message": f"Matching titles: {progress.current}/{progress.total}",
                    "current": progress.current,
                    "total": progress.total,
                    "title": progress.title,
                }
            )

        matches = await self._matcher.batch_match(
            [TitleQuery(entry.title, entry.year) for entry in entries], on_match
        )
        matched = [
            (entry, result.match)
            for entry, result in zip(entries, matches)
            if result.match is not None and result.match.external_id
        ]
        skipped = len(entries) - len(matched)
        send(
            {
                "type": "matched",
                "progress": 70,
                "message": f"Matched {len(matched)} titles",
                "matched": len(matched),
                "skipped": skipped,
            }
        )
        if not matched:
            send({"type": "complete", "progress": 100, "message": "No titles could be matched"})
            return ImportResult(
                success=True, skipped=len(entries), message="No titles could be matched"
            )

        items = [
            WatchedItem(
                imdb_id=match.external_id or "",
                content_type=match.media_type,
                watched_at=watched_at_iso(entry.watched_on),
            )
            for entry, match in matched
        ]
        send({"type": "syncing_start", "progress": 75, "message": "Starting Trakt sync..."})

        def on_sync(progress: SyncProgress) -> None:
            send(
                {
                    "type": "syncing",
                    "progress": 75 + progress.current * 20 // max(progress.total, 1),
                    "message": f"Syncing to Trakt: {progress.current}/{progress.total}",
                    "current": progress.current,
                    "total": progress.total,
                }
            )

        sync = await self._scrobble.bulk_mark_as_watched(session_id, items, on_sync)
        if not sync.success:
            send({"type": "error", "message": f"Trakt sync failed: {sync.error}"})
            return ImportResult(
                success=False,
                matched=len(matched),
                skipped=skipped,
                error=f"Trakt sync failed: {sync.error}",
            )

        send({"type": "complete", "progress": 100, "message": "Import complete!"})
        logger.info(
            "Netflix import for session %s: %s matched, %s synced, %s skipped",
            session_id,
            len(matched),
            sync.synced,
            skipped,
        )
        return ImportResult(
            success=True,
            matched=len(matched),
            synced=sync.synced,
            skipped=skipped,
            failed=sync.failed,
        )
