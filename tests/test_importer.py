"""Tests for the Netflix viewing-history import."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any

import pytest

from app.models import MatchCandidate
from app.services.importer import (
    CSVFormatError,
    NetflixImporter,
    ProgressHub,
    clean_title,
    parse_netflix_csv,
    watched_at_iso,
)
from app.services.scrobble import BulkSyncResult, SyncProgress
from app.services.title_match import BatchMatch, MatchProgress

NETFLIX_EXPORT = """Title,Date
"Dark: Season 1: Secrets","10/28/24"
"Dark: Season 1: Lies","10/27/24"
"Hanna (2011)","2024-10-20"
"The Crown: Season 2: Misadventure","3/1/2023"
"""


def test_clean_title_keeps_text_before_first_colon() -> None:
    assert clean_title("Dark: Season 1: Secrets") == "Dark"
    assert clean_title("Hanna") == "Hanna"
    assert clean_title("") == ""


def test_parse_netflix_csv_dedupes_and_extracts_years() -> None:
    entries = parse_netflix_csv(NETFLIX_EXPORT)

    assert [(e.title, e.year, e.watched_on) for e in entries] == [
        ("Dark", None, "10/28/24"),
        ("Hanna", 2011, "2024-10-20"),
        ("The Crown", 2023, "3/1/2023"),
    ]
    assert entries[0].original_title == "Dark: Season 1: Secrets"


def test_parse_netflix_csv_finds_columns_by_name() -> None:
    entries = parse_netflix_csv("Watch Date,Show Title\n2024-01-02,Wednesday\n")

    assert entries[0].title == "Wednesday"
    assert entries[0].watched_on == "2024-01-02"


@pytest.mark.parametrize("text", ["", "Date,Name\n2024-01-01,Dark\n"])
def test_parse_netflix_csv_rejects_unusable_files(text: str) -> None:
    with pytest.raises(CSVFormatError):
        parse_netflix_csv(text)


def test_watched_at_iso_formats() -> None:
    now = datetime(2025, 5, 5, tzinfo=timezone.utc)

    assert watched_at_iso("10/28/24") == "2024-10-28T00:00:00Z"
    assert watched_at_iso("2024-10-20") == "2024-10-20T00:00:00Z"
    assert watched_at_iso("someday", now=now) == "2025-05-05T00:00:00Z"


class FakeMatcher:
    def __init__(self, known: dict[str, MatchCandidate]) -> None:
        self.known = known

    async def batch_match(self, queries, progress=None) -> list[BatchMatch]:
        results = []
        for index, query in enumerate(queries, start=1):
            if progress is not None:
                progress(MatchProgress(index, len(queries), query.title))
            results.append(BatchMatch(query=query, match=self.known.get(query.title)))
        return results


class FakeScrobble:
    def __init__(self, result: BulkSyncResult) -> None:
        self.result = result
        self.items: list[Any] = []

    async def bulk_mark_as_watched(self, session_id, items, progress=None):
        self.items.extend(items)
        if progress is not None:
            progress(SyncProgress(current=len(items), total=len(items), kind="movies"))
        return self.result


def _candidate(tmdb_id: int, title: str, media_type: str, imdb: str | None) -> MatchCandidate:
    return MatchCandidate(
        tmdb_id=tmdb_id,
        canonical_title=title,
        media_type=media_type,  # type: ignore[arg-type]
        confidence=100,
        external_id=imdb,
    )


KNOWN = {
    "Dark": _candidate(1, "Dark", "series", "tt5753856"),
    "Hanna": _candidate(2, "Hanna", "movie", "tt0993842"),
    "The Crown": _candidate(3, "The Crown", "series", None),
}


async def _collect(hub: ProgressHub, session_id: str, job) -> tuple[list[dict], Any]:
    frames: list[dict] = []

    async def listen() -> None:
        async for frame in hub.stream(session_id):
            assert frame.startswith("data: ") and frame.endswith("\n\n")
            frames.append(json.loads(frame[len("data: "):]))

    listener = asyncio.create_task(listen())
    await asyncio.sleep(0)
    try:
        result = await job()
    finally:
        await asyncio.wait_for(listener, timeout=1)
    return frames, result


def test_import_reports_progress_and_syncs_matched_titles() -> None:
    hub = ProgressHub()
    scrobble = FakeScrobble(BulkSyncResult(success=True, synced=2, total=2))
    importer = NetflixImporter(FakeMatcher(KNOWN), scrobble, hub)  # type: ignore[arg-type]

    frames, result = asyncio.run(
        _collect(hub, "sid", lambda: importer.run(NETFLIX_EXPORT, "sid"))
    )

    types = [frame["type"] for frame in frames]
    assert types == [
        "connected",
        "parsing",
        "parsed",
        "matching",
        "matching",
        "matching",
        "matched",
        "syncing_start",
        "syncing",
        "complete",
    ]
    progress = [frame["progress"] for frame in frames if "progress" in frame]
    assert progress == sorted(progress)
    assert progress[-1] == 100
    assert [frame["progress"] for frame in frames if frame["type"] == "matching"] == [
        30,
        50,
        70,
    ]
    assert [item.imdb_id for item in scrobble.items] == ["tt5753856", "tt0993842"]
    assert scrobble.items[0].content_type == "series"
    assert scrobble.items[0].watched_at == "2024-10-28T00:00:00Z"
    assert result.to_payload() == {
        "success": True,
        "matched": 2,
        "synced": 2,
        "skipped": 1,
        "failed": 0,
    }


def test_import_without_matches_completes_early() -> None:
    hub = ProgressHub()
    scrobble = FakeScrobble(BulkSyncResult(success=True))
    importer = NetflixImporter(FakeMatcher({}), scrobble, hub)  # type: ignore[arg-type]

    frames, result = asyncio.run(
        _collect(hub, "sid", lambda: importer.run(NETFLIX_EXPORT, "sid"))
    )

    assert frames[-1] == {
        "type": "complete",
        "progress": 100,
        "message": "No titles could be matched",
    }
    assert scrobble.items == []
    assert result.success and result.skipped == 3


def test_import_reports_sync_failure() -> None:
    hub = ProgressHub()
    scrobble = FakeScrobble(BulkSyncResult(success=False, error="Not authenticated"))
    importer = NetflixImporter(FakeMatcher(KNOWN), scrobble, hub)  # type: ignore[arg-type]

    frames, result = asyncio.run(
        _collect(hub, "sid", lambda: importer.run(NETFLIX_EXPORT, "sid"))
    )

    assert frames[-1]["type"] == "error"
    assert result.success is False
    assert result.error == "Trakt sync failed: Not authenticated"


def test_import_with_bad_csv_sends_error_and_raises() -> None:
    hub = ProgressHub()
    importer = NetflixImporter(
        FakeMatcher({}), FakeScrobble(BulkSyncResult(success=True)), hub  # type: ignore[arg-type]
    )

    async def job() -> None:
        with pytest.raises(CSVFormatError):
            await importer.run("Date\n2024-01-01\n", "sid")

    frames, _ = asyncio.run(_collect(hub, "sid", job))

    assert [frame["type"] for frame in frames] == ["connected", "parsing", "error"]
