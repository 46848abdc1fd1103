"""Utility helpers for the catalog service."""

from __future__ import annotations

import asyncio
import re
import time
import unicodedata
from typing import Any, Awaitable, Callable


YEAR_RE = re.compile(r"(19|20|21)\d{2}")

TRANSLITERATIONS: dict[str, str] = {
    "å": "aa", "Å": "Aa",
    "ä": "ae", "Ä": "Ae",
    "ö": "oe", "Ö": "Oe",
    "ü": "ue", "Ü": "Ue",
    "é": "e", "è": "e", "ê": "e", "ë": "e",
    "á": "a", "à": "a", "â": "a", "ã": "a",
    "í": "i", "ì": "i", "î": "i", "ï": "i",
    "ó": "o", "ò": "o", "ô": "o", "õ": "o",
    "ú": "u", "ù": "u", "û": "u",
    "ñ": "n", "ç": "c", "ß": "ss",
}


def transliterate(text: str) -> str:
    """Spell Nordic and accented characters out in ASCII (ö → oe, å → aa)."""

    return "".join(TRANSLITERATIONS.get(char, char) for char in text)


def strip_diacritics(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(char for char in decomposed if not unicodedata.combining(char))


def spelling_variants(title: str) -> list[str]:
    """Return search spellings for a scraped title, most literal first.

    The order is: the whitespace-collapsed original, the transliterated
    form and the form with combining marks removed. Duplicates are dropped
    while keeping the first occurrence.
    """

    clean = " ".join(title.split())
    variants: list[str] = []
    for candidate in (clean, transliterate(clean), strip_diacritics(clean)):
        if candidate and candidate not in variants:
            variants.append(candidate)
    return variants


def parse_year(value: Any) -> int | None:
    """Extract a plausible release year from an int or date-like string."""

    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if 1800 <= value <= 2200 else None
    if not value:
        return None
    match = YEAR_RE.search(str(value))
    if not match:
        return None
    return int(match.group(0))


def coerce_int(value: Any, *, default: int | None = None) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def page_for_skip(skip: int, page_size: int = 20) -> int:
    """Translate a Stremio ``skip`` offset into a 1-indexed upstream page."""

    return max(skip, 0) // page_size + 1


class RequestPacer:
    """Enforce a minimum delay between consecutive upstream calls.

    The first call goes through immediately; every later call waits until
    ``interval_ms`` has elapsed since the previous one started.
    """

    def __init__(
        self,
        interval_ms: int,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._interval = max(interval_ms, 0) / 1000
        self._clock = clock
        self._sleep = sleep
        self._last: float | None = None
        self._lock = asyncio.Lock()

    async def wait(self) -> None:
        async with self._lock:
            if self._last is not None and self._interval > 0:
                remaining = self._interval - (self._clock() - self._last)
                if remaining > 0:
                    await self._sleep(remaining)
            self._last = self._clock()
