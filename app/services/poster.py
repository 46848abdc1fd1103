"""Rank-badge poster compositing for the Netflix Top 10 catalogs."""

from __future__ import annotations

import base64
import binascii
import logging
from io import BytesIO

import httpx
from PIL import Image, ImageDraw, ImageFont, UnidentifiedImageError

from ..cache import CacheService
from ..config import Settings
from ..models import CONTENT_TYPES
from .tmdb import TMDBClient

logger = logging.getLogger(__name__)

NETFLIX_RED = (229, 9, 20)
BADGE_MAX_SIZE = 160
BADGE_WIDTH_RATIO = 0.30
BADGE_PADDING_RATIO = 0.03
BADGE_CORNER_RADIUS = 8
JPEG_QUALITY = 90
MIN_RANK = 1
MAX_RANK = 10


def render_badge(rank: int, size: int) -> Image.Image:
    """Draw a red rounded square with the rank centred in white."""

    badge = Image.new("RGBA", (size, size), (0, 0, 0, 0))
    draw = ImageDraw.Draw(badge)
    draw.rounded_rectangle(
        (0, 0, size - 1, size - 1), radius=BADGE_CORNER_RADIUS, fill=NETFLIX_RED
    )
    label = str(rank)
    font_size = int(size * (0.7 if len(label) == 1 else 0.5))
    font = ImageFont.load_default(size=max(font_size, 8))
    left, top, right, bottom = draw.textbbox((0, 0), label, font=font)
    x = (size - (right - left)) / 2 - left
    y = (size - (bottom - top)) / 2 - top
    draw.text((x, y), label, font=font, fill="white")
    return badge


def add_badge(image_bytes: bytes, rank: int) -> bytes:
    """Overlay the rank badge in the top-left corner and re-encode as JPEG."""

    with Image.open(BytesIO(image_bytes)) as source:
        poster = source.convert("RGB")
    width = poster.width
    size = max(1, min(int(width * BADGE_WIDTH_RATIO), BADGE_MAX_SIZE))
    padding = int(width * BADGE_PADDING_RATIO)
    badge = render_badge(rank, size)
    poster.paste(badge, (padding, padding), badge)

    output = BytesIO()
    poster.save(output, format="JPEG", quality=JPEG_QUALITY)
    return output.getvalue()


def validate_poster_request(content_type: str, rank: int) -> None:
    if content_type not in CONTENT_TYPES:
        raise ValueError(f"Unsupported content type: {content_type}")
    if not MIN_RANK <= rank <= MAX_RANK:
        raise ValueError(f"Rank must be between {MIN_RANK} and {MAX_RANK}")


class PosterService:
    """Resolve, badge and cache posters for ranked catalog items."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        tmdb: TMDBClient,
        cache: CacheService,
    ) -> None:
        self._settings = settings
        self._client = http_client
        self._tmdb = tmdb
        self._cache = cache

    @staticmethod
    def cache_key(content_type: str, rank: int, item_id: str) -> str:
        return f"poster:{content_type}:{rank}:{item_id}"

    async def get_poster(self, content_type: str, rank: int, item_id: str) -> bytes:
        """Return JPEG bytes for the badged poster.

        Raises ``ValueError`` for an unsupported type or rank and
        ``LookupError`` when no source poster can be found.
        """

        validate_poster_request(content_type, rank)
        key = self.cache_key(content_type, rank, item_id)
        cached = await self._cache.get(key)
        if isinstance(cached, str):
            try:
                return base64.b64decode(cached)
            except (binascii.Error, ValueError):
                logger.warning("Discarding corrupt cached poster %s", key)

        source_url = await self._tmdb.resolve_poster_url(item_id, content_type)
        if not source_url:
            raise LookupError(f"No poster found for {item_id}")
        source = await self._download(source_url)
        try:
            rendered = add_badge(source, rank)
        except (UnidentifiedImageError, OSError) as exc:
            logger.warning("Could not decode poster %s: %s", source_url, exc)
            raise LookupError(f"Poster for {item_id} is not a readable image") from exc

        await self._cache.set(
            key,
            base64.b64encode(rendered).decode("ascii"),
            self._settings.poster_cache_ttl_ms,
        )
        logger.info("Rendered rank %s badge for %s", rank, item_id)
        return rendered

    async def _download(self, url: str) -> bytes:
        try:
            response = await self._client.get(url, follow_redirects=True)
        except httpx.HTTPError as exc:
            logger.warning("Poster download failed for %s: %s", url, exc)
            raise LookupError(f"Poster download failed: {url}") from exc
        if response.status_code >= 400:
            logger.warning("Poster download for %s returned %s", url, response.status_code)
            raise LookupError(f"Poster download failed: {url}")
        return response.content
