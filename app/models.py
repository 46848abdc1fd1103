"""Pydantic models and value objects describing catalog payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

ContentType = Literal["movie", "series"]
CONTENT_TYPES: tuple[str, ...] = ("movie", "series")


class CatalogItem(BaseModel):
    """Represents a single media entry returned to Stremio."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    type: ContentType
    title: str = Field(
        validation_alias=AliasChoices("title", "name"),
        serialization_alias="name",
    )
    description: str = ""
    release_year: int | None = Field(
        default=None, validation_alias=AliasChoices("release_year", "releaseYear")
    )
    poster: str | None = None
    background: str | None = None
    rating: float | None = None
    genres: list[str] = Field(default_factory=list)
    cast: list[str] = Field(default_factory=list)

    def to_meta(self) -> dict[str, Any]:
        """Return a Stremio-compatible meta preview object."""

        meta: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "name": self.title,
            "description": self.description,
            "releaseInfo": str(self.release_year) if self.release_year else "",
        }
        if self.poster:
            meta["poster"] = self.poster
        if self.background:
            meta["background"] = self.background
        if self.rating is not None:
            meta["imdbRating"] = f"{self.rating:.1f}"
        if self.genres:
            meta["genres"] = list(self.genres)
        if self.cast:
            meta["cast"] = list(self.cast)
        return meta


@dataclass(slots=True)
class RawRankEntry:
    """A row scraped from a Top-10 page before reconciliation."""

    rank: int
    raw_title: str
    weeks_in_top10: str | None = None


@dataclass(slots=True)
class MatchCandidate:
    """The top search result for a free-text title, with its confidence."""

    tmdb_id: int
    canonical_title: str
    media_type: ContentType
    confidence: int
    external_id: str | None = None
    year: int | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def catalog_id(self) -> str:
        return self.external_id or f"tmdb:{self.tmdb_id}"


class TokenStatus(str, Enum):
    """Lifecycle of the OAuth credentials attached to a session."""

    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    EXPIRING = "expiring"
    INVALID = "invalid"


@dataclass(slots=True)
class TokenRecord:
    access_token: str
    refresh_token: str | None
    expires_at: datetime
    client_id: str
    client_secret: str | None = None


@dataclass(slots=True)
class Session:
    """An opaque session linked to a Trakt account."""

    session_id: str
    created_at: datetime
    expires_at: datetime
    username: str | None = None
    token: TokenRecord | None = None
    invalid: bool = False


@dataclass(slots=True)
class TraktCredentials:
    """Resolved credentials used to authenticate a Trakt request."""

    client_id: str
    access_token: str
