"""Utilities for communicating with the Trakt API."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from ..config import Settings
from ..models import TraktCredentials

logger = logging.getLogger(__name__)

OOB_REDIRECT_URI = "urn:ietf:wg:oauth:2.0:oob"


@dataclass(slots=True)
class TraktResult:
    """Listing payload plus the HTTP status it arrived with.

    ``status`` is ``None`` when the request never produced a response.
    """

    status: int | None
    items: list[dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status is not None and 200 <= self.status < 300

    @property
    def unauthorized(self) -> bool:
        return self.status == 401


@dataclass(slots=True)
class HistorySyncResult:
    status: int | None
    added: dict[str, int] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status is not None and 200 <= self.status < 300


def _kind(content_type: str) -> str:
    return "movies" if content_type == "movie" else "shows"


def _media_key(content_type: str) -> str:
    return "movie" if content_type == "movie" else "show"


def normalize_media(entries: Any, content_type: str) -> list[dict[str, Any]]:
    """Unwrap ``{"movie": {...}}`` / ``{"show": {...}}`` listing entries."""

    if not isinstance(entries, list):
        return []
    key = _media_key(content_type)
    normalized: list[dict[str, Any]] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        if isinstance(entry.get(key), dict):
            normalized.append(entry[key])
        elif entry.get("title") and entry.get("ids"):
            normalized.append(entry)
    return normalized


class TraktClient:
    """Thin wrapper around the Trakt HTTP API."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    def _headers(
        self,
        *,
        client_id: str | None = None,
        access_token: str | None = None,
    ) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "trakt-api-version": "2",
            "User-Agent": f"{self._settings.app_name} (personal-catalog)",
        }
        resolved_client_id = client_id or self._settings.trakt_client_id
        if resolved_client_id:
            headers["trakt-api-key"] = resolved_client_id
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    async def _get_listing(
        self,
        path: str,
        content_type: str,
        *,
        params: dict[str, Any],
        credentials: TraktCredentials | None = None,
    ) -> TraktResult:
        headers = self._headers(
            client_id=credentials.client_id if credentials else None,
            access_token=credentials.access_token if credentials else None,
        )
        try:
            response = await self._client.get(path, headers=headers, params=params)
        except httpx.HTTPError as exc:
            logger.warning("Trakt request %s failed: %s", path, exc)
            return TraktResult(status=None)
        if response.status_code >= 400:
            logger.warning(
                "Trakt %s returned %s: %s", path, response.status_code, response.text
            )
            return TraktResult(status=response.status_code)
        try:
            data = response.json()
        except ValueError:
            logger.warning("Unexpected non-JSON Trakt response for %s", path)
            return TraktResult(status=None)
        return TraktResult(
            status=response.status_code, items=normalize_media(data, content_type)
        )

    async def fetch_recommendations(
        self,
        content_type: str,
        *,
        credentials: TraktCredentials,
        page: int = 1,
        limit: int = 20,
    ) -> TraktResult:
        """Fetch Trakt's personalised recommendations for the linked user.

        Collected and watchlisted titles are excluded, matching what the
        Trakt website shows.
        """

        params = {
            "extended": "full",
            "limit": max(1, min(limit, 100)),
            "page": max(page, 1),
            "ignore_collected": "true",
            "ignore_watchlisted": "true",
        }
        return await self._get_listing(
            f"/recommendations/{_kind(content_type)}",
            content_type,
            params=params,
            credentials=credentials,
        )

    async def fetch_trending(
        self, content_type: str, *, page: int = 1, limit: int = 20
    ) -> TraktResult:
        """Fetch the public trending listing; no user token required."""

        params = {
            "extended": "full",
            "limit": max(1, min(limit, 100)),
            "page": max(page, 1),
        }
        return await self._get_listing(
            f"/{_kind(content_type)}/trending", content_type, params=params
        )

    async def fetch_public_list(
        self,
        username: str,
        list_slug: str,
        *,
        sort: str | None = None,
        limit: int = 50,
    ) -> TraktResult:
        """Fetch the movies on a public user list."""

        params: dict[str, Any] = {"limit": max(1, min(limit, 100))}
        if sort:
            params["sort"] = sort
        return await self._get_listing(
            f"/users/{username}/lists/{list_slug}/items/movie",
            "movie",
            params=params,
        )

    async def fetch_user(self, credentials: TraktCredentials) -> dict[str, Any]:
        """Return the authenticated user's profile information."""

        try:
            response = await self._client.get(
                "/users/me",
                headers=self._headers(
                    client_id=credentials.client_id,
                    access_token=credentials.access_token,
                ),
            )
        except httpx.HTTPError as exc:
            logger.warning("Failed to fetch Trakt user profile: %s", exc)
            return {}
        if response.status_code >= 400:
            logger.warning("Failed to fetch Trakt user profile: %s", response.text)
            return {}
        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            logger.warning("Unexpected Trakt user profile structure")
            return {}
        return data

    async def add_to_history(
        self, payload: dict[str, Any], credentials: TraktCredentials
    ) -> HistorySyncResult:
        """Post watched entries to ``/sync/history``."""

        try:
            response = await self._client.post(
                "/sync/history",
                json=payload,
                headers=self._headers(
                    client_id=credentials.client_id,
                    access_token=credentials.access_token,
                ),
            )
        except httpx.HTTPError as exc:
            logger.warning("Trakt history sync failed: %s", exc)
            return HistorySyncResult(status=None)
        if response.status_code >= 400:
            logger.warning(
                "Trakt history sync returned %s: %s",
                response.status_code,
                response.text,
            )
            return HistorySyncResult(status=response.status_code)
        try:
            data = response.json()
        except ValueError:
            data = {}
        added = data.get("added") if isinstance(data, dict) else None
        counts = {
            key: int(value)
            for key, value in (added or {}).items()
            if isinstance(value, int)
        }
        return HistorySyncResult(status=response.status_code, added=counts)

    async def exchange_code(
        self,
        code: str,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
    ) -> httpx.Response:
        """Exchange an authorisation code; network errors propagate."""

        return await self._post_oauth(
            {
                "code": code,
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            }
        )

    async def refresh_token(
        self,
        refresh_token: str,
        *,
        client_id: str,
        client_secret: str | None,
        redirect_uri: str | None = None,
    ) -> dict[str, Any] | None:
        """Trade a refresh token for a new token pair, or ``None`` on failure."""

        payload = {
            "refresh_token": refresh_token,
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": redirect_uri or OOB_REDIRECT_URI,
            "grant_type": "refresh_token",
        }
        try:
            response = await self._post_oauth(payload)
        except httpx.HTTPError as exc:
            logger.warning("Trakt token refresh failed: %s", exc)
            return None
        if response.status_code >= 400:
            logger.warning(
                "Trakt token refresh returned %s: %s",
                response.status_code,
                response.text,
            )
            return None
        try:
            data = response.json()
        except ValueError:
            return None
        if not isinstance(data, dict) or not data.get("access_token"):
            return None
        return data

    async def _post_oauth(self, payload: dict[str, Any]) -> httpx.Response:
        client_id = payload.get("client_id")
        headers = self._headers(
            client_id=client_id if isinstance(client_id, str) else None
        )
        return await self._client.post("/oauth/token", json=payload, headers=headers)
