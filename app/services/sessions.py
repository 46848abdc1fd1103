"""Persistent Trakt sessions and lazy OAuth token refresh."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import TraktSession
from ..models import Session, TokenRecord, TokenStatus, TraktCredentials
from ..utils import coerce_int
from .trakt import TraktClient

logger = logging.getLogger(__name__)

REFRESH_MARGIN = timedelta(hours=1)
DEFAULT_TOKEN_LIFETIME = timedelta(hours=24)


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what SQLite hands back."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def is_session_id(value: str | None) -> bool:
    if not value:
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def token_from_response(
    data: dict[str, Any],
    *,
    client_id: str,
    client_secret: str | None,
    now: datetime,
) -> TokenRecord | None:
    """Build a :class:`TokenRecord` from a Trakt ``/oauth/token`` reply."""

    access_token = data.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        return None
    expires_in = coerce_int(data.get("expires_in"))
    lifetime = (
        timedelta(seconds=expires_in) if expires_in else DEFAULT_TOKEN_LIFETIME
    )
    refresh_token = data.get("refresh_token")
    return TokenRecord(
        access_token=access_token,
        refresh_token=refresh_token if isinstance(refresh_token, str) else None,
        expires_at=now + lifetime,
        client_id=client_id,
        client_secret=client_secret,
    )


def _to_session(row: TraktSession) -> Session:
    token = None
    if row.access_token and row.token_expires_at is not None:
        token = TokenRecord(
            access_token=row.access_token,
            refresh_token=row.refresh_token,
            expires_at=row.token_expires_at,
            client_id=row.client_id,
            client_secret=row.client_secret,
        )
    return Session(
        session_id=row.id,
        created_at=row.created_at,
        expires_at=row.expires_at,
        username=row.username,
        token=token,
        invalid=row.invalid,
    )


class SessionStore:
    """Store linking opaque session ids to Trakt OAuth tokens.

    Sessions live in the ``trakt_sessions`` table and expire after
    ``session_ttl``; an expired session reads as absent and is removed on
    that read. Tokens are refreshed lazily: the first credential lookup
    that finds less than an hour left trades the refresh token for a new
    pair. A failed refresh marks the session invalid.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        trakt: TraktClient,
        *,
        session_ttl: timedelta = timedelta(days=90),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._trakt = trakt
        self._session_ttl = session_ttl
        self._clock = clock
        self._refresh_locks: dict[str, asyncio.Lock] = {}

    async def create_session(
        self, token: TokenRecord, *, username: str | None = None
    ) -> Session:
        now = self._clock()
        row = TraktSession(
            id=str(uuid.uuid4()),
            username=username,
            client_id=token.client_id,
            client_secret=token.client_secret,
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            token_expires_at=token.expires_at,
            invalid=False,
            created_at=now,
            expires_at=now + self._session_ttl,
            updated_at=now,
        )
        async with self._session_factory() as db:
            db.add(row)
            await db.commit()
        logger.info("Created session %s for Trakt user %s", row.id, username)
        return _to_session(row)

    async def get_session(self, session_id: str) -> Session | None:
        if not is_session_id(session_id):
            return None
        async with self._session_factory() as db:
            row = await db.get(TraktSession, session_id)
            if row is None:
                return None
            if row.expires_at <= self._clock():
                logger.info("Session %s expired, removing it", session_id)
                await db.delete(row)
                await db.commit()
                return None
            return _to_session(row)

    async def delete_session(self, session_id: str) -> bool:
        if not is_session_id(session_id):
            return False
        async with self._session_factory() as db:
            row = await db.get(TraktSession, session_id)
            if row is None:
                return False
            await db.delete(row)
            await db.commit()
        self._refresh_locks.pop(session_id, None)
        logger.info("Deleted session %s", session_id)
        return True

    async def token_status(self, session_id: str | None) -> TokenStatus:
        session = await self.get_session(session_id) if session_id else None
        return self._status_of(session)

    def _status_of(self, session: Session | None) -> TokenStatus:
        if session is None or session.token is None:
            return TokenStatus.UNAUTHENTICATED
        if session.invalid:
            return TokenStatus.INVALID
        if session.token.expires_at - self._clock() < REFRESH_MARGIN:
            return TokenStatus.EXPIRING
        return TokenStatus.AUTHENTICATED

    async def get_access_token(self, session_id: str | None) -> str | None:
        credentials = await self.get_credentials(session_id)
        return credentials.access_token if credentials else None

    async def get_credentials(
        self, session_id: str | None
    ) -> TraktCredentials | None:
        """Return usable credentials, refreshing an expiring token first."""

        if not session_id:
            return None
        session = await self.get_session(session_id)
        status = self._status_of(session)
        if status is TokenStatus.EXPIRING:
            async with self._refresh_locks.setdefault(session_id, asyncio.Lock()):
                # Another lookup may have refreshed while we waited.
                session = await self.get_session(session_id)
                status = self._status_of(session)
                if status is TokenStatus.EXPIRING:
                    assert session is not None and session.token is not None
                    refreshed = await self._refresh(session_id, session.token)
                    if refreshed is None:
                        return None
                    return TraktCredentials(
                        client_id=refreshed.client_id,
                        access_token=refreshed.access_token,
                    )
        if status in {TokenStatus.UNAUTHENTICATED, TokenStatus.INVALID}:
            return None
        assert session is not None and session.token is not None
        token = session.token
        return TraktCredentials(client_id=token.client_id, access_token=token.access_token)

    async def mark_invalid(self, session_id: str) -> None:
        async with self._session_factory() as db:
            row = await db.get(TraktSession, session_id)
            if row is None:
                return
            row.invalid = True
            row.updated_at = self._clock()
            await db.commit()
        logger.warning("Session %s marked invalid", session_id)

    async def _refresh(self, session_id: str, token: TokenRecord) -> TokenRecord | None:
        if not token.refresh_token:
            logger.warning("Session %s has no refresh token", session_id)
            await self.mark_invalid(session_id)
            return None
        logger.info("Refreshing Trakt token for session %s", session_id)
        data = await self._trakt.refresh_token(
            token.refresh_token,
            client_id=token.client_id,
            client_secret=token.client_secret,
        )
        now = self._clock()
        refreshed = (
            token_from_response(
                data,
                client_id=token.client_id,
                client_secret=token.client_secret,
                now=now,
            )
            if data
            else None
        )
        if refreshed is None:
            await self.mark_invalid(session_id)
            return None
        if refreshed.refresh_token is None:
            refreshed.refresh_token = token.refresh_token

        async with self._session_factory() as db:
            row = await db.get(TraktSession, session_id)
            if row is None:
                return None
            row.access_token = refreshed.access_token
            row.refresh_token = refreshed.refresh_token
            row.token_expires_at = refreshed.expires_at
            row.invalid = False
            row.updated_at = now
            await db.commit()
        return refreshed
