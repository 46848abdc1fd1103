"""Entry point for the FastAPI-powered Stremio addon."""

from __future__ import annotations
import html
import json
import logging
import secrets
import time
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import timedelta
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response, StreamingResponse

from .cache import CacheService, build_cache
from .catalogs import CatalogService, build_manifest
from .config import settings
from .database import Database
from .models import TokenStatus, TraktCredentials
from .services.importer import CSVFormatError, NetflixImporter, ProgressHub
from .services.netflix import NetflixTop10Service
from .services.poster import PosterService
from .services.recommendations import TraktCatalogProvider
from .services.scrobble import ScrobbleService
from .services.sessions import SessionStore, is_session_id, token_from_response, utcnow
from .services.title_match import TitleMatcher
from .services.tmdb import TMDBClient
from .services.trakt import TraktClient
from .utils import RequestPacer, coerce_int
from .web import render_landing_page

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI

OAUTH_STATE_TTL_SECONDS = 600


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    trakt_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.trakt_api_url),
            timeout=httpx.Timeout(20.0, connect=10.0),
        )
    )
    tmdb_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.tmdb_api_url),
            timeout=httpx.Timeout(15.0, connect=5.0),
        )
    )
    web_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(timeout=httpx.Timeout(20.0, connect=10.0))
    )
    if not settings.tmdb_api_key:
        logger.warning("TMDB_API_KEY is not set; TMDB catalogs will be empty")

    database = Database(settings.database_url)
    await database.create_all()
    cache = build_cache(settings)

    trakt = TraktClient(settings, trakt_http)
    tmdb = TMDBClient(settings, tmdb_http, cache)
    sessions = SessionStore(
        database.session_factory,
        trakt,
        session_ttl=timedelta(days=settings.session_ttl_days),
    )
    search_pacer = RequestPacer(settings.search_delay_ms)
    matcher = TitleMatcher(tmdb, pacer=search_pacer)
    netflix = NetflixTop10Service(settings, web_http, tmdb, matcher, cache)
    trakt_catalogs = TraktCatalogProvider(settings, trakt, tmdb, sessions, cache)
    scrobble = ScrobbleService(trakt, sessions)
    progress_hub = ProgressHub()

    fastapi_app.state.database = database
    fastapi_app.state.cache = cache
    fastapi_app.state.trakt = trakt
    fastapi_app.state.sessions = sessions
    fastapi_app.state.scrobble = scrobble
    fastapi_app.state.progress_hub = progress_hub
    fastapi_app.state.catalog_service = CatalogService(
        settings, trakt_catalogs, tmdb, netflix
    )
    fastapi_app.state.posters = PosterService(settings, web_http, tmdb, cache)
    fastapi_app.state.importer = NetflixImporter(
        TitleMatcher(tmdb, pacer=search_pacer),
        scrobble,
        progress_hub,
    )

    try:
        yield
    finally:
        await scrobble.drain()
        await cache.close()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Trakt, Netflix Top 10 and TMDB catalogs for Stremio",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    fastapi_app.state.trakt_oauth_states = {}

    register_routes(fastapi_app)
    return fastapi_app


def _state(fastapi_app: FastAPI, name: str) -> Any:
    service = getattr(fastapi_app.state, name, None)
    if service is None:
        raise RuntimeError(f"{name} not initialised")
    return service


def get_catalog_service(fastapi_app: FastAPI) -> CatalogService:
    return _state(fastapi_app, "catalog_service")


def get_session_store(fastapi_app: FastAPI) -> SessionStore:
    return _state(fastapi_app, "sessions")


def _parse_extra(extra: str | None) -> dict[str, str]:
    """Parse Stremio's ``skip=20&genre=x`` path segment."""

    if not extra:
        return {}
    return {key: values[0] for key, values in parse_qs(extra).items() if values}


async def _read_json(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        payload = {}
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")
    return payload


def register_routes(fastapi_app: FastAPI) -> None:
    async def _require_session(session_id: str) -> None:
        if not is_session_id(session_id):
            raise HTTPException(status_code=404, detail="Unknown session")
        session = await get_session_store(fastapi_app).get_session(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Unknown session")

    async def _catalog_endpoint(
        content_type: str,
        catalog_id: str,
        *,
        extra: str | None = None,
        session_id: str | None = None,
    ) -> JSONResponse:
        if content_type not in {"movie", "series"}:
            raise HTTPException(status_code=400, detail="Unsupported content type")
        if session_id is not None and not is_session_id(session_id):
            raise HTTPException(status_code=404, detail="Unknown session")
        skip = coerce_int(_parse_extra(extra).get("skip"), default=0) or 0
        payload = await get_catalog_service(fastapi_app).get_catalog(
            content_type, catalog_id, skip=skip, session_id=session_id
        )
        return JSONResponse(payload)

    def _stream_endpoint(
        content_type: str, stremio_id: str, *, session_id: str | None = None
    ) -> dict[str, list[Any]]:
        logger.info("Stream request: type=%s, id=%s", content_type, stremio_id)
        if session_id is not None and is_session_id(session_id):
            scrobble: ScrobbleService = _state(fastapi_app, "scrobble")
            scrobble.schedule_mark_as_watched(session_id, stremio_id, content_type)
        return {"streams": []}

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/", response_class=HTMLResponse)
    async def landing_page(request: Request) -> HTMLResponse:
        callback_origin, _ = _resolve_trakt_redirect(request)
        return HTMLResponse(
            render_landing_page(settings, callback_origin=callback_origin)
        )

    @fastapi_app.get("/manifest.json")
    async def manifest() -> dict[str, Any]:
        return build_manifest(settings)

    @fastapi_app.get("/{session_id}/manifest.json")
    async def personal_manifest(session_id: str) -> dict[str, Any]:
        await _require_session(session_id)
        return build_manifest(settings, personal=True)

    @fastapi_app.get("/catalog/{content_type}/{catalog_id}.json")
    async def catalog(content_type: str, catalog_id: str) -> JSONResponse:
        return await _catalog_endpoint(content_type, catalog_id)

    @fastapi_app.get("/catalog/{content_type}/{catalog_id}/{extra}.json")
    async def catalog_with_extra(
        content_type: str, catalog_id: str, extra: str
    ) -> JSONResponse:
        return await _catalog_endpoint(content_type, catalog_id, extra=extra)

    @fastapi_app.get("/{session_id}/catalog/{content_type}/{catalog_id}.json")
    async def personal_catalog(
        session_id: str, content_type: str, catalog_id: str
    ) -> JSONResponse:
        return await _catalog_endpoint(
            content_type, catalog_id, session_id=session_id
        )

    @fastapi_app.get(
        "/{session_id}/catalog/{content_type}/{catalog_id}/{extra}.json"
    )
    async def personal_catalog_with_extra(
        session_id: str, content_type: str, catalog_id: str, extra: str
    ) -> JSONResponse:
        return await _catalog_endpoint(
            content_type, catalog_id, extra=extra, session_id=session_id
        )

    @fastapi_app.get("/stream/{content_type}/{stremio_id}.json")
    async def stream(content_type: str, stremio_id: str) -> dict[str, list[Any]]:
        return _stream_endpoint(content_type, stremio_id)

    @fastapi_app.get("/{session_id}/stream/{content_type}/{stremio_id}.json")
    async def personal_stream(
        session_id: str, content_type: str, stremio_id: str
    ) -> dict[str, list[Any]]:
        return _stream_endpoint(content_type, stremio_id, session_id=session_id)

    @fastapi_app.get("/poster/{content_type}/{rank}/{item_id}.jpg")
    async def poster(content_type: str, rank: str, item_id: str) -> Response:
        rank_value = coerce_int(rank)
        if rank_value is None:
            raise HTTPException(status_code=400, detail="Rank must be a number")
        posters: PosterService = _state(fastapi_app, "posters")
        try:
            image = await posters.get_poster(content_type, rank_value, item_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except LookupError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return Response(
            content=image,
            media_type="image/jpeg",
            headers={"Cache-Control": "public, max-age=86400"},
        )

    @fastapi_app.get("/auth/status")
    async def auth_status(session: str | None = None) -> dict[str, Any]:
        store = get_session_store(fastapi_app)
        record = await store.get_session(session) if session else None
        status = await store.token_status(session) if record else TokenStatus.UNAUTHENTICATED
        return {
            "authenticated": status in {TokenStatus.AUTHENTICATED, TokenStatus.EXPIRING},
            "status": status.value,
            "username": record.username if record else None,
        }

    @fastapi_app.post("/auth/logout")
    async def logout(request: Request) -> dict[str, bool]:
        payload = await _read_json(request)
        session_id = payload.get("sessionId")
        if not isinstance(session_id, str) or not session_id:
            raise HTTPException(status_code=400, detail="sessionId is required")
        deleted = await get_session_store(fastapi_app).delete_session(session_id)
        return {"success": deleted}

    @fastapi_app.post("/admin/cache/clear")
    async def clear_cache(request: Request) -> dict[str, Any]:
        if settings.admin_token:
            provided = request.headers.get("x-admin-token") or request.query_params.get(
                "token"
            )
            if not provided or not secrets.compare_digest(provided, settings.admin_token):
                raise HTTPException(status_code=403, detail="Invalid admin token")
        payload = await _read_json(request)
        cache: CacheService = _state(fastapi_app, "cache")
        keys = payload.get("keys")
        if isinstance(keys, list) and keys:
            cleared: Any = await cache.clear_many(str(key) for key in keys)
        else:
            cleared = await cache.clear()
        return {"success": True, "cleared": cleared, "stats": await cache.stats()}

    @fastapi_app.post("/api/import-netflix")
    async def import_netflix(request: Request) -> JSONResponse:
        payload = await _read_json(request)
        csv_data = payload.get("csvData")
        session_id = payload.get("sessionId")
        if not isinstance(csv_data, str) or not csv_data.strip():
            return JSONResponse(
                {"success": False, "error": "No CSV data provided"}, status_code=400
            )
        if not isinstance(session_id, str) or not is_session_id(session_id):
            return JSONResponse(
                {"success": False, "error": "A valid sessionId is required"},
                status_code=400,
            )
        importer: NetflixImporter = _state(fastapi_app, "importer")
        try:
            result = await importer.run(csv_data, session_id)
        except CSVFormatError as exc:
            return JSONResponse(
                {"success": False, "error": f"CSV parsing failed: {exc}"},
                status_code=400,
            )
        return JSONResponse(
            result.to_payload(), status_code=200 if result.success else 500
        )

    @fastapi_app.get("/api/import-netflix/progress/{session_id}")
    async def import_progress(session_id: str) -> StreamingResponse:
        if not is_session_id(session_id):
            raise HTTPException(status_code=404, detail="Unknown session")
        hub: ProgressHub = _state(fastapi_app, "progress_hub")
        return StreamingResponse(
            hub.stream(session_id),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    @fastapi_app.post("/api/trakt/login-url")
    async def trakt_login_url(request: Request) -> dict[str, str]:
        payload = await _read_json(request)
        client_id = str(payload.get("clientId") or "").strip() or settings.trakt_client_id
        client_secret = (
            str(payload.get("clientSecret") or "").strip() or settings.trakt_client_secret
        )
        if not (client_id and client_secret):
            raise HTTPException(
                status_code=503,
                detail={
                    "error": "trakt_credentials_missing",
                    "description": (
                        "Trakt client ID and secret must be configured on the server "
                        "or entered on the page to enable sign in."
                    ),
                },
            )

        _prune_expired_states(fastapi_app)
        state = secrets.token_urlsafe(32)
        default_origin, redirect_uri = _resolve_trakt_redirect(request)
        origin_header = _normalize_origin_header(request.headers.get("origin"))
        referer_origin = _origin_from_url(request.headers.get("referer"))
        origin = origin_header or referer_origin or default_origin
        fastapi_app.state.trakt_oauth_states[state] = {
            "origin": origin,
            "redirect_uri": redirect_uri,
            "client_id": client_id,
            "client_secret": client_secret,
            "expires_at": time.time() + OAUTH_STATE_TTL_SECONDS,
        }

        query = urlencode(
            {
                "response_type": "code",
                "client_id": client_id,
                "redirect_uri": redirect_uri,
                "state": state,
            }
        )
        return {"url": f"{settings.trakt_authorize_url}?{query}"}

    @fastapi_app.get(
        "/api/trakt/callback",
        response_class=HTMLResponse,
        name="trakt_oauth_callback",
    )
    async def trakt_oauth_callback(
        request: Request,
        code: str | None = None,
        state: str | None = None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> HTMLResponse:
        _prune_expired_states(fastapi_app)
        default_origin, default_redirect = _resolve_trakt_redirect(request)

        if not state:
            payload = {
                "status": "error",
                "error": "missing_state",
                "error_description": "State parameter was not returned by Trakt.",
            }
            return HTMLResponse(
                _render_oauth_popup(default_origin, payload),
                status_code=400,
            )

        state_data = fastapi_app.state.trakt_oauth_states.pop(state, None)
        origin = (state_data or {}).get("origin") or default_origin
        redirect_uri = (state_data or {}).get("redirect_uri") or default_redirect

        if not state_data or state_data.get("expires_at", 0) < time.time():
            payload = {
                "status": "error",
                "error": "state_expired",
                "error_description": "The sign-in session has expired. Please try again.",
            }
            return HTMLResponse(
                _render_oauth_popup(origin, payload),
                status_code=400,
            )

        if error:
            payload = {
                "status": "error",
                "error": error,
                "error_description": error_description
                or "Trakt reported an error during sign in.",
            }
            return HTMLResponse(_render_oauth_popup(origin, payload), status_code=400)

        if not code:
            payload = {
                "status": "error",
                "error": "missing_code",
                "error_description": "Trakt did not provide an authorisation code.",
            }
            return HTMLResponse(
                _render_oauth_popup(origin, payload),
                status_code=400,
            )

        trakt: TraktClient = _state(fastapi_app, "trakt")
        client_id = state_data["client_id"]
        client_secret = state_data["client_secret"]
        try:
            response = await trakt.exchange_code(
                code,
                client_id=client_id,
                client_secret=client_secret,
                redirect_uri=redirect_uri,
            )
        except httpx.HTTPError:
            payload = {
                "status": "error",
                "error": "network_error",
                "error_description": "Unable to reach Trakt. Please try again shortly.",
            }
            return HTMLResponse(_render_oauth_popup(origin, payload), status_code=502)

        data = _response_json(response)
        token = (
            token_from_response(
                data, client_id=client_id, client_secret=client_secret, now=utcnow()
            )
            if response.status_code < 400
            else None
        )
        if token is None:
            formatted = _format_trakt_error(
                data, "Trakt rejected the authorisation request."
            )
            payload = {
                "status": "error",
                "error": formatted.get("error", "trakt_error"),
                "error_description": formatted.get(
                    "description", "Trakt rejected the authorisation request."
                ),
            }
            return HTMLResponse(
                _render_oauth_popup(origin, payload),
                status_code=response.status_code if response.status_code >= 400 else 502,
            )

        profile = await trakt.fetch_user(
            TraktCredentials(client_id=client_id, access_token=token.access_token)
        )
        username = _username_from_profile(profile)
        session = await get_session_store(fastapi_app).create_session(
            token, username=username
        )
        payload = {
            "status": "success",
            "sessionId": session.session_id,
            "username": username,
            "manifestUrl": f"{settings.public_base_url}/{session.session_id}/manifest.json",
        }
        return HTMLResponse(_render_oauth_popup(origin, payload))


def _username_from_profile(profile: dict[str, Any]) -> str | None:
    user = profile.get("user") if isinstance(profile.get("user"), dict) else profile
    username = user.get("username") if isinstance(user, dict) else None
    return username if isinstance(username, str) and username else None


def _prune_expired_states(fastapi_app: FastAPI) -> None:
    store = getattr(fastapi_app.state, "trakt_oauth_states", {})
    now = time.time()
    expired = [key for key, info in store.items() if info.get("expires_at", 0) <= now]
    for key in expired:
        store.pop(key, None)


def _resolve_trakt_redirect(request: Request) -> tuple[str, str]:
    if settings.trakt_redirect_uri:
        parsed = urlparse(str(settings.trakt_redirect_uri))
        origin = f"{parsed.scheme}://{parsed.netloc}".rstrip("/")
        return origin, str(settings.trakt_redirect_uri)

    origin, base = _resolve_external_base(request)
    path = request.app.url_path_for("trakt_oauth_callback")
    return origin, f"{base}{path}"


def _resolve_external_base(request: Request) -> tuple[str, str]:
    headers = request.headers
    scheme = _first_forwarded_value(headers.get("x-forwarded-proto")) or request.url.scheme

    host = _first_forwarded_value(headers.get("x-forwarded-host"))
    if not host:
        host_header = headers.get("host")
        host = _first_forwarded_value(host_header) if host_header else None
    if not host:
        host = request.url.netloc

    port = _first_forwarded_value(headers.get("x-forwarded-port"))
    if port and ":" not in host:
        default_port = "443" if scheme == "https" else "80"
        if port != default_port:
            host = f"{host}:{port}"

    origin = f"{scheme}://{host}".rstrip("/")

    prefix = (
        _first_forwarded_value(headers.get("x-forwarded-prefix"))
        or request.scope.get("root_path")
        or ""
    )
    if prefix and not prefix.startswith("/"):
        prefix = f"/{prefix}"
    prefix = prefix.rstrip("/")

    base = f"{origin}{prefix}" if prefix else origin
    return origin, base


def _first_forwarded_value(header_value: str | None) -> str | None:
    if not header_value:
        return None
    return header_value.split(",", 1)[0].strip()


def _normalize_origin_header(origin_value: str | None) -> str | None:
    if not origin_value:
        return None
    origin_value = origin_value.strip()
    if not origin_value or origin_value.lower() == "null":
        return None
    return origin_value.rstrip("/")


def _origin_from_url(url_value: str | None) -> str | None:
    if not url_value:
        return None
    try:
        parsed = urlparse(url_value)
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}".rstrip("/")


def _render_oauth_popup(target_origin: str, payload: dict[str, Any]) -> str:
    message = {"source": "trakt-oauth", **payload}
    status = str(payload.get("status") or "").lower()
    if status == "success":
        message.setdefault("type", "TRAKT_AUTH_SUCCESS")
    elif status:
        message.setdefault("type", "TRAKT_AUTH_ERROR")

    manifest_url = payload.get("manifestUrl")
    if status == "success" and isinstance(manifest_url, str):
        summary = (
            "<p>Connected to Trakt. Install your personal catalog with this "
            f"manifest URL:</p><p><code>{html.escape(manifest_url)}</code></p>"
        )
    else:
        description = str(payload.get("error_description") or "Sign in failed.")
        summary = f"<p>{html.escape(description)}</p>"

    json_payload = json.dumps(message).replace("</", "<\\/")
    origin = target_origin or "*"
    return f"""
<!DOCTYPE html>
<html lang=\"en\">
<head>
    <meta charset=\"utf-8\" />
    <title>Trakt Sign In</title>
</head>
<body>
    {summary}
    <p>You can close this window and return to the setup page.</p>
    <script>
        (function() {{
            const payload = {json_payload};
            const targetOrigin = {json.dumps(origin)};
            let notified = false;
            try {{
                if (window.opener && !window.opener.closed) {{
                    window.opener.postMessage(payload, targetOrigin);
                    notified = true;
                }}
            }} catch (err) {{
                console.error('Unable to notify opener via postMessage', err);
            }}
            try {{
                if ('BroadcastChannel' in window) {{
                    const channel = new BroadcastChannel('personal-catalog.trakt-oauth');
                    channel.postMessage(payload);
                    channel.close();
                    notified = true;
                }}
            }} catch (err) {{
                console.error('Unable to broadcast Trakt OAuth payload', err);
            }}
            if (notified) {{
                setTimeout(() => {{
                    window.close();
                }}, 1500);
            }}
        }})();
    </script>
</body>
</html>
"""


def _response_json(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    if isinstance(data, dict):
        return data
    return {}


def _format_trakt_error(data: dict[str, Any], fallback: str) -> dict[str, str]:
    if not data:
        return {"error": "trakt_error", "description": fallback}
    error = str(
        data.get("error")
        or data.get("error_description")
        or data.get("message")
        or "trakt_error"
    )
    description = str(
        data.get("error_description")
        or data.get("message")
        or data.get("hint")
        or data.get("description")
        or fallback
    )
    return {"error": error, "description": description}


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
