from __future__ import annotations

from types import SimpleNamespace

from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.catalogs import MANIFEST_ID, build_manifest
from app.config import Settings
from app.main import register_routes

KNOWN_SESSION = "0b7f4f5e-2a43-4b8e-9c55-0d7d1f1f2a11"


class DummySessionStore:
    """Minimal SessionStore stand-in that knows a single session."""

    async def get_session(self, session_id: str) -> SimpleNamespace | None:
        if session_id == KNOWN_SESSION:
            return SimpleNamespace(session_id=session_id, username="alice")
        return None


def _app() -> FastAPI:
    app = FastAPI()
    register_routes(app)
    app.state.sessions = DummySessionStore()
    return app


def test_manifest_lists_catalog_and_stream_resources() -> None:
    manifest = build_manifest(Settings(_env_file=None))

    assert manifest["id"] == MANIFEST_ID
    assert manifest["resources"] == ["catalog", "stream"]
    assert manifest["idPrefixes"] == ["tt"]
    assert [(c["id"], c["type"]) for c in manifest["catalogs"]] == [
        ("trakt-recommendations", "movie"),
        ("trakt-recommendations", "series"),
        ("netflix-top10", "movie"),
        ("netflix-top10", "series"),
        ("new-and-popular", "movie"),
        ("new-and-popular", "series"),
        ("newly-released", "movie"),
    ]
    assert all(c["extra"] == [{"name": "skip", "isRequired": False}] for c in manifest["catalogs"])


def test_featured_list_catalog_is_added_when_configured() -> None:
    manifest = build_manifest(
        Settings(_env_file=None, TRAKT_FEATURED_LIST="curator/best-of")
    )

    assert manifest["catalogs"][-1]["id"] == "trakt-featured-list"
    assert manifest["catalogs"][-1]["type"] == "movie"


def test_personal_manifest_gets_distinct_id_and_name() -> None:
    manifest = build_manifest(Settings(_env_file=None, APP_NAME="Catalog"), personal=True)

    assert manifest["id"] == f"{MANIFEST_ID}.user"
    assert manifest["name"] == "Catalog (Personal)"


def test_manifest_routes() -> None:
    with TestClient(_app()) as client:
        public = client.get("/manifest.json")
        personal = client.get(f"/{KNOWN_SESSION}/manifest.json")
        unknown = client.get("/2b7f4f5e-2a43-4b8e-9c55-0d7d1f1f2a11/manifest.json")
        malformed = client.get("/not-a-session/manifest.json")

    assert public.status_code == 200
    assert public.json()["id"] == MANIFEST_ID
    assert personal.status_code == 200
    assert personal.json()["id"] == f"{MANIFEST_ID}.user"
    assert unknown.status_code == 404
    assert malformed.status_code == 404


def test_healthz() -> None:
    with TestClient(_app()) as client:
        response = client.get("/healthz")

    assert response.json() == {"status": "ok"}
