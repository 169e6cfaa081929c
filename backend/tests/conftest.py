"""Async fixtures: in-memory SQLite database and a fake Yodeck API."""

from __future__ import annotations

import json
import os
import re
from typing import Any, Callable

# Must be set before signage_sync.db builds its engine
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["YODECK_AUTH_TOKEN"] = "test-label:test-secret"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ.pop("TELEGRAM_BOT_TOKEN", None)
os.environ.pop("TELEGRAM_CHAT_ID", None)

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from signage_sync.db import Base
from signage_sync.integrations.yodeck_api import YodeckClient
from signage_sync.models import AdAsset, Advertiser
from signage_sync.services.asset_store import MemoryAssetStore
from signage_sync.services.notify import reset_throttle
from signage_sync.settings import YodeckCredentials, get_settings

API = "/api/v2"
STORAGE_HOST = "s3.eu-west-1.amazonaws.com"

READY_STATE = {
    "status": "finished",
    "filesize": 1234,
    "last_uploaded": "2026-10-18T10:00:00Z",
    "thumbnail_url": "https://cdn.example/thumb.jpg",
}


class FakeYodeck:
    """In-memory stand-in for the Yodeck REST API, served via httpx.MockTransport."""

    def __init__(self):
        self.media: dict[int, dict[str, Any]] = {}
        self.media_states: dict[int, list[dict[str, Any]]] = {}
        self.playlists: dict[int, dict[str, Any]] = {}
        self.screens: dict[int, dict[str, Any]] = {}
        self.search_results: dict[str, list[dict[str, Any]]] = {}
        self.overrides: dict[tuple[str, str], Callable[[httpx.Request], httpx.Response] | httpx.Response] = {}
        self.requests: list[tuple[str, str]] = []
        self.put_bodies: dict[int, bytes] = {}
        self.put_headers: list[dict[str, str]] = []
        self.next_id = 1000

        # Behaviour knobs
        self.finalize_status = 404
        self.states_after_put: list[dict[str, Any]] = [
            {"status": "initialized", "filesize": 0},
            {"status": "encoding", "filesize": 0},
            READY_STATE,
        ]
        self.clone_states: list[dict[str, Any]] = [{"status": "downloading", "filesize": 0}, READY_STATE]
        self.ignore_playlist_writes = False
        self.ignore_screen_writes = False

    # ── Helpers ──────────────────────────────────────────────

    def add_media(self, media_id: int, name: str, **fields) -> dict:
        record = {"id": media_id, "name": name, "media_origin": {"type": "video", "source": "local"}}
        record.update(fields)
        self.media[media_id] = record
        return record

    def add_playlist(self, playlist_id: int, media_ids: list[int] = (), name: str | None = None) -> dict:
        playlist = {
            "id": playlist_id,
            "name": name or f"Playlist {playlist_id}",
            "items": [
                {"id": 50_000 + i, "order": i, "item": {"id": mid}, "duration": 10}
                for i, mid in enumerate(media_ids)
            ],
        }
        self.playlists[playlist_id] = playlist
        return playlist

    def playlist_media_ids(self, playlist_id: int) -> list[int]:
        out = []
        for item in self.playlists[playlist_id]["items"]:
            inner = item.get("item")
            out.append(inner["id"] if isinstance(inner, dict) else inner)
        return out

    def count(self, method: str, path_pattern: str) -> int:
        rx = re.compile(path_pattern)
        return sum(1 for m, p in self.requests if m == method and rx.fullmatch(p))

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    # ── Routing ──────────────────────────────────────────────

    def handle(self, request: httpx.Request) -> httpx.Response:
        method, path = request.method, request.url.path
        self.requests.append((method, path))

        override = self.overrides.get((method, path))
        if override is not None:
            return override(request) if callable(override) else override

        if request.url.host == STORAGE_HOST:
            return self._put_storage(request)

        body = json.loads(request.content) if request.content else None

        if method == "POST" and path == f"{API}/media/":
            return self._create_media(body)
        if method == "GET" and path == f"{API}/media/":
            term = request.url.params.get("search", "")
            results = self.search_results.get(term, [])
            return httpx.Response(200, json={"count": len(results), "results": results})

        m = re.fullmatch(rf"{API}/media/(\d+)/upload", path)
        if m and method == "GET":
            media_id = int(m.group(1))
            return httpx.Response(200, json={
                "upload_url": f"https://{STORAGE_HOST}/bucket/{media_id}.mp4?X-Amz-Signature=abc123",
            })
        m = re.fullmatch(rf"{API}/media/(\d+)/upload/(complete|confirm|done)/?", path)
        if m and method == "POST":
            return httpx.Response(self.finalize_status, json={} if self.finalize_status < 300 else {"detail": "Not found."})
        m = re.fullmatch(rf"{API}/media/(\d+)/", path)
        if m and method == "GET":
            return self._get_media(int(m.group(1)))
        if m and method == "DELETE":
            self.media.pop(int(m.group(1)), None)
            return httpx.Response(204)

        if method == "GET" and path == f"{API}/playlists/":
            term = request.url.params.get("search", "").lower()
            results = [p for p in self.playlists.values() if term in p["name"].lower()]
            return httpx.Response(200, json={"count": len(results), "results": results})
        m = re.fullmatch(rf"{API}/playlists/(\d+)/", path)
        if m:
            playlist = self.playlists.get(int(m.group(1)))
            if playlist is None:
                return httpx.Response(404, json={"detail": "Not found."})
            if method == "PATCH" and not self.ignore_playlist_writes:
                playlist["items"] = body["items"]
            return httpx.Response(200, json=playlist)

        if method == "GET" and path == f"{API}/screens/":
            return httpx.Response(200, json={"count": len(self.screens), "results": list(self.screens.values())})
        m = re.fullmatch(rf"{API}/screens/(\d+)/", path)
        if m:
            screen = self.screens.get(int(m.group(1)))
            if screen is None:
                return httpx.Response(404, json={"detail": "Not found."})
            if method == "PATCH" and not self.ignore_screen_writes:
                screen["screen_content"] = body["screen_content"]
            return httpx.Response(200, json=screen)

        return httpx.Response(404, json={"detail": f"no route for {method} {path}"})

    def _create_media(self, body: dict) -> httpx.Response:
        self.next_id += 1
        media_id = self.next_id
        record = self.add_media(media_id, body["name"], status="initialized", filesize=0)
        clone_url = (body.get("arguments") or {}).get("download_from_url")
        if clone_url:
            self.media_states[media_id] = [dict(s) for s in self.clone_states]
            return httpx.Response(201, json=record)
        return httpx.Response(201, json={**record, "get_upload_url": f"{API}/media/{media_id}/upload"})

    def _put_storage(self, request: httpx.Request) -> httpx.Response:
        media_id = int(request.url.path.rsplit("/", 1)[-1].split(".")[0])
        self.put_bodies[media_id] = request.content
        self.put_headers.append(dict(request.headers))
        self.media_states[media_id] = [dict(s) for s in self.states_after_put]
        return httpx.Response(200, headers={"ETag": '"etag-1"'})

    def _get_media(self, media_id: int) -> httpx.Response:
        record = self.media.get(media_id)
        if record is None:
            return httpx.Response(404, json={"detail": "Not found."})
        states = self.media_states.get(media_id)
        if states:
            record.update(states.pop(0) if len(states) > 1 else states[0])
        return httpx.Response(200, json=record)


# ── Fixtures ─────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def _reset_notify_throttle():
    reset_throttle()
    yield


@pytest.fixture
def settings():
    return get_settings().model_copy(update={
        "upload_verify_delay_sec": 0,
        "upload_poll_timeout_sec": 5,
        "upload_poll_intervals_sec": [0],
        "clone_poll_timeout_sec": 5,
        "clone_poll_intervals_sec": [0],
        "poll_stuck_after_attempts": 3,
        "playlist_reread_delay_sec": 0,
    })


@pytest.fixture
def fake_yodeck():
    return FakeYodeck()


@pytest_asyncio.fixture
async def yodeck(fake_yodeck):
    client = YodeckClient(
        YodeckCredentials.parse("test-label:test-secret"),
        base_url=f"https://app.yodeck.com{API}",
        max_retries=2,
        retry_backoff_sec=0,
        transport=fake_yodeck.transport(),
    )
    async with client:
        yield client


@pytest.fixture
def asset_store():
    return MemoryAssetStore({"assets/spot.mp4": b"\x00\x00\x00\x18ftypmp42" * 64})


@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def db(engine):
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def advertiser(db: AsyncSession):
    adv = Advertiser(company_name="Bakkerij De Vries", link_key="LK-1234")
    db.add(adv)
    await db.commit()
    await db.refresh(adv)
    return adv


@pytest_asyncio.fixture
async def asset(db: AsyncSession, advertiser: Advertiser):
    item = AdAsset(
        advertiser_id=advertiser.id,
        original_file_name="devries_spot.mp4",
        stored_filename="ADV-BAKKERIJDEVRIES-spot.mp4",
        storage_path="assets/spot.mp4",
        storage_url="https://files.example.com/spot.mp4",
        size_bytes=768,
        validation_status="valid",
        approval_status="APPROVED",
    )
    db.add(item)
    await db.commit()
    await db.refresh(item)
    return item


@pytest_asyncio.fixture
async def client(db, yodeck, asset_store, settings):
    from signage_sync.db import get_session
    from signage_sync.main import app
    from signage_sync.routes_publish import get_asset_store, get_base_playlist_cache, get_yodeck_client
    from signage_sync.services.ttl_cache import TtlCache

    async def override_get_session():
        yield db

    async def override_get_yodeck_client():
        yield yodeck

    cache: TtlCache[int] = TtlCache(settings.base_playlist_cache_ttl_sec)
    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_yodeck_client] = override_get_yodeck_client
    app.dependency_overrides[get_asset_store] = lambda: asset_store
    app.dependency_overrides[get_base_playlist_cache] = lambda: cache
    app.dependency_overrides[get_settings] = lambda: settings

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
