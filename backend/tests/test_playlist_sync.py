"""Test idempotent playlist writes, fan-out and rollback."""

from __future__ import annotations

import httpx

from signage_sync.models import IntegrationOutbox
from signage_sync.services import outbox
from signage_sync.services.playlist_sync import (
    PLAYLIST_ITEM_UNREADABLE,
    PLAYLIST_READ_FAILED,
    PLAYLIST_WRITE_FAILED,
    UPLOAD_OK_BUT_NOT_IN_PLAYLIST,
    PlaylistSyncCoordinator,
    PublishTarget,
)
from signage_sync.services.ttl_cache import TtlCache

from conftest import API

MEDIA = 5


def _sync(db, yodeck, settings, cache=None) -> PlaylistSyncCoordinator:
    return PlaylistSyncCoordinator(db, yodeck, settings=settings, base_playlist_cache=cache)


def _patches(fake, playlist_id: int) -> int:
    return fake.count("PATCH", rf"{API}/playlists/{playlist_id}/")


# ── add_to_playlist ──────────────────────────────────────────

async def test_add_appends_and_preserves_existing_items(db, yodeck, fake_yodeck, settings):
    fake_yodeck.add_playlist(10, [1, 2])
    result = await _sync(db, yodeck, settings).add_to_playlist(10, MEDIA, 15, "key-1")

    assert result.ok is True
    assert result.status == "succeeded"
    assert result.item_count == 3
    assert fake_yodeck.playlist_media_ids(10) == [1, 2, MEDIA]
    items = fake_yodeck.playlists[10]["items"]
    assert items[0]["id"] == 50_000
    assert items[0]["duration"] == 10
    assert items[2] == {"order": 2, "item": {"id": MEDIA}, "duration": 15}

    entry = await outbox.get_by_key(db, "key-1")
    assert entry.status == "succeeded"
    assert entry.external_id == str(MEDIA)


async def test_same_key_writes_once(db, yodeck, fake_yodeck, settings):
    fake_yodeck.add_playlist(10, [1])
    sync = _sync(db, yodeck, settings)

    first = await sync.add_to_playlist(10, MEDIA, None, "key-1")
    second = await sync.add_to_playlist(10, MEDIA, None, "key-1")

    assert first.status == "succeeded"
    assert second.status == "already_succeeded"
    assert second.ok is True
    assert second.item_count == 2
    assert _patches(fake_yodeck, 10) == 1
    assert fake_yodeck.playlists[10]["items"][-1]["duration"] == settings.playlist_default_duration_sec


async def test_key_held_elsewhere_backs_off(db, yodeck, fake_yodeck, settings):
    fake_yodeck.add_playlist(10, [])
    await outbox.claim(db, "key-1", action_type="add_to_playlist", entity_type="playlist", entity_id="10")

    result = await _sync(db, yodeck, settings).add_to_playlist(10, MEDIA, None, "key-1")

    assert result.ok is False
    assert result.status == "in_progress"
    assert fake_yodeck.requests == []


async def test_already_present_skips_write(db, yodeck, fake_yodeck, settings):
    fake_yodeck.add_playlist(10, [MEDIA, 2])
    result = await _sync(db, yodeck, settings).add_to_playlist(10, MEDIA, None, "key-1")

    assert result.ok is True
    assert result.already_present is True
    assert _patches(fake_yodeck, 10) == 0
    assert (await outbox.get_by_key(db, "key-1")).status == "succeeded"


async def test_flat_item_shape_is_recognized(db, yodeck, fake_yodeck, settings):
    fake_yodeck.playlists[10] = {"id": 10, "name": "p", "items": [{"id": 9001, "item": MEDIA, "duration": 10}]}
    result = await _sync(db, yodeck, settings).add_to_playlist(10, MEDIA, None, "key-1")
    assert result.already_present is True


async def test_write_accepted_but_not_visible(db, yodeck, fake_yodeck, settings):
    fake_yodeck.add_playlist(10, [1])
    fake_yodeck.ignore_playlist_writes = True

    result = await _sync(db, yodeck, settings).add_to_playlist(10, MEDIA, None, "key-1")

    assert result.ok is False
    assert result.error_code == UPLOAD_OK_BUT_NOT_IN_PLAYLIST
    assert result.accepted_unconfirmed is True
    entry = await outbox.get_by_key(db, "key-1")
    assert entry.status == "failed"
    assert entry.error_code == UPLOAD_OK_BUT_NOT_IN_PLAYLIST


async def test_write_accepted_but_reread_fails(db, yodeck, fake_yodeck, settings):
    fake_yodeck.add_playlist(10, [1])
    reads = []

    def get_playlist(request: httpx.Request) -> httpx.Response:
        reads.append(request)
        if len(reads) == 1:
            return httpx.Response(200, json=fake_yodeck.playlists[10])
        return httpx.Response(503, json={"detail": "unavailable"})

    fake_yodeck.overrides[("GET", f"{API}/playlists/10/")] = get_playlist

    result = await _sync(db, yodeck, settings).add_to_playlist(10, MEDIA, None, "key-1")

    assert result.ok is False
    assert result.error_code == UPLOAD_OK_BUT_NOT_IN_PLAYLIST
    assert result.accepted_unconfirmed is True
    assert _patches(fake_yodeck, 10) == 1
    entry = await outbox.get_by_key(db, "key-1")
    assert entry.status == "failed"
    assert entry.response_json["status"] == 503


async def test_failed_key_can_be_retried(db, yodeck, fake_yodeck, settings):
    fake_yodeck.add_playlist(10, [1])
    fake_yodeck.ignore_playlist_writes = True
    sync = _sync(db, yodeck, settings)
    await sync.add_to_playlist(10, MEDIA, None, "key-1")

    fake_yodeck.ignore_playlist_writes = False
    retried = await sync.add_to_playlist(10, MEDIA, None, "key-1")

    assert retried.status == "succeeded"
    assert (await outbox.get_by_key(db, "key-1")).attempts == 2


async def test_read_failure_does_not_write(db, yodeck, fake_yodeck, settings):
    result = await _sync(db, yodeck, settings).add_to_playlist(99, MEDIA, None, "key-1")

    assert result.error_code == PLAYLIST_READ_FAILED
    assert _patches(fake_yodeck, 99) == 0


async def test_write_failure(db, yodeck, fake_yodeck, settings):
    fake_yodeck.add_playlist(10, [1])
    fake_yodeck.overrides[("PATCH", f"{API}/playlists/10/")] = httpx.Response(400, json={"detail": "bad items"})

    result = await _sync(db, yodeck, settings).add_to_playlist(10, MEDIA, None, "key-1")

    assert result.error_code == PLAYLIST_WRITE_FAILED
    assert (await outbox.get_by_key(db, "key-1")).error_code == PLAYLIST_WRITE_FAILED


async def test_unreadable_items_block_replacement(db, yodeck, fake_yodeck, settings):
    fake_yodeck.playlists[10] = {"id": 10, "name": "p", "items": [{"order": 0, "duration": 10}]}
    result = await _sync(db, yodeck, settings).add_to_playlist(10, MEDIA, None, "key-1")

    assert result.error_code == PLAYLIST_ITEM_UNREADABLE
    assert _patches(fake_yodeck, 10) == 0


# ── remove / rollback ────────────────────────────────────────

async def test_remove_is_noop_when_absent(db, yodeck, fake_yodeck, settings):
    fake_yodeck.add_playlist(10, [1, 2])
    result = await _sync(db, yodeck, settings).remove_from_playlist(10, MEDIA)

    assert result.ok is True
    assert result.already_present is False
    assert _patches(fake_yodeck, 10) == 0


async def test_rollback_twice(db, yodeck, fake_yodeck, settings):
    fake_yodeck.add_playlist(10, [1, MEDIA, 2])
    sync = _sync(db, yodeck, settings)
    targets = [PublishTarget("loc-1", 10)]

    first = await sync.rollback(MEDIA, targets)
    second = await sync.rollback(MEDIA, targets)

    assert (first.removed, first.not_present, first.failed) == (1, 0, 0)
    assert (second.removed, second.not_present, second.failed) == (0, 1, 0)
    assert first.ok and second.ok
    assert fake_yodeck.playlist_media_ids(10) == [1, 2]
    assert _patches(fake_yodeck, 10) == 1


async def test_rollback_reports_unreachable_playlist(db, yodeck, fake_yodeck, settings):
    report = await _sync(db, yodeck, settings).rollback(MEDIA, [PublishTarget("loc-9", 99)])
    assert report.failed == 1
    assert report.ok is False
    assert report.targets[0]["error_code"] == PLAYLIST_READ_FAILED


# ── publish_to_targets ───────────────────────────────────────

async def test_publish_all_targets(db, yodeck, fake_yodeck, settings):
    fake_yodeck.add_playlist(10, [])
    fake_yodeck.add_playlist(11, [1])
    targets = [PublishTarget("loc-1", 10), PublishTarget("loc-2", 11)]

    report = await _sync(db, yodeck, settings).publish_to_targets(MEDIA, targets, plan_key="plan-1")

    assert report.status == "published"
    assert report.to_dict()["added"] == 2
    assert MEDIA in fake_yodeck.playlist_media_ids(10)
    assert MEDIA in fake_yodeck.playlist_media_ids(11)

    again = await _sync(db, yodeck, settings).publish_to_targets(MEDIA, targets, plan_key="plan-1")
    assert again.status == "published"
    assert _patches(fake_yodeck, 10) == 1
    assert _patches(fake_yodeck, 11) == 1


async def test_publish_partial(db, yodeck, fake_yodeck, settings):
    fake_yodeck.add_playlist(10, [])
    targets = [PublishTarget("loc-1", 10), PublishTarget("loc-2", 99)]

    report = await _sync(db, yodeck, settings).publish_to_targets(MEDIA, targets, plan_key="plan-1")

    assert report.status == "partial"
    assert [t.status for t in report.targets] == ["added_to_playlist", "failed"]
    assert report.rollback is None
    assert MEDIA in fake_yodeck.playlist_media_ids(10)


async def test_publish_all_or_nothing_rolls_back(db, yodeck, fake_yodeck, settings):
    fake_yodeck.add_playlist(10, [1])
    targets = [PublishTarget("loc-1", 10), PublishTarget("loc-2", 99)]

    report = await _sync(db, yodeck, settings).publish_to_targets(
        MEDIA, targets, plan_key="plan-1", all_or_nothing=True
    )

    assert report.status == "rolled_back"
    assert report.rollback.removed == 1
    assert report.targets[0].rolled_back is True
    assert fake_yodeck.playlist_media_ids(10) == [1]
    data = report.to_dict()
    assert data["rollback"]["removed"] == 1


async def test_publish_with_keys_held_elsewhere_is_in_progress(db, yodeck, fake_yodeck, settings):
    fake_yodeck.add_playlist(10, [])
    fake_yodeck.add_playlist(11, [])
    held = outbox.generate_idempotency_key("add_to_playlist", "plan-1", "loc-1", 10, MEDIA)
    await outbox.claim(db, held, action_type="add_to_playlist", entity_type="playlist", entity_id="10")

    report = await _sync(db, yodeck, settings).publish_to_targets(
        MEDIA, [PublishTarget("loc-1", 10)], plan_key="plan-1"
    )
    assert report.status == "in_progress"
    assert report.to_dict()["added"] == 0
    assert fake_yodeck.playlist_media_ids(10) == []

    mixed = await _sync(db, yodeck, settings).publish_to_targets(
        MEDIA, [PublishTarget("loc-1", 10), PublishTarget("loc-2", 11)], plan_key="plan-1"
    )
    assert mixed.status == "partial"
    assert [t.status for t in mixed.targets] == ["in_progress", "added_to_playlist"]


async def test_publish_nothing_added(db, yodeck, fake_yodeck, settings):
    report = await _sync(db, yodeck, settings).publish_to_targets(
        MEDIA, [PublishTarget("loc-2", 99)], plan_key="plan-1", all_or_nothing=True
    )
    assert report.status == "failed"
    assert report.rollback is None


async def test_publish_keys_are_per_target(db, yodeck, fake_yodeck, settings):
    fake_yodeck.add_playlist(10, [])
    fake_yodeck.add_playlist(11, [])
    await _sync(db, yodeck, settings).publish_to_targets(
        MEDIA, [PublishTarget("loc-1", 10), PublishTarget("loc-2", 11)], plan_key="plan-1"
    )
    rows = (await db.execute(IntegrationOutbox.__table__.select())).all()
    assert len({r.idempotency_key for r in rows}) == 2


# ── Base playlist / screens ──────────────────────────────────

class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


async def test_base_playlist_lookup_is_cached(db, yodeck, fake_yodeck, settings):
    fake_yodeck.add_playlist(6, [], name="Basis playlist (oud)")
    fake_yodeck.add_playlist(5, [], name="basis PLAYLIST")
    clock = FakeClock()
    sync = _sync(db, yodeck, settings, TtlCache(300, clock=clock))

    assert await sync.get_base_playlist_id() == 5
    assert await sync.get_base_playlist_id() == 5
    assert fake_yodeck.count("GET", rf"{API}/playlists/") == 1

    clock.now = 301
    assert await sync.get_base_playlist_id() == 5
    assert fake_yodeck.count("GET", rf"{API}/playlists/") == 2


async def test_base_playlist_not_found_is_not_cached(db, yodeck, fake_yodeck, settings):
    sync = _sync(db, yodeck, settings)
    assert await sync.get_base_playlist_id() is None
    assert await sync.get_base_playlist_id() is None
    assert fake_yodeck.count("GET", rf"{API}/playlists/") == 2


async def test_apply_screen_source(db, yodeck, fake_yodeck, settings):
    fake_yodeck.screens[1] = {"id": 1, "name": "Entrance", "screen_content": {"source_type": "media", "source_id": 3}}
    result = await _sync(db, yodeck, settings).apply_screen_source(1, 10)

    assert result.ok is True
    assert (result.source_type, result.source_id) == ("playlist", 10)


async def test_apply_screen_source_mismatch(db, yodeck, fake_yodeck, settings):
    fake_yodeck.screens[1] = {"id": 1, "name": "Entrance", "screen_content": {"source_type": "media", "source_id": 3}}
    fake_yodeck.ignore_screen_writes = True

    result = await _sync(db, yodeck, settings).apply_screen_source(1, 10)

    assert result.ok is False
    assert result.error_code == "SCREEN_SOURCE_MISMATCH"
    assert result.source_id == 3


async def test_apply_screen_source_unknown_screen(db, yodeck, settings):
    result = await _sync(db, yodeck, settings).apply_screen_source(404, 10)
    assert result.error_code == "SCREEN_PATCH_FAILED"
