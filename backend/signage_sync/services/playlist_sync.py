"""
Idempotent playlist synchronization.

Yodeck only supports whole-list replacement of playlist items, so every add is
read -> append -> replace -> re-read. A write counts as done only once the
re-read shows the item; "accepted but not observable" is reported separately
as UPLOAD_OK_BUT_NOT_IN_PLAYLIST.

Each add is guarded by an outbox row keyed on the action and its targets.
Removal (rollback) is not guarded: removing an absent item is a no-op.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from signage_sync.integrations.yodeck_api import (
    YodeckClient,
    normalize_playlist_items,
    normalize_screen,
    results_list,
)
from signage_sync.services import outbox
from signage_sync.services.ttl_cache import TtlCache
from signage_sync.settings import Settings, get_settings

logger = logging.getLogger(__name__)

ACTION_ADD_TO_PLAYLIST = "add_to_playlist"

STATUS_SUCCEEDED = "succeeded"
STATUS_ALREADY_SUCCEEDED = "already_succeeded"
STATUS_IN_PROGRESS = "in_progress"
STATUS_FAILED = "failed"

TARGET_ADDED = "added_to_playlist"
TARGET_IN_PROGRESS = "in_progress"
TARGET_FAILED = "failed"

PLAYLIST_READ_FAILED = "PLAYLIST_READ_FAILED"
PLAYLIST_WRITE_FAILED = "PLAYLIST_WRITE_FAILED"
PLAYLIST_ITEM_UNREADABLE = "PLAYLIST_ITEM_UNREADABLE"
UPLOAD_OK_BUT_NOT_IN_PLAYLIST = "UPLOAD_OK_BUT_NOT_IN_PLAYLIST"


@dataclass(frozen=True)
class PublishTarget:
    location_id: str
    playlist_id: int


@dataclass
class PlaylistWriteResult:
    ok: bool
    status: str
    error_code: str | None = None
    error: str | None = None
    item_count: int = 0
    already_present: bool = False

    @property
    def accepted_unconfirmed(self) -> bool:
        return self.error_code == UPLOAD_OK_BUT_NOT_IN_PLAYLIST


@dataclass
class TargetReport:
    location_id: str
    playlist_id: int
    status: str
    error_code: str | None = None
    error: str | None = None
    accepted_unconfirmed: bool = False
    item_count: int = 0
    rolled_back: bool = False


@dataclass
class RollbackReport:
    media_id: int
    removed: int = 0
    not_present: int = 0
    failed: int = 0
    targets: list[dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0


@dataclass
class PublishReport:
    media_id: int
    status: str
    targets: list[TargetReport] = field(default_factory=list)
    rollback: RollbackReport | None = None

    def count(self, status: str) -> int:
        return sum(1 for t in self.targets if t.status == status)

    def to_dict(self) -> dict:
        return {
            "media_id": self.media_id,
            "status": self.status,
            "added": self.count(TARGET_ADDED),
            "in_progress": self.count(TARGET_IN_PROGRESS),
            "failed": self.count(TARGET_FAILED),
            "targets": [asdict(t) for t in self.targets],
            "rollback": asdict(self.rollback) if self.rollback else None,
        }


@dataclass
class ScreenApplyResult:
    ok: bool
    error_code: str | None = None
    error: str | None = None
    source_type: str | None = None
    source_id: int | None = None


def _contains(items: list[dict], media_id: int) -> bool:
    return any(i["media_id"] == media_id for i in items)


def _item_payload(item: dict) -> dict[str, Any]:
    inner: dict[str, Any] = {"id": item["media_id"]}
    if item["type"] != "media":
        inner["type"] = item["type"]
    payload: dict[str, Any] = {"item": inner, "duration": item["duration"]}
    if item["item_id"] is not None:
        payload["id"] = item["item_id"]
    if item["order"] is not None:
        payload["order"] = item["order"]
    return payload


class PlaylistSyncCoordinator:
    def __init__(
        self,
        session: AsyncSession,
        client: YodeckClient,
        *,
        settings: Settings | None = None,
        base_playlist_cache: TtlCache[int] | None = None,
    ):
        self.session = session
        self.client = client
        self.settings = settings or get_settings()
        self.base_playlist_cache = base_playlist_cache or TtlCache(self.settings.base_playlist_cache_ttl_sec)

    # ── Single playlist ──────────────────────────────────────

    async def add_to_playlist(
        self,
        playlist_id: int,
        media_id: int,
        duration: int | None,
        idempotency_key: str,
        *,
        location_id: str | None = None,
    ) -> PlaylistWriteResult:
        tag = f"[playlist][{playlist_id}]"
        duration = duration or self.settings.playlist_default_duration_sec

        claim = await outbox.claim(
            self.session,
            idempotency_key,
            action_type=ACTION_ADD_TO_PLAYLIST,
            entity_type="playlist",
            entity_id=str(playlist_id),
            payload={"playlist_id": playlist_id, "media_id": media_id, "duration": duration, "location_id": location_id},
        )
        if claim.state == outbox.CLAIM_ALREADY_SUCCEEDED:
            logger.info(f"{tag} media={media_id} already succeeded, skipping")
            count = (claim.entry.response_json or {}).get("item_count", 0)
            return PlaylistWriteResult(True, STATUS_ALREADY_SUCCEEDED, item_count=count)
        if claim.state == outbox.CLAIM_IN_PROGRESS:
            logger.info(f"{tag} media={media_id} in progress elsewhere, backing off")
            return PlaylistWriteResult(False, STATUS_IN_PROGRESS, error="another attempt holds this key")
        entry = claim.entry

        current = await self.client.get_playlist(playlist_id)
        if not current.ok:
            return await self._fail(entry, PLAYLIST_READ_FAILED, f"Playlist read failed: {current.status}", current.snapshot())

        items = normalize_playlist_items(current.data)
        if _contains(items, media_id):
            logger.info(f"{tag} media={media_id} already present ({len(items)} items), no write")
            await outbox.mark_succeeded(
                self.session, entry, external_id=str(media_id),
                response={"item_count": len(items), "already_present": True},
            )
            return PlaylistWriteResult(True, STATUS_SUCCEEDED, item_count=len(items), already_present=True)

        if any(i["media_id"] is None for i in items):
            return await self._fail(
                entry, PLAYLIST_ITEM_UNREADABLE, "Playlist contains items without a readable media id", current.snapshot()
            )

        new_items = [_item_payload(i) for i in items]
        new_items.append({"order": len(items), "item": {"id": media_id}, "duration": duration})
        written = await self.client.replace_playlist_items(playlist_id, new_items)
        if not written.ok:
            return await self._fail(entry, PLAYLIST_WRITE_FAILED, f"Playlist write failed: {written.status}", written.snapshot())

        await asyncio.sleep(self.settings.playlist_reread_delay_sec)
        reread = await self.client.get_playlist(playlist_id)
        if not reread.ok:
            return await self._fail(
                entry, UPLOAD_OK_BUT_NOT_IN_PLAYLIST,
                f"Write accepted but re-read failed: {reread.status}", reread.snapshot(),
            )
        verified = normalize_playlist_items(reread.data)
        if not _contains(verified, media_id):
            return await self._fail(
                entry, UPLOAD_OK_BUT_NOT_IN_PLAYLIST,
                f"Write accepted but media {media_id} absent on re-read ({len(verified)} items)",
                {"item_count": len(verified)},
            )

        await outbox.mark_succeeded(
            self.session, entry, external_id=str(media_id), response={"item_count": len(verified), "verified": True},
        )
        logger.info(f"{tag} media={media_id} added and verified ({len(verified)} items)")
        return PlaylistWriteResult(True, STATUS_SUCCEEDED, item_count=len(verified))

    async def remove_from_playlist(self, playlist_id: int, media_id: int) -> PlaylistWriteResult:
        current = await self.client.get_playlist(playlist_id)
        if not current.ok:
            return PlaylistWriteResult(False, STATUS_FAILED, PLAYLIST_READ_FAILED, current.error)

        items = normalize_playlist_items(current.data)
        if not _contains(items, media_id):
            return PlaylistWriteResult(True, STATUS_SUCCEEDED, item_count=len(items))
        if any(i["media_id"] is None for i in items):
            return PlaylistWriteResult(
                False, STATUS_FAILED, PLAYLIST_ITEM_UNREADABLE, "Playlist contains items without a readable media id"
            )

        kept = [_item_payload(i) for i in items if i["media_id"] != media_id]
        written = await self.client.replace_playlist_items(playlist_id, kept)
        if not written.ok:
            return PlaylistWriteResult(False, STATUS_FAILED, PLAYLIST_WRITE_FAILED, written.error)
        logger.info(f"[playlist][{playlist_id}] media={media_id} removed ({len(kept)} items left)")
        return PlaylistWriteResult(True, STATUS_SUCCEEDED, item_count=len(kept), already_present=True)

    async def _fail(self, entry, code: str, message: str, response: dict | None = None) -> PlaylistWriteResult:
        logger.warning(f"[playlist] {code}: {message}")
        await outbox.mark_failed(self.session, entry, message, error_code=code, response=response)
        return PlaylistWriteResult(False, STATUS_FAILED, code, message)

    # ── Fan-out ──────────────────────────────────────────────

    async def publish_to_targets(
        self,
        media_id: int,
        targets: list[PublishTarget],
        *,
        duration: int | None = None,
        plan_key: str,
        all_or_nothing: bool = False,
    ) -> PublishReport:
        """Add one media to every target playlist, in order.

        Report status: `published` when every target was added, `in_progress`
        when nothing failed but every unconfirmed key is held by another
        caller, `failed` when none was added, `partial` otherwise. With
        `all_or_nothing` any failure rolls back the added targets and the
        status becomes `rolled_back`.
        """
        report = PublishReport(media_id=media_id, status="published")
        for target in targets:
            key = outbox.generate_idempotency_key(
                ACTION_ADD_TO_PLAYLIST, plan_key, target.location_id, target.playlist_id, media_id
            )
            result = await self.add_to_playlist(
                target.playlist_id, media_id, duration, key, location_id=target.location_id
            )
            if result.ok:
                status = TARGET_ADDED
            elif result.status == STATUS_IN_PROGRESS:
                status = TARGET_IN_PROGRESS
            else:
                status = TARGET_FAILED
            report.targets.append(TargetReport(
                location_id=target.location_id,
                playlist_id=target.playlist_id,
                status=status,
                error_code=result.error_code,
                error=result.error,
                accepted_unconfirmed=result.accepted_unconfirmed,
                item_count=result.item_count,
            ))

        failed = report.count(TARGET_FAILED)
        added = report.count(TARGET_ADDED)
        if added == len(report.targets):
            report.status = "published"
        elif failed == 0 and added == 0:
            report.status = "in_progress"
        elif added == 0:
            report.status = "failed"
        else:
            report.status = "partial"

        if all_or_nothing and failed and added:
            succeeded = [PublishTarget(t.location_id, t.playlist_id) for t in report.targets if t.status == TARGET_ADDED]
            report.rollback = await self.rollback(media_id, succeeded)
            removed_ids = {t["playlist_id"] for t in report.rollback.targets if t["ok"]}
            for t in report.targets:
                if t.status == TARGET_ADDED and t.playlist_id in removed_ids:
                    t.rolled_back = True
            report.status = "rolled_back"

        logger.info(f"[publish] media={media_id} plan={plan_key} status={report.status} added={added} failed={failed}")
        return report

    async def rollback(self, media_id: int, succeeded_targets: list[PublishTarget]) -> RollbackReport:
        """Compensating removal; safe to repeat."""
        report = RollbackReport(media_id=media_id)
        for target in succeeded_targets:
            result = await self.remove_from_playlist(target.playlist_id, media_id)
            if not result.ok:
                report.failed += 1
            elif result.already_present:
                report.removed += 1
            else:
                report.not_present += 1
            report.targets.append({
                "location_id": target.location_id,
                "playlist_id": target.playlist_id,
                "ok": result.ok,
                "removed": result.ok and result.already_present,
                "error_code": result.error_code,
            })
        logger.info(f"[rollback] media={media_id} removed={report.removed} absent={report.not_present} failed={report.failed}")
        return report

    # ── Base playlist / screens ──────────────────────────────

    async def get_base_playlist_id(self) -> int | None:
        cached = self.base_playlist_cache.get()
        if cached is not None:
            return cached

        name = self.settings.base_playlist_name
        result = await self.client.search_playlists(name)
        if not result.ok:
            logger.warning(f"[playlist] base playlist lookup failed: {result.status}")
            return None
        for playlist in results_list(result.data):
            if str(playlist.get("name") or "").strip().lower() == name.lower() and playlist.get("id"):
                playlist_id = int(playlist["id"])
                self.base_playlist_cache.set(playlist_id)
                return playlist_id
        logger.warning(f"[playlist] base playlist {name!r} not found")
        return None

    async def apply_screen_source(self, screen_id: int | str, playlist_id: int) -> ScreenApplyResult:
        patched = await self.client.patch_screen_content(screen_id, playlist_id)
        if not patched.ok:
            return ScreenApplyResult(False, "SCREEN_PATCH_FAILED", patched.error)

        reread = await self.client.get_screen(screen_id)
        if not reread.ok:
            return ScreenApplyResult(False, "SCREEN_REREAD_FAILED", reread.error)
        screen = normalize_screen(reread.data)
        if screen["source_type"] != "playlist" or screen["source_id"] != playlist_id:
            logger.warning(
                f"[screen][{screen_id}] source mismatch after patch: {screen['source_type']}/{screen['source_id']}"
            )
            return ScreenApplyResult(
                False, "SCREEN_SOURCE_MISMATCH", "screen did not take the new source",
                screen["source_type"], screen["source_id"],
            )
        return ScreenApplyResult(True, source_type=screen["source_type"], source_id=screen["source_id"])
