"""
Publish operations: canonical media, playlist fan-out, rollback, diagnostics.
"""
from __future__ import annotations

import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .integrations.yodeck_api import YodeckClient
from .schemas import (
    BasePlaylistRead,
    OutboxStatsRead,
    PublishReportRead,
    PublishRequest,
    ResolveResponse,
    RollbackReportRead,
    RollbackRequest,
    ScreenSourceRead,
    ScreenSourceRequest,
    UploadJobRead,
)
from .services import outbox
from .services.asset_store import AssetStore, LocalAssetStore
from .services.canonical_media import CanonicalMediaResolver
from .services.playlist_sync import PlaylistSyncCoordinator, PublishTarget
from .services.ttl_cache import TtlCache
from .services.upload_coordinator import TransactionalUploadCoordinator, get_recent_upload_jobs
from .services.watchdog_service import run_watchdog
from .settings import InvalidCredentials, Settings, get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/publish", tags=["publish"])

SessionDep = Depends(get_session)
SettingsDep = Depends(get_settings)

_base_playlist_cache: TtlCache[int] = TtlCache(get_settings().base_playlist_cache_ttl_sec)


async def get_yodeck_client(settings: Settings = SettingsDep) -> AsyncIterator[YodeckClient]:
    try:
        credentials = settings.yodeck_credentials()
    except InvalidCredentials as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    async with YodeckClient(
        credentials,
        base_url=settings.yodeck_api_base,
        timeout=settings.yodeck_request_timeout_sec,
        max_retries=settings.yodeck_max_retries,
    ) as client:
        yield client


def get_asset_store() -> AssetStore:
    return LocalAssetStore()


def get_base_playlist_cache() -> TtlCache[int]:
    return _base_playlist_cache


ClientDep = Depends(get_yodeck_client)


@router.post("/advertisers/{advertiser_id}/canonical-media", response_model=ResolveResponse)
async def resolve_canonical_media(
    advertiser_id: str,
    session: AsyncSession = SessionDep,
    client: YodeckClient = ClientDep,
    asset_store: AssetStore = Depends(get_asset_store),
    settings: Settings = SettingsDep,
):
    """Find or (re)create the advertiser's canonical Yodeck media."""
    uploader = TransactionalUploadCoordinator(session, client, asset_store, settings=settings)
    result = await CanonicalMediaResolver(session, client, uploader, settings=settings).resolve(advertiser_id)
    if result.error == "ADVERTISER_NOT_FOUND":
        raise HTTPException(status_code=404, detail="Advertiser not found")
    return result.to_dict()


@router.post("/publish", response_model=PublishReportRead)
async def publish(
    body: PublishRequest,
    session: AsyncSession = SessionDep,
    client: YodeckClient = ClientDep,
    settings: Settings = SettingsDep,
):
    coordinator = PlaylistSyncCoordinator(session, client, settings=settings)
    report = await coordinator.publish_to_targets(
        body.media_id,
        [PublishTarget(t.location_id, t.playlist_id) for t in body.targets],
        duration=body.duration,
        plan_key=body.plan_key,
        all_or_nothing=body.all_or_nothing,
    )
    return report.to_dict()


@router.post("/rollback", response_model=RollbackReportRead)
async def rollback(
    body: RollbackRequest,
    session: AsyncSession = SessionDep,
    client: YodeckClient = ClientDep,
    settings: Settings = SettingsDep,
):
    coordinator = PlaylistSyncCoordinator(session, client, settings=settings)
    report = await coordinator.rollback(
        body.media_id, [PublishTarget(t.location_id, t.playlist_id) for t in body.targets]
    )
    return {
        "media_id": report.media_id,
        "removed": report.removed,
        "not_present": report.not_present,
        "failed": report.failed,
        "targets": report.targets,
    }


@router.get("/yodeck/base-playlist", response_model=BasePlaylistRead)
async def base_playlist(
    session: AsyncSession = SessionDep,
    client: YodeckClient = ClientDep,
    cache: TtlCache[int] = Depends(get_base_playlist_cache),
    settings: Settings = SettingsDep,
):
    coordinator = PlaylistSyncCoordinator(session, client, settings=settings, base_playlist_cache=cache)
    return {"name": settings.base_playlist_name, "playlist_id": await coordinator.get_base_playlist_id()}


@router.post("/screens/{screen_id}/source", response_model=ScreenSourceRead)
async def set_screen_source(
    screen_id: int,
    body: ScreenSourceRequest,
    session: AsyncSession = SessionDep,
    client: YodeckClient = ClientDep,
    settings: Settings = SettingsDep,
):
    """Point a screen at a playlist and confirm it took."""
    coordinator = PlaylistSyncCoordinator(session, client, settings=settings)
    result = await coordinator.apply_screen_source(screen_id, body.playlist_id)
    return {
        "ok": result.ok,
        "error_code": result.error_code,
        "error": result.error,
        "source_type": result.source_type,
        "source_id": result.source_id,
    }


@router.get("/upload-jobs", response_model=list[UploadJobRead])
async def list_upload_jobs(
    advertiser_id: Optional[str] = Query(default=None),
    limit: int = Query(default=20, ge=1, le=200),
    session: AsyncSession = SessionDep,
):
    return await get_recent_upload_jobs(session, advertiser_id=advertiser_id, limit=limit)


@router.get("/outbox/stats", response_model=OutboxStatsRead)
async def outbox_stats(session: AsyncSession = SessionDep):
    return await outbox.get_outbox_stats(session)


@router.post("/outbox/retry-failed")
async def outbox_retry_failed(
    provider: Optional[str] = Query(default=None),
    session: AsyncSession = SessionDep,
):
    return {"reset": await outbox.retry_failed(session, provider=provider)}


@router.get("/yodeck/auth-status")
async def yodeck_auth_status(settings: Settings = SettingsDep):
    """Validate the configured token against the live API."""
    try:
        credentials = settings.yodeck_credentials()
    except InvalidCredentials as exc:
        return {"ok": False, "status": None, "error": str(exc)}
    async with YodeckClient(credentials, base_url=settings.yodeck_api_base, max_retries=0) as client:
        return await client.validate_auth()


@router.post("/watchdog")
async def run_watchdog_endpoint(
    dry_run: bool = Query(default=True),
    session: AsyncSession = SessionDep,
    settings: Settings = SettingsDep,
):
    """Release stale outbox rows and upload jobs."""
    return await run_watchdog(session, dry_run=dry_run, settings=settings)
