"""
Celery tasks for publishing.

Tasks run the async services in a fresh event loop (`asyncio.run`) with a
fresh engine per invocation; the engine is disposed afterwards so no
connection outlives the loop that created it.

Retries are safe: resolution re-validates the existing reference first and
playlist adds are guarded by outbox idempotency keys.
"""
from __future__ import annotations

import asyncio
import logging

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from signage_sync.integrations.yodeck_api import YodeckClient
from signage_sync.services.asset_store import LocalAssetStore
from signage_sync.services.canonical_media import CanonicalMediaResolver
from signage_sync.services.playlist_sync import PlaylistSyncCoordinator, PublishTarget
from signage_sync.services.upload_coordinator import TransactionalUploadCoordinator
from signage_sync.settings import get_settings
from signage_sync.worker.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _resolve_async(advertiser_id: str) -> dict:
    settings = get_settings()
    engine = create_async_engine(settings.async_database_url, echo=False)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    try:
        async with session_factory() as session, YodeckClient.from_settings(settings) as client:
            uploader = TransactionalUploadCoordinator(session, client, LocalAssetStore(), settings=settings)
            resolver = CanonicalMediaResolver(session, client, uploader, settings=settings)
            result = await resolver.resolve(advertiser_id)
            logger.info(f"[worker] resolve advertiser={advertiser_id} ok={result.ok} source={result.source}")
            return result.to_dict()
    finally:
        await engine.dispose()


async def _publish_async(media_id: int, targets: list[dict], duration: int | None, plan_key: str,
                         all_or_nothing: bool) -> dict:
    settings = get_settings()
    engine = create_async_engine(settings.async_database_url, echo=False)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    try:
        async with session_factory() as session, YodeckClient.from_settings(settings) as client:
            coordinator = PlaylistSyncCoordinator(session, client, settings=settings)
            report = await coordinator.publish_to_targets(
                media_id,
                [PublishTarget(str(t["location_id"]), int(t["playlist_id"])) for t in targets],
                duration=duration,
                plan_key=plan_key,
                all_or_nothing=all_or_nothing,
            )
            return report.to_dict()
    finally:
        await engine.dispose()


@celery_app.task(
    bind=True,
    name="publish.resolve_canonical",
    autoretry_for=(ConnectionError, TimeoutError),
    retry_backoff=True,
    retry_kwargs={"max_retries": 3},
    queue="publish",
)
def resolve_canonical(self, advertiser_id: str) -> dict:
    logger.info(f"[worker] resolve_canonical {advertiser_id} (celery_id={self.request.id}, attempt={self.request.retries + 1})")
    return asyncio.run(_resolve_async(advertiser_id))


@celery_app.task(
    bind=True,
    name="publish.publish_targets",
    autoretry_for=(ConnectionError, TimeoutError),
    retry_backoff=True,
    retry_kwargs={"max_retries": 3},
    queue="publish",
)
def publish_targets(
    self,
    media_id: int,
    targets: list[dict],
    duration: int | None = None,
    plan_key: str = "default",
    all_or_nothing: bool = False,
) -> dict:
    logger.info(f"[worker] publish_targets media={media_id} targets={len(targets)} (celery_id={self.request.id})")
    return asyncio.run(_publish_async(media_id, targets, duration, plan_key, all_or_nothing))
