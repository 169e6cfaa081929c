"""
Watchdog service: releases work that a crashed process left behind.

Stale criteria:
- outbox row in `processing` with updated_at < now - OUTBOX_STALE_MINUTES
  -> `failed` / STALE_PROCESSING (the key becomes claimable again)
- upload job not READY/FAILED with updated_at < now - UPLOAD_STALE_MINUTES
  -> FAILED / WATCHDOG_STALE
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from signage_sync.models import IntegrationOutbox, OutboxStatus, UploadJob, UploadJobStatus
from signage_sync.services.notify import notify_warn
from signage_sync.settings import Settings, get_settings

logger = logging.getLogger(__name__)

STALE_PROCESSING = "STALE_PROCESSING"
WATCHDOG_STALE = "WATCHDOG_STALE"

_OPEN_UPLOAD_STATUSES = [s.value for s in UploadJobStatus if not s.is_terminal]


def _age_minutes(now: datetime, ts: datetime | None) -> float:
    if ts is None:
        return 0.0
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return (now - ts).total_seconds() / 60


async def run_watchdog(
    session: AsyncSession, *, dry_run: bool = False, settings: Settings | None = None,
) -> dict[str, Any]:
    """Fail stale outbox rows and upload jobs. Returns a report dict."""
    settings = settings or get_settings()
    now = datetime.now(timezone.utc)
    outbox_cutoff = now - timedelta(minutes=settings.outbox_stale_minutes)
    upload_cutoff = now - timedelta(minutes=settings.upload_stale_minutes)

    stale_outbox = list((await session.execute(
        select(IntegrationOutbox).where(and_(
            IntegrationOutbox.status == OutboxStatus.processing.value,
            IntegrationOutbox.updated_at < outbox_cutoff,
        ))
    )).scalars().all())

    stale_jobs = list((await session.execute(
        select(UploadJob).where(and_(
            UploadJob.status.in_(_OPEN_UPLOAD_STATUSES),
            UploadJob.updated_at < upload_cutoff,
        ))
    )).scalars().all())

    items: list[dict] = []

    for entry in stale_outbox:
        age = _age_minutes(now, entry.updated_at)
        message = f"watchdog: processing > {settings.outbox_stale_minutes}m (age={age:.0f}m)"
        items.append({
            "kind": "outbox",
            "id": entry.id,
            "action_type": entry.action_type,
            "old_status": entry.status,
            "age_minutes": round(age),
            "error_code": STALE_PROCESSING,
        })
        if not dry_run:
            entry.status = OutboxStatus.failed.value
            entry.error_code = STALE_PROCESSING
            entry.last_error = message
            entry.processed_at = now

    for job in stale_jobs:
        age = _age_minutes(now, job.updated_at)
        message = f"watchdog: stuck in {job.status} > {settings.upload_stale_minutes}m (age={age:.0f}m)"
        items.append({
            "kind": "upload_job",
            "id": job.id,
            "correlation_id": job.correlation_id,
            "old_status": job.status,
            "age_minutes": round(age),
            "error_code": WATCHDOG_STALE,
        })
        if not dry_run:
            job.error_details = {"stale_status": job.status, "age_minutes": round(age)}
            job.status = UploadJobStatus.failed.value
            job.error_code = WATCHDOG_STALE
            job.last_error = message
            job.last_error_at = now
            job.completed_at = now

    if items and not dry_run:
        await session.commit()
        logger.warning(f"[watchdog] released {len(stale_outbox)} outbox rows and {len(stale_jobs)} upload jobs")
        await notify_warn(
            "Watchdog released stale publish work",
            f"outbox={len(stale_outbox)} upload_jobs={len(stale_jobs)}",
        )

    return {
        "dry_run": dry_run,
        "checked_at": now.isoformat(),
        "stale_outbox": len(stale_outbox),
        "stale_upload_jobs": len(stale_jobs),
        "items": items,
    }
