"""Test the watchdog and the scheduler tick."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from signage_sync.models import IntegrationOutbox, UploadJob, UploadJobStatus
from signage_sync.services.scheduler import SchedulerService
from signage_sync.services.watchdog_service import STALE_PROCESSING, WATCHDOG_STALE, run_watchdog

OLD = datetime.now(timezone.utc) - timedelta(hours=2)


async def _outbox_row(db: AsyncSession, key: str, status: str, updated_at: datetime | None = None) -> IntegrationOutbox:
    row = IntegrationOutbox(
        action_type="add_to_playlist", entity_type="playlist", entity_id="10",
        idempotency_key=key, status=status, attempts=1,
    )
    if updated_at is not None:
        row.updated_at = updated_at
    db.add(row)
    await db.commit()
    return row


async def _job(db: AsyncSession, cid: str, status: UploadJobStatus, updated_at: datetime | None = None) -> UploadJob:
    job = UploadJob(
        correlation_id=cid, source_ref="assets/spot.mp4", desired_filename="spot.mp4",
        status=status.value, poll_attempts=0, finalize_attempted=False,
    )
    if updated_at is not None:
        job.updated_at = updated_at
    db.add(job)
    await db.commit()
    return job


async def test_releases_stale_rows(db, settings):
    stale = await _outbox_row(db, "k-stale", "processing", OLD)
    fresh = await _outbox_row(db, "k-fresh", "processing")
    done = await _outbox_row(db, "k-done", "succeeded", OLD)
    stuck = await _job(db, "TXN-stuck", UploadJobStatus.polling, OLD)
    finished = await _job(db, "TXN-done", UploadJobStatus.ready, OLD)

    report = await run_watchdog(db, settings=settings)

    assert report["dry_run"] is False
    assert report["stale_outbox"] == 1
    assert report["stale_upload_jobs"] == 1
    assert stale.status == "failed"
    assert stale.error_code == STALE_PROCESSING
    assert fresh.status == "processing"
    assert done.status == "succeeded"
    assert stuck.status == UploadJobStatus.failed.value
    assert stuck.error_code == WATCHDOG_STALE
    assert stuck.error_details["stale_status"] == "POLLING"
    assert finished.status == UploadJobStatus.ready.value


async def test_dry_run_changes_nothing(db, settings):
    stale = await _outbox_row(db, "k-stale", "processing", OLD)
    stuck = await _job(db, "TXN-stuck", UploadJobStatus.created, OLD)

    report = await run_watchdog(db, dry_run=True, settings=settings)

    assert report["dry_run"] is True
    assert [i["kind"] for i in report["items"]] == ["outbox", "upload_job"]
    await db.refresh(stale)
    await db.refresh(stuck)
    assert stale.status == "processing"
    assert stuck.status == UploadJobStatus.created.value


async def test_nothing_stale(db, settings):
    await _outbox_row(db, "k-fresh", "processing")
    report = await run_watchdog(db, settings=settings)
    assert report["items"] == []


async def test_scheduler_tick_runs_without_advisory_locks_on_sqlite(engine, db):
    stale = await _outbox_row(db, "k-stale", "processing", OLD)

    service = SchedulerService()
    service._session_factory = async_sessionmaker(engine, expire_on_commit=False)
    assert service._uses_advisory_locks is False

    report = await service.run_watchdog_tick()

    assert report["stale_outbox"] == 1
    await db.refresh(stale)
    assert stale.status == "failed"


def test_scheduler_start_respects_disabled_flag():
    service = SchedulerService()
    service.start()
    assert service.is_running() is False
