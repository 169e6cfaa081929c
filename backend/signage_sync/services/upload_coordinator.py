"""
Transactional upload of one asset to Yodeck.

    create -> resolve upload URL -> PUT bytes -> finalize (best-effort)
           -> verify exists -> poll until ready -> final verify

Every step writes its snapshot to the `UploadJob` row before the next one
starts, so a failed job can be diagnosed from the row alone. Status only moves
forward (see `UploadJobStatus.rank`); `FAILED` is reachable from any state.
"""
from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from signage_sync.integrations.yodeck_api import (
    YodeckClient,
    build_create_media_payload,
    normalize_media,
    presigned_url_from,
    sanitize_dict,
    sanitize_text,
    upload_url_from_create,
)
from signage_sync.models import UploadJob, UploadJobStatus
from signage_sync.services.asset_store import AssetStore
from signage_sync.services.probes import Candidate, run_candidates
from signage_sync.services.readiness import (
    classify_upload_verification,
    file_state_from,
    is_failed_status,
    is_initializing_status,
    is_ready_standalone,
    is_ready_status,
)
from signage_sync.settings import Settings, get_settings

logger = logging.getLogger(__name__)

STORAGE_URL_MARKERS = ("s3.", "storage.googleapis.com", "X-Amz-", "r2.cloudflarestorage.com")

# Tried in order via POST {}; none of them is documented
FINALIZE_PATHS = (
    "upload/complete/",
    "upload/complete",
    "upload/confirm/",
    "upload/confirm",
    "upload/done/",
    "upload/done",
)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(n: int) -> str:
    out = ""
    while n:
        n, r = divmod(n, 36)
        out = _BASE36[r] + out
    return out or "0"


def new_correlation_id(prefix: str = "TXN") -> str:
    rand = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"{prefix}-{_base36(int(time.time() * 1000))}-{rand}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── Polling ──────────────────────────────────────────────────

@dataclass(frozen=True)
class PollPolicy:
    timeout_sec: float
    intervals_sec: tuple[float, ...]
    stuck_after_attempts: int = 20

    @classmethod
    def upload(cls, settings: Settings) -> "PollPolicy":
        return cls(
            timeout_sec=settings.upload_poll_timeout_sec,
            intervals_sec=tuple(settings.upload_poll_intervals_sec),
            stuck_after_attempts=settings.poll_stuck_after_attempts,
        )

    @classmethod
    def clone(cls, settings: Settings) -> "PollPolicy":
        return cls(
            timeout_sec=settings.clone_poll_timeout_sec,
            intervals_sec=tuple(settings.clone_poll_intervals_sec),
            stuck_after_attempts=settings.poll_stuck_after_attempts,
        )

    def interval(self, attempt: int) -> float:
        if not self.intervals_sec:
            return 0.0
        return self.intervals_sec[min(attempt, len(self.intervals_sec) - 1)]


@dataclass
class PollOutcome:
    ready: bool
    reason: str  # ready | failed_status | stuck | not_found | timeout
    last_status: str | None = None
    attempts: int = 0
    record: dict[str, Any] | None = None
    signal: str | None = None


async def poll_until_ready(
    client: YodeckClient,
    media_id: int,
    policy: PollPolicy,
    on_attempt: Callable[[int, dict[str, Any] | None], Awaitable[None]] | None = None,
    *,
    tag: str = "poll",
) -> PollOutcome:
    """Re-fetch media until ready, failed, stuck, gone or out of time.

    Ready means a ready-vocabulary status with a positive size. Non-2xx
    responses other than 404 are retried within the same budget.
    """
    started = time.monotonic()
    attempt = 0
    last_status: str | None = None
    record: dict[str, Any] | None = None

    while time.monotonic() - started < policy.timeout_sec:
        await asyncio.sleep(policy.interval(attempt))
        attempt += 1

        result = await client.get_media(media_id)
        if result.status == 404:
            logger.warning(f"[{tag}] media {media_id} returned 404 on attempt {attempt}")
            return PollOutcome(False, "not_found", last_status, attempt, record)
        if not result.ok:
            logger.info(f"[{tag}] attempt {attempt}: non-ok status {result.status}")
            if on_attempt:
                await on_attempt(attempt, None)
            continue

        record = normalize_media(result.data)
        status = record["status"]
        size = record["file_size"]
        last_status = status
        logger.info(f"[{tag}] attempt {attempt}: media={media_id} status={status} size={size}")
        if on_attempt:
            await on_attempt(attempt, record)

        if is_failed_status(status):
            return PollOutcome(False, "failed_status", status, attempt, record)
        if is_initializing_status(status) and size == 0 and attempt > policy.stuck_after_attempts:
            return PollOutcome(False, "stuck", status, attempt, record)
        if is_ready_status(status) and size > 0:
            decision = is_ready_standalone(record, file_state_from(record))
            return PollOutcome(True, "ready", status, attempt, record, signal=decision.signal.value)

    return PollOutcome(False, "timeout", last_status, attempt, record)


async def check_media_exists(client: YodeckClient, media_id: int) -> dict[str, Any]:
    result = await client.get_media(media_id)
    if result.status == 404:
        return {"exists": False, "status": 404}
    if not result.ok:
        return {"exists": None, "status": result.status, "error": result.error}
    media = normalize_media(result.data)
    return {
        "exists": bool(media["id"]),
        "status": result.status,
        "media_status": media["status"],
        "file_size": media["file_size"],
    }


async def get_recent_upload_jobs(
    session: AsyncSession,
    advertiser_id: str | None = None,
    limit: int = 20,
) -> list[UploadJob]:
    stmt = select(UploadJob).order_by(UploadJob.created_at.desc(), UploadJob.id.desc()).limit(limit)
    if advertiser_id:
        stmt = stmt.where(UploadJob.advertiser_id == advertiser_id)
    return list((await session.execute(stmt)).scalars().all())


# ── Coordinator ──────────────────────────────────────────────

@dataclass
class UploadResult:
    ok: bool
    job_id: int | None
    correlation_id: str
    remote_media_id: int | None = None
    final_state: str = UploadJobStatus.failed.value
    error_code: str | None = None
    error_details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "job_id": self.job_id,
            "correlation_id": self.correlation_id,
            "remote_media_id": self.remote_media_id,
            "final_state": self.final_state,
            "error_code": self.error_code,
        }


class _StepFailed(Exception):
    def __init__(self, code: str, message: str, details: Any = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details


class TransactionalUploadCoordinator:
    def __init__(
        self,
        session: AsyncSession,
        client: YodeckClient,
        asset_store: AssetStore,
        *,
        settings: Settings | None = None,
    ):
        self.session = session
        self.client = client
        self.asset_store = asset_store
        self.settings = settings or get_settings()

    async def upload(
        self,
        source_ref: str,
        desired_name: str,
        expected_size: int | None = None,
        *,
        advertiser_id: str | None = None,
        correlation_id: str | None = None,
    ) -> UploadResult:
        cid = correlation_id or new_correlation_id()
        name = desired_name if desired_name.lower().endswith(".mp4") else f"{desired_name}.mp4"
        job = UploadJob(
            correlation_id=cid,
            advertiser_id=advertiser_id,
            source_ref=source_ref,
            desired_filename=name,
            expected_size=expected_size,
            status=UploadJobStatus.queued.value,
            finalize_attempted=False,
            poll_attempts=0,
        )
        self.session.add(job)
        await self.session.commit()
        self._log(cid, f"START job={job.id} source={source_ref} name={name}")

        try:
            data = await self._read(job, source_ref, expected_size)
            media_id, upload_endpoint = await self._create(job, name)
            upload_url = await self._resolve_upload_url(job, upload_endpoint)
            await self._put(job, upload_url, data)
            await self._finalize(job, media_id)
            await self._verify_exists(job, media_id)
            await self._poll(job, media_id)
            await self._final_verify(job, media_id)
        except _StepFailed as exc:
            await self._fail(job, exc.code, exc.message, exc.details)
            return UploadResult(
                ok=False,
                job_id=job.id,
                correlation_id=cid,
                remote_media_id=job.yodeck_media_id,
                error_code=exc.code,
                error_details=job.error_details or {},
            )
        except Exception as exc:
            logger.exception(f"[upload][{cid}] unexpected error")
            await self.session.rollback()
            await self.session.refresh(job)
            await self._fail(job, "UNEXPECTED_ERROR", str(exc), {"message": sanitize_text(str(exc))})
            return UploadResult(
                ok=False,
                job_id=job.id,
                correlation_id=cid,
                remote_media_id=job.yodeck_media_id,
                error_code="UNEXPECTED_ERROR",
                error_details={"message": sanitize_text(str(exc))},
            )

        await self._advance(job, UploadJobStatus.ready, completed_at=_now())
        self._log(cid, f"COMPLETE job={job.id} media={media_id} final_state=READY")
        return UploadResult(
            ok=True,
            job_id=job.id,
            correlation_id=cid,
            remote_media_id=media_id,
            final_state=UploadJobStatus.ready.value,
        )

    # ── Job bookkeeping ──────────────────────────────────────

    def _log(self, cid: str, msg: str) -> None:
        logger.info(f"[upload][{cid}] {msg}")

    async def _save(self, job: UploadJob, **fields) -> None:
        for key, value in fields.items():
            setattr(job, key, value)
        await self.session.commit()

    async def _advance(self, job: UploadJob, status: UploadJobStatus, **fields) -> None:
        current = UploadJobStatus(job.status)
        if current.is_terminal or status.rank <= current.rank:
            logger.debug(f"[upload][{job.correlation_id}] ignoring transition {current.value} -> {status.value}")
            await self._save(job, **fields)
            return
        await self._save(job, status=status.value, **fields)

    async def _fail(self, job: UploadJob, code: str, message: str, details: Any = None) -> None:
        if UploadJobStatus(job.status).is_terminal:
            return
        logger.error(f"[upload][{job.correlation_id}] FAILED {code}: {sanitize_text(message)}")
        await self._save(
            job,
            status=UploadJobStatus.failed.value,
            error_code=code,
            error_details=sanitize_dict(details) if isinstance(details, dict) else {"detail": details},
            last_error=sanitize_text(message),
            last_error_at=_now(),
            completed_at=_now(),
        )

    # ── Steps ────────────────────────────────────────────────

    async def _read(self, job: UploadJob, source_ref: str, expected_size: int | None) -> bytes:
        try:
            data = await self.asset_store.read(source_ref)
        except Exception as exc:
            raise _StepFailed("FILE_READ_FAILED", f"Could not read asset: {exc}", {"source_ref": source_ref})
        if expected_size is not None and expected_size != len(data):
            self._log(job.correlation_id, f"size mismatch: expected={expected_size} actual={len(data)}")
        return data

    async def _create(self, job: UploadJob, name: str) -> tuple[int, str | None]:
        cid = job.correlation_id
        self._log(cid, "STEP 1 CREATE_MEDIA")
        payload = build_create_media_payload(
            name, include_optional=self.settings.yodeck_send_optional_create_fields
        )
        result = await self.client.create_media(payload)
        await self._save(job, create_response=result.snapshot())

        if result.status == 0:
            raise _StepFailed("CREATE_EXCEPTION", result.error or "create request failed", result.snapshot())
        if not result.ok:
            raise _StepFailed(f"CREATE_FAILED_{result.status}", f"Create media failed: {result.status}", result.snapshot())

        media_id = result.body.get("id")
        if not media_id:
            raise _StepFailed("CREATE_NO_MEDIA_ID", "Create response missing id", result.snapshot())

        media_id = int(media_id)
        upload_endpoint = upload_url_from_create(result.body)
        await self._advance(job, UploadJobStatus.created, yodeck_media_id=media_id)
        self._log(cid, f"STEP 1 OK media={media_id} upload_endpoint={'present' if upload_endpoint else 'MISSING'}")
        return media_id, upload_endpoint

    async def _resolve_upload_url(self, job: UploadJob, endpoint: str | None) -> str:
        cid = job.correlation_id
        self._log(cid, "STEP 2 RESOLVE_UPLOAD_URL")
        if not endpoint:
            raise _StepFailed("NO_UPLOAD_URL_ENDPOINT", "No upload URL in create response")

        if any(marker in endpoint for marker in STORAGE_URL_MARKERS):
            self._log(cid, "STEP 2 endpoint is already a storage URL, using as-is")
            await self._save(job, upload_url=sanitize_text(endpoint))
            return endpoint

        result = await self.client.get_upload_url(endpoint)
        if not result.ok:
            raise _StepFailed(
                f"GET_UPLOAD_URL_FAILED_{result.status}", f"Get upload URL failed: {result.status}", result.snapshot()
            )
        presigned = presigned_url_from(result.body)
        if not presigned:
            raise _StepFailed(
                "NO_PRESIGNED_URL_IN_RESPONSE",
                f"Response missing upload_url (keys: {', '.join(result.body.keys())})",
                result.snapshot(),
            )
        if not presigned.startswith(("http://", "https://")):
            raise _StepFailed("INVALID_PRESIGNED_URL", "Presigned URL invalid format", {"url": presigned[:100]})

        await self._save(job, upload_url=sanitize_text(presigned))
        return presigned

    async def _put(self, job: UploadJob, url: str, data: bytes) -> None:
        cid = job.correlation_id
        size = len(data)
        self._log(cid, f"STEP 3 PUT_BINARY size={size}")
        if size == 0:
            raise _StepFailed("PUT_EMPTY_FILE", "File is empty", {"file_size": 0})

        started = time.monotonic()
        result = await self.client.put_bytes(url, data)
        duration_ms = int((time.monotonic() - started) * 1000)
        etag = result.headers.get("etag")
        await self._save(
            job,
            put_status=result.status,
            put_etag=etag,
            put_duration_ms=duration_ms,
            put_response_headers=sanitize_dict(result.headers) if result.headers else None,
        )

        if result.status == 0:
            raise _StepFailed("PUT_EXCEPTION", result.error or "PUT transport error", {"file_size": size, "duration_ms": duration_ms})
        if not result.ok:
            raise _StepFailed(
                f"PUT_FAILED_{result.status}",
                f"PUT failed with status {result.status}",
                {"status": result.status, "file_size": size, "duration_ms": duration_ms, **result.snapshot()},
            )

        # Presigned PUT URLs cannot be read back; the platform verify below is the authority
        verdict = classify_upload_verification(
            put_ok=True, etag_present=bool(etag), method_used="NONE", expected_size=size
        )
        await self._advance(job, UploadJobStatus.uploaded)
        self._log(cid, f"STEP 3 OK status={result.status} etag={etag} duration={duration_ms}ms storage={verdict.value}")

    async def _finalize(self, job: UploadJob, media_id: int) -> None:
        cid = job.correlation_id
        self._log(cid, "STEP 4 FINALIZE")
        candidates = [
            Candidate(path, lambda url=self.client.url(f"/media/{media_id}/{path}"): self.client.post_json(url))
            for path in FINALIZE_PATHS
        ]
        outcome = await run_candidates(candidates, tag=f"finalize][{cid}")

        if outcome.accepted:
            finalize_outcome = "accepted"
            self._log(cid, f"STEP 4 finalize accepted by {outcome.winner}")
        else:
            finalize_outcome = "not_required"
            reason = "all probes not supported" if outcome.all_not_supported else "no probe succeeded"
            logger.warning(f"[upload][{cid}] STEP 4 finalize not_required ({reason}, last={outcome.last_status}); relying on verify")

        await self._advance(
            job,
            UploadJobStatus.finalize_attempted,
            finalize_attempted=True,
            finalize_status=outcome.response.status if outcome.response else outcome.last_status,
            finalize_url_used=outcome.winner,
            finalize_outcome=finalize_outcome,
        )

    async def _verify_exists(self, job: UploadJob, media_id: int) -> None:
        cid = job.correlation_id
        self._log(cid, f"STEP 5 VERIFY_EXISTS media={media_id}")
        await asyncio.sleep(self.settings.upload_verify_delay_sec)
        result = await self.client.get_media(media_id)
        await self._save(job, confirm_response=result.snapshot())

        if result.status == 404:
            raise _StepFailed("VERIFY_404", "Media not found in Yodeck after upload", result.snapshot())
        if not result.ok:
            raise _StepFailed(f"VERIFY_ERROR_{result.status}", f"Verify failed: {result.status}", result.snapshot())
        if not result.body.get("id"):
            raise _StepFailed("VERIFY_INVALID_RESPONSE", "Verify response missing id", result.snapshot())

        media = normalize_media(result.data)
        await self._advance(
            job,
            UploadJobStatus.verified_exists,
            yodeck_status=media["status"] or None,
            yodeck_file_size=media["file_size"],
        )

    async def _poll(self, job: UploadJob, media_id: int) -> None:
        cid = job.correlation_id
        await self._advance(job, UploadJobStatus.polling)

        async def record_attempt(attempt: int, media: dict | None) -> None:
            fields: dict[str, Any] = {"poll_attempts": attempt}
            if media is not None:
                fields["yodeck_status"] = media["status"] or None
                fields["yodeck_file_size"] = media["file_size"]
            await self._save(job, **fields)

        outcome = await poll_until_ready(
            self.client, media_id, PollPolicy.upload(self.settings), record_attempt, tag=f"upload][{cid}"
        )
        if outcome.ready:
            self._log(cid, f"STEP 6 READY after {outcome.attempts} polls signal={outcome.signal}")
            return

        details = {"attempts": outcome.attempts, "last_status": outcome.last_status}
        if outcome.reason == "not_found":
            raise _StepFailed("POLL_404", "Media disappeared during polling", details)
        if outcome.reason == "failed_status":
            status = (outcome.last_status or "unknown").upper()
            raw = (outcome.record or {}).get("raw") or {}
            raise _StepFailed(f"YODECK_STATUS_{status}", f"Yodeck status: {outcome.last_status}", {**details, "media": raw})
        if outcome.reason == "stuck":
            raise _StepFailed("FAILED_INIT_STUCK", "Media stuck on initialized status", details)
        raise _StepFailed("POLL_TIMEOUT", "Timeout waiting for media to become ready", details)

    async def _final_verify(self, job: UploadJob, media_id: int) -> None:
        result = await self.client.get_media(media_id)
        if result.status == 404:
            raise _StepFailed("FINAL_VERIFY_404", "Final verification: media gone", {"status": 404})
        if not result.ok:
            raise _StepFailed(f"FINAL_VERIFY_{result.status}", "Final verification failed", {"status": result.status})
        if not result.body.get("id"):
            raise _StepFailed("FINAL_VERIFY_INVALID", "Final verification: missing id", result.snapshot())
        self._log(job.correlation_id, "FINAL VERIFICATION passed")
