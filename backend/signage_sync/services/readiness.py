"""
Readiness classification for remote media records.

Pure functions only: no I/O, no clock. Two independent questions are answered
here:

* did a binary upload land? (`classify_upload_verification`)
* is a remote media record usable for playback? (`is_ready_standalone`)

Yodeck's "ready" vocabulary is inconsistent, so membership checks go through
the fixed status sets below instead of comparing against one literal.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

READY_STATUSES = frozenset({"finished", "ready", "done", "encoded", "active", "ok", "completed"})
FAILED_STATUSES = frozenset({"failed", "error", "aborted", "rejected"})
INITIALIZING_STATUSES = frozenset({"initialized", "initializing", "pending", "uploading"})

VIDEO_EXTENSIONS = (".mp4", ".mov", ".avi", ".webm")

# Verification statuses that mean "the platform will not let us look", not "the file is missing"
RESTRICTED_VERIFY_STATUSES = frozenset({403, 405, 501})


class VerificationVerdict(str, Enum):
    ok = "OK"
    inconclusive = "INCONCLUSIVE"
    fail = "FAIL"


class VerificationSignal(str, Enum):
    strong = "STRONG"
    wait_thumbnail = "WAIT_THUMBNAIL"
    file_fields = "FILE_FIELDS"
    none = "NONE"


class MediaFailedError(Exception):
    """Remote media reports a terminal `failed` status."""

    def __init__(self, message: str, media_id: Any = None):
        super().__init__(message)
        self.media_id = media_id


@dataclass(frozen=True)
class FileState:
    has_file_object: bool = False
    has_file_url: bool = False
    file_size: int = 0

    @property
    def has_any(self) -> bool:
        return self.has_file_object or self.has_file_url or self.file_size > 0


@dataclass(frozen=True)
class ReadinessDecision:
    ready: bool
    signal: VerificationSignal
    reason: str


def file_state_from(media: dict[str, Any]) -> FileState:
    """Build file flags from a normalized media record."""
    return FileState(
        has_file_object=bool(media.get("file")),
        has_file_url=bool(media.get("file_url")),
        file_size=int(media.get("file_size") or 0),
    )


def classify_upload_verification(
    *,
    put_ok: bool,
    etag_present: bool = False,
    verify_ok: bool = False,
    verify_status: int | None = None,
    content_length: int | None = None,
    method_used: str | None = None,
    expected_size: int | None = None,
) -> VerificationVerdict:
    """Three-way verdict for a completed PUT.

    INCONCLUSIVE must not be treated as failure by callers: the write went
    through and the platform simply refused to let us look at it.
    `etag_present` and `expected_size` are diagnostic only.
    """
    verified = verify_ok or verify_status == 200
    length = content_length or 0

    if verified and length > 0:
        return VerificationVerdict.ok
    if verify_status == 200 and content_length == 0:
        return VerificationVerdict.fail
    if not put_ok:
        return VerificationVerdict.fail
    if verify_status in RESTRICTED_VERIFY_STATUSES or (method_used or "").upper() == "NONE":
        return VerificationVerdict.inconclusive
    return VerificationVerdict.fail


def is_ready_standalone(record: dict[str, Any], file_state: FileState | None = None) -> ReadinessDecision:
    """Decide whether a media record is playable from its field-presence pattern.

    Raises MediaFailedError for `failed` status; never returns in that case.
    """
    file_state = file_state or FileState()
    status = str(record.get("status") or "").strip().lower()

    if status == "failed":
        detail = record.get("error_message") or "no error message"
        raise MediaFailedError(f"media {record.get('id')} failed: {detail}", media_id=record.get("id"))

    if file_state.has_any:
        return ReadinessDecision(True, VerificationSignal.file_fields, "file fields present")

    has_uploaded = bool(record.get("last_uploaded"))
    has_thumbnail = bool(record.get("thumbnail_url"))
    if status == "finished" and has_uploaded and has_thumbnail:
        return ReadinessDecision(True, VerificationSignal.strong, "finished with last_uploaded and thumbnail")
    if status == "finished" and has_uploaded:
        return ReadinessDecision(False, VerificationSignal.wait_thumbnail, "finished, waiting for thumbnail")
    return ReadinessDecision(False, VerificationSignal.none, f"no readiness signal (status={status or 'unknown'})")


def is_ready_status(status: str | None) -> bool:
    return str(status or "").strip().lower() in READY_STATUSES


def is_failed_status(status: str | None) -> bool:
    return str(status or "").strip().lower() in FAILED_STATUSES


def is_initializing_status(status: str | None) -> bool:
    return str(status or "").strip().lower() in INITIALIZING_STATUSES


def is_video_media(media: dict[str, Any]) -> bool:
    origin = media.get("media_origin")
    if isinstance(origin, dict) and origin.get("type"):
        return str(origin["type"]).lower() == "video"
    ext = str(media.get("file_extension") or "").lower()
    if ext:
        ext = ext if ext.startswith(".") else f".{ext}"
        return ext in VIDEO_EXTENSIONS
    name = str(media.get("name") or "").lower()
    return name.endswith(VIDEO_EXTENSIONS)


def validate_remote_media(media: dict[str, Any]) -> tuple[bool, str]:
    """Usable as a canonical reference: ready, non-empty and a video."""
    if not media.get("id"):
        return False, "missing id"
    if not is_video_media(media):
        return False, "not a video"
    status = media.get("status")
    if is_failed_status(status):
        return False, f"status {status}"
    if is_ready_status(status) and int(media.get("file_size") or 0) > 0:
        return True, "ready"
    try:
        decision = is_ready_standalone(media, file_state_from(media))
    except MediaFailedError as exc:
        return False, str(exc)
    if decision.ready:
        return True, decision.signal.value
    return False, decision.reason
