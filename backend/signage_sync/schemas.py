from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


class PublishTargetIn(BaseModel):
    location_id: str
    playlist_id: int

    @field_validator("location_id")
    @classmethod
    def normalize_location_id(cls, value: str) -> str:
        return value.strip()


class PublishRequest(BaseModel):
    media_id: int
    plan_key: str
    targets: list[PublishTargetIn] = Field(min_length=1)
    duration: int | None = Field(default=None, ge=1)
    all_or_nothing: bool = False


class RollbackRequest(BaseModel):
    media_id: int
    targets: list[PublishTargetIn]


class ResolveResponse(BaseModel):
    ok: bool
    remote_media_id: int | None = None
    source: str
    error: str | None = None
    diagnostics: dict[str, Any] = {}


class TargetReportRead(BaseModel):
    location_id: str
    playlist_id: int
    status: str
    error_code: str | None = None
    error: str | None = None
    accepted_unconfirmed: bool = False
    item_count: int = 0
    rolled_back: bool = False


class RollbackReportRead(BaseModel):
    media_id: int
    removed: int
    not_present: int
    failed: int
    targets: list[dict[str, Any]] = []


class PublishReportRead(BaseModel):
    media_id: int
    status: str
    added: int
    in_progress: int
    failed: int
    targets: list[TargetReportRead]
    rollback: RollbackReportRead | None = None


class UploadJobRead(BaseModel):
    id: int
    correlation_id: str
    advertiser_id: str | None = None
    source_ref: str
    desired_filename: str
    status: str
    yodeck_media_id: int | None = None
    put_status: int | None = None
    finalize_outcome: str | None = None
    poll_attempts: int
    yodeck_status: str | None = None
    yodeck_file_size: int | None = None
    error_code: str | None = None
    last_error: str | None = None
    created_at: datetime
    completed_at: datetime | None = None

    class Config:
        from_attributes = True


class OutboxStatsRead(BaseModel):
    total: int
    by_status: dict[str, int]
    by_provider: dict[str, dict[str, int]]


class BasePlaylistRead(BaseModel):
    name: str
    playlist_id: int | None = None


class ScreenSourceRequest(BaseModel):
    playlist_id: int


class ScreenSourceRead(BaseModel):
    ok: bool
    error_code: str | None = None
    error: str | None = None
    source_type: str | None = None
    source_id: int | None = None
