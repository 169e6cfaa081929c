from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship as sa_relationship

from .db import Base


def relationship(*args, **kwargs):
    """Wrap SQLAlchemy relationship to forbid lazy loading by default."""
    kwargs.setdefault("lazy", "raise")
    return sa_relationship(*args, **kwargs)


def _uuid() -> str:
    return str(uuid.uuid4())


class UploadJobStatus(str, Enum):
    """Upload state machine. Order of declaration is the allowed direction."""

    queued = "QUEUED"
    created = "CREATED"
    uploaded = "UPLOADED"
    finalize_attempted = "FINALIZE_ATTEMPTED"
    verified_exists = "VERIFIED_EXISTS"
    polling = "POLLING"
    ready = "READY"
    failed = "FAILED"

    @property
    def rank(self) -> int:
        return _UPLOAD_STATUS_ORDER.index(self)

    @property
    def is_terminal(self) -> bool:
        return self in (UploadJobStatus.ready, UploadJobStatus.failed)


_UPLOAD_STATUS_ORDER = list(UploadJobStatus)


class CanonicalSource(str, Enum):
    existing_canonical = "existing_canonical"
    yodeck_search = "yodeck_search"
    upload = "upload"
    url_clone = "url_clone"
    none = "none"


class OutboxStatus(str, Enum):
    processing = "processing"
    succeeded = "succeeded"
    failed = "failed"


class Advertiser(Base):
    """Advertiser row owned by the admin application; this core only touches
    the canonical media reference and publish-failure fields."""

    __tablename__ = "advertisers"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    company_name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    link_key: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)
    asset_status: Mapped[str | None] = mapped_column(sa.String(32), nullable=True)
    # Canonical media reference: replaced, never appended
    yodeck_media_id_canonical: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    canonical_updated_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    canonical_source: Mapped[str | None] = mapped_column(sa.String(32), nullable=True)
    publish_error_code: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    publish_error_message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    publish_failed_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )

    assets: Mapped[list["AdAsset"]] = relationship(
        back_populates="advertiser", cascade="all, delete-orphan", passive_deletes=True
    )
    upload_jobs: Mapped[list["UploadJob"]] = relationship(back_populates="advertiser", passive_deletes=True)


class AdAsset(Base):
    """Uploaded creative. Validity (codec, duration) is decided upstream."""

    __tablename__ = "ad_assets"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    advertiser_id: Mapped[str] = mapped_column(
        sa.ForeignKey("advertisers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    original_file_name: Mapped[str | None] = mapped_column(sa.String(512), nullable=True)
    stored_filename: Mapped[str | None] = mapped_column(sa.String(512), nullable=True)
    storage_path: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    converted_storage_path: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    storage_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    converted_storage_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    size_bytes: Mapped[int | None] = mapped_column(sa.BigInteger(), nullable=True)
    converted_size_bytes: Mapped[int | None] = mapped_column(sa.BigInteger(), nullable=True)
    duration_seconds: Mapped[float | None] = mapped_column(sa.Numeric(8, 2), nullable=True)
    validation_status: Mapped[str | None] = mapped_column(sa.String(32), nullable=True)
    approval_status: Mapped[str | None] = mapped_column(sa.String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )

    advertiser: Mapped[Advertiser] = relationship(back_populates="assets")


class UploadJob(Base):
    """One row per upload attempt; audit trail, never deleted."""

    __tablename__ = "upload_jobs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    correlation_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    advertiser_id: Mapped[str | None] = mapped_column(
        sa.ForeignKey("advertisers.id", ondelete="SET NULL"), nullable=True, index=True
    )
    source_ref: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    desired_filename: Mapped[str] = mapped_column(sa.String(512), nullable=False)
    expected_size: Mapped[int | None] = mapped_column(sa.BigInteger(), nullable=True)
    status: Mapped[str] = mapped_column(sa.String(32), nullable=False, server_default=UploadJobStatus.queued.value)
    yodeck_media_id: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    upload_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)

    # Per-step response snapshots
    create_response: Mapped[dict | None] = mapped_column(sa.JSON(), nullable=True)
    put_status: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    put_etag: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    put_duration_ms: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    put_response_headers: Mapped[dict | None] = mapped_column(sa.JSON(), nullable=True)
    finalize_attempted: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, server_default=sa.false())
    finalize_status: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    finalize_url_used: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    finalize_outcome: Mapped[str | None] = mapped_column(sa.String(32), nullable=True)
    confirm_response: Mapped[dict | None] = mapped_column(sa.JSON(), nullable=True)
    poll_attempts: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")
    yodeck_status: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    yodeck_file_size: Mapped[int | None] = mapped_column(sa.BigInteger(), nullable=True)

    # Terminal error
    error_code: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    error_details: Mapped[dict | None] = mapped_column(sa.JSON(), nullable=True)
    last_error: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    last_error_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )

    advertiser: Mapped[Advertiser | None] = relationship(back_populates="upload_jobs")


class IntegrationOutbox(Base):
    """Intent and outcome of one side effect against an external platform."""

    __tablename__ = "integration_outbox"
    __table_args__ = (
        sa.UniqueConstraint("idempotency_key", name="uq_integration_outbox_idempotency_key"),
        sa.Index("ix_integration_outbox_entity", "entity_type", "entity_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(sa.String(32), nullable=False, server_default="yodeck")
    action_type: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(sa.String(128), nullable=False)
    payload_json: Mapped[dict | None] = mapped_column(sa.JSON(), nullable=True)
    status: Mapped[str] = mapped_column(sa.String(32), nullable=False, server_default=OutboxStatus.processing.value)
    external_id: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)
    response_json: Mapped[dict | None] = mapped_column(sa.JSON(), nullable=True)
    error_code: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    last_error: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    attempts: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="1")
    processed_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )
