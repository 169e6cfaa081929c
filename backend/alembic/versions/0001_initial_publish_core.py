"""create advertisers, ad_assets, upload_jobs, integration_outbox

Revision ID: 0001_initial_publish_core
Revises:
Create Date: 2026-10-18 10:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_initial_publish_core"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "advertisers",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("company_name", sa.String(length=255), nullable=False),
        sa.Column("link_key", sa.String(length=128), nullable=True),
        sa.Column("asset_status", sa.String(length=32), nullable=True),
        sa.Column("yodeck_media_id_canonical", sa.Integer(), nullable=True),
        sa.Column("canonical_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canonical_source", sa.String(length=32), nullable=True),
        sa.Column("publish_error_code", sa.String(length=64), nullable=True),
        sa.Column("publish_error_message", sa.Text(), nullable=True),
        sa.Column("publish_failed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "ad_assets",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "advertiser_id",
            sa.String(length=36),
            sa.ForeignKey("advertisers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("original_file_name", sa.String(length=512), nullable=True),
        sa.Column("stored_filename", sa.String(length=512), nullable=True),
        sa.Column("storage_path", sa.Text(), nullable=True),
        sa.Column("converted_storage_path", sa.Text(), nullable=True),
        sa.Column("storage_url", sa.Text(), nullable=True),
        sa.Column("converted_storage_url", sa.Text(), nullable=True),
        sa.Column("size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("converted_size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("duration_seconds", sa.Numeric(8, 2), nullable=True),
        sa.Column("validation_status", sa.String(length=32), nullable=True),
        sa.Column("approval_status", sa.String(length=32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_ad_assets_advertiser_id", "ad_assets", ["advertiser_id"])

    op.create_table(
        "upload_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("correlation_id", sa.String(length=64), nullable=False),
        sa.Column(
            "advertiser_id",
            sa.String(length=36),
            sa.ForeignKey("advertisers.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("source_ref", sa.Text(), nullable=False),
        sa.Column("desired_filename", sa.String(length=512), nullable=False),
        sa.Column("expected_size", sa.BigInteger(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="QUEUED"),
        sa.Column("yodeck_media_id", sa.Integer(), nullable=True),
        sa.Column("upload_url", sa.Text(), nullable=True),
        sa.Column("create_response", sa.JSON(), nullable=True),
        sa.Column("put_status", sa.Integer(), nullable=True),
        sa.Column("put_etag", sa.String(length=255), nullable=True),
        sa.Column("put_duration_ms", sa.Integer(), nullable=True),
        sa.Column("put_response_headers", sa.JSON(), nullable=True),
        sa.Column("finalize_attempted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("finalize_status", sa.Integer(), nullable=True),
        sa.Column("finalize_url_used", sa.Text(), nullable=True),
        sa.Column("finalize_outcome", sa.String(length=32), nullable=True),
        sa.Column("confirm_response", sa.JSON(), nullable=True),
        sa.Column("poll_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("yodeck_status", sa.String(length=64), nullable=True),
        sa.Column("yodeck_file_size", sa.BigInteger(), nullable=True),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("error_details", sa.JSON(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_error_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_upload_jobs_correlation_id", "upload_jobs", ["correlation_id"])
    op.create_index("ix_upload_jobs_advertiser_id", "upload_jobs", ["advertiser_id"])

    op.create_table(
        "integration_outbox",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("provider", sa.String(length=32), nullable=False, server_default="yodeck"),
        sa.Column("action_type", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("idempotency_key", sa.String(length=128), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="processing"),
        sa.Column("external_id", sa.String(length=128), nullable=True),
        sa.Column("response_json", sa.JSON(), nullable=True),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("idempotency_key", name="uq_integration_outbox_idempotency_key"),
    )
    op.create_index("ix_integration_outbox_entity", "integration_outbox", ["entity_type", "entity_id"])


def downgrade() -> None:
    op.drop_index("ix_integration_outbox_entity", table_name="integration_outbox")
    op.drop_table("integration_outbox")
    op.drop_index("ix_upload_jobs_advertiser_id", table_name="upload_jobs")
    op.drop_index("ix_upload_jobs_correlation_id", table_name="upload_jobs")
    op.drop_table("upload_jobs")
    op.drop_index("ix_ad_assets_advertiser_id", table_name="ad_assets")
    op.drop_table("ad_assets")
    op.drop_table("advertisers")
