"""initial federation schema

Revision ID: 3c1f0a9e5b21
Revises:
Create Date: 2026-10-19 09:12:44.418205

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "3c1f0a9e5b21"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create events, submissions, federated speakers and webhook bookkeeping tables."""
    op.create_table(
        "site_settings",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("federation_enabled", sa.Boolean(), nullable=False),
        sa.Column("federation_license_key", sa.Text(), nullable=True),
        sa.Column("federation_activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("federation_last_heartbeat", sa.DateTime(timezone=True), nullable=True),
        sa.Column("federation_last_validated", sa.DateTime(timezone=True), nullable=True),
        sa.Column("federation_public_key", sa.Text(), nullable=True),
        sa.Column("federation_warnings", sa.JSON(), nullable=True),
        sa.Column("federation_features", sa.JSON(), nullable=True),
        sa.Column("federation_license", sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "events",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("slug", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("website_url", sa.Text(), nullable=True),
        sa.Column("location", sa.Text(), nullable=True),
        sa.Column("is_virtual", sa.Boolean(), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cfp_opens_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cfp_closes_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_federated", sa.Boolean(), nullable=False),
        sa.Column("federated_event_id", sa.String(length=64), nullable=True),
        sa.Column("webhook_secret", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("slug"),
    )
    op.create_index("ix_events_federated_event_id", "events", ["federated_event_id"])
    op.create_table(
        "tracks",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("event_id", sa.String(length=32), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "session_formats",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("event_id", sa.String(length=32), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("duration_min", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "submissions",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("event_id", sa.String(length=32), nullable=False),
        sa.Column("speaker_id", sa.String(length=64), nullable=True),
        sa.Column("track_id", sa.String(length=32), nullable=True),
        sa.Column("format_id", sa.String(length=32), nullable=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("abstract", sa.Text(), nullable=False),
        sa.Column("outline", sa.Text(), nullable=True),
        sa.Column("target_audience", sa.Text(), nullable=True),
        sa.Column("prerequisites", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("is_federated", sa.Boolean(), nullable=False),
        sa.Column("federated_speaker_id", sa.String(length=64), nullable=True),
        sa.Column("external_submission_id", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["track_id"], ["tracks.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["format_id"], ["session_formats.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_submissions_event_id", "submissions", ["event_id"])
    op.create_index(
        "ix_submissions_external_submission_id", "submissions", ["external_submission_id"]
    )
    op.create_table(
        "submission_materials",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("submission_id", sa.String(length=32), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("file_url", sa.Text(), nullable=True),
        sa.Column("external_url", sa.Text(), nullable=True),
        sa.Column("file_name", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["submission_id"], ["submissions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "co_speakers",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("submission_id", sa.String(length=32), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("bio", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["submission_id"], ["submissions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "messages",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("submission_id", sa.String(length=32), nullable=False),
        sa.Column("sender_id", sa.String(length=64), nullable=True),
        sa.Column("sender_type", sa.String(length=16), nullable=False),
        sa.Column("subject", sa.Text(), nullable=True),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("federated_message_id", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["submission_id"], ["submissions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("federated_message_id"),
    )
    op.create_index("ix_messages_submission_id", "messages", ["submission_id"])
    op.create_table(
        "federated_speakers",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("remote_speaker_id", sa.String(length=64), nullable=False),
        sa.Column("local_user_id", sa.String(length=64), nullable=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("bio", sa.Text(), nullable=True),
        sa.Column("location", sa.Text(), nullable=True),
        sa.Column("company", sa.Text(), nullable=True),
        sa.Column("position", sa.Text(), nullable=True),
        sa.Column("website_url", sa.Text(), nullable=True),
        sa.Column("linkedin_url", sa.Text(), nullable=True),
        sa.Column("twitter_handle", sa.Text(), nullable=True),
        sa.Column("github_username", sa.Text(), nullable=True),
        sa.Column("speaking_experience", sa.Text(), nullable=True),
        sa.Column("avatar_url", sa.Text(), nullable=True),
        sa.Column("expertise_tags", sa.JSON(), nullable=False),
        sa.Column("experience_level", sa.String(length=32), nullable=True),
        sa.Column("languages", sa.JSON(), nullable=False),
        sa.Column("co_speakers", sa.JSON(), nullable=False),
        sa.Column("consent_scopes", sa.JSON(), nullable=False),
        sa.Column("consent_granted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("consent_revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deletion_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("remote_speaker_id"),
    )
    op.create_index(
        "ix_federated_speakers_deletion_deadline", "federated_speakers", ["deletion_deadline"]
    )
    op.create_table(
        "federated_materials",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("federated_speaker_id", sa.String(length=32), nullable=False),
        sa.Column("remote_material_id", sa.String(length=64), nullable=False),
        sa.Column("federated_event_id", sa.String(length=64), nullable=True),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("source_url", sa.Text(), nullable=True),
        sa.Column("local_path", sa.Text(), nullable=True),
        sa.Column("local_url", sa.Text(), nullable=True),
        sa.Column("is_external", sa.Boolean(), nullable=False),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["federated_speaker_id"], ["federated_speakers.id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "federated_speaker_id", "remote_material_id", name="uq_federated_material"
        ),
    )
    op.create_table(
        "webhook_queue",
        sa.Column("id", sa.String(length=32), nullable=False),
        sa.Column("event_id", sa.String(length=32), nullable=False),
        sa.Column("webhook_type", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("webhook_url", sa.Text(), nullable=False),
        sa.Column("attempt", sa.SmallInteger(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_webhook_queue_event_id", "webhook_queue", ["event_id"])
    op.create_index("ix_webhook_queue_next_retry_at", "webhook_queue", ["next_retry_at"])
    op.create_index("ix_webhook_queue_status", "webhook_queue", ["status"])
    op.create_table(
        "processed_webhooks",
        sa.Column("webhook_id", sa.String(length=128), nullable=False),
        sa.Column("webhook_type", sa.String(length=64), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("webhook_id"),
    )
    op.create_index(
        "ix_processed_webhooks_processed_at", "processed_webhooks", ["processed_at"]
    )


def downgrade() -> None:
    """Drop all federation tables."""
    op.drop_index("ix_processed_webhooks_processed_at", table_name="processed_webhooks")
    op.drop_table("processed_webhooks")
    op.drop_index("ix_webhook_queue_status", table_name="webhook_queue")
    op.drop_index("ix_webhook_queue_next_retry_at", table_name="webhook_queue")
    op.drop_index("ix_webhook_queue_event_id", table_name="webhook_queue")
    op.drop_table("webhook_queue")
    op.drop_table("federated_materials")
    op.drop_index("ix_federated_speakers_deletion_deadline", table_name="federated_speakers")
    op.drop_table("federated_speakers")
    op.drop_index("ix_messages_submission_id", table_name="messages")
    op.drop_table("messages")
    op.drop_table("co_speakers")
    op.drop_table("submission_materials")
    op.drop_index("ix_submissions_external_submission_id", table_name="submissions")
    op.drop_index("ix_submissions_event_id", table_name="submissions")
    op.drop_table("submissions")
    op.drop_table("session_formats")
    op.drop_table("tracks")
    op.drop_index("ix_events_federated_event_id", table_name="events")
    op.drop_table("events")
    op.drop_table("site_settings")
