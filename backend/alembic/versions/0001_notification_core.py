"""Notification core schema

Revision ID: 0001_notification_core
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_notification_core"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "notification_jobs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("recipient_id", sa.String(length=64), nullable=False),
        sa.Column("topic", sa.String(length=50), nullable=False),
        sa.Column("subject_entity_id", sa.String(length=64), nullable=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("dedupe_key", sa.String(length=255), nullable=False),
        sa.Column("throttle_key", sa.String(length=255), nullable=False),
        sa.Column("throttle_window_seconds", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("pending_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("sent_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("last_aggregated_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("dedupe_key", name="uq_notification_jobs_dedupe_key"),
    )
    op.create_index("ix_notification_jobs_id", "notification_jobs", ["id"], unique=False)
    op.create_index("ix_notification_jobs_recipient_id", "notification_jobs", ["recipient_id"], unique=False)
    op.create_index("ix_notification_jobs_sent_at", "notification_jobs", ["sent_at"], unique=False)
    op.create_index(
        "ix_notification_jobs_throttle_lookup",
        "notification_jobs",
        ["recipient_id", "throttle_key", "sent_at"],
        unique=False,
    )

    op.create_table(
        "delivery_tokens",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("recipient_id", sa.String(length=64), nullable=False),
        sa.Column("token", sa.String(length=255), nullable=False, unique=True),
        sa.Column("platform", sa.String(length=16), nullable=False, server_default="ios"),
        sa.Column("device_id", sa.String(length=128), nullable=True),
        sa.Column("registered_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("last_seen_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_delivery_tokens_id", "delivery_tokens", ["id"], unique=False)
    op.create_index("ix_delivery_tokens_recipient_id", "delivery_tokens", ["recipient_id"], unique=False)

    op.create_table(
        "digest_backlog",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("recipient_id", sa.String(length=64), nullable=False),
        sa.Column("conversation_id", sa.String(length=64), nullable=False),
        sa.Column("unread_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_sender_name", sa.String(length=255), nullable=True),
        sa.Column("first_unread_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("last_message_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("digest_sent_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.UniqueConstraint("recipient_id", "conversation_id", name="uq_digest_backlog_conversation"),
    )
    op.create_index("ix_digest_backlog_id", "digest_backlog", ["id"], unique=False)
    op.create_index("ix_digest_backlog_recipient_id", "digest_backlog", ["recipient_id"], unique=False)
    op.create_index("ix_digest_backlog_first_unread_at", "digest_backlog", ["first_unread_at"], unique=False)
    op.create_index("ix_digest_backlog_digest_sent_at", "digest_backlog", ["digest_sent_at"], unique=False)

    op.create_table(
        "recipient_profiles",
        sa.Column("recipient_id", sa.String(length=64), primary_key=True),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("email_verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("language", sa.String(length=8), nullable=False, server_default="en"),
    )

    op.create_table(
        "notification_preferences",
        sa.Column("recipient_id", sa.String(length=64), primary_key=True),
        sa.Column("push_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("email_reco_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("message_digest_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("muted_topics", sa.JSON(), nullable=True),
    )

    op.create_table(
        "conversations",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("source_title", sa.String(length=255), nullable=True),
    )

    op.create_table(
        "email_outbox",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("to_email", sa.String(length=255), nullable=False),
        sa.Column("subject", sa.String(length=255), nullable=False),
        sa.Column("category", sa.String(length=50), nullable=False),
        sa.Column("dedupe_key", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="queued"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("message_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("sent_at", sa.TIMESTAMP(timezone=True), nullable=True),
    )
    op.create_index("ix_email_outbox_id", "email_outbox", ["id"], unique=False)
    op.create_index("ix_email_outbox_dedupe_lookup", "email_outbox", ["dedupe_key", "created_at"], unique=False)
    op.create_index("ix_email_outbox_user_window", "email_outbox", ["user_id", "created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_email_outbox_user_window", table_name="email_outbox")
    op.drop_index("ix_email_outbox_dedupe_lookup", table_name="email_outbox")
    op.drop_index("ix_email_outbox_id", table_name="email_outbox")
    op.drop_table("email_outbox")
    op.drop_table("conversations")
    op.drop_table("notification_preferences")
    op.drop_table("recipient_profiles")
    op.drop_index("ix_digest_backlog_digest_sent_at", table_name="digest_backlog")
    op.drop_index("ix_digest_backlog_first_unread_at", table_name="digest_backlog")
    op.drop_index("ix_digest_backlog_recipient_id", table_name="digest_backlog")
    op.drop_index("ix_digest_backlog_id", table_name="digest_backlog")
    op.drop_table("digest_backlog")
    op.drop_index("ix_delivery_tokens_recipient_id", table_name="delivery_tokens")
    op.drop_index("ix_delivery_tokens_id", table_name="delivery_tokens")
    op.drop_table("delivery_tokens")
    op.drop_index("ix_notification_jobs_throttle_lookup", table_name="notification_jobs")
    op.drop_index("ix_notification_jobs_sent_at", table_name="notification_jobs")
    op.drop_index("ix_notification_jobs_recipient_id", table_name="notification_jobs")
    op.drop_index("ix_notification_jobs_id", table_name="notification_jobs")
    op.drop_table("notification_jobs")
