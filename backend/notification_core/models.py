from sqlalchemy import (
    Column,
    Index,
    Integer,
    String,
    Text,
    TIMESTAMP,
    UniqueConstraint,
    func,
    Boolean,
    JSON,
)
from .database import Base


class NotificationJob(Base):
    __tablename__ = "notification_jobs"
    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_notification_jobs_dedupe_key"),
        Index("ix_notification_jobs_throttle_lookup", "recipient_id", "throttle_key", "sent_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    recipient_id = Column(String(64), nullable=False, index=True)
    topic = Column(String(50), nullable=False)
    subject_entity_id = Column(String(64), nullable=True)
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    dedupe_key = Column(String(255), nullable=False)
    throttle_key = Column(String(255), nullable=False)
    throttle_window_seconds = Column(Integer, nullable=False, server_default="30")
    pending_count = Column(Integer, nullable=False, server_default="1")
    sent_at = Column(TIMESTAMP(timezone=True), nullable=True, index=True)
    last_aggregated_at = Column(TIMESTAMP(timezone=True), nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)


class DeliveryToken(Base):
    __tablename__ = "delivery_tokens"

    id = Column(Integer, primary_key=True, index=True)
    recipient_id = Column(String(64), nullable=False, index=True)
    token = Column(String(255), unique=True, nullable=False)
    platform = Column(String(16), nullable=False, server_default="ios")
    device_id = Column(String(128), nullable=True)
    registered_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    last_seen_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)


class DigestBacklogEntry(Base):
    __tablename__ = "digest_backlog"
    __table_args__ = (UniqueConstraint("recipient_id", "conversation_id", name="uq_digest_backlog_conversation"),)

    id = Column(Integer, primary_key=True, index=True)
    recipient_id = Column(String(64), nullable=False, index=True)
    conversation_id = Column(String(64), nullable=False)
    unread_count = Column(Integer, nullable=False, server_default="1")
    last_sender_name = Column(String(255), nullable=True)
    first_unread_at = Column(TIMESTAMP(timezone=True), nullable=False, index=True)
    last_message_at = Column(TIMESTAMP(timezone=True), nullable=True)
    digest_sent_at = Column(TIMESTAMP(timezone=True), nullable=True, index=True)


class RecipientProfile(Base):
    __tablename__ = "recipient_profiles"

    recipient_id = Column(String(64), primary_key=True)
    display_name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    email_verified = Column(Boolean, default=False, server_default="false", nullable=False)
    language = Column(String(8), nullable=False, default="en", server_default="en")


class NotificationPreference(Base):
    __tablename__ = "notification_preferences"

    recipient_id = Column(String(64), primary_key=True)
    push_enabled = Column(Boolean, default=True, server_default="true", nullable=False)
    email_reco_enabled = Column(Boolean, default=True, server_default="true", nullable=False)
    message_digest_enabled = Column(Boolean, default=True, server_default="true", nullable=False)
    muted_topics = Column(JSON, nullable=True)


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String(64), primary_key=True)
    source_title = Column(String(255), nullable=True)


class EmailOutbox(Base):
    __tablename__ = "email_outbox"
    __table_args__ = (
        Index("ix_email_outbox_dedupe_lookup", "dedupe_key", "created_at"),
        Index("ix_email_outbox_user_window", "user_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=True)
    to_email = Column(String(255), nullable=False)
    subject = Column(String(255), nullable=False)
    category = Column(String(50), nullable=False)
    dedupe_key = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, server_default="queued")
    error = Column(Text, nullable=True)
    message_id = Column(String(255), nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    sent_at = Column(TIMESTAMP(timezone=True), nullable=True)
