"""
Unread-message digests.

Chat writes one backlog row per (recipient, conversation) while messages stay
unread. A scheduled sweep turns backlog rows that have waited long enough
into a single email per row and stamps ``digest_sent_at`` so the row is left
alone until the re-digest interval has passed.
"""
from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models, schemas
from .config import settings
from .email_service import EmailTransport, get_email_transport
from .email_templates import render_message_digest_email
from .logging_utils import log_event, log_warning
from .preferences import EMAIL_CATEGORY_MESSAGE_DIGEST, load_preferences, should_send_email
from .token_store import get_display_name, get_language, get_verified_email


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _increment_backlog(
    db: Session,
    *,
    recipient_id: str,
    conversation_id: str,
    sender_name: str | None,
    now: datetime,
) -> int:
    values = {
        models.DigestBacklogEntry.unread_count: models.DigestBacklogEntry.unread_count + 1,
        models.DigestBacklogEntry.last_message_at: now,
    }
    if sender_name:
        values[models.DigestBacklogEntry.last_sender_name] = sender_name
    return (
        db.query(models.DigestBacklogEntry)
        .filter(
            models.DigestBacklogEntry.recipient_id == recipient_id,
            models.DigestBacklogEntry.conversation_id == conversation_id,
        )
        .update(values, synchronize_session=False)
    )


def record_unread_message(
    db: Session,
    recipient_id: str,
    conversation_id: str,
    sender_name: str | None = None,
    *,
    now: datetime | None = None,
) -> models.DigestBacklogEntry:
    now = now or _now_utc()
    updated = _increment_backlog(
        db,
        recipient_id=recipient_id,
        conversation_id=conversation_id,
        sender_name=sender_name,
        now=now,
    )
    if not updated:
        db.add(
            models.DigestBacklogEntry(
                recipient_id=recipient_id,
                conversation_id=conversation_id,
                unread_count=1,
                last_sender_name=sender_name,
                first_unread_at=now,
                last_message_at=now,
            )
        )
    try:
        db.commit()
    except IntegrityError:
        # Another producer created the row between our update and insert.
        db.rollback()
        _increment_backlog(
            db,
            recipient_id=recipient_id,
            conversation_id=conversation_id,
            sender_name=sender_name,
            now=now,
        )
        db.commit()
    return (
        db.query(models.DigestBacklogEntry)
        .filter(
            models.DigestBacklogEntry.recipient_id == recipient_id,
            models.DigestBacklogEntry.conversation_id == conversation_id,
        )
        .one()
    )


def clear_backlog(db: Session, recipient_id: str, conversation_id: str) -> bool:
    count = (
        db.query(models.DigestBacklogEntry)
        .filter(
            models.DigestBacklogEntry.recipient_id == recipient_id,
            models.DigestBacklogEntry.conversation_id == conversation_id,
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    return bool(count)


def _select_due_entries(db: Session, *, now: datetime, batch_size: int) -> list[models.DigestBacklogEntry]:
    cutoff = now - timedelta(minutes=settings.digest_interval_minutes)
    min_age = now - timedelta(minutes=settings.digest_first_unread_delay_minutes)
    return (
        db.query(models.DigestBacklogEntry)
        .filter(
            or_(
                models.DigestBacklogEntry.digest_sent_at.is_(None),
                models.DigestBacklogEntry.digest_sent_at < cutoff,
            ),
            models.DigestBacklogEntry.first_unread_at < min_age,
        )
        .order_by(models.DigestBacklogEntry.first_unread_at.asc(), models.DigestBacklogEntry.id.asc())
        .limit(max(1, batch_size))
        .all()
    )


def _mark_digested(db: Session, entry_id: int, now: datetime) -> None:
    db.query(models.DigestBacklogEntry).filter(models.DigestBacklogEntry.id == entry_id).update(
        {models.DigestBacklogEntry.digest_sent_at: now},
        synchronize_session=False,
    )
    db.commit()


def _context_label(db: Session, conversation_id: str) -> str | None:
    conversation = db.get(models.Conversation, conversation_id)
    if conversation is None:
        return None
    return (conversation.source_title or "").strip() or None


def _process_entry(
    db: Session,
    entry: models.DigestBacklogEntry,
    *,
    now: datetime,
    transport: EmailTransport,
) -> str:
    recipient_id = entry.recipient_id
    preferences = load_preferences(db, recipient_id)
    if not should_send_email(EMAIL_CATEGORY_MESSAGE_DIGEST, preferences):
        _mark_digested(db, entry.id, now)
        log_event("digest_skipped", reason="preference_disabled", recipient_id=recipient_id, entry_id=entry.id)
        return "skipped"

    email = get_verified_email(db, recipient_id)
    if not email:
        _mark_digested(db, entry.id, now)
        log_event("digest_skipped", reason="no_verified_email", recipient_id=recipient_id, entry_id=entry.id)
        return "skipped"

    subject, body_text, body_html = render_message_digest_email(
        recipient_name=get_display_name(db, recipient_id),
        sender_name=entry.last_sender_name,
        conversation_id=entry.conversation_id,
        unread_count=int(entry.unread_count or 1),
        context_title=_context_label(db, entry.conversation_id),
        lang=get_language(db, recipient_id),
    )
    result = transport.send(
        to=email,
        subject=subject,
        html=body_html,
        text=body_text,
        category=EMAIL_CATEGORY_MESSAGE_DIGEST,
        user_id=recipient_id,
        dedupe_key=f"{EMAIL_CATEGORY_MESSAGE_DIGEST}:{recipient_id}:{entry.conversation_id}",
    )
    if result.success:
        _mark_digested(db, entry.id, now)
        log_event(
            "digest_sent",
            recipient_id=recipient_id,
            conversation_id=entry.conversation_id,
            unread_count=int(entry.unread_count or 1),
            message_id=result.message_id,
        )
        return "processed"

    if result.skipped:
        # The transport sent nothing; the entry stays due for the next sweep.
        log_warning(
            "digest_send_skipped",
            recipient_id=recipient_id,
            conversation_id=entry.conversation_id,
            error=result.error,
        )
        return "failed"

    if settings.digest_mark_failed_entries:
        _mark_digested(db, entry.id, now)
    log_warning(
        "digest_send_failed",
        recipient_id=recipient_id,
        conversation_id=entry.conversation_id,
        error=result.error,
        marked=settings.digest_mark_failed_entries,
    )
    return "failed"


def run_digest_sweep(
    db: Session,
    *,
    now: datetime | None = None,
    transport: EmailTransport | None = None,
    batch_size: int | None = None,
) -> schemas.DigestSweepResult:
    result = schemas.DigestSweepResult()
    if not settings.digest_enabled:
        log_event("digest_sweep_disabled")
        return result
    if not settings.email_enabled:
        log_event("digest_sweep_disabled", reason="email_disabled")
        return result

    now = now or _now_utc()
    transport = transport or get_email_transport()
    entries = _select_due_entries(db, now=now, batch_size=batch_size or settings.digest_batch_size)
    result.selected = len(entries)
    deadline = time.monotonic() + max(0.0, float(settings.digest_sweep_max_seconds))

    entry_ids = [int(entry.id) for entry in entries]

    for index, (entry_id, entry) in enumerate(zip(entry_ids, entries)):
        if time.monotonic() > deadline:
            result.deferred = len(entries) - index
            log_warning("digest_sweep_deadline_reached", deferred=result.deferred)
            break
        try:
            outcome = _process_entry(db, entry, now=now, transport=transport)
        except Exception as exc:  # noqa: BLE001
            db.rollback()
            log_warning("digest_entry_error", entry_id=entry_id, error=str(exc))
            outcome = "failed"
        if outcome == "processed":
            result.processed += 1
        elif outcome == "skipped":
            result.skipped += 1
        else:
            result.failed += 1

    log_event("digest_sweep_completed", **result.model_dump())
    return result
