import logging
import smtplib
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .config import settings
from .database import SessionLocal
from .logging_utils import log_event, log_warning

emails_sent_ok = 0
emails_send_failed = 0

OUTBOX_QUEUED = "queued"
OUTBOX_SENT = "sent"
OUTBOX_FAILED = "failed"
OUTBOX_SKIPPED = "skipped"
# Rows in these states count against dedupe and the per-user throttle.
OUTBOX_COUNTED = (OUTBOX_QUEUED, OUTBOX_SENT)


@dataclass
class SendEmailResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def check_dedupe_and_throttle(
    db: Session,
    *,
    user_id: Optional[str],
    dedupe_key: Optional[str],
    now: datetime,
) -> Optional[str]:
    """Return the reason this email must not go out, or None when it may be sent."""
    if dedupe_key:
        window_start = now - timedelta(minutes=settings.email_dedupe_window_minutes)
        existing = (
            db.query(models.EmailOutbox.id)
            .filter(
                models.EmailOutbox.dedupe_key == dedupe_key,
                models.EmailOutbox.created_at >= window_start,
                models.EmailOutbox.status.in_(OUTBOX_COUNTED),
            )
            .first()
        )
        if existing:
            return f"dedupe: {dedupe_key} already sent within {settings.email_dedupe_window_minutes} minutes"

    if user_id:
        window_start = now - timedelta(minutes=settings.email_throttle_window_minutes)
        recent = (
            db.query(models.EmailOutbox)
            .filter(
                models.EmailOutbox.user_id == user_id,
                models.EmailOutbox.created_at >= window_start,
                models.EmailOutbox.status.in_(OUTBOX_COUNTED),
            )
            .count()
        )
        if recent >= settings.email_throttle_max_per_user:
            return (
                f"throttle: user {user_id} reached {settings.email_throttle_max_per_user} emails "
                f"in {settings.email_throttle_window_minutes} minutes"
            )
    return None


class EmailTransport:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self._session_factory = session_factory

    def _record(
        self,
        *,
        to: str,
        subject: str,
        category: str,
        user_id: Optional[str],
        dedupe_key: Optional[str],
        status: str,
        now: datetime,
        error: Optional[str] = None,
    ) -> Optional[int]:
        try:
            with self._session_factory() as db:
                row = models.EmailOutbox(
                    user_id=user_id,
                    to_email=to,
                    subject=subject[:255],
                    category=category,
                    dedupe_key=dedupe_key,
                    status=status,
                    error=error,
                    created_at=now,
                )
                db.add(row)
                db.commit()
                return int(row.id)
        except SQLAlchemyError as exc:
            log_warning("email_outbox_record_failed", to=to, category=category, status=status, error=str(exc))
            return None

    def _finish(self, outbox_id: Optional[int], result: SendEmailResult) -> None:
        if outbox_id is None:
            return
        try:
            with self._session_factory() as db:
                db.query(models.EmailOutbox).filter(models.EmailOutbox.id == outbox_id).update(
                    {
                        models.EmailOutbox.status: OUTBOX_SENT if result.success else OUTBOX_FAILED,
                        models.EmailOutbox.error: result.error,
                        models.EmailOutbox.message_id: result.message_id,
                        models.EmailOutbox.sent_at: _now_utc() if result.success else None,
                    },
                    synchronize_session=False,
                )
                db.commit()
        except SQLAlchemyError as exc:
            log_warning("email_outbox_update_failed", outbox_id=outbox_id, error=str(exc))

    def _blocked_reason(self, user_id: Optional[str], dedupe_key: Optional[str], now: datetime) -> Optional[str]:
        if not user_id and not dedupe_key:
            return None
        try:
            with self._session_factory() as db:
                return check_dedupe_and_throttle(db, user_id=user_id, dedupe_key=dedupe_key, now=now)
        except SQLAlchemyError as exc:
            # Outbox unavailable: send anyway rather than drop the email.
            log_warning("email_outbox_check_failed", user_id=user_id, dedupe_key=dedupe_key, error=str(exc))
            return None

    def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: str,
        category: str,
        user_id: Optional[str] = None,
        dedupe_key: Optional[str] = None,
    ) -> SendEmailResult:
        context = {"category": category, "user_id": user_id, "dedupe_key": dedupe_key}
        record = {
            "to": to,
            "subject": subject,
            "category": category,
            "user_id": user_id,
            "dedupe_key": dedupe_key,
        }
        now = _now_utc()
        if not settings.email_enabled:
            log_warning("email_disabled", to=to, subject=subject, **context)
            return SendEmailResult(success=False, skipped=True, error="email disabled")
        if not settings.smtp_host or not settings.smtp_sender:
            log_warning("email_smtp_not_configured", to=to, subject=subject, **context)
            self._record(**record, status=OUTBOX_FAILED, now=now, error="smtp not configured")
            return SendEmailResult(success=False, skipped=True, error="smtp not configured")

        reason = self._blocked_reason(user_id, dedupe_key, now)
        if reason:
            log_event("email_skipped", to=to, reason=reason, **context)
            self._record(**record, status=OUTBOX_SKIPPED, now=now, error=reason)
            return SendEmailResult(success=True, skipped=True, error=reason)

        outbox_id = self._record(**record, status=OUTBOX_QUEUED, now=now)
        result = self._deliver(to, subject, html, text, context)
        self._finish(outbox_id, result)
        return result

    def _deliver(self, to: str, subject: str, html: str, text: str, context: dict) -> SendEmailResult:
        message = EmailMessage()
        message["From"] = settings.smtp_sender
        message["To"] = to
        message["Subject"] = subject
        message_id = make_msgid(domain=settings.smtp_sender.split("@")[-1].strip("> ") or None)
        message["Message-ID"] = message_id
        message["X-Category"] = context["category"]
        message.set_content(text)
        if html:
            message.add_alternative(html, subtype="html")

        global emails_sent_ok, emails_send_failed
        attempts = max(1, int(settings.email_max_attempts))
        last_error = ""
        for attempt in range(1, attempts + 1):
            try:
                with smtplib.SMTP(
                    settings.smtp_host,
                    settings.smtp_port or 25,
                    timeout=settings.email_timeout_seconds,
                ) as server:
                    if settings.smtp_use_tls:
                        server.starttls()
                    if settings.smtp_username:
                        server.login(settings.smtp_username, settings.smtp_password or "")
                    server.send_message(message)
                emails_sent_ok += 1
                log_event("email_sent", to=to, subject=subject, attempt=attempt, message_id=message_id, **context)
                return SendEmailResult(success=True, message_id=message_id)
            except (smtplib.SMTPException, OSError) as exc:
                last_error = str(exc)
                log_warning(
                    "email_send_failed_attempt",
                    to=to,
                    subject=subject,
                    attempt=attempt,
                    error=last_error,
                    smtp_host=settings.smtp_host,
                    smtp_port=settings.smtp_port,
                    **context,
                )
                if attempt < attempts:
                    time.sleep(0.5 * attempt)
        emails_send_failed += 1
        logging.error(
            "Failed to send email after retries",
            extra={
                "to": to,
                "subject": subject,
                "smtp_host": settings.smtp_host,
                "smtp_port": settings.smtp_port,
                **context,
            },
        )
        return SendEmailResult(success=False, error=last_error or "send failed")


_default_transport: EmailTransport | None = None


def get_email_transport() -> EmailTransport:
    global _default_transport
    if _default_transport is None:
        _default_transport = EmailTransport()
    return _default_transport
