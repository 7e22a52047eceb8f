from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from . import models
from .config import settings
from .logging_utils import log_event


def purge_sent_jobs(db: Session, *, now: datetime | None = None, retention_days: int | None = None) -> int:
    """Delete notification jobs older than the retention window.

    Sent jobs are removed once ``sent_at`` falls outside the window. Unsent rows
    only survive a store failure mid-admission; they go once ``created_at`` is
    equally old. Removing a row frees its dedupe key.
    """
    now = now or datetime.now(timezone.utc)
    retention_days = retention_days or settings.notification_job_retention_days
    cutoff = now - timedelta(days=max(1, int(retention_days)))
    count = (
        db.query(models.NotificationJob)
        .filter(
            or_(
                models.NotificationJob.sent_at < cutoff,
                and_(models.NotificationJob.sent_at.is_(None), models.NotificationJob.created_at < cutoff),
            )
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    log_event("notification_jobs_purged", count=int(count or 0), cutoff=cutoff.isoformat())
    return int(count or 0)


def purge_email_outbox(db: Session, *, now: datetime | None = None, retention_days: int | None = None) -> int:
    now = now or datetime.now(timezone.utc)
    retention_days = retention_days or settings.email_outbox_retention_days
    cutoff = now - timedelta(days=max(1, int(retention_days)))
    count = (
        db.query(models.EmailOutbox)
        .filter(models.EmailOutbox.created_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()
    log_event("email_outbox_purged", count=int(count or 0), cutoff=cutoff.isoformat())
    return int(count or 0)
