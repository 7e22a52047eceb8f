"""
Admission of notification events: dedupe, throttle, then dispatch.

Dedupe relies on the unique constraint on ``notification_jobs.dedupe_key``:
whichever producer commits the insert first owns the event, every other
concurrent producer gets an IntegrityError and is reported as deduped. No
in-process lock is involved, so the guarantee holds across service instances.

Throttling is check-then-act against the latest *sent* job sharing the
throttle key. A hit folds the event into that job (``pending_count + 1``) and
drops the row that was only inserted to win the dedupe race.
"""
from __future__ import annotations

from datetime import datetime, timezone

from fastapi import BackgroundTasks
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import models, schemas
from .config import settings
from .database import SessionLocal
from .dispatcher import dispatch
from .logging_utils import log_event, log_warning
from .push_gateway import PushGatewayClient, get_push_gateway


class AdmissionStoreError(RuntimeError):
    """The notification store could not be written; dedupe/throttle cannot be upheld."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _is_unique_violation(exc: IntegrityError) -> bool:
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) == "23505":
        return True
    text = str(orig or exc).lower()
    return "unique" in text or "duplicate key" in text


def _insert_job(db: Session, event: schemas.NotificationEvent, window: int) -> models.NotificationJob | None:
    job = models.NotificationJob(
        recipient_id=event.recipient_id,
        topic=event.topic,
        subject_entity_id=event.subject_entity_id,
        title=event.title,
        body=event.body,
        payload=event.payload or {},
        dedupe_key=event.dedupe_key,
        throttle_key=event.throttle_key,
        throttle_window_seconds=window,
        pending_count=1,
        sent_at=None,
    )
    db.add(job)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        if not _is_unique_violation(exc):
            raise AdmissionStoreError(f"insert rejected: {exc.orig}") from exc
        return None
    except SQLAlchemyError as exc:
        db.rollback()
        raise AdmissionStoreError(f"insert failed: {exc}") from exc
    db.refresh(job)
    return job


def _latest_sent_job(db: Session, *, recipient_id: str, throttle_key: str) -> models.NotificationJob | None:
    return (
        db.query(models.NotificationJob)
        .filter(
            models.NotificationJob.recipient_id == recipient_id,
            models.NotificationJob.throttle_key == throttle_key,
            models.NotificationJob.sent_at.isnot(None),
        )
        .order_by(models.NotificationJob.sent_at.desc(), models.NotificationJob.id.desc())
        .first()
    )


def _fold_into(db: Session, *, target_id: int, discarded_id: int, now: datetime) -> bool:
    updated = (
        db.query(models.NotificationJob)
        .filter(models.NotificationJob.id == target_id)
        .update(
            {
                models.NotificationJob.pending_count: models.NotificationJob.pending_count + 1,
                models.NotificationJob.last_aggregated_at: now,
            },
            synchronize_session=False,
        )
    )
    if not updated:
        # The target vanished (retention purge); keep the new job and send it instead.
        db.rollback()
        return False
    db.query(models.NotificationJob).filter(models.NotificationJob.id == discarded_id).delete(
        synchronize_session=False
    )
    db.commit()
    return True


def _mark_sent(db: Session, job_id: int, now: datetime) -> None:
    db.query(models.NotificationJob).filter(models.NotificationJob.id == job_id).update(
        {models.NotificationJob.sent_at: now},
        synchronize_session=False,
    )
    db.commit()


def admit(
    db: Session,
    event: schemas.NotificationEvent,
    *,
    gateway: PushGatewayClient | None = None,
    now: datetime | None = None,
) -> schemas.AdmissionResult:
    now = _as_utc(now) if now else _now_utc()
    window = event.throttle_window_seconds
    if window is None:
        window = settings.default_throttle_window_seconds

    job = _insert_job(db, event, window)
    if job is None:
        log_event("notification_deduped", recipient_id=event.recipient_id, dedupe_key=event.dedupe_key)
        return schemas.AdmissionResult(status=schemas.AdmissionStatus.deduped)
    job_id = int(job.id)

    try:
        recent = _latest_sent_job(db, recipient_id=event.recipient_id, throttle_key=event.throttle_key)
        if recent is not None and window > 0:
            elapsed = (now - _as_utc(recent.sent_at)).total_seconds()
            if elapsed < window and _fold_into(db, target_id=int(recent.id), discarded_id=job_id, now=now):
                log_event(
                    "notification_throttled",
                    recipient_id=event.recipient_id,
                    throttle_key=event.throttle_key,
                    aggregated_into_job_id=int(recent.id),
                    seconds_since_send=round(elapsed, 3),
                )
                return schemas.AdmissionResult(
                    status=schemas.AdmissionStatus.throttled,
                    aggregated_into_job_id=int(recent.id),
                )
    except SQLAlchemyError as exc:
        db.rollback()
        raise AdmissionStoreError(f"throttle check failed: {exc}") from exc

    gateway = gateway or get_push_gateway()
    try:
        result = dispatch(db, job, gateway=gateway)
    except Exception as exc:  # noqa: BLE001
        db.rollback()
        log_warning("push_dispatch_error", job_id=job_id, recipient_id=event.recipient_id, error=str(exc))
        result = schemas.DispatchResult(error=str(exc))

    # A failed push is terminal for this job; it is marked sent either way.
    try:
        _mark_sent(db, job_id, now)
    except SQLAlchemyError as exc:
        db.rollback()
        raise AdmissionStoreError(f"marking job {job_id} sent failed: {exc}") from exc

    log_event(
        "notification_sent",
        job_id=job_id,
        recipient_id=event.recipient_id,
        topic=event.topic,
        delivered=result.delivered_count,
        failed=result.failed_count,
    )
    return schemas.AdmissionResult(status=schemas.AdmissionStatus.sent, job_id=job_id, dispatch=result)


def _admit_detached(event: schemas.NotificationEvent, gateway: PushGatewayClient | None = None) -> None:
    db = SessionLocal()
    try:
        admit(db, event, gateway=gateway)
    except Exception as exc:  # noqa: BLE001
        db.rollback()
        log_warning(
            "notification_admission_failed",
            recipient_id=event.recipient_id,
            dedupe_key=event.dedupe_key,
            error=str(exc),
        )
    finally:
        db.close()


def admit_in_background(
    background_tasks: BackgroundTasks,
    event: schemas.NotificationEvent,
    *,
    gateway: PushGatewayClient | None = None,
) -> None:
    # Delivery outcome never reaches the triggering request; the gateway timeout bounds the task.
    background_tasks.add_task(_admit_detached, event, gateway)
