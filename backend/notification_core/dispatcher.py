from __future__ import annotations

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models, schemas
from .logging_utils import log_event, log_warning
from .preferences import load_preferences, should_send_push
from .push_gateway import PushGatewayClient, PushMessage
from .token_store import delete_tokens, get_push_tokens


def dispatch(db: Session, job: models.NotificationJob, *, gateway: PushGatewayClient) -> schemas.DispatchResult:
    """Fan one admitted job out to every registered device of its recipient.

    Partial or total gateway failure is reported in the result, never raised.
    Tokens the gateway reports as permanently dead are deleted; transient
    failures leave the token in place.
    """
    preferences = load_preferences(db, job.recipient_id)
    if not should_send_push(job.topic, preferences):
        log_event("push_suppressed_by_preference", job_id=job.id, recipient_id=job.recipient_id, topic=job.topic)
        return schemas.DispatchResult(suppressed=True)

    rows = get_push_tokens(db, job.recipient_id)
    tokens: list[str] = []
    for row in rows:
        token = (row.token or "").strip()
        if token and token not in tokens:
            tokens.append(token)
    if not tokens:
        log_event("push_no_tokens", job_id=job.id, recipient_id=job.recipient_id, tokens_found=len(rows))
        return schemas.DispatchResult(tokens_found=len(rows))

    messages = [
        PushMessage(to=token, title=job.title, body=job.body, data=dict(job.payload or {}))
        for token in tokens
    ]
    batch = gateway.send_batch(messages)

    permanent = [t.token for t in batch.failed if t.permanent_failure and not batch.transport_error]
    for ticket in batch.failed:
        if ticket.token in permanent:
            continue
        log_warning(
            "push_token_failed_transient",
            job_id=job.id,
            recipient_id=job.recipient_id,
            token_prefix=ticket.token[:20],
            error=ticket.error_code or ticket.message,
        )

    removed = 0
    if permanent:
        try:
            removed = delete_tokens(db, permanent)
        except SQLAlchemyError as exc:
            # Pushes already went out; the token is retried the next time the gateway rejects it.
            db.rollback()
            log_warning("push_token_cleanup_failed", job_id=job.id, tokens=len(permanent), error=str(exc))

    result = schemas.DispatchResult(
        delivered_count=len(batch.delivered),
        failed_count=len(batch.failed),
        tokens_found=len(rows),
        tokens_used=len(tokens),
        removed_tokens=removed,
        error=batch.transport_error,
    )
    log_event(
        "push_dispatched",
        job_id=job.id,
        recipient_id=job.recipient_id,
        delivered=result.delivered_count,
        failed=result.failed_count,
        removed_tokens=removed,
        transport_error=batch.transport_error,
    )
    return result
