"""Lookups of where a recipient can be reached, and removal of dead push tokens.

Tokens and profiles are written by the client registration flow; this module
only reads them, except for deleting tokens the push gateway reported as
permanently invalid.
"""

from __future__ import annotations

from typing import Iterable

from sqlalchemy.orm import Session

from . import models
from .config import settings
from .logging_utils import log_event


def get_push_tokens(db: Session, recipient_id: str, *, limit: int | None = None) -> list[models.DeliveryToken]:
    limit = limit or settings.push_max_tokens_per_recipient
    return (
        db.query(models.DeliveryToken)
        .filter(models.DeliveryToken.recipient_id == recipient_id)
        .order_by(models.DeliveryToken.last_seen_at.desc(), models.DeliveryToken.id.desc())
        .limit(max(1, int(limit)))
        .all()
    )


def get_verified_email(db: Session, recipient_id: str) -> str | None:
    profile = db.get(models.RecipientProfile, recipient_id)
    if profile is None or not profile.email_verified:
        return None
    email = (profile.email or "").strip()
    return email or None


def get_display_name(db: Session, recipient_id: str) -> str | None:
    profile = db.get(models.RecipientProfile, recipient_id)
    if profile is None:
        return None
    return (profile.display_name or "").strip() or None


def get_language(db: Session, recipient_id: str) -> str:
    profile = db.get(models.RecipientProfile, recipient_id)
    if profile is None or not profile.language:
        return "en"
    return profile.language


def delete_tokens(db: Session, tokens: Iterable[str]) -> int:
    unique_tokens = sorted({t for t in tokens if t})
    if not unique_tokens:
        return 0
    count = (
        db.query(models.DeliveryToken)
        .filter(models.DeliveryToken.token.in_(unique_tokens))
        .delete(synchronize_session=False)
    )
    db.commit()
    log_event("push_tokens_removed", count=int(count or 0), requested=len(unique_tokens))
    return int(count or 0)
