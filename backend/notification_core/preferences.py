from __future__ import annotations

from sqlalchemy.orm import Session

from . import models
from .config import settings

EMAIL_CATEGORY_MESSAGE_DIGEST = "message_digest"
EMAIL_CATEGORY_RECOMMENDATION = "recommendation"


def load_preferences(db: Session, recipient_id: str) -> models.NotificationPreference | None:
    return db.get(models.NotificationPreference, recipient_id)


def _coerce_topics(value: object) -> set[str]:
    if isinstance(value, (list, tuple, set)):
        return {str(v).strip() for v in value if str(v).strip()}
    return set()


def should_send_push(topic: str | None, preferences: models.NotificationPreference | None) -> bool:
    # Transaction-critical topics (a quote on a wish) bypass every stored preference.
    if topic and topic in set(settings.force_push_topics):
        return True
    if preferences is None:
        return True
    if preferences.push_enabled is False:
        return False
    if topic and topic in _coerce_topics(preferences.muted_topics):
        return False
    return True


def should_send_email(category: str, preferences: models.NotificationPreference | None) -> bool:
    if preferences is None:
        return True
    if category == EMAIL_CATEGORY_MESSAGE_DIGEST:
        return bool(preferences.message_digest_enabled)
    if category == EMAIL_CATEGORY_RECOMMENDATION:
        return bool(preferences.email_reco_enabled)
    return True
