import enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class AdmissionStatus(str, enum.Enum):
    sent = "sent"
    deduped = "deduped"
    throttled = "throttled"


class NotificationEvent(BaseModel):
    recipient_id: str = Field(min_length=1, max_length=64)
    topic: str = Field(min_length=1, max_length=50)
    subject_entity_id: Optional[str] = Field(default=None, max_length=64)
    title: str = Field(max_length=255)
    body: str
    payload: dict[str, Any] = Field(default_factory=dict)
    dedupe_key: str = Field(min_length=1, max_length=255)
    throttle_key: str = Field(min_length=1, max_length=255)
    throttle_window_seconds: Optional[int] = Field(default=None, ge=0, le=7 * 24 * 3600)

    @field_validator("dedupe_key", "throttle_key")
    @classmethod
    def strip_keys(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("key must not be blank")
        return v


class DispatchResult(BaseModel):
    delivered_count: int = 0
    failed_count: int = 0
    tokens_found: int = 0
    tokens_used: int = 0
    removed_tokens: int = 0
    suppressed: bool = False
    error: Optional[str] = None


class AdmissionResult(BaseModel):
    status: AdmissionStatus
    job_id: Optional[int] = None
    aggregated_into_job_id: Optional[int] = None
    dispatch: Optional[DispatchResult] = None


class AcceptedResponse(BaseModel):
    accepted: bool = True


class BacklogMessage(BaseModel):
    recipient_id: str = Field(min_length=1, max_length=64)
    conversation_id: str = Field(min_length=1, max_length=64)
    sender_name: Optional[str] = Field(default=None, max_length=255)


class BacklogEntryResponse(BaseModel):
    recipient_id: str
    conversation_id: str
    unread_count: int


class DigestSweepResult(BaseModel):
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    selected: int = 0
    deferred: int = 0


class PurgeResponse(BaseModel):
    deleted: int
    email_outbox_deleted: int = 0
