import json
import os
from datetime import datetime, timezone

import httpx
import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("EMAIL_ENABLED", "false")

from notification_core import models, schemas
from notification_core.api import app
from notification_core.database import Base, engine, get_db, SessionLocal
from notification_core.email_service import SendEmailResult, get_email_transport
from notification_core.push_gateway import PushGatewayClient, get_push_gateway

INTERNAL_HEADERS = {"X-Internal-Token": "test-internal-key"}
CRON_HEADERS = {"Authorization": "Bearer test-cron-secret"}


class FakeGateway:
    """Gateway backed by httpx.MockTransport; `results` maps token -> result dict."""

    def __init__(self):
        self.requests: list[list[dict]] = []
        self.results: dict[str, dict] = {}
        self.status_code = 200
        self.raise_exc: Exception | None = None

    def _handle(self, request: httpx.Request) -> httpx.Response:
        if self.raise_exc is not None:
            raise self.raise_exc
        messages = json.loads(request.content)
        self.requests.append(messages)
        if self.status_code != 200:
            return httpx.Response(self.status_code, text="gateway unavailable")
        data = [self.results.get(m["to"], {"status": "ok", "id": f"ticket-{i}"}) for i, m in enumerate(messages)]
        return httpx.Response(200, json={"data": data})

    def client(self) -> PushGatewayClient:
        return PushGatewayClient("https://push.test/send", timeout=2.0, transport=httpx.MockTransport(self._handle))

    @property
    def sent_tokens(self) -> list[str]:
        return [m["to"] for batch in self.requests for m in batch]


class RecordingEmailTransport:
    def __init__(self):
        self.sent: list[dict] = []
        self.fail = False

    def send(self, to, subject, html, text, category, user_id=None, dedupe_key=None):
        self.sent.append(
            {
                "to": to,
                "subject": subject,
                "html": html,
                "text": text,
                "category": category,
                "user_id": user_id,
                "dedupe_key": dedupe_key,
            }
        )
        if self.fail:
            return SendEmailResult(success=False, error="smtp down")
        return SendEmailResult(success=True, message_id=f"<msg-{len(self.sent)}@test>")


@pytest.fixture(scope="session", autouse=True)
def _ensure_schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session():
    db = SessionLocal()
    try:
        for table in reversed(Base.metadata.sorted_tables):
            db.execute(table.delete())
        db.commit()
        yield db
    finally:
        db.close()


@pytest.fixture()
def fake_gateway():
    return FakeGateway()


@pytest.fixture()
def email_transport():
    return RecordingEmailTransport()


@pytest.fixture()
def client(db_session, fake_gateway, email_transport):
    def _override_get_db():
        yield db_session

    gateway_client = fake_gateway.client()
    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_push_gateway] = lambda: gateway_client
    app.dependency_overrides[get_email_transport] = lambda: email_transport
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def helpers(db_session):
    def add_token(recipient_id: str, token: str, *, last_seen_at: datetime | None = None) -> models.DeliveryToken:
        row = models.DeliveryToken(
            recipient_id=recipient_id,
            token=token,
            platform="ios",
            last_seen_at=last_seen_at or datetime.now(timezone.utc),
        )
        db_session.add(row)
        db_session.commit()
        return row

    def add_profile(
        recipient_id: str,
        *,
        email: str | None = None,
        verified: bool = True,
        name: str | None = None,
        language: str = "en",
    ) -> models.RecipientProfile:
        profile = models.RecipientProfile(
            recipient_id=recipient_id,
            display_name=name,
            email=email,
            email_verified=verified,
            language=language,
        )
        db_session.add(profile)
        db_session.commit()
        return profile

    def set_preferences(recipient_id: str, **values) -> models.NotificationPreference:
        prefs = models.NotificationPreference(recipient_id=recipient_id, **values)
        db_session.add(prefs)
        db_session.commit()
        return prefs

    def event(**overrides) -> schemas.NotificationEvent:
        data = {
            "recipient_id": "user-1",
            "topic": "chat_message",
            "subject_entity_id": "conv-1",
            "title": "New message",
            "body": "Hello there",
            "payload": {"conversation_id": "conv-1"},
            "dedupe_key": "chat_message:msg-1",
            "throttle_key": "chat_message:conv-1",
        }
        data.update(overrides)
        return schemas.NotificationEvent(**data)

    def tokens_of(recipient_id: str) -> list[str]:
        db_session.expire_all()
        rows = db_session.query(models.DeliveryToken).filter(models.DeliveryToken.recipient_id == recipient_id).all()
        return sorted(row.token for row in rows)

    return {
        "db": db_session,
        "add_token": add_token,
        "add_profile": add_profile,
        "set_preferences": set_preferences,
        "event": event,
        "tokens_of": tokens_of,
    }
