from notification_core import api as api_module
from notification_core import models
from notification_core.admission import AdmissionStoreError

INTERNAL_HEADERS = {"X-Internal-Token": "test-internal-key"}
CRON_HEADERS = {"Authorization": "Bearer test-cron-secret"}


def _event(**overrides) -> dict:
    data = {
        "recipient_id": "user-1",
        "topic": "chat_message",
        "title": "New message",
        "body": "Hello there",
        "payload": {"conversation_id": "conv-1"},
        "dedupe_key": "chat_message:msg-1",
        "throttle_key": "chat_message:conv-1",
    }
    data.update(overrides)
    return data


def test_health_check(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "database": "ok"}


def test_request_id_is_echoed(client):
    resp = client.get("/api/health", headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"
    assert client.get("/api/health").headers["X-Request-ID"]


def test_internal_routes_require_token(client):
    assert client.post("/internal/notifications", json=_event()).status_code == 401
    wrong = client.post("/internal/notifications", json=_event(), headers={"X-Internal-Token": "nope"})
    assert wrong.status_code == 401


def test_admit_then_dedupe(client, helpers, fake_gateway):
    helpers["add_token"]("user-1", "ExponentPushToken[a]")

    first = client.post("/internal/notifications", json=_event(), headers=INTERNAL_HEADERS)
    second = client.post("/internal/notifications", json=_event(), headers=INTERNAL_HEADERS)

    assert first.status_code == 200
    body = first.json()
    assert body["status"] == "sent"
    assert body["dispatch"]["delivered_count"] == 1
    assert second.json()["status"] == "deduped"
    assert fake_gateway.sent_tokens == ["ExponentPushToken[a]"]


def test_throttled_response_names_aggregate_job(client, helpers):
    helpers["add_token"]("user-1", "ExponentPushToken[a]")

    first = client.post("/internal/notifications", json=_event(dedupe_key="m-1"), headers=INTERNAL_HEADERS)
    second = client.post("/internal/notifications", json=_event(dedupe_key="m-2"), headers=INTERNAL_HEADERS)

    assert second.json()["status"] == "throttled"
    assert second.json()["aggregated_into_job_id"] == first.json()["job_id"]


def test_blank_keys_are_rejected(client):
    resp = client.post("/internal/notifications", json=_event(dedupe_key="   "), headers=INTERNAL_HEADERS)
    assert resp.status_code == 422


def test_store_failure_maps_to_503(client, monkeypatch):
    def _unavailable(*args, **kwargs):
        raise AdmissionStoreError("insert failed: database is locked")

    monkeypatch.setattr(api_module, "admit", _unavailable)

    resp = client.post("/internal/notifications", json=_event(), headers=INTERNAL_HEADERS)

    assert resp.status_code == 503


def test_async_admission_runs_after_response(client, helpers, fake_gateway):
    helpers["add_token"]("user-1", "ExponentPushToken[a]")

    resp = client.post("/internal/notifications/async", json=_event(), headers=INTERNAL_HEADERS)

    assert resp.status_code == 202
    assert resp.json() == {"accepted": True}
    db = helpers["db"]
    db.expire_all()
    job = db.query(models.NotificationJob).one()
    assert job.sent_at is not None
    assert fake_gateway.sent_tokens == ["ExponentPushToken[a]"]


def test_backlog_add_and_clear(client, helpers):
    payload = {"recipient_id": "user-1", "conversation_id": "conv-1", "sender_name": "Alice"}

    client.post("/internal/digest/backlog", json=payload, headers=INTERNAL_HEADERS)
    resp = client.post("/internal/digest/backlog", json=payload, headers=INTERNAL_HEADERS)

    assert resp.status_code == 200
    assert resp.json() == {"recipient_id": "user-1", "conversation_id": "conv-1", "unread_count": 2}

    deleted = client.delete("/internal/digest/backlog/user-1/conv-1", headers=INTERNAL_HEADERS)
    assert deleted.status_code == 204
    assert helpers["db"].query(models.DigestBacklogEntry).count() == 0


def test_cron_digest_sweep_requires_secret(client):
    assert client.get("/api/cron/digest-sweep").status_code == 401
    wrong = client.get("/api/cron/digest-sweep", headers={"Authorization": "Bearer wrong"})
    assert wrong.status_code == 401


def test_cron_digest_sweep_runs(client):
    for method in (client.get, client.post):
        resp = method("/api/cron/digest-sweep", headers=CRON_HEADERS)
        assert resp.status_code == 200
        assert resp.json() == {"processed": 0, "skipped": 0, "failed": 0, "selected": 0, "deferred": 0}
