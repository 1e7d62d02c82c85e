"""Provider webhook endpoints: signatures, duplicates, malformed bodies."""
import hashlib
import hmac

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from salon_notify.backend.auth import create_access_token
from salon_notify.backend.config import Settings
from salon_notify.backend.database import Base, get_test_engine
from salon_notify.backend.deps import get_db
from salon_notify.backend.main import app
from salon_notify.backend.models.webhook_event import WebhookEvent
from salon_notify.backend.routers import webhooks as webhook_router
from salon_notify.backend.services import consent, webhooks

client = TestClient(app)
SIGNING_KEY = "key-test-123"


@pytest.fixture
def test_db_session():
    engine = get_test_engine()
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def override_get_db(test_db_session):
    def _get_db():
        try:
            yield test_db_session
        finally:
            pass

    app.dependency_overrides[get_db] = _get_db
    try:
        yield
    finally:
        app.dependency_overrides.pop(get_db, None)


def _use_settings(monkeypatch, **kw):
    monkeypatch.setattr(webhook_router, "get_settings", lambda: Settings(**kw))


def _mailgun(event_id="mg-1", event="failed", key=SIGNING_KEY):
    timestamp, token = "1773136800", "tok-abc"
    signature = hmac.new(key.encode(), f"{timestamp}{token}".encode(), hashlib.sha256).hexdigest()
    return {
        "signature": {"timestamp": timestamp, "token": token, "signature": signature},
        "event-data": {
            "id": event_id,
            "event": event,
            "severity": "permanent",
            "recipient": "anna@example.com",
            "timestamp": 1773136800,
            "delivery-status": {"code": 550, "description": "no such mailbox"},
        },
    }


@pytest.mark.timeout(10)
def test_mailgun_verified_bounce(test_db_session, override_get_db, monkeypatch):
    _use_settings(monkeypatch, mailgun_webhook_signing_key=SIGNING_KEY)
    r = client.post("/v1/webhooks/mailgun", json=_mailgun())
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["data"]["results"][0]["processed"] is True
    assert consent.check_suppression(test_db_session, email="anna@example.com").is_suppressed is True


@pytest.mark.timeout(10)
def test_mailgun_bad_signature_is_401_and_stored(test_db_session, override_get_db, monkeypatch):
    _use_settings(monkeypatch, mailgun_webhook_signing_key=SIGNING_KEY)
    r = client.post("/v1/webhooks/mailgun", json=_mailgun(key="wrong-key"))
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "invalid_signature"
    row = test_db_session.query(WebhookEvent).one()
    assert row.processed is False
    assert row.processing_error == "signature_invalid"
    assert consent.check_suppression(test_db_session, email="anna@example.com").is_suppressed is False


@pytest.mark.timeout(10)
def test_mailgun_strict_without_key(test_db_session, override_get_db, monkeypatch):
    _use_settings(monkeypatch, mailgun_webhook_signing_key="", mailgun_strict_signature=True)
    r = client.post("/v1/webhooks/mailgun", json=_mailgun())
    assert r.status_code == 401
    assert r.json()["error"]["message"] == "signature_key_not_configured"


@pytest.mark.timeout(10)
def test_mailgun_duplicate_returns_200(test_db_session, override_get_db, monkeypatch):
    _use_settings(monkeypatch, mailgun_webhook_signing_key=SIGNING_KEY)
    client.post("/v1/webhooks/mailgun", json=_mailgun(event="delivered"))
    r = client.post("/v1/webhooks/mailgun", json=_mailgun(event="delivered"))
    assert r.status_code == 200
    assert r.json()["data"]["results"][0]["duplicate"] is True
    assert test_db_session.query(WebhookEvent).count() == 1


@pytest.mark.timeout(10)
def test_invalid_json_is_recorded(test_db_session, override_get_db):
    r = client.post("/v1/webhooks/smtp", content=b"{not json", headers={"Content-Type": "application/json"})
    assert r.status_code == 200
    result = r.json()["data"]["results"][0]
    assert result["accepted"] is True
    assert result["processed"] is False
    assert result["error"].startswith("malformed")


@pytest.mark.timeout(10)
def test_twilio_signed_callback(test_db_session, override_get_db, monkeypatch):
    _use_settings(monkeypatch, twilio_auth_token="tw-secret", public_base_url="https://notify.salon.ch")
    form = {"MessageSid": "SM42", "MessageStatus": "undelivered", "To": "+41790000001", "ErrorCode": "21211"}
    sig = webhooks.twilio_signature("tw-secret", "https://notify.salon.ch/v1/webhooks/twilio", form)
    r = client.post("/v1/webhooks/twilio", data=form, headers={"X-Twilio-Signature": sig})
    assert r.status_code == 200
    assert consent.check_suppression(test_db_session, phone="+41790000001").suppression_type == "invalid"

    forged = client.post("/v1/webhooks/twilio", data={**form, "MessageStatus": "failed"},
                         headers={"X-Twilio-Signature": sig})
    assert forged.status_code == 401


@pytest.mark.timeout(10)
def test_unknown_provider_is_404(test_db_session, override_get_db):
    r = client.post("/v1/webhooks/pigeon", json={})
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "unknown_provider"


@pytest.mark.timeout(10)
def test_admin_reprocess(test_db_session, override_get_db, monkeypatch):
    _use_settings(monkeypatch, mailgun_webhook_signing_key=SIGNING_KEY)
    client.post("/v1/webhooks/mailgun", json=_mailgun(key="wrong-key"))
    event_id = test_db_session.query(WebhookEvent).one().id
    headers = {"Authorization": f"Bearer {create_access_token({'sub': '1'})}"}

    listing = client.get("/v1/admin/webhooks?processed=false", headers=headers).json()["data"]
    assert listing["total"] == 1
    r = client.post(f"/v1/admin/webhooks/{event_id}/reprocess", headers=headers)
    assert r.status_code == 200
    assert r.json()["data"]["processed"] is True
    assert client.post("/v1/admin/webhooks/999/reprocess", headers=headers).status_code == 404
