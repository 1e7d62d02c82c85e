"""Admin API: auth, queue, dead letters, retry config, settings, consent."""
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.orm import sessionmaker

from salon_notify.backend.auth import create_access_token
from salon_notify.backend.config import get_settings
from salon_notify.backend.database import Base, get_test_engine
from salon_notify.backend.deps import get_db
from salon_notify.backend.main import app
from salon_notify.backend.models.dead_letter import DeadLetterItem
from salon_notify.backend.models.notification import NotificationRequest
from salon_notify.backend.services import consent

client = TestClient(app)


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
def api(test_db_session):
    def _get_db():
        try:
            yield test_db_session
        finally:
            pass

    app.dependency_overrides[get_db] = _get_db
    try:
        yield {"Authorization": f"Bearer {create_access_token({'sub': '1', 'email': 'admin@salon.ch'})}"}
    finally:
        app.dependency_overrides.pop(get_db, None)


def _dead_item(db, failure_type="timeout", retry_eligible=True):
    item = DeadLetterItem(
        type="email",
        channel="appointment_reminder",
        recipient_id="c1",
        recipient_email="anna@example.com",
        template_data={"customerName": "Anna"},
        failure_reason="send_timeout",
        failure_type=failure_type,
        is_permanent=not retry_eligible,
        retry_eligible=retry_eligible,
        total_attempts=3,
        created_at=datetime.utcnow(),
    )
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


@pytest.mark.timeout(10)
def test_login_and_me(test_db_session, api):
    r = client.post("/v1/admin/auth/login", json={"email": "admin@localhost", "password": "changeme"})
    assert r.status_code == 200
    token = r.json()["data"]["access_token"]
    me = client.get("/v1/admin/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["data"]["email"] == "admin@localhost"

    bad = client.post("/v1/admin/auth/login", json={"email": "admin@localhost", "password": "nope"})
    assert bad.status_code == 401
    assert bad.json()["error"]["message"] == "Invalid email or password"


@pytest.mark.timeout(10)
def test_unsubscribe_token_is_not_an_admin_token(test_db_session, api):
    token = consent.generate_unsubscribe_token("c1", "email", email="anna@example.com")
    r = client.get("/v1/admin/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 401


@pytest.mark.timeout(10)
def test_enqueue_list_and_detail(test_db_session, api):
    consent.record_consent(test_db_session, "c1", "email", "appointment_confirmations", True, "booking_form")
    r = client.post(
        "/v1/admin/notifications",
        headers=api,
        json={
            "type": "email",
            "channel": "appointment_confirmation",
            "recipient_id": "c1",
            "recipient_email": "anna@example.com",
            "template_data": {"customerName": "Anna"},
            "correlation_id": "apt-1",
        },
    )
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["skipped"] is False
    nid = data["notification_id"]

    listing = client.get("/v1/admin/notifications?status=pending", headers=api).json()["data"]
    assert listing["total"] == 1
    detail = client.get(f"/v1/admin/notifications/{nid}", headers=api).json()["data"]
    assert detail["audit"][0]["event_type"] == "queued"

    skipped = client.post(
        "/v1/admin/notifications",
        headers=api,
        json={"type": "email", "channel": "appointment_reminder", "recipient_id": "c9",
              "recipient_email": "nobody@example.com"},
    ).json()["data"]
    assert skipped["skipped"] is True
    assert skipped["reason"].startswith("no consent")


@pytest.mark.timeout(10)
def test_enqueue_rejects_unknown_channel(test_db_session, api):
    r = client.post("/v1/admin/notifications", headers=api, json={"type": "email", "channel": "newsletter"})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "invalid_channel"


@pytest.mark.timeout(10)
def test_cancel_and_missing_notification(test_db_session, api):
    n = NotificationRequest(
        type="email", channel="appointment_reminder", recipient_email="a@example.com",
        status="pending", scheduled_for=datetime.utcnow() + timedelta(hours=2),
    )
    test_db_session.add(n)
    test_db_session.commit()
    r = client.post(f"/v1/admin/notifications/{n.id}/cancel", headers=api, json={"reason": "typo"})
    assert r.json()["data"]["cancelled"] is True
    missing = client.get("/v1/admin/notifications/9999", headers=api)
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "notification_not_found"


@pytest.mark.timeout(10)
def test_appointment_routes(test_db_session, api):
    for t in ("appointment_confirmations", "appointment_reminders", "appointment_changes"):
        consent.record_consent(test_db_session, "c1", "email", t, True, "booking_form")
    start = (datetime.utcnow() + timedelta(days=3)).replace(microsecond=0)
    appointment = {
        "id": "apt-5",
        "customer_id": "c1",
        "email": "anna@example.com",
        "start": start.isoformat(),
        "template_data": {"customerName": "Anna", "serviceName": "Farbe"},
    }
    r = client.post("/v1/admin/notifications/appointments", headers=api, json=appointment)
    assert r.status_code == 200
    assert len(r.json()["data"]["results"]) == 2

    mismatch = client.post(
        "/v1/admin/notifications/appointments/apt-6/reschedule",
        headers=api,
        json={**appointment, "old_start": start.isoformat()},
    )
    assert mismatch.status_code == 400

    cancelled = client.post("/v1/admin/notifications/appointments/apt-5/cancel", headers=api).json()["data"]
    assert cancelled["cancelled"] == 2


@pytest.mark.timeout(10)
def test_dead_letter_list_and_retry(test_db_session, api):
    item = _dead_item(test_db_session)
    listing = client.get("/v1/admin/dlq?resolved=false", headers=api).json()["data"]
    assert listing["total"] == 1
    assert listing["items"][0]["failure_type"] == "timeout"

    r = client.post(f"/v1/admin/dlq/{item.id}/retry", headers=api, json={"notes": "retry please"})
    assert r.status_code == 200
    new_id = r.json()["data"]["new_notification_id"]
    assert test_db_session.get(NotificationRequest, new_id).status == "pending"

    again = client.post(f"/v1/admin/dlq/{item.id}/retry", headers=api)
    assert again.status_code == 409
    assert client.post("/v1/admin/dlq/9999/retry", headers=api).status_code == 404


@pytest.mark.timeout(10)
def test_dead_letter_resolve_and_stats(test_db_session, api):
    item = _dead_item(test_db_session, failure_type="hard_bounce", retry_eligible=False)
    assert client.post(f"/v1/admin/dlq/{item.id}/retry", headers=api).status_code == 409
    bad = client.post(f"/v1/admin/dlq/{item.id}/resolve", headers=api, json={"action": "whatever"})
    assert bad.status_code == 400
    r = client.post(f"/v1/admin/dlq/{item.id}/resolve", headers=api, json={"action": "ignored"})
    assert r.json()["data"]["resolved_by"] == "admin@salon.ch"
    stats = client.get("/v1/admin/dlq/stats", headers=api).json()["data"]
    assert stats["resolved"] == 1


@pytest.mark.timeout(10)
def test_retry_config_roundtrip_and_validation(test_db_session, api):
    r = client.put("/v1/admin/retry-config", headers=api, json={"scope": "global", "max_attempts": 5})
    assert r.status_code == 200
    assert r.json()["data"]["max_attempts"] == 5

    bad = client.put("/v1/admin/retry-config", headers=api, json={"scope": "global", "max_attempts": 50})
    assert bad.status_code == 400
    assert bad.json()["success"] is False
    assert "max_attempts" in bad.json()["error"]["message"]

    eff = client.get("/v1/admin/retry-config/effective?channel=appointment_reminder", headers=api).json()["data"]
    assert eff["max_attempts"] == 5
    assert eff["scope"] == "global"


@pytest.mark.timeout(10)
def test_settings_and_budget_usage(test_db_session, api):
    r = client.put(
        "/v1/admin/settings/notifications?scope=global",
        headers=api,
        json={"monthly_email_limit": 100, "quiet_hours_start": "22:00"},
    )
    assert r.status_code == 200
    got = client.get("/v1/admin/settings/notifications?scope=global", headers=api).json()["data"]
    assert got["effective"]["monthly_email_limit"] == 100
    assert got["effective"]["quiet_hours_start"] == "22:00"

    bad = client.put("/v1/admin/settings/notifications?scope=global", headers=api, json={"timezone": "Nowhere/Land"})
    assert bad.status_code == 400

    usage = client.get("/v1/admin/budget/usage", headers=api).json()["data"]
    assert usage["email"]["limit"] == 100
    assert usage["email"]["count"] == 0


@pytest.mark.timeout(10)
def test_consent_and_suppression_routes(test_db_session, api):
    r = client.post(
        "/v1/admin/consent/customers/c1",
        headers=api,
        json={"source": "admin_update", "consents": [
            {"channel": "email", "consent_type": "appointment_reminders", "consented": True},
        ]},
    )
    assert r.status_code == 200
    guard = {"customer_id": "c1", "email": "anna@example.com", "type": "email", "channel": "appointment_reminder"}
    check = client.post("/v1/admin/consent/check", headers=api, json=guard).json()["data"]
    assert check["can_send"] is True
    assert check["consent_type"] == "appointment_reminders"

    sup = client.post(
        "/v1/admin/consent/suppressions",
        headers=api,
        json={"email": "anna@example.com", "suppression_type": "admin_block", "reason": "request"},
    ).json()["data"]
    check = client.post("/v1/admin/consent/check", headers=api, json=guard).json()["data"]
    assert check["can_send"] is False
    assert check["suppression_type"] == "admin_block"

    client.post(f"/v1/admin/consent/suppressions/{sup['id']}/reactivate", headers=api, json={"reason": "ok"})
    listing = client.get("/v1/admin/consent/suppressions", headers=api).json()["data"]
    assert listing["total"] == 0


@pytest.mark.timeout(10)
def test_public_unsubscribe(test_db_session, api):
    consent.record_consent(test_db_session, "c1", "email", "appointment_reminders", True, "booking_form")
    token = consent.generate_unsubscribe_token("c1", "email", email="anna@example.com")
    r = client.get(f"/v1/unsubscribe?token={token}")
    assert r.status_code == 200
    assert consent.check_suppression(test_db_session, email="anna@example.com").suppression_type == "unsubscribe"

    bad = client.post("/v1/unsubscribe", json={"token": "garbage"})
    assert bad.status_code == 400
    assert bad.json()["error"]["message"] == "invalid_or_expired_token"
    assert client.post("/v1/resubscribe", json={"token": "unknown"}).status_code == 404


@pytest.mark.timeout(10)
def test_daily_schedule_route(test_db_session, api):
    body = {
        "staff_id": "s1",
        "email": "mia@salon.ch",
        "name": "Mia",
        "appointments": [{"time": "09:00", "customerName": "Anna", "serviceName": "Schnitt"}],
    }
    off = client.post("/v1/admin/notifications/daily-schedule", headers=api, json=body).json()["data"]
    assert off["skipped"] is True

    client.put("/v1/admin/settings/notifications?scope=global", headers=api, json={"send_daily_schedule": True})
    on = client.post("/v1/admin/notifications/daily-schedule", headers=api, json=body).json()["data"]
    assert on["skipped"] is False
    n = test_db_session.get(NotificationRequest, on["notification_id"])
    assert n.channel == "staff_daily_schedule"
    assert n.template_data["totalAppointments"] == 1


@pytest.mark.timeout(10)
def test_unsubscribe_token_scope_is_validated(test_db_session, api):
    bad = client.post(
        "/v1/admin/consent/unsubscribe-token",
        headers=api,
        json={"customer_id": "c1", "type": "email", "email": "anna@example.com", "consent_types": ["reminders"]},
    )
    assert bad.status_code == 400
    assert "reminders" in bad.json()["error"]["message"]

    s = get_settings()
    forged = jwt.encode(
        {"sub": "c1", "type": "unsubscribe", "ch": "email", "em": "anna@example.com", "ct": ["reminders"],
         "exp": datetime.utcnow() + timedelta(days=1)},
        s.jwt_secret,
        algorithm=s.jwt_algorithm,
    )
    r = client.get(f"/v1/unsubscribe?token={forged}")
    assert r.status_code == 400
    assert r.json()["error"]["message"] == "invalid_token_scope"


@pytest.mark.timeout(10)
def test_dead_letter_retry_to_suppressed_address(test_db_session, api):
    item = _dead_item(test_db_session, failure_type="invalid_recipient")
    consent.add_suppression(test_db_session, email="anna@example.com", suppression_type="invalid",
                            source="provider_feedback")
    r = client.post(f"/v1/admin/dlq/{item.id}/retry", headers=api)
    assert r.status_code == 409
    assert r.json()["error"]["message"] == "Recipient is on the suppression list"
