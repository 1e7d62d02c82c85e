"""SMTP sender and provider failure classification."""
import smtplib
from datetime import datetime

import pytest
from sqlalchemy.orm import sessionmaker

from salon_notify.backend.database import Base, get_test_engine
from salon_notify.backend.models.notification import NotificationRequest
from salon_notify.backend.services import consent, queue
from salon_notify.backend.services.email import send_email
from salon_notify.backend.services.failures import (
    FailureType,
    classify_http_status,
    classify_smtp_code,
    classify_twilio_code,
)

NOW = datetime(2026, 3, 10, 10, 0)


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


def _fake_smtp(login_error=None, send_error=None):
    class FakeSMTP:
        sent = []

        def __init__(self, host, port, timeout=None):
            pass

        def starttls(self):
            pass

        def login(self, username, password):
            if login_error:
                raise login_error

        def send_message(self, msg):
            if send_error:
                raise send_error
            FakeSMTP.sent.append(msg)

        def quit(self):
            pass

    return FakeSMTP


def _send():
    return send_email(
        host="smtp.example.com",
        port=587,
        username="salon",
        password="wrong",
        secure="tls",
        from_email="termine@salon.ch",
        from_name="Salon",
        to_email="anna@example.com",
        subject="Erinnerung",
        text="Bis morgen",
    )


@pytest.mark.timeout(10)
def test_bad_smtp_login_is_provider_error_and_does_not_suppress(test_db_session, monkeypatch):
    monkeypatch.setattr(
        smtplib, "SMTP", _fake_smtp(login_error=smtplib.SMTPAuthenticationError(535, b"5.7.8 auth failed"))
    )
    msg_id, failure = _send()
    assert msg_id is None
    assert failure.type == FailureType.PROVIDER_ERROR
    assert failure.code == "535"

    n = NotificationRequest(
        type="email", channel="appointment_reminder", recipient_email="anna@example.com",
        status="sending", scheduled_for=NOW, last_attempt_at=NOW,
    )
    test_db_session.add(n)
    test_db_session.commit()
    n = queue.report_failure(test_db_session, n.id, failure, NOW)
    assert n.status == "pending"
    assert consent.check_suppression(test_db_session, email="anna@example.com").is_suppressed is False


@pytest.mark.timeout(10)
def test_sender_and_data_rejections_are_provider_errors(monkeypatch):
    monkeypatch.setattr(
        smtplib, "SMTP",
        _fake_smtp(send_error=smtplib.SMTPSenderRefused(553, b"sender not allowed", "termine@salon.ch")),
    )
    assert _send()[1].type == FailureType.PROVIDER_ERROR

    monkeypatch.setattr(smtplib, "SMTP", _fake_smtp(send_error=smtplib.SMTPDataError(554, b"rejected")))
    assert _send()[1].type == FailureType.PROVIDER_ERROR


@pytest.mark.timeout(10)
def test_refused_recipient_is_hard_bounce(monkeypatch):
    refused = smtplib.SMTPRecipientsRefused({"anna@example.com": (550, b"5.1.1 no such user")})
    monkeypatch.setattr(smtplib, "SMTP", _fake_smtp(send_error=refused))
    failure = _send()[1]
    assert failure.type == FailureType.HARD_BOUNCE
    assert failure.code == "550"


@pytest.mark.timeout(10)
def test_successful_send_returns_message_id(monkeypatch):
    fake = _fake_smtp()
    monkeypatch.setattr(smtplib, "SMTP", fake)
    msg_id, failure = _send()
    assert failure is None
    assert msg_id.endswith("@salon.ch")
    assert fake.sent[0]["To"] == "anna@example.com"


def test_smtp_codes():
    assert classify_smtp_code(550, "no such user").type == FailureType.HARD_BOUNCE
    assert classify_smtp_code(552, "mailbox full").type == FailureType.SOFT_BOUNCE
    assert classify_smtp_code(535, recipient=False).type == FailureType.PROVIDER_ERROR
    assert classify_smtp_code(421).type == FailureType.RATE_LIMITED
    assert classify_smtp_code(451).type == FailureType.SOFT_BOUNCE
    assert classify_smtp_code("garbage").type == FailureType.UNKNOWN


def test_twilio_account_errors_never_blame_the_recipient():
    assert classify_twilio_code("21211").type == FailureType.INVALID_RECIPIENT
    assert classify_twilio_code("21212").type == FailureType.PROVIDER_ERROR
    assert classify_twilio_code("20429").type == FailureType.RATE_LIMITED
    assert classify_twilio_code("99999") is None
    assert classify_http_status(400).type == FailureType.PROVIDER_ERROR
    assert classify_http_status(429).type == FailureType.RATE_LIMITED
    assert classify_http_status(504).type == FailureType.TIMEOUT
