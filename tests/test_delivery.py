"""Delivery pass: claim, render, send with a fake sender, report outcomes."""
import threading
from datetime import datetime, timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from salon_notify.backend.database import Base, get_test_engine
from salon_notify.backend.models.budget import BudgetPeriod
from salon_notify.backend.models.dead_letter import DeadLetterItem
from salon_notify.backend.models.notification import NotificationRequest
from salon_notify.backend.services import delivery
from salon_notify.backend.services.failures import FailureType, SendFailure
from salon_notify.backend.services.retry_config import update_retry_config
from salon_notify.backend.services.senders import SendResult

NOW = datetime(2026, 3, 10, 10, 0)
DATA = {
    "customerName": "Anna",
    "serviceName": "Haarschnitt",
    "appointmentDate": "12.03.2026",
    "appointmentTime": "15:00",
}


@pytest.fixture
def session_factory(monkeypatch):
    engine = get_test_engine()
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    monkeypatch.setattr(delivery, "get_session_factory", lambda: SessionLocal)
    return SessionLocal


def _pending(SessionLocal, email="anna@example.com", data=None, channel="appointment_reminder"):
    with SessionLocal() as db:
        n = NotificationRequest(
            type="email",
            channel=channel,
            recipient_id="c1",
            recipient_email=email,
            template_name=channel,
            template_data=DATA if data is None else data,
            status="pending",
            scheduled_for=NOW,
            attempts=0,
            max_attempts=3,
            created_at=NOW,
            updated_at=NOW,
        )
        db.add(n)
        db.commit()
        return n.id


def _row(SessionLocal, nid):
    with SessionLocal() as db:
        n = db.get(NotificationRequest, nid)
        db.expunge(n)
        return n


class RecordingSender:
    def __init__(self, result=None):
        self.calls = []
        self.result = result

    def send(self, notification_type, recipient, subject, body, notification_id=None):
        self.calls.append((notification_type, recipient, subject, body, notification_id))
        return self.result or SendResult(True, "fake", provider_message_id=f"fake-{notification_id}")


class ExplodingSender:
    def send(self, *args, **kwargs):
        raise RuntimeError("connection reset")


class BlockingSender:
    def __init__(self):
        self.release = threading.Event()

    def send(self, *args, **kwargs):
        self.release.wait(5)
        return SendResult(True, "fake", provider_message_id="late")


@pytest.mark.timeout(10)
def test_success_marks_sent_and_counts_budget(session_factory):
    nid = _pending(session_factory)
    sender = RecordingSender()
    result = delivery.process_due_notifications(sender=sender, now=NOW)
    assert result["claimed"] == 1
    assert result["sent"] == 1
    assert result["failed"] == 0
    kind, recipient, subject, body, passed_id = sender.calls[0]
    assert (kind, recipient, passed_id) == ("email", "anna@example.com", nid)
    assert "Anna" in body
    n = _row(session_factory, nid)
    assert n.status == "sent"
    assert n.provider == "fake"
    assert n.provider_message_id == f"fake-{nid}"
    with session_factory() as db:
        assert db.query(BudgetPeriod).one().email_count == 1


@pytest.mark.timeout(10)
def test_nothing_due(session_factory):
    result = delivery.process_due_notifications(sender=RecordingSender(), now=NOW)
    assert result["claimed"] == 0
    assert result["sent"] == 0


@pytest.mark.timeout(10)
def test_sender_exception_becomes_retry(session_factory):
    nid = _pending(session_factory)
    result = delivery.process_due_notifications(sender=ExplodingSender(), now=NOW)
    assert result["failed"] == 1
    assert result["retried"] == 1
    n = _row(session_factory, nid)
    assert n.status == "pending"
    assert n.attempts == 1
    assert n.last_failure_type == "unknown"
    assert "connection reset" in n.last_error
    assert n.scheduled_for == NOW + timedelta(minutes=15)


@pytest.mark.timeout(10)
def test_hard_failure_result_dead_letters(session_factory):
    nid = _pending(session_factory)
    sender = RecordingSender(SendResult(False, "smtp", failure=SendFailure(FailureType.HARD_BOUNCE, "550", "550")))
    result = delivery.process_due_notifications(sender=sender, now=NOW)
    assert result["dead_lettered"] == 1
    n = _row(session_factory, nid)
    assert n.status == "failed"
    assert n.provider == "smtp"
    with session_factory() as db:
        assert db.query(DeadLetterItem).count() == 1


@pytest.mark.timeout(10)
def test_slow_send_counts_as_timeout(session_factory):
    nid = _pending(session_factory)
    sender = BlockingSender()
    try:
        result = delivery.process_due_notifications(sender=sender, now=NOW, max_workers=1, send_timeout=0.2)
    finally:
        sender.release.set()
    assert result["timeouts"] == 1
    n = _row(session_factory, nid)
    assert n.status == "pending"
    assert n.last_failure_type == "timeout"


@pytest.mark.timeout(10)
def test_missing_address_is_invalid_recipient(session_factory):
    nid = _pending(session_factory, email=None)
    sender = RecordingSender()
    result = delivery.process_due_notifications(sender=sender, now=NOW)
    assert sender.calls == []
    assert result["dead_lettered"] == 1
    assert _row(session_factory, nid).last_failure_type == "invalid_recipient"


@pytest.mark.timeout(10)
def test_template_error_is_retried(session_factory):
    nid = _pending(session_factory, data={"customerName": "Anna"})
    result = delivery.process_due_notifications(sender=RecordingSender(), now=NOW)
    assert result["retried"] == 1
    n = _row(session_factory, nid)
    assert n.status == "pending"
    assert n.last_error.startswith("template_error")


@pytest.mark.timeout(10)
def test_rate_limit_blocks_pass(session_factory):
    with session_factory() as db:
        update_retry_config(db, "global", None, {"rate_limit_per_minute": 1})
    nid = _pending(session_factory)
    with session_factory() as db:
        recent = db.get(NotificationRequest, _pending(session_factory, email="b@example.com"))
        recent.status = "sent"
        recent.last_attempt_at = NOW - timedelta(seconds=30)
        db.commit()
    result = delivery.process_due_notifications(sender=RecordingSender(), now=NOW)
    assert result["rate_limited"] is True
    assert result["claimed"] == 0
    assert _row(session_factory, nid).status == "pending"


@pytest.mark.timeout(10)
def test_batch_limit(session_factory):
    for i in range(3):
        _pending(session_factory, email=f"c{i}@example.com")
    result = delivery.process_due_notifications(sender=RecordingSender(), limit=2, now=NOW)
    assert result["claimed"] == 2
    assert result["sent"] == 2
