from datetime import datetime, timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from salon_notify.backend.database import Base, get_test_engine
from salon_notify.backend.models.dead_letter import DeadLetterItem
from salon_notify.backend.models.notification import NotificationAudit, NotificationRequest
from salon_notify.backend.services import consent, dead_letter, queue
from salon_notify.backend.services.errors import DeadLetterNotFound
from salon_notify.backend.services.failures import FailureType, SendFailure, timeout_failure

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


def _dead_item(db, failure=None, email="anna@example.com", channel="appointment_reminder"):
    """A one-attempt request that fails straight into the dead letter store."""
    n = NotificationRequest(
        type="email",
        channel=channel,
        recipient_id="c1",
        recipient_email=email,
        template_name=channel,
        template_data={"customerName": "Anna"},
        correlation_id="apt-1",
        status="sending",
        scheduled_for=NOW,
        attempts=0,
        max_attempts=1,
        created_at=NOW,
        updated_at=NOW,
        last_attempt_at=NOW,
    )
    db.add(n)
    db.commit()
    queue.report_failure(db, n.id, failure or timeout_failure(), NOW)
    return db.query(DeadLetterItem).filter(DeadLetterItem.original_notification_id == n.id).one()


@pytest.mark.timeout(10)
def test_snapshot_keeps_request_fields(test_db_session):
    item = _dead_item(test_db_session)
    assert item.channel == "appointment_reminder"
    assert item.recipient_email == "anna@example.com"
    assert item.template_data == {"customerName": "Anna"}
    assert item.failure_type == "timeout"
    assert item.total_attempts == 1
    assert item.resolved_at is None


@pytest.mark.timeout(10)
def test_retry_creates_fresh_request(test_db_session):
    item = _dead_item(test_db_session)
    later = NOW + timedelta(hours=2)
    out = dead_letter.retry(test_db_session, item.id, notes="customer called", actor="admin@salon.ch", now=later)
    assert out.success is True
    fresh = test_db_session.get(NotificationRequest, out.new_notification_id)
    assert fresh.status == "pending"
    assert fresh.attempts == 0
    assert fresh.dedupe_key is None
    assert fresh.scheduled_for == later
    assert fresh.template_data == {"customerName": "Anna"}

    test_db_session.refresh(item)
    assert item.resolution_action == "manual_retry"
    assert item.retry_notification_id == fresh.id
    assert item.resolved_by == "admin@salon.ch"
    audit = test_db_session.query(NotificationAudit).filter(NotificationAudit.notification_id == fresh.id).one()
    assert audit.event_type == "queued"

    again = dead_letter.retry(test_db_session, item.id, now=later)
    assert again.success is False
    assert again.error == "already_resolved"


@pytest.mark.timeout(10)
def test_retry_with_updated_address(test_db_session):
    item = _dead_item(test_db_session)
    out = dead_letter.retry(test_db_session, item.id, updated_email="anna.new@example.com", now=NOW)
    fresh = test_db_session.get(NotificationRequest, out.new_notification_id)
    assert fresh.recipient_email == "anna.new@example.com"
    test_db_session.refresh(item)
    assert item.recipient_email == "anna.new@example.com"


@pytest.mark.timeout(10)
def test_retry_refuses_suppressed_address(test_db_session):
    item = _dead_item(test_db_session, SendFailure(FailureType.INVALID_RECIPIENT, "mailbox does not exist"))
    assert item.retry_eligible is True
    assert consent.check_suppression(test_db_session, email="anna@example.com").suppression_type == "invalid"

    out = dead_letter.retry(test_db_session, item.id, now=NOW)
    assert out.success is False
    assert out.error == "recipient_suppressed"
    assert test_db_session.query(NotificationRequest).filter(NotificationRequest.status == "pending").count() == 0
    test_db_session.refresh(item)
    assert item.resolved_at is None

    fixed = dead_letter.retry(test_db_session, item.id, updated_email="anna.new@example.com", now=NOW)
    assert fixed.success is True
    fresh = test_db_session.get(NotificationRequest, fixed.new_notification_id)
    assert fresh.recipient_email == "anna.new@example.com"


@pytest.mark.timeout(10)
def test_hard_bounce_is_not_retry_eligible(test_db_session):
    item = _dead_item(test_db_session, SendFailure(FailureType.HARD_BOUNCE, "550 mailbox unavailable", "550"))
    assert item.is_permanent is True
    out = dead_letter.retry(test_db_session, item.id, now=NOW)
    assert out.success is False
    assert out.error == "not_retry_eligible"
    assert dead_letter.retry(test_db_session, 424242, now=NOW).error == "not_found"


@pytest.mark.timeout(10)
def test_resolve_suppressed_blocks_address(test_db_session):
    item = _dead_item(test_db_session, email="Tom@Example.com")
    resolved = dead_letter.resolve(test_db_session, item.id, "suppressed", notes="asked to stop", actor="admin", now=NOW)
    assert resolved.resolution_action == "suppressed"
    check = consent.check_suppression(test_db_session, email="tom@example.com")
    assert check.is_suppressed is True
    assert check.suppression_type == "admin_block"


@pytest.mark.timeout(10)
def test_resolve_rejects_bad_action_and_missing_item(test_db_session):
    item = _dead_item(test_db_session)
    with pytest.raises(ValueError):
        dead_letter.resolve(test_db_session, item.id, "manual_retry")
    with pytest.raises(ValueError):
        dead_letter.resolve(test_db_session, item.id, "shrug")
    with pytest.raises(DeadLetterNotFound):
        dead_letter.resolve(test_db_session, 999, "ignored")


@pytest.mark.timeout(10)
def test_stats(test_db_session):
    a = _dead_item(test_db_session)
    _dead_item(test_db_session, SendFailure(FailureType.HARD_BOUNCE, "bounced"), email="b@example.com")
    dead_letter.resolve(test_db_session, a.id, "ignored", now=NOW + timedelta(hours=3))
    stats = dead_letter.get_stats(test_db_session, now=NOW + timedelta(hours=3))
    assert stats["total"] == 2
    assert stats["by_failure_type"] == {"timeout": 1, "hard_bounce": 1}
    assert stats["resolved"] == 1
    assert stats["unresolved"] == 1
    assert stats["resolution_rate"] == 50.0
    assert stats["avg_resolution_time_hours"] == 3.0
    # the hard bounce is not eligible and the timeout is resolved
    assert stats["retry_eligible"] == 0


@pytest.mark.timeout(10)
def test_list_filters(test_db_session):
    _dead_item(test_db_session)
    _dead_item(test_db_session, SendFailure(FailureType.HARD_BOUNCE, "bounced"), email="b@example.com")
    rows, total = dead_letter.list_items(test_db_session, failure_type="hard_bounce")
    assert total == 1
    assert rows[0].recipient_email == "b@example.com"
    rows, total = dead_letter.list_items(test_db_session, retry_eligible=True, resolved=False)
    assert total == 1


@pytest.mark.timeout(10)
def test_cleanup_removes_old_resolved_only(test_db_session):
    old = _dead_item(test_db_session)
    _dead_item(test_db_session, email="open@example.com")
    dead_letter.resolve(test_db_session, old.id, "ignored", now=NOW - timedelta(days=40))
    assert dead_letter.cleanup(test_db_session, older_than_days=30, now=NOW) == 1
    assert test_db_session.query(DeadLetterItem).count() == 1


@pytest.mark.timeout(10)
def test_resolve_for_address(test_db_session):
    _dead_item(test_db_session, email="Anna@Example.com")
    _dead_item(test_db_session, email="other@example.com")
    n = dead_letter.resolve_for_address(test_db_session, "anna@example.com", None, "suppressed", "complaint", now=NOW)
    test_db_session.commit()
    assert n == 1
    open_rows, total = dead_letter.list_items(test_db_session, resolved=False)
    assert total == 1
