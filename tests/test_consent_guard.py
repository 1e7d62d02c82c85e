"""Consent and suppression guard."""
from datetime import datetime, timedelta

import pytest
from jose import jwt
from sqlalchemy.orm import sessionmaker

from salon_notify.backend.config import get_settings
from salon_notify.backend.database import Base, get_test_engine
from salon_notify.backend.models.consent import CONSENT_TYPES, ConsentRecord, SuppressionEntry
from salon_notify.backend.services import consent


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


@pytest.mark.timeout(10)
def test_missing_consent_blocks(test_db_session):
    d = consent.evaluate(test_db_session, "c1", "a@example.com", None, "email", "appointment_reminders")
    assert d.can_send is False
    assert "no consent" in d.reason


@pytest.mark.timeout(10)
def test_latest_consent_wins(test_db_session):
    consent.record_consent(test_db_session, "c1", "email", "appointment_reminders", True, "booking_form")
    d = consent.evaluate(test_db_session, "c1", "a@example.com", None, "email", "appointment_reminders")
    assert d.can_send is True

    consent.record_consent(test_db_session, "c1", "email", "appointment_reminders", False, "preference_update")
    d = consent.evaluate(test_db_session, "c1", "a@example.com", None, "email", "appointment_reminders")
    assert d.can_send is False
    assert "withdrawn" in d.reason

    # other consent types are independent
    d = consent.evaluate(test_db_session, "c1", "a@example.com", None, "email", "appointment_confirmations")
    assert d.can_send is False


@pytest.mark.timeout(10)
def test_suppression_beats_consent(test_db_session):
    consent.record_consent(test_db_session, "c1", "email", "appointment_reminders", True, "booking_form")
    consent.add_suppression(
        test_db_session, email="  A@Example.com ", suppression_type="bounce", source="bounce_handler", reason="550"
    )
    d = consent.evaluate(test_db_session, "c1", "a@example.com", None, "email", "appointment_reminders")
    assert d.can_send is False
    assert "suppressed" in d.reason
    assert "bounce" in d.reason
    assert d.suppression_type == "bounce"


@pytest.mark.timeout(10)
def test_missing_address_blocks(test_db_session):
    consent.record_consent(test_db_session, "c1", "sms", "appointment_reminders", True, "booking_form")
    d = consent.evaluate(test_db_session, "c1", "a@example.com", None, "sms", "appointment_reminders")
    assert d.can_send is False
    assert "phone" in d.reason


@pytest.mark.timeout(10)
def test_add_suppression_is_duplicate_safe(test_db_session):
    first = consent.add_suppression(test_db_session, phone="+41 79 123 45 67", suppression_type="invalid",
                                    source="provider_feedback")
    second = consent.add_suppression(test_db_session, phone="+41791234567", suppression_type="spam",
                                     source="spam_report")
    assert first.id == second.id
    assert test_db_session.query(SuppressionEntry).count() == 1


@pytest.mark.timeout(10)
def test_reactivation_by_token_lifts_block(test_db_session):
    consent.record_consent(test_db_session, "c1", "email", "appointment_reminders", True, "booking_form")
    entry = consent.add_suppression(test_db_session, email="a@example.com")
    assert consent.check_suppression(test_db_session, email="a@example.com").is_suppressed

    out = consent.reactivate_suppression(test_db_session, token=entry.reactivation_token, reactivated_by="a")
    assert out is not None and out.reactivated_at is not None
    assert consent.check_suppression(test_db_session, email="a@example.com").is_suppressed is False
    d = consent.evaluate(test_db_session, "c1", "a@example.com", None, "email", "appointment_reminders")
    assert d.can_send is True


@pytest.mark.timeout(10)
def test_bulk_consent_is_all_or_nothing(test_db_session):
    with pytest.raises(consent.ConsentError):
        consent.record_bulk_consent(
            test_db_session,
            "c2",
            [
                {"channel": "email", "consent_type": "appointment_reminders", "consented": True},
                {"channel": "email", "consent_type": "no_such_type", "consented": True},
            ],
            "admin_update",
        )
    assert test_db_session.query(ConsentRecord).count() == 0

    rows = consent.record_bulk_consent(
        test_db_session,
        "c2",
        [
            {"channel": "email", "consent_type": "appointment_reminders", "consented": True},
            {"channel": "sms", "consent_type": "appointment_reminders", "consented": False},
        ],
        "admin_update",
    )
    assert len(rows) == 2
    latest = {(r.channel, r.consent_type): r.consented for r in consent.get_customer_consent(test_db_session, "c2")}
    assert latest == {("email", "appointment_reminders"): True, ("sms", "appointment_reminders"): False}


@pytest.mark.timeout(10)
def test_unsubscribe_token_withdraws_and_suppresses(test_db_session):
    consent.record_consent(test_db_session, "c3", "email", "appointment_reminders", True, "booking_form")
    token = consent.generate_unsubscribe_token("c3", "email", email="c3@example.com")
    out = consent.process_unsubscribe(test_db_session, token, ip_address="127.0.0.1")
    assert out["success"] is True
    assert out["suppressed"] is True
    d = consent.evaluate(test_db_session, "c3", "c3@example.com", None, "email", "appointment_reminders")
    assert d.can_send is False
    assert "suppressed" in d.reason


@pytest.mark.timeout(10)
def test_partial_unsubscribe_keeps_other_types(test_db_session):
    consent.record_consent(test_db_session, "c4", "email", "appointment_reminders", True, "booking_form")
    consent.record_consent(test_db_session, "c4", "email", "marketing", True, "booking_form")
    token = consent.generate_unsubscribe_token("c4", "email", email="c4@example.com", consent_types=["marketing"])
    out = consent.process_unsubscribe(test_db_session, token)
    assert out["suppressed"] is False
    assert consent.evaluate(test_db_session, "c4", "c4@example.com", None, "email", "appointment_reminders").can_send
    assert not consent.evaluate(test_db_session, "c4", "c4@example.com", None, "email", "marketing").can_send


def test_invalid_unsubscribe_token(test_db_session):
    assert consent.process_unsubscribe(test_db_session, "not-a-token")["success"] is False


@pytest.mark.timeout(10)
def test_unsubscribe_token_with_unknown_scope(test_db_session):
    with pytest.raises(consent.ConsentError):
        consent.generate_unsubscribe_token("c5", "email", email="c5@example.com", consent_types=["reminders"])
    with pytest.raises(consent.ConsentError):
        consent.generate_unsubscribe_token("c5", "fax", email="c5@example.com")

    s = get_settings()
    claims = {
        "sub": "c5", "type": "unsubscribe", "ch": "email", "em": "c5@example.com", "ph": None,
        "ct": ["reminders"], "exp": datetime.utcnow() + timedelta(days=1),
    }
    forged = jwt.encode(claims, s.jwt_secret, algorithm=s.jwt_algorithm)
    out = consent.process_unsubscribe(test_db_session, forged)
    assert out == {"success": False, "error": "invalid_token_scope"}
    assert test_db_session.query(ConsentRecord).count() == 0


@pytest.mark.timeout(10)
def test_unsubscribe_listing_every_type_suppresses(test_db_session):
    token = consent.generate_unsubscribe_token(
        "c6", "email", email="c6@example.com", consent_types=list(CONSENT_TYPES)
    )
    out = consent.process_unsubscribe(test_db_session, token)
    assert out["suppressed"] is True
    assert consent.check_suppression(test_db_session, email="c6@example.com").suppression_type == "unsubscribe"


def test_consent_type_for_channel():
    assert consent.consent_type_for_channel("appointment_reschedule") == "appointment_changes"
    assert consent.consent_type_for_channel("staff_daily_schedule") == "daily_schedules"
