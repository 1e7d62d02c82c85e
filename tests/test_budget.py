"""Budget ledger: caps, warnings, local-month periods."""
from datetime import datetime

import pytest
from sqlalchemy.orm import sessionmaker

from salon_notify.backend.database import Base, get_test_engine
from salon_notify.backend.models.budget import BudgetPeriod
from salon_notify.backend.services import budget
from salon_notify.backend.services.notification_settings import NotificationSettings

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


def _send(db, n, settings, notification_type="sms", scope="global", scope_id=None):
    for _ in range(n):
        budget.commit(db, notification_type, scope, scope_id, settings, NOW)


@pytest.mark.timeout(10)
def test_unlimited_budget_always_allows(test_db_session):
    s = NotificationSettings()
    _send(test_db_session, 3, s)
    check = budget.check_and_reserve(test_db_session, "sms", "global", None, s, NOW)
    assert check.can_send is True
    assert check.usage_pct == 0.0


@pytest.mark.timeout(10)
def test_commit_counts_and_costs(test_db_session):
    s = NotificationSettings(monthly_sms_limit=10, cost_per_sms_cents=7)
    _send(test_db_session, 4, s)
    row = test_db_session.query(BudgetPeriod).one()
    assert (row.year, row.month) == (2026, 3)
    assert row.sms_count == 4
    assert row.sms_cost_cents == 28
    assert float(row.sms_budget_used_pct) == 40.0
    assert row.email_count == 0


@pytest.mark.timeout(10)
def test_warning_threshold_stamps_once(test_db_session):
    s = NotificationSettings(monthly_sms_limit=10)
    _send(test_db_session, 8, s)
    check = budget.check_and_reserve(test_db_session, "sms", "global", None, s, NOW)
    assert check.can_send is True
    assert check.warning is True
    row = test_db_session.query(BudgetPeriod).one()
    stamped = row.warning_sent_at
    assert stamped == NOW

    budget.check_and_reserve(test_db_session, "sms", "global", None, s, datetime(2026, 3, 11, 10, 0))
    test_db_session.refresh(row)
    assert row.warning_sent_at == stamped


@pytest.mark.timeout(10)
def test_hard_cap_blocks(test_db_session):
    s = NotificationSettings(monthly_sms_limit=5)
    _send(test_db_session, 5, s)
    check = budget.check_and_reserve(test_db_session, "sms", "global", None, s, NOW)
    assert check.can_send is False
    assert check.limit_reached is True
    assert "budget exhausted" in check.reason
    assert test_db_session.query(BudgetPeriod).one().hard_cap_reached_at == NOW


@pytest.mark.timeout(10)
def test_soft_cap_allows_over_limit(test_db_session):
    s = NotificationSettings(monthly_sms_limit=2, budget_hard_cap=False)
    _send(test_db_session, 3, s)
    check = budget.check_and_reserve(test_db_session, "sms", "global", None, s, NOW)
    assert check.can_send is True
    assert check.limit_reached is True


@pytest.mark.timeout(10)
def test_scopes_are_separate(test_db_session):
    s = NotificationSettings(monthly_email_limit=1)
    _send(test_db_session, 1, s, notification_type="email", scope="location", scope_id="loc-1")
    blocked = budget.check_and_reserve(test_db_session, "email", "location", "loc-1", s, NOW)
    other = budget.check_and_reserve(test_db_session, "email", "location", "loc-2", s, NOW)
    assert blocked.can_send is False
    assert other.can_send is True


@pytest.mark.timeout(10)
def test_period_follows_local_month(test_db_session):
    s = NotificationSettings(monthly_sms_limit=100)
    # 23:30 UTC on 31 March is already April in Zurich
    budget.commit(test_db_session, "sms", "global", None, s, datetime(2026, 3, 31, 23, 30))
    row = test_db_session.query(BudgetPeriod).one()
    assert (row.year, row.month) == (2026, 4)


@pytest.mark.timeout(10)
def test_usage_and_alerts(test_db_session):
    s = NotificationSettings(monthly_sms_limit=5)
    _send(test_db_session, 5, s)
    budget.check_and_reserve(test_db_session, "sms", "global", None, s, NOW)
    usage = budget.get_budget_usage(test_db_session, "global", None, s, NOW)
    assert usage["sms"]["count"] == 5
    assert usage["sms"]["limit_reached"] is True
    assert usage["email"]["limit"] is None
    alerts = budget.get_budget_alerts(test_db_session, s, NOW)
    assert len(alerts) == 1
    assert alerts[0]["level"] == "hard_cap"
