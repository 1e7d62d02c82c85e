"""Monthly notification spend per scope."""
from datetime import datetime
from sqlalchemy import Column, DateTime, Integer, Numeric, String, UniqueConstraint

from salon_notify.backend.database import Base


class BudgetPeriod(Base):
    __tablename__ = "notification_budget_tracking"
    __table_args__ = (
        UniqueConstraint("scope", "scope_id", "year", "month", name="uq_budget_scope_period"),
    )

    id = Column(Integer, primary_key=True, index=True)
    scope = Column(String(16), nullable=False, default="global")  # global | location | user
    scope_id = Column(String(64), nullable=False, default="")  # "" for global
    year = Column(Integer, nullable=False)
    month = Column(Integer, nullable=False)
    email_count = Column(Integer, nullable=False, default=0)
    sms_count = Column(Integer, nullable=False, default=0)
    email_cost_cents = Column(Integer, nullable=False, default=0)
    sms_cost_cents = Column(Integer, nullable=False, default=0)
    email_budget_used_pct = Column(Numeric(6, 2), nullable=True)
    sms_budget_used_pct = Column(Numeric(6, 2), nullable=True)
    warning_sent_at = Column(DateTime, nullable=True)
    hard_cap_reached_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
