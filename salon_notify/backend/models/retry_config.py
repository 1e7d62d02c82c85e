"""Retry policy rows: global, per channel, per provider."""
from datetime import datetime
from sqlalchemy import Column, DateTime, Integer, Numeric, String, UniqueConstraint

from salon_notify.backend.database import Base


class RetryConfig(Base):
    __tablename__ = "notification_retry_config"
    __table_args__ = (
        UniqueConstraint("scope", "scope_value", name="uq_retry_config_scope"),
    )

    id = Column(Integer, primary_key=True, index=True)
    scope = Column(String(16), nullable=False, default="global")  # global | channel | provider
    scope_value = Column(String(64), nullable=False, default="")
    max_attempts = Column(Integer, nullable=False, default=3)
    initial_delay_minutes = Column(Integer, nullable=False, default=15)
    backoff_multiplier = Column(Numeric(4, 2), nullable=False, default=2.0)
    max_delay_minutes = Column(Integer, nullable=False, default=1440)
    hard_bounce_retries = Column(Integer, nullable=False, default=0)
    soft_bounce_retries = Column(Integer, nullable=False, default=3)
    timeout_retries = Column(Integer, nullable=False, default=2)
    rate_limit_retries = Column(Integer, nullable=False, default=5)
    max_age_hours = Column(Integer, nullable=False, default=48)
    rate_limit_per_minute = Column(Integer, nullable=False, default=60)
    rate_limit_burst = Column(Integer, nullable=False, default=10)
    updated_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
