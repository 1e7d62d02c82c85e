"""Consent history and suppression list."""
from datetime import datetime
from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text

from salon_notify.backend.database import Base

CONSENT_TYPES = (
    "appointment_reminders",
    "appointment_confirmations",
    "appointment_changes",
    "marketing",
    "daily_schedules",
)
CONSENT_SOURCES = ("registration", "booking_form", "admin_update", "unsubscribe_page", "preference_update")
SUPPRESSION_TYPES = ("unsubscribe", "bounce", "spam", "invalid", "admin_block")
SUPPRESSION_SOURCES = ("user_unsubscribe", "bounce_handler", "spam_report", "admin_action", "provider_feedback")


class ConsentRecord(Base):
    """Append-only; the newest row per (customer, channel, consent_type) is authoritative."""

    __tablename__ = "notification_consent"
    __table_args__ = (
        Index("ix_notification_consent_lookup", "customer_id", "channel", "consent_type", "consent_timestamp"),
    )

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(String(64), nullable=False)
    channel = Column(String(16), nullable=False)  # email | sms
    consent_type = Column(String(64), nullable=False)
    consented = Column(Boolean, nullable=False)
    consent_source = Column(String(32), nullable=False)
    consent_timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    updated_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class SuppressionEntry(Base):
    __tablename__ = "notification_suppression"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), nullable=True, index=True)
    phone = Column(String(32), nullable=True, index=True)
    suppression_type = Column(String(32), nullable=False)
    reason = Column(Text, nullable=True)
    source = Column(String(32), nullable=False)
    suppressed_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    suppressed_by = Column(String(255), nullable=True)
    reactivation_token = Column(String(64), nullable=True, unique=True)
    reactivated_at = Column(DateTime, nullable=True)
    reactivated_by = Column(String(255), nullable=True)
    reactivation_reason = Column(Text, nullable=True)

    @property
    def active(self) -> bool:
        return self.reactivated_at is None
