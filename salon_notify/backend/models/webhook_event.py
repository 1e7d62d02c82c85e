"""Provider webhook events (idempotent by provider + event id)."""
from datetime import datetime
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB

from salon_notify.backend.database import Base


class WebhookEvent(Base):
    __tablename__ = "notification_webhook_events"
    __table_args__ = (
        UniqueConstraint("provider", "provider_event_id", name="uq_webhook_provider_event"),
    )

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(32), nullable=False)  # mailgun, twilio, ses, sendgrid, smtp
    provider_event_id = Column(String(255), nullable=False)
    event_type = Column(String(32), nullable=False)  # delivered, bounced, complained, failed, other
    notification_id = Column(Integer, nullable=True, index=True)
    provider_message_id = Column(String(255), nullable=True, index=True)
    recipient = Column(String(255), nullable=True)
    event_data = Column(JSONB, nullable=True)
    status = Column(String(64), nullable=True)
    error_code = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)
    bounce_type = Column(String(16), nullable=True)  # hard | soft
    delivered_at = Column(DateTime, nullable=True)
    webhook_verified = Column(Boolean, nullable=False, default=False)
    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime, nullable=True)
    processing_error = Column(Text, nullable=True)
    received_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
