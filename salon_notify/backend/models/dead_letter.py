"""Dead-lettered notifications awaiting operator action."""
from datetime import datetime
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from salon_notify.backend.database import Base

RESOLUTION_ACTIONS = ("manual_retry", "address_updated", "suppressed", "ignored")


class DeadLetterItem(Base):
    __tablename__ = "notification_dead_letter_queue"

    id = Column(Integer, primary_key=True, index=True)
    original_notification_id = Column(
        Integer, ForeignKey("notification_queue.id", ondelete="SET NULL"), nullable=True, index=True
    )
    type = Column(String(16), nullable=False)
    channel = Column(String(64), nullable=False, index=True)
    recipient_id = Column(String(64), nullable=True)
    recipient_email = Column(String(255), nullable=True)
    recipient_phone = Column(String(32), nullable=True)
    template_name = Column(String(128), nullable=True)
    template_data = Column(JSONB, nullable=True)
    correlation_id = Column(String(64), nullable=True)
    budget_scope = Column(String(16), nullable=False, default="global")
    budget_scope_id = Column(String(64), nullable=False, default="")
    failure_reason = Column(Text, nullable=False)
    failure_details = Column(JSONB, nullable=True)
    failure_type = Column(String(32), nullable=False, index=True)
    is_permanent = Column(Boolean, nullable=False, default=False)
    retry_eligible = Column(Boolean, nullable=False, default=True)
    total_attempts = Column(Integer, nullable=False, default=0)
    last_error_message = Column(Text, nullable=True)
    last_attempt_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True, index=True)
    resolved_by = Column(String(255), nullable=True)
    resolution_action = Column(String(32), nullable=True)
    resolution_notes = Column(Text, nullable=True)
    retry_notification_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
