"""Notification queue rows and their audit trail."""
from datetime import datetime
from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB

from salon_notify.backend.database import Base

STATUS_PENDING = "pending"
STATUS_SENDING = "sending"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

OPEN_STATUSES = (STATUS_PENDING, STATUS_SENDING)
TERMINAL_STATUSES = (STATUS_SENT, STATUS_FAILED, STATUS_CANCELLED)

NOTIFICATION_TYPES = ("email", "sms")
CHANNELS = (
    "appointment_reminder",
    "appointment_confirmation",
    "appointment_cancellation",
    "appointment_reschedule",
    "staff_daily_schedule",
)

_ACTIVE_DEDUPE = "dedupe_key IS NOT NULL AND status <> 'cancelled'"


class NotificationRequest(Base):
    __tablename__ = "notification_queue"
    __table_args__ = (
        Index(
            "uq_notification_queue_dedupe_active",
            "dedupe_key",
            unique=True,
            postgresql_where=text(_ACTIVE_DEDUPE),
            sqlite_where=text(_ACTIVE_DEDUPE),
        ),
        Index("ix_notification_queue_due", "status", "scheduled_for"),
    )

    id = Column(Integer, primary_key=True, index=True)
    type = Column(String(16), nullable=False)  # email | sms
    channel = Column(String(64), nullable=False, index=True)
    recipient_id = Column(String(64), nullable=True, index=True)
    recipient_email = Column(String(255), nullable=True)
    recipient_phone = Column(String(32), nullable=True)
    template_name = Column(String(128), nullable=True)
    template_data = Column(JSONB, nullable=True)
    correlation_id = Column(String(64), nullable=True, index=True)  # appointment id
    dedupe_key = Column(String(255), nullable=True)
    budget_scope = Column(String(16), nullable=False, default="global")
    budget_scope_id = Column(String(64), nullable=False, default="")
    status = Column(String(16), nullable=False, default=STATUS_PENDING)
    scheduled_for = Column(DateTime, nullable=False, default=datetime.utcnow)
    deadline_at = Column(DateTime, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    last_error = Column(Text, nullable=True)
    last_failure_type = Column(String(32), nullable=True)
    provider = Column(String(32), nullable=True)
    provider_message_id = Column(String(255), nullable=True, index=True)
    cancel_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    first_attempt_at = Column(DateTime, nullable=True)
    last_attempt_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    @property
    def recipient_address(self) -> str | None:
        return self.recipient_email if self.type == "email" else self.recipient_phone


class NotificationAudit(Base):
    __tablename__ = "notification_audit"

    id = Column(Integer, primary_key=True, index=True)
    notification_id = Column(
        Integer, ForeignKey("notification_queue.id", ondelete="CASCADE"), nullable=True, index=True
    )
    event_type = Column(String(32), nullable=False)  # queued, sent, retry, failed, cancelled, moved_to_dlq, ...
    details = Column(JSONB, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
