"""Sender capability: email via SMTP, SMS via Twilio, console for development."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Protocol

from salon_notify.backend.clients.twilio import twilio_send_sms
from salon_notify.backend.config import Settings, get_settings
from salon_notify.backend.services.email import send_email
from salon_notify.backend.services.failures import FailureType, SendFailure

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    success: bool
    provider: str
    provider_message_id: str | None = None
    failure: SendFailure | None = None


class Sender(Protocol):
    def send(self, notification_type: str, recipient: str, subject: str | None, body: str,
             notification_id: int | None = None) -> SendResult:
        ...


class SmtpEmailSender:
    provider = "smtp"

    def __init__(self, settings: Settings):
        self.s = settings

    def send(self, notification_type, recipient, subject, body, notification_id=None) -> SendResult:
        headers = {"X-Notification-Id": str(notification_id)} if notification_id else None
        msg_id, failure = send_email(
            host=self.s.smtp_host,
            port=self.s.smtp_port,
            username=self.s.smtp_user,
            password=self.s.smtp_password,
            secure=self.s.smtp_secure,
            from_email=self.s.smtp_from_email,
            from_name=self.s.smtp_from_name,
            to_email=recipient,
            subject=subject or "",
            text=body,
            timeout=self.s.send_timeout_seconds,
            headers=headers,
        )
        if failure:
            return SendResult(False, self.provider, failure=failure)
        return SendResult(True, self.provider, provider_message_id=msg_id)


class TwilioSmsSender:
    provider = "twilio"

    def __init__(self, settings: Settings):
        self.s = settings

    def send(self, notification_type, recipient, subject, body, notification_id=None) -> SendResult:
        callback = None
        if self.s.public_base_url:
            callback = f"{self.s.public_base_url.rstrip('/')}/v1/webhooks/twilio"
        sid, failure = twilio_send_sms(
            self.s.twilio_account_sid,
            self.s.twilio_auth_token,
            self.s.twilio_from_number,
            recipient,
            body,
            api_base=self.s.twilio_api_base,
            status_callback=callback,
            timeout=self.s.send_timeout_seconds,
        )
        if failure:
            return SendResult(False, self.provider, failure=failure)
        return SendResult(True, self.provider, provider_message_id=sid)


class ConsoleSender:
    """Logs instead of sending."""

    provider = "console"

    def send(self, notification_type, recipient, subject, body, notification_id=None) -> SendResult:
        logger.info(
            "console_send id=%s type=%s to=%s subject=%s body_len=%s",
            notification_id, notification_type, recipient, subject, len(body or ""),
        )
        return SendResult(True, self.provider, provider_message_id=f"console-{uuid.uuid4().hex[:12]}")


class DispatchingSender:
    def __init__(self, email: Sender, sms: Sender):
        self.by_type = {"email": email, "sms": sms}

    def send(self, notification_type, recipient, subject, body, notification_id=None) -> SendResult:
        sender = self.by_type.get(notification_type)
        if sender is None:
            return SendResult(
                False, "none", failure=SendFailure(FailureType.PROVIDER_ERROR, f"no sender for {notification_type}")
            )
        return sender.send(notification_type, recipient, subject, body, notification_id=notification_id)


def get_sender(settings: Settings | None = None) -> Sender:
    s = settings or get_settings()
    if s.sender_backend == "live":
        return DispatchingSender(SmtpEmailSender(s), TwilioSmsSender(s))
    return ConsoleSender()
