"""Delivery failure taxonomy and provider code classification."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class FailureType(str, Enum):
    HARD_BOUNCE = "hard_bounce"
    SOFT_BOUNCE = "soft_bounce"
    RATE_LIMITED = "rate_limited"
    INVALID_RECIPIENT = "invalid_recipient"
    PROVIDER_ERROR = "provider_error"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"

    @property
    def is_permanent(self) -> bool:
        return self in (FailureType.HARD_BOUNCE, FailureType.INVALID_RECIPIENT)

    @property
    def retry_eligible(self) -> bool:
        """Whether an operator may re-send a dead-lettered item of this type."""
        return self is not FailureType.HARD_BOUNCE


@dataclass
class SendFailure:
    type: FailureType
    message: str
    code: str | None = None

    def as_dict(self) -> dict:
        return {"failure_type": self.type.value, "message": self.message, "code": self.code}


# Twilio error codes meaning the recipient's number can never receive SMS.
TWILIO_RECIPIENT_CODES = {
    "21211",  # invalid 'To' number
    "21610",  # recipient replied STOP
    "21614",  # not a mobile number
    "30003",  # unreachable handset
    "30004",  # message blocked
    "30005",  # unknown destination
    "30006",  # landline or unreachable carrier
    "30007",  # carrier filtering
    "30008",  # unknown error from carrier
}
# Our own account or sender setup; the recipient is not at fault.
TWILIO_ACCOUNT_CODES = {
    "20003",  # authentication failed
    "21212",  # invalid 'From' number
    "21408",  # region not enabled
    "21606",  # 'From' number cannot send SMS
    "30010",  # message price exceeds max price
}
TWILIO_RATE_LIMIT_CODES = {"20429", "14107"}


def classify_smtp_code(code: int | str | None, message: str = "", recipient: bool = True) -> SendFailure:
    """Map an SMTP reply code. 4xx are transient.

    `recipient` marks a reply to RCPT TO for this address; only those 5xx
    replies are bounces. Any other 5xx (login, MAIL FROM, DATA) is ours.
    """
    try:
        n = int(str(code).strip()[:3])
    except (TypeError, ValueError):
        return SendFailure(FailureType.UNKNOWN, message or "smtp_error", None)
    code_s = str(n)
    if n == 421 or (n == 450 and "rate" in message.lower()):
        return SendFailure(FailureType.RATE_LIMITED, message or "smtp_throttled", code_s)
    if 400 <= n < 500:
        return SendFailure(FailureType.SOFT_BOUNCE, message or "smtp_transient", code_s)
    if 500 <= n < 600 and not recipient:
        return SendFailure(FailureType.PROVIDER_ERROR, message or "smtp_rejected", code_s)
    if n in (550, 551, 553):
        return SendFailure(FailureType.HARD_BOUNCE, message or "mailbox_unavailable", code_s)
    if n == 552:
        return SendFailure(FailureType.SOFT_BOUNCE, message or "mailbox_full", code_s)
    if 500 <= n < 600:
        return SendFailure(FailureType.HARD_BOUNCE, message or "smtp_permanent", code_s)
    return SendFailure(FailureType.UNKNOWN, message or "smtp_error", code_s)


def classify_http_status(status_code: int, message: str = "") -> SendFailure:
    """Provider API status without a provider error code; never blames the recipient."""
    code_s = str(status_code)
    if status_code == 429:
        return SendFailure(FailureType.RATE_LIMITED, message or "rate_limited", code_s)
    if status_code in (408, 504):
        return SendFailure(FailureType.TIMEOUT, message or "provider_timeout", code_s)
    if status_code >= 400:
        return SendFailure(FailureType.PROVIDER_ERROR, message or f"http_{status_code}", code_s)
    return SendFailure(FailureType.UNKNOWN, message or f"http_{status_code}", code_s)


def classify_twilio_code(code: int | str | None, message: str = "") -> SendFailure | None:
    """Map a Twilio error code; None when the code is not one we know about."""
    if code is None or code == "":
        return None
    code_s = str(code).strip()
    if code_s in TWILIO_RECIPIENT_CODES:
        return SendFailure(FailureType.INVALID_RECIPIENT, message or f"twilio_{code_s}", code_s)
    if code_s in TWILIO_ACCOUNT_CODES:
        return SendFailure(FailureType.PROVIDER_ERROR, message or f"twilio_{code_s}", code_s)
    if code_s in TWILIO_RATE_LIMIT_CODES:
        return SendFailure(FailureType.RATE_LIMITED, message or f"twilio_{code_s}", code_s)
    return None


def timeout_failure(message: str = "send_timeout") -> SendFailure:
    return SendFailure(FailureType.TIMEOUT, message, None)
