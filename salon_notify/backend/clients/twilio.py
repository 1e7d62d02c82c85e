"""Twilio Messages API client."""
from __future__ import annotations

import httpx

from salon_notify.backend.services.failures import (
    FailureType,
    SendFailure,
    classify_http_status,
    classify_twilio_code,
    timeout_failure,
)


def _messages_url(api_base: str, account_sid: str) -> str:
    return f"{api_base.rstrip('/')}/Accounts/{account_sid}/Messages.json"


def twilio_send_sms(
    account_sid: str,
    auth_token: str,
    from_number: str,
    to_number: str,
    body: str,
    api_base: str = "https://api.twilio.com/2010-04-01",
    status_callback: str | None = None,
    timeout: float = 20,
) -> tuple[str | None, SendFailure | None]:
    """POST one message. Returns (message_sid, None) or (None, failure)."""
    if not account_sid or not auth_token or not from_number:
        return None, SendFailure(FailureType.PROVIDER_ERROR, "missing_twilio_credentials")
    if not to_number:
        return None, SendFailure(FailureType.INVALID_RECIPIENT, "missing_recipient")
    form = {"From": from_number, "To": to_number, "Body": body}
    if status_callback:
        form["StatusCallback"] = status_callback
    try:
        r = httpx.post(
            _messages_url(api_base, account_sid),
            data=form,
            auth=(account_sid, auth_token),
            timeout=timeout,
        )
    except httpx.TimeoutException:
        return None, timeout_failure("twilio_timeout")
    except httpx.HTTPError as e:
        return None, SendFailure(FailureType.PROVIDER_ERROR, str(e)[:200])
    try:
        data = r.json()
    except ValueError:
        data = {}
    if r.status_code >= 400:
        message = str(data.get("message") or f"twilio http {r.status_code}")[:200]
        return None, classify_twilio_code(data.get("code"), message) or classify_http_status(r.status_code, message)
    sid = data.get("sid")
    if not sid:
        return None, SendFailure(FailureType.PROVIDER_ERROR, "twilio_no_sid")
    if data.get("error_code"):
        failure = classify_twilio_code(data.get("error_code"), str(data.get("error_message") or ""))
        if failure:
            return None, failure
    return sid, None
