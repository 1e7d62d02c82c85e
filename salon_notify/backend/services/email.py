"""SMTP email sender."""
from __future__ import annotations

import smtplib
import socket
from email.message import EmailMessage
from email.utils import make_msgid

from salon_notify.backend.services.failures import (
    FailureType,
    SendFailure,
    classify_smtp_code,
    timeout_failure,
)


def _smtp_text(e: smtplib.SMTPResponseException) -> str:
    err = e.smtp_error
    return err.decode("utf-8", "replace") if isinstance(err, bytes) else str(err)


def _refused_failure(refused: dict) -> SendFailure:
    # {recipient: (code, message)}; one recipient per message here
    for _rcpt, (code, msg) in refused.items():
        text = msg.decode("utf-8", "replace") if isinstance(msg, bytes) else str(msg)
        return classify_smtp_code(code, text[:200])
    return SendFailure(FailureType.INVALID_RECIPIENT, "recipient_refused")


def send_email(
    *,
    host: str,
    port: int,
    username: str,
    password: str,
    secure: str,
    from_email: str,
    from_name: str,
    to_email: str,
    subject: str,
    text: str,
    html: str | None = None,
    timeout: float = 10,
    headers: dict[str, str] | None = None,
) -> tuple[str | None, SendFailure | None]:
    """Send one message. Returns (message_id, None) or (None, failure)."""
    if not host or not port:
        return None, SendFailure(FailureType.PROVIDER_ERROR, "missing_smtp")
    if not from_email:
        return None, SendFailure(FailureType.PROVIDER_ERROR, "missing_from")
    if not to_email:
        return None, SendFailure(FailureType.INVALID_RECIPIENT, "missing_recipient")
    msg = EmailMessage()
    msg["Subject"] = subject or "Salon"
    msg["From"] = f"{from_name} <{from_email}>" if from_name else from_email
    msg["To"] = to_email
    message_id = make_msgid(domain=from_email.split("@")[-1] or None)
    msg["Message-ID"] = message_id
    for k, v in (headers or {}).items():
        msg[k] = v
    msg.set_content(text or "")
    if html:
        msg.add_alternative(html, subtype="html")
    try:
        if secure == "ssl":
            server = smtplib.SMTP_SSL(host, port, timeout=timeout)
        else:
            server = smtplib.SMTP(host, port, timeout=timeout)
        try:
            if secure == "tls":
                server.starttls()
            if username:
                server.login(username, password or "")
            server.send_message(msg)
        finally:
            try:
                server.quit()
            except smtplib.SMTPServerDisconnected:
                pass
    except smtplib.SMTPRecipientsRefused as e:
        return None, _refused_failure(e.recipients)
    except (smtplib.SMTPAuthenticationError, smtplib.SMTPSenderRefused) as e:
        # our credentials or sender address; never the recipient's fault
        return None, SendFailure(FailureType.PROVIDER_ERROR, _smtp_text(e)[:200] or "smtp_config", str(e.smtp_code))
    except smtplib.SMTPResponseException as e:
        return None, classify_smtp_code(e.smtp_code, _smtp_text(e)[:200], recipient=False)
    except (socket.timeout, TimeoutError):
        return None, timeout_failure("smtp_timeout")
    except (smtplib.SMTPException, OSError) as e:
        return None, SendFailure(FailureType.PROVIDER_ERROR, str(e)[:200])
    return message_id.strip("<>"), None
