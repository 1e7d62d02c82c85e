"""Inbound provider callbacks (delivery, bounce, complaint)."""
from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from salon_notify.backend.config import get_settings
from salon_notify.backend.deps import get_db
from salon_notify.backend.services import webhooks
from salon_notify.backend.utils.api_errors import error_envelope, ok

router = APIRouter()
logger = logging.getLogger(__name__)


async def _json_body(request: Request) -> tuple[Any, str | None]:
    raw = await request.body()
    try:
        return json.loads(raw.decode("utf-8") or "null"), None
    except (UnicodeDecodeError, ValueError) as e:
        return raw.decode("utf-8", errors="replace")[:10000], f"invalid json: {e}"


def _respond(provider: str, results: list[webhooks.IngestResult]) -> JSONResponse:
    data = {"provider": provider, "results": [r.as_dict() for r in results]}
    rejected = [r for r in results if r.error and r.error.startswith("signature")]
    if rejected:
        body = error_envelope(code="invalid_signature", message=rejected[0].error or "invalid signature")
        return JSONResponse(body, status_code=401)
    return JSONResponse(ok(data))


def _mailgun_check(payload: Any) -> tuple[bool, str | None]:
    s = get_settings()
    sig = payload.get("signature") if isinstance(payload, dict) else None
    sig = sig if isinstance(sig, dict) else {}
    if s.mailgun_webhook_signing_key:
        good = webhooks.verify_mailgun_signature(
            s.mailgun_webhook_signing_key,
            str(sig.get("timestamp") or ""),
            str(sig.get("token") or ""),
            str(sig.get("signature") or ""),
        )
        return good, None if good else "signature_invalid"
    if s.mailgun_strict_signature:
        return False, "signature_key_not_configured"
    return False, None


def _twilio_url(request: Request) -> str:
    s = get_settings()
    if s.public_base_url:
        url = s.public_base_url.rstrip("/") + request.url.path
        if request.url.query:
            url += "?" + request.url.query
        return url
    return str(request.url)


@router.post("/mailgun")
async def mailgun_webhook(request: Request, db: Session = Depends(get_db)):
    payload, error = await _json_body(request)
    if error:
        return _respond("mailgun", [webhooks.record_malformed(db, "mailgun", payload, error)])
    verified, rejection = _mailgun_check(payload)
    return _respond("mailgun", webhooks.ingest_payload(db, "mailgun", payload, verified=verified, rejection=rejection))


@router.post("/twilio")
async def twilio_webhook(request: Request, db: Session = Depends(get_db)):
    s = get_settings()
    form = await request.form()
    params = {k: v for k, v in form.items() if isinstance(v, str)}
    verified, rejection = False, None
    if s.twilio_validate_webhooks:
        if not s.twilio_auth_token:
            rejection = "signature_key_not_configured"
        else:
            verified = webhooks.verify_twilio_signature(
                s.twilio_auth_token, _twilio_url(request), params, request.headers.get("X-Twilio-Signature")
            )
            rejection = None if verified else "signature_invalid"
    return _respond("twilio", webhooks.ingest_payload(db, "twilio", params, verified=verified, rejection=rejection))


@router.post("/{provider}")
async def generic_webhook(provider: str, request: Request, db: Session = Depends(get_db)):
    """SES (SNS envelope), SendGrid event arrays and generic SMTP bounce reports."""
    if provider not in ("ses", "sendgrid", "smtp"):
        return JSONResponse(error_envelope(code="unknown_provider", message=f"unknown provider {provider}"), 404)
    payload, error = await _json_body(request)
    if error:
        return _respond(provider, [webhooks.record_malformed(db, provider, payload, error)])
    if provider == "ses" and isinstance(payload, dict) and payload.get("Type") == "SubscriptionConfirmation":
        logger.warning("ses_subscription_confirmation topic=%s url=%s", payload.get("TopicArn"), payload.get("SubscribeURL"))
    return _respond(provider, webhooks.ingest_payload(db, provider, payload))
