"""Notification templates: mustache-like rendering of subject/body per channel."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

_SECTION_RE = re.compile(r"\{\{([#^])\s*([\w.]+)\s*\}\}(.*?)\{\{/\s*\2\s*\}\}", re.DOTALL)
_VAR_RE = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


class TemplateError(Exception):
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code


@dataclass
class RenderedMessage:
    subject: str | None
    body: str


EMAIL_TEMPLATES: dict[str, dict[str, str]] = {
    "appointment_reminder": {
        "subject": "Terminerinnerung - {{serviceName}} bei {{salonName}}",
        "body": (
            "Hallo {{customerName}},\n\n"
            "wir möchten Sie an Ihren Termin erinnern:\n\n"
            "Service: {{serviceName}}\n"
            "Datum: {{appointmentDate}}\n"
            "Uhrzeit: {{appointmentTime}}\n"
            "{{#staffName}}Ihr Stylist: {{staffName}}\n{{/staffName}}"
            "\nFalls Sie den Termin nicht wahrnehmen können, sagen Sie bitte mindestens 24 Stunden vorher ab.\n\n"
            "{{salonName}}\n{{salonAddress}}\n{{#salonPhone}}Tel: {{salonPhone}}{{/salonPhone}}"
        ),
    },
    "appointment_confirmation": {
        "subject": "Terminbestätigung - {{serviceName}} bei {{salonName}}",
        "body": (
            "Hallo {{customerName}},\n\n"
            "vielen Dank für Ihre Buchung! Hiermit bestätigen wir Ihren Termin:\n\n"
            "Service: {{serviceName}}\n"
            "Datum: {{appointmentDate}}\n"
            "Uhrzeit: {{appointmentTime}}\n"
            "{{#staffName}}Ihr Stylist: {{staffName}}\n{{/staffName}}"
            "{{#totalPrice}}Preis: {{totalPrice}}\n{{/totalPrice}}"
            "\nWir freuen uns auf Sie!\n\n"
            "{{salonName}}\n{{salonAddress}}"
        ),
    },
    "appointment_cancellation": {
        "subject": "Terminabsage - {{serviceName}} bei {{salonName}}",
        "body": (
            "Hallo {{customerName}},\n\n"
            "Ihr Termin wurde storniert:\n\n"
            "Service: {{serviceName}}\n"
            "Datum: {{appointmentDate}}\n"
            "Uhrzeit: {{appointmentTime}}\n"
            "{{#cancellationReason}}Grund: {{cancellationReason}}\n{{/cancellationReason}}"
            "\nGerne können Sie einen neuen Termin vereinbaren.\n\n"
            "{{salonName}}"
        ),
    },
    "appointment_reschedule": {
        "subject": "Terminänderung - {{serviceName}} bei {{salonName}}",
        "body": (
            "Hallo {{customerName}},\n\n"
            "Ihr Termin wurde verschoben.\n\n"
            "Alter Termin: {{oldAppointmentDate}} {{oldAppointmentTime}}\n"
            "Neuer Termin: {{newAppointmentDate}} {{newAppointmentTime}}\n"
            "Service: {{serviceName}}\n"
            "\nWir freuen uns auf Sie!\n\n"
            "{{salonName}}"
        ),
    },
    "staff_daily_schedule": {
        "subject": "Tagesplan für {{date}} - {{salonName}}",
        "body": (
            "Guten Morgen {{staffName}},\n\n"
            "hier ist Ihr Tagesplan für {{date}} ({{totalAppointments}} Termine):\n\n"
            "{{#appointments}}{{time}}  {{customerName}}  {{serviceName}}\n{{/appointments}}"
            "{{^appointments}}Heute sind keine Termine eingetragen.\n{{/appointments}}"
            "\nEinen erfolgreichen Tag!"
        ),
    },
}

SMS_TEMPLATES: dict[str, str] = {
    "appointment_reminder": (
        "Erinnerung: {{serviceName}} bei {{salonName}} am {{appointmentDate}} um {{appointmentTime}}."
        "{{#salonPhone}} Absage: {{salonPhone}}{{/salonPhone}}"
    ),
    "appointment_confirmation": (
        "Bestätigt: {{serviceName}} bei {{salonName}} am {{appointmentDate}} um {{appointmentTime}}."
    ),
    "appointment_cancellation": (
        "Storniert: {{serviceName}} am {{appointmentDate}} um {{appointmentTime}}. {{salonName}}"
    ),
    "appointment_reschedule": (
        "Verschoben: {{serviceName}} neu am {{newAppointmentDate}} um {{newAppointmentTime}}. {{salonName}}"
    ),
    "staff_daily_schedule": "{{date}}: {{totalAppointments}} Termine. {{salonName}}",
}

# Required variables per channel; rendering fails fast when one is missing.
REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    "appointment_reminder": ("customerName", "serviceName", "appointmentDate", "appointmentTime"),
    "appointment_confirmation": ("customerName", "serviceName", "appointmentDate", "appointmentTime"),
    "appointment_cancellation": ("customerName", "serviceName", "appointmentDate", "appointmentTime"),
    "appointment_reschedule": ("customerName", "serviceName", "newAppointmentDate", "newAppointmentTime"),
    "staff_daily_schedule": ("staffName", "date"),
}

SMS_MAX_LENGTH = 480


def _lookup(context: list[Any], path: str) -> Any:
    if path == ".":
        return context[-1]
    # innermost scope first, as in mustache
    for scope in reversed(context):
        cur: Any = scope
        found = True
        for key in path.split("."):
            if isinstance(cur, dict) and key in cur:
                cur = cur[key]
            else:
                found = False
                break
        if found:
            return cur
    return None


def _truthy(value: Any) -> bool:
    if isinstance(value, (list, tuple)):
        return len(value) > 0
    return bool(value)


def _render(template: str, context: list[Any]) -> str:
    def _section(m: re.Match) -> str:
        kind, name, inner = m.group(1), m.group(2), m.group(3)
        value = _lookup(context, name)
        if kind == "^":
            return "" if _truthy(value) else _render(inner, context)
        if not _truthy(value):
            return ""
        if isinstance(value, (list, tuple)):
            return "".join(_render(inner, context + [item]) for item in value)
        if isinstance(value, dict):
            return _render(inner, context + [value])
        return _render(inner, context)

    out = _SECTION_RE.sub(_section, template)

    def _var(m: re.Match) -> str:
        value = _lookup(context, m.group(1))
        return "" if value is None else str(value)

    return _VAR_RE.sub(_var, out)


def render_string(template: str, data: dict[str, Any]) -> str:
    """Render {{var}}, {{#cond}}..{{/cond}} and {{^cond}}..{{/cond}}; dotted paths allowed."""
    return _render(template, [data or {}]).strip()


def _validate(channel: str, data: dict[str, Any]) -> None:
    missing = [f for f in REQUIRED_FIELDS.get(channel, ()) if data.get(f) in (None, "")]
    if missing:
        raise TemplateError("missing_fields", f"Missing template fields for {channel}: {', '.join(missing)}")


def render_notification(
    notification_type: str,
    channel: str,
    data: dict[str, Any] | None,
    overrides: dict[str, Any] | None = None,
) -> RenderedMessage:
    """Render the message for a queue row. `overrides` may carry custom subject/body."""
    data = dict(data or {})
    data.setdefault("salonName", "Salon")
    _validate(channel, data)
    overrides = overrides or {}
    if notification_type == "email":
        tpl = EMAIL_TEMPLATES.get(channel)
        if not tpl:
            raise TemplateError("unknown_template", f"No email template for {channel}")
        subject = render_string(overrides.get("subject") or tpl["subject"], data)
        body = render_string(overrides.get("body") or tpl["body"], data)
        return RenderedMessage(subject=subject, body=body)
    if notification_type == "sms":
        tpl_s = overrides.get("body") or SMS_TEMPLATES.get(channel)
        if not tpl_s:
            raise TemplateError("unknown_template", f"No SMS template for {channel}")
        body = render_string(tpl_s, data)
        if len(body) > SMS_MAX_LENGTH:
            body = body[: SMS_MAX_LENGTH - 3] + "..."
        return RenderedMessage(subject=None, body=body)
    raise TemplateError("unknown_type", f"Unsupported notification type {notification_type}")
