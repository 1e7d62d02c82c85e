"""JSON envelope shared by every API response."""
from __future__ import annotations

from typing import Any


def ok(data: Any = None) -> dict:
    return {"success": True, "data": data}


def error_envelope(
    *,
    code: str,
    message: str,
    trace_id: str | None = None,
    detail: str | None = None,
) -> dict:
    err = {"code": code, "message": message}
    if trace_id:
        err["trace_id"] = trace_id
    if detail:
        err["detail"] = detail
    return {"success": False, "error": err}
