"""Single source for request trace_id. Use scope for ASGI, request.scope for Starlette."""
import uuid

SCOPE_KEY = "trace_id"
HEADER = "X-Trace-Id"


def ensure_trace_id(scope: dict) -> str:
    """Get or set trace_id on ASGI scope; an inbound X-Trace-Id header is reused."""
    tid = scope.get(SCOPE_KEY)
    if tid and isinstance(tid, str):
        return tid
    for k, v in scope.get("headers") or []:
        if k.decode("latin-1").lower() == HEADER.lower():
            tid = v.decode("latin-1").strip()[:64]
            break
    tid = tid or str(uuid.uuid4())[:16]
    scope[SCOPE_KEY] = tid
    return tid
