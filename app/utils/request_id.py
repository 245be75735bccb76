from __future__ import annotations

import contextvars
import re
import uuid

REQUEST_ID_HEADER = "X-Request-ID"

request_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("request_id", default=None)

# ASCII only, conservative charset, 1..64 chars (keeps ids safe to log and store).
_REQUEST_ID_ALLOWED_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$", flags=re.ASCII)


def validate_request_id(value: str | None) -> str | None:
    """Return value if it is a safe request id, otherwise None."""
    if not isinstance(value, str):
        return None
    if _REQUEST_ID_ALLOWED_RE.fullmatch(value) is None:
        return None
    return value


def resolve_request_id(header_value: str | None) -> str:
    """Reuse a client-supplied id when valid, mint a fresh one otherwise."""
    return validate_request_id(header_value) or uuid.uuid4().hex


def current_request_id() -> str | None:
    return request_id_var.get()
