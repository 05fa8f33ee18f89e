"""Normalization of meter platform responses.

The platform answers in two shapes. The current one carries ``success`` ("1"
or "0") with ``errorCode``/``errorMsg``; the legacy one carries a numeric
``code`` (0 or 200 on success) with ``msg``. Everything downstream of this
module only sees a CreditResult.
"""

from typing import Optional, Dict, Any

from pydantic import BaseModel, Field

# Lower-cased fragments the platform uses when a token is no longer valid
TOKEN_EXPIRED_MARKERS = (
    "token expired",
    "token invalid",
    "invalid token",
    "token is invalid",
    "token has expired",
    "login expired",
    "not logged in",
)

KNOWN_ERRORS = {
    "meter not exist": "Meter not found",
    "meter does not exist": "Meter not found",
    "meterid is null": "Meter ID is required",
    "saleid repeat": "Duplicate sale id",
    "sale id already exists": "Duplicate sale id",
    "the meter is offline": "Meter is offline",
    "meter offline": "Meter is offline",
    "user name or password error": "Invalid username or password",
    "username or password error": "Invalid username or password",
    "no permission": "Not permitted for this meter",
}


class CreditResult(BaseModel):
    """Outcome of one meter platform call."""
    ok: bool
    message: str = ""
    error_code: Optional[str] = None
    token_expired: bool = False
    data: Optional[Any] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


def translate_error_message(message: Optional[str]) -> str:
    """Map a raw platform error message to an operator-readable one."""
    if not message:
        return "Unknown error"
    key = message.strip().lower()
    return KNOWN_ERRORS.get(key, message.strip())


def is_token_expired_message(message: Optional[str]) -> bool:
    if not message:
        return False
    lowered = message.lower()
    return any(marker in lowered for marker in TOKEN_EXPIRED_MARKERS)


def normalize_response(raw: Any) -> CreditResult:
    """Collapse either response shape into a CreditResult."""
    if not isinstance(raw, dict):
        return CreditResult(ok=False, message="Unexpected response format", raw={"body": raw})

    if raw.get("success") is not None:
        ok = str(raw.get("success")) == "1"
        message = raw.get("errorMsg") or ""
        error_code = raw.get("errorCode")
    elif raw.get("code") is not None:
        try:
            code = int(raw.get("code"))
        except (TypeError, ValueError):
            code = -1
        ok = code in (0, 200)
        message = raw.get("msg") or ""
        error_code = None if ok else str(raw.get("code"))
    else:
        return CreditResult(ok=False, message="Unexpected response format", raw=raw)

    if ok:
        return CreditResult(ok=True, message=message, data=raw.get("data"), raw=raw)

    return CreditResult(
        ok=False,
        message=translate_error_message(message),
        error_code=str(error_code) if error_code is not None else None,
        token_expired=is_token_expired_message(message) or str(error_code) == "401",
        data=raw.get("data"),
        raw=raw,
    )
