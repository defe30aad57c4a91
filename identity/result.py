"""
identity/result.py -- Tagged result type for identity authority calls.

Every IdentityAuthority method returns Ok(value) or Err(reason, message).
Callers branch on the type instead of inspecting free-text error strings:

    result = authority.get_identity(user_id)
    if isinstance(result, Err):
        if result.reason is ErrorReason.NOT_FOUND:
            ...
    identity = result.value

classify_error() turns an authority HTTP error response into an ErrorReason.
Structured fields win: the GoTrue error_code first, then the HTTP status.
Substring matching on the message is the documented last resort for older
deployments that return only {"msg": "..."}.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


class ErrorReason(str, Enum):
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    INVALID_REQUEST = "invalid_request"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    reason: ErrorReason
    message: str = ""
    status: int | None = None


Result = Union[Ok[T], Err]


# GoTrue error_code values -> reason. Only codes this service can plausibly
# receive from the admin endpoints it calls are listed.
_ERROR_CODES: dict[str, ErrorReason] = {
    "user_not_found": ErrorReason.NOT_FOUND,
    "email_exists": ErrorReason.CONFLICT,
    "user_already_exists": ErrorReason.CONFLICT,
    "conflict": ErrorReason.CONFLICT,
    "bad_jwt": ErrorReason.UNAUTHORIZED,
    "no_authorization": ErrorReason.UNAUTHORIZED,
    "not_admin": ErrorReason.UNAUTHORIZED,
    "over_request_rate_limit": ErrorReason.RATE_LIMITED,
    "over_email_send_rate_limit": ErrorReason.RATE_LIMITED,
    "validation_failed": ErrorReason.INVALID_REQUEST,
    "bad_json": ErrorReason.INVALID_REQUEST,
    "email_address_invalid": ErrorReason.INVALID_REQUEST,
    "unexpected_failure": ErrorReason.UNAVAILABLE,
}

_STATUS_CODES: dict[int, ErrorReason] = {
    401: ErrorReason.UNAUTHORIZED,
    403: ErrorReason.UNAUTHORIZED,
    404: ErrorReason.NOT_FOUND,
    409: ErrorReason.CONFLICT,
    429: ErrorReason.RATE_LIMITED,
}

# 400 and 422 are catch-all statuses for the authority. The message decides
# the reason when it can; otherwise the request is treated as invalid.
_GENERIC_STATUSES = frozenset({400, 422})

# Last resort, checked in order against the lowercased message.
_MESSAGE_HINTS: tuple[tuple[str, ErrorReason], ...] = (
    ("already exists", ErrorReason.CONFLICT),
    ("already registered", ErrorReason.CONFLICT),
    ("not found", ErrorReason.NOT_FOUND),
    ("rate limit", ErrorReason.RATE_LIMITED),
    ("invalid jwt", ErrorReason.UNAUTHORIZED),
)


def error_message(body: Any) -> str:
    """Pull a human-readable message out of any of the authority's error shapes."""
    if not isinstance(body, dict):
        return str(body or "")
    for key in ("msg", "message", "error_description", "error"):
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


def classify_error(status: int, body: Any) -> ErrorReason:
    """Map an authority error response to an ErrorReason."""
    if isinstance(body, dict):
        code = body.get("error_code")
        if isinstance(code, str) and code in _ERROR_CODES:
            return _ERROR_CODES[code]
    if status >= 500:
        return ErrorReason.UNAVAILABLE
    if status in _STATUS_CODES:
        return _STATUS_CODES[status]
    message = error_message(body).lower()
    for hint, reason in _MESSAGE_HINTS:
        if hint in message:
            return reason
    if status in _GENERIC_STATUSES:
        return ErrorReason.INVALID_REQUEST
    return ErrorReason.UNKNOWN
