"""
Exception types and provider-error classification.

Provider SDKs report HTTP failures differently:
  google-genai  APIError        .code (int), .status (e.g. "UNAVAILABLE")
  openai        APIStatusError  .status_code (int)
  httpx         HTTPStatusError .response.status_code (int)
The helpers below normalise all three (plus plain objects carrying a
`status` attribute) so retry policy is written once.
"""
from typing import Optional, Tuple


class KeyPoolExhaustedError(Exception):
    """Every credential in the pool failed. `last_error` holds the final cause."""

    def __init__(self, message: str, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.last_error = last_error


class NoValidKeysError(Exception):
    """No media key answered its usage query."""


class InsufficientQuotaError(Exception):
    """No media key has enough remaining quota for the task."""


class QuotaPolicyAbortError(Exception):
    """Best-funded key hit a quota error on a voice task; smaller keys are not tried."""


class PhaseTransitionError(Exception):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Illegal phase transition {current} -> {target}")


class AuthError(Exception):
    """Signed init payload could not be verified."""


_TRANSIENT_STATUSES = {"UNAVAILABLE", "RESOURCE_EXHAUSTED", "DEADLINE_EXCEEDED"}
_AUTH_STATUSES = {"UNAUTHENTICATED", "PERMISSION_DENIED"}


def error_status(error: BaseException) -> Tuple[Optional[int], Optional[str]]:
    """Return (http_status, provider_status_string) for an exception, either may be None."""
    http_status: Optional[int] = None
    text_status: Optional[str] = None

    for attr in ("status_code", "code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, bool):
            continue
        if isinstance(value, int) and http_status is None:
            http_status = value
        elif isinstance(value, str) and text_status is None:
            text_status = value.upper()

    if http_status is None:
        response = getattr(error, "response", None)
        value = getattr(response, "status_code", None) or getattr(response, "status", None)
        if isinstance(value, int) and not isinstance(value, bool):
            http_status = value

    return http_status, text_status


def _message(error: BaseException) -> str:
    return (getattr(error, "message", None) or str(error) or "").lower()


def is_rate_limit_error(error: BaseException) -> bool:
    status, text = error_status(error)
    return status == 429 or text == "RESOURCE_EXHAUSTED"


def is_server_error(error: BaseException) -> bool:
    status, _ = error_status(error)
    return status is not None and status >= 500


def is_transient_error(error: BaseException) -> bool:
    """Rate limit, overload or 5xx: worth retrying, possibly on another key."""
    status, text = error_status(error)
    return (
        status == 429
        or (status is not None and status >= 500)
        or text in _TRANSIENT_STATUSES
        or "overloaded" in _message(error)
    )


def is_auth_error(error: BaseException) -> bool:
    """Key-specific rejection (revoked, wrong project, typo). Another key may work."""
    status, text = error_status(error)
    message = _message(error)
    return (
        status in (401, 403)
        or text in _AUTH_STATUSES
        or "api key not valid" in message
        or "api_key_invalid" in message
    )


def is_quota_error(error: BaseException) -> bool:
    status, _ = error_status(error)
    return status in (429, 402) or "quota" in _message(error)


def mask_key(key: str) -> str:
    """Log-safe key reference: only the last four characters."""
    return f"...{key[-4:]}" if key else "<empty>"
