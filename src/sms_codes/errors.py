from __future__ import annotations

from enum import Enum

# Twilio error codes that carry the meaning of an HTTP status on their own.
TWILIO_AUTH_CODES = frozenset({20003})
TWILIO_RATE_LIMIT_CODES = frozenset({20429})


class ConfigError(RuntimeError):
    """Required configuration is missing or invalid; the service cannot start."""


class MessageSourceError(RuntimeError):
    """A message source call failed."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: int | str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class ErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    AUTH = "auth"
    TRANSIENT = "transient"


def _as_int(value: object) -> int | None:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def classify_error(exc: BaseException) -> ErrorKind:
    """
    Decide how the poller should react to a failed fetch.

    - RATE_LIMITED: HTTP 429 or a provider rate-limit code; keep polling.
    - AUTH: HTTP 401/403 or a provider auth code; polling must stop.
    - TRANSIENT: anything else (timeouts, 5xx, network errors); keep polling.
    """
    status = _as_int(getattr(exc, "status_code", None) or getattr(exc, "status", None))
    code = _as_int(getattr(exc, "code", None))

    if status == 429 or code in TWILIO_RATE_LIMIT_CODES:
        return ErrorKind.RATE_LIMITED
    if status in (401, 403) or code in TWILIO_AUTH_CODES:
        return ErrorKind.AUTH
    return ErrorKind.TRANSIENT
