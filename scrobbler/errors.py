"""
Scrobble error taxonomy.

The set is closed: every failure leaving the session or the submission
client is one of the six classes below. `retryable` tells the retry policy
whether another attempt can help.
"""

from __future__ import annotations

# Last.fm API error codes
_SESSION_EXPIRED_CODES = {4, 14}           # 4=Auth failed, 14=Token not authorised/expired
_INVALID_CREDENTIAL_CODES = {9, 10, 26}    # 9=Invalid session, 10=Invalid API key, 26=Suspended key
_UNAVAILABLE_CODES = {8, 11, 16, 17}       # 8=Operation failed, 11=Offline, 16=Temporary, 17=Login required
_RATE_LIMIT_CODES = {29}


class ScrobbleError(Exception):
    retryable = False


class InvalidCredentials(ScrobbleError):
    def __init__(self, message: str = "Invalid credentials. Please reconnect your account."):
        super().__init__(message)


class SessionExpired(ScrobbleError):
    def __init__(self, message: str = "Session expired. Please reconnect your account."):
        super().__init__(message)


class RateLimited(ScrobbleError):
    retryable = True

    def __init__(self, retry_after: float | None = None):
        self.retry_after = retry_after
        if retry_after is not None:
            super().__init__(f"Rate limited. Try again in {int(retry_after)} seconds.")
        else:
            super().__init__("Rate limited. Please try again later.")


class NetworkError(ScrobbleError):
    retryable = True

    def __init__(self, underlying: str):
        self.underlying = underlying
        super().__init__(f"Network error: {underlying}")


class ServiceUnavailable(ScrobbleError):
    retryable = True

    def __init__(self, message: str = "Service temporarily unavailable. Please try again later."):
        super().__init__(message)


class InvalidResponse(ScrobbleError):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Invalid response: {detail}")


ALL_ERRORS = (
    InvalidCredentials,
    SessionExpired,
    RateLimited,
    NetworkError,
    ServiceUnavailable,
    InvalidResponse,
)

# Errors after which the stored session cannot be used any more
AUTH_ERRORS = (InvalidCredentials, SessionExpired)


def error_for_code(code: int | None, message: str = "") -> ScrobbleError:
    """Map a Last.fm numeric error code onto the taxonomy."""
    if code in _SESSION_EXPIRED_CODES:
        return SessionExpired()
    if code in _INVALID_CREDENTIAL_CODES:
        return InvalidCredentials()
    if code in _UNAVAILABLE_CODES:
        return ServiceUnavailable()
    if code in _RATE_LIMIT_CODES:
        return RateLimited(retry_after=None)
    return InvalidResponse(f"Last.fm error {code}: {message or 'Unknown error'}")


def is_retryable(error: BaseException) -> bool:
    # Unknown exceptions are treated as transient
    return getattr(error, "retryable", True)
