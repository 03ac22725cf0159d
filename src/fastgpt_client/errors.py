"""Exceptions raised by the FastGPT client."""

from typing import Optional


class FastGPTError(Exception):
    """Base exception for FastGPT client errors."""

    #: Whether a retry may succeed without any change on the caller's side
    is_transient: bool = False


class FastGPTConfigurationError(FastGPTError):
    """A required credential or setting is missing. Never retried."""
    pass


class FastGPTConnectionError(FastGPTError):
    """Connection to FastGPT failed."""
    is_transient = True


class FastGPTTimeoutError(FastGPTConnectionError):
    """FastGPT did not answer in time."""
    pass


class FastGPTResponseError(FastGPTError):
    """FastGPT answered 2xx with a body that is not JSON."""
    is_transient = True


class FastGPTStreamError(FastGPTError):
    """The stream broke off before its terminal marker."""
    pass


class FastGPTHTTPError(FastGPTError):
    """FastGPT answered with a non-success status code."""

    def __init__(self, status_code: int, detail: Optional[str] = None) -> None:
        self.status_code = status_code
        self.detail = detail
        message = f"HTTP error! status: {status_code}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)

    @property
    def is_transient(self) -> bool:  # type: ignore[override]
        return self.status_code >= 500


class FastGPTAuthError(FastGPTHTTPError):
    """Credential rejected (401/403)."""
    pass


class FastGPTRateLimitError(FastGPTHTTPError):
    """Too many requests (429)."""
    pass


class FastGPTServerError(FastGPTHTTPError):
    """FastGPT failed internally (5xx)."""
    pass


def error_for_status(status_code: int, detail: Optional[str] = None) -> FastGPTHTTPError:
    """Build the exception matching an HTTP status code."""
    if status_code in (401, 403):
        return FastGPTAuthError(status_code, detail)
    if status_code == 429:
        return FastGPTRateLimitError(status_code, detail)
    if status_code >= 500:
        return FastGPTServerError(status_code, detail)
    return FastGPTHTTPError(status_code, detail)
