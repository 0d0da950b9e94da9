"""Typed API errors and the classifier that produces them.

Every failure surfaced by the client is an ``APIError`` carrying:
  kind          - ``ErrorKind`` taxonomy member
  message       - technical text for logs
  user_message  - short actionable text for display
  status_code   - HTTP status, 0 when no response was received
  retryable     - whether the executor may try again
"""

from __future__ import annotations

import enum
import json
import logging

import httpx

_logger = logging.getLogger(__name__)

# Status codes retried with backoff
RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class ErrorKind(enum.Enum):
    TRANSPORT = "transport"
    AUTH = "auth"
    BAD_REQUEST = "bad_request"
    RATE_LIMITED = "rate_limited"
    SERVER = "server"
    EMPTY_RESPONSE = "empty_response"
    DECODE = "decode"
    CANCELLED = "cancelled"
    CONTEXT_TOO_LARGE = "context_too_large"
    UNKNOWN = "unknown"


class APIError(Exception):
    """A classified failure of one request attempt (or of a whole turn)."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        user_message: str = "",
        status_code: int = 0,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.user_message = user_message or message
        self.status_code = status_code
        self.retryable = retryable

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(kind={self.kind.value}, "
            f"status={self.status_code}, retryable={self.retryable}, "
            f"message={self.message!r})"
        )


class CancelledRequestError(APIError):
    """The caller cancelled, or the request deadline passed."""

    def __init__(self, message: str = "request cancelled by user",
                 user_initiated: bool = True) -> None:
        super().__init__(
            ErrorKind.CANCELLED,
            message,
            user_message="Request cancelled" if user_initiated
            else "Request timed out. Please try again.",
            retryable=False,
        )
        self.user_initiated = user_initiated


class ContextTooLargeError(APIError):
    """The prompt exceeds the configured budget.  Raised before any I/O."""

    def __init__(
        self,
        chars: int,
        max_chars: int,
        tokens: int,
        max_tokens: int,
        context_info: str = "",
    ) -> None:
        hint = "Try loading fewer files or unload large files with /clear"
        message = (
            f"context too large - chars: {chars}/{max_chars}, "
            f"tokens: {tokens}/{max_tokens}"
        )
        user_message = message
        if context_info:
            user_message += f"\n\n{context_info}"
        user_message += f"\n\n{hint}"
        super().__init__(
            ErrorKind.CONTEXT_TOO_LARGE, message,
            user_message=user_message, retryable=False,
        )
        self.chars = chars
        self.max_chars = max_chars
        self.tokens = tokens
        self.max_tokens = max_tokens
        self.hint = hint


class RetriesExhaustedError(APIError):
    """Every attempt failed with a retryable error."""

    def __init__(self, attempts: int, last_error: APIError) -> None:
        super().__init__(
            last_error.kind,
            f"failed after {attempts} attempts: {last_error.message}",
            user_message=last_error.user_message,
            status_code=last_error.status_code,
            retryable=False,
        )
        self.attempts = attempts
        self.last_error = last_error


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------

class ErrorClassifier:
    """Map transport and HTTP outcomes onto ``APIError``.

    Retryable: network failures, 429, 500/502/503/504, empty choice list,
    undecodable 200 body.  Not retryable: 400, 401, 403, cancellation.
    Any other status is retryable only when it is a 5xx.
    """

    @staticmethod
    def from_status(status_code: int, body: str = "") -> APIError:
        if status_code == 400:
            return APIError(
                ErrorKind.BAD_REQUEST, f"bad request: {body}",
                "Invalid request. Please check your input and try again.",
                status_code, retryable=False,
            )
        if status_code == 401:
            return APIError(
                ErrorKind.AUTH, f"unauthorized: {body}",
                "API key is invalid or missing. "
                "Please set DEEPSEEK_API_KEY environment variable.",
                status_code, retryable=False,
            )
        if status_code == 403:
            return APIError(
                ErrorKind.AUTH, f"forbidden: {body}",
                "Access denied. Please check your API key permissions.",
                status_code, retryable=False,
            )
        if status_code == 429:
            return APIError(
                ErrorKind.RATE_LIMITED, f"rate limited: {body}",
                "Rate limit exceeded. Retrying with backoff...",
                status_code, retryable=True,
            )
        if status_code in RETRYABLE_STATUS:
            return APIError(
                ErrorKind.SERVER, f"server error ({status_code}): {body}",
                "Server error. Retrying...",
                status_code, retryable=True,
            )
        return APIError(
            ErrorKind.SERVER if status_code >= 500 else ErrorKind.UNKNOWN,
            f"API error ({status_code}): {body}",
            f"API error (status {status_code}). Please try again.",
            status_code, retryable=status_code >= 500,
        )

    @staticmethod
    def from_exception(exc: Exception) -> APIError:
        if isinstance(exc, APIError):
            return exc
        if isinstance(exc, httpx.TimeoutException):
            return APIError(
                ErrorKind.TRANSPORT, f"request timed out: {exc}",
                "Network timeout. Retrying...", retryable=True,
            )
        if isinstance(exc, httpx.RequestError):
            return APIError(
                ErrorKind.TRANSPORT, f"request failed: {exc}",
                "Network error. Retrying...", retryable=True,
            )
        if isinstance(exc, (json.JSONDecodeError, UnicodeDecodeError)):
            return ErrorClassifier.decode_failure(exc)
        return APIError(
            ErrorKind.UNKNOWN, f"unexpected error: {type(exc).__name__}: {exc}",
            "Unexpected error. Please try again.", retryable=False,
        )

    @staticmethod
    def decode_failure(exc: Exception, status_code: int = 200) -> APIError:
        return APIError(
            ErrorKind.DECODE, f"failed to unmarshal response: {exc}",
            "Error parsing response. Retrying...",
            status_code, retryable=True,
        )

    @staticmethod
    def empty_response(status_code: int = 200) -> APIError:
        return APIError(
            ErrorKind.EMPTY_RESPONSE, "no response choices received",
            "Empty response received. Retrying...",
            status_code, retryable=True,
        )


def display_message(error: BaseException) -> str | None:
    """Short text for the UI, or ``None`` when nothing should be shown."""
    if isinstance(error, CancelledRequestError) and error.user_initiated:
        return None
    if isinstance(error, APIError):
        text = f"❌ {error.user_message}"
        if error.status_code > 0:
            text += f" (HTTP {error.status_code})"
        return text
    return f"❌ Error: {error}"
