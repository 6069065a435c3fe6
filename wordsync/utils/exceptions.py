"""Custom exception classes and error classification utilities."""
from __future__ import annotations

from typing import Any, Dict, Optional

import httpx


TRANSIENT_CODES = frozenset(
    {
        "unavailable",
        "resource-exhausted",
        "deadline-exceeded",
        "aborted",
        "ECONNRESET",
        "ETIMEDOUT",
        "ECONNREFUSED",
        "ENETUNREACH",
    }
)
AUTH_CODES = frozenset({"permission-denied", "unauthenticated"})
TRANSIENT_STATUSES = frozenset({408, 429, 500, 502, 503, 504})
AUTH_STATUSES = frozenset({401, 403})


class WordSyncError(Exception):
    """Base exception for the engine."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class StoreError(WordSyncError):
    """Durable storage operation failed (quota, unavailable backend, bad value)."""


class EntryValidationError(WordSyncError):
    """A captured vocabulary entry is missing required fields."""


class NoReceiverError(WordSyncError):
    """A broadcast reached no listening context."""


class RemoteError(WordSyncError):
    """Failure reported by the remote document store."""

    kind = "remote"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status: int | None = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.code = code
        self.status = status
        super().__init__(message, details)


class TransientRemoteError(RemoteError):
    """Network, timeout, rate-limit or remote-unavailable failure; retryable."""

    kind = "transient"


class AuthError(RemoteError):
    """Credential invalid or expired; refresh then retry."""

    kind = "auth"


class FatalRemoteError(RemoteError):
    """Any other remote failure; never retried."""

    kind = "fatal"


def _from_code(message: str, code: str, status: int | None = None) -> RemoteError:
    if code in TRANSIENT_CODES or code.endswith("timeout"):
        return TransientRemoteError(message, code=code, status=status)
    if code in AUTH_CODES:
        return AuthError(message, code=code, status=status)
    return FatalRemoteError(message, code=code, status=status)


def _from_status(message: str, status: int, code: str | None = None) -> RemoteError:
    if code:
        classified = _from_code(message, code, status)
        if not isinstance(classified, FatalRemoteError):
            return classified
    if status in AUTH_STATUSES:
        return AuthError(message, code=code or "unauthenticated", status=status)
    if status in TRANSIENT_STATUSES:
        return TransientRemoteError(message, code=code or "unavailable", status=status)
    return FatalRemoteError(message, code=code, status=status)


def _error_code_from_body(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if isinstance(error, dict):
        raw = error.get("status") or error.get("code")
    else:
        raw = body.get("code") or error
    if not isinstance(raw, str):
        return None
    # REST bodies report "PERMISSION_DENIED"; SDK errors report "permission-denied"
    return raw.lower().replace("_", "-")


def remote_error_from_response(response: httpx.Response) -> RemoteError:
    """Build the tagged remote error for a non-success HTTP response."""

    code = _error_code_from_body(response)
    message = f"Remote store error {response.status_code}: {response.text[:200]}"
    return _from_status(message, response.status_code, code)


def classify_remote_error(error: BaseException) -> RemoteError:
    """Return ``error`` as a member of the remote error taxonomy.

    Already-classified errors are returned unchanged; httpx transport errors
    are transient, HTTP status errors are classified by status and body code,
    and objects carrying an ad hoc ``code``/``status`` attribute are
    classified once here so callers never inspect them again.
    """

    if isinstance(error, RemoteError):
        return error
    if isinstance(error, httpx.HTTPStatusError):
        return remote_error_from_response(error.response)
    if isinstance(error, httpx.TimeoutException):
        return TransientRemoteError(str(error) or "Request timed out", code="deadline-exceeded")
    if isinstance(error, httpx.TransportError):
        return TransientRemoteError(str(error) or "Network failure", code="unavailable")
    if isinstance(error, (ConnectionError, TimeoutError)):
        return TransientRemoteError(str(error) or type(error).__name__, code="unavailable")

    message = str(error) or type(error).__name__
    status = getattr(error, "status", None)
    code = getattr(error, "code", None)
    if isinstance(status, int):
        return _from_status(message, status, code if isinstance(code, str) else None)
    if isinstance(code, str):
        return _from_code(message, code)
    return FatalRemoteError(message)


def describe_remote_error(error: RemoteError) -> str:
    """Convert a remote error to a user-facing message."""

    if isinstance(error, AuthError):
        if error.code == "permission-denied":
            return "You do not have permission to access this data. Please sign in again."
        return "Your session has expired. Please sign in again."
    if isinstance(error, TransientRemoteError):
        if error.code == "resource-exhausted" or error.status == 429:
            return "You have exceeded the rate limit. Please try again later."
        return "The service is currently unavailable. Please try again later."
    if error.code == "not-found":
        return "The requested data could not be found."
    if error.code:
        return f"Database error: {error.code}"
    return "An error occurred while accessing the database."


__all__ = [
    "AuthError",
    "EntryValidationError",
    "FatalRemoteError",
    "NoReceiverError",
    "RemoteError",
    "StoreError",
    "TransientRemoteError",
    "WordSyncError",
    "classify_remote_error",
    "describe_remote_error",
    "remote_error_from_response",
]
