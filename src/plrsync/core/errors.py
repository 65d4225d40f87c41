"""Error taxonomy for plrsync.

Every failure the sync protocol can surface is a SyncError subclass. Each
class carries the machine-readable code used in JSON error bodies and the
HTTP status the server answers with, so the client can map a response back
to the same exception.

A conflict is not an error: conflicts are returned as data and never raised.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Type


class SyncError(Exception):
    """Base class for all sync failures."""

    code = "sync_error"
    status = 400

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Get the JSON error body for this error."""
        return {"error": self.message, "code": self.code}


class AuthError(SyncError):
    """Missing or invalid credential. Not retried automatically."""

    code = "auth_error"
    status = 401


class RateLimitedError(SyncError):
    """Caller exceeded its request quota for the current window."""

    code = "rate_limited"
    status = 429

    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.retry_after is not None:
            body["retryAfter"] = self.retry_after
        return body


class ValidationError(SyncError, ValueError):
    """Malformed input: bad batch, bad record, missing query parameter.

    Indicates a caller bug and is not retried.
    """

    code = "validation_error"
    status = 400

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(message)

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"

    def __repr__(self) -> str:
        return f"ValidationError(field='{self.field}', message='{self.message}')"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": f"Invalid {self.field}: {self.message}",
            "code": self.code,
            "field": self.field,
            "detail": self.message,
        }


class StorageError(SyncError):
    """Upsert or query failure. Nothing was committed, so retry is safe."""

    code = "storage_error"
    status = 400


class TransportError(SyncError):
    """The remote could not be reached or answered with garbage."""

    code = "transport_error"
    status = 502


class SyncCancelledError(SyncError):
    """A sync round was aborted by the caller."""

    code = "cancelled"


def error_from_response(status: int, body: Optional[Dict[str, Any]]) -> SyncError:
    """Rebuild the exception matching an HTTP error response.

    Args:
        status: HTTP status code
        body: Decoded JSON error body, if any

    Returns:
        SyncError subclass instance (not raised)
    """
    body = body or {}
    message = str(body.get("error") or f"HTTP {status}")
    code = body.get("code")

    if status == 429 or code == RateLimitedError.code:
        retry_after = body.get("retryAfter")
        return RateLimitedError(
            message, float(retry_after) if retry_after is not None else None
        )
    if status in (401, 403) or code == AuthError.code:
        return AuthError(message)

    by_code: Dict[str, Type[SyncError]] = {
        StorageError.code: StorageError,
    }
    if code == ValidationError.code:
        return ValidationError(
            str(body.get("field") or "request"), str(body.get("detail") or message)
        )
    if code in by_code:
        return by_code[code](message)
    if status >= 500:
        return TransportError(f"Server error {status}: {message}")
    return SyncError(message)
