from __future__ import annotations

"""Closed error taxonomy raised by the conversation engine.

Callers never see provider-native or storage-native exceptions; everything is
translated into one of the kinds below at the service boundary.
"""

from typing import Any, Dict, Optional


class ChatError(Exception):
    kind: str = "INTERNAL_ERROR"
    status_code: int = 500
    default_message: str = "Internal error"

    def __init__(self, message: Optional[str] = None, *, retry_after: Optional[int] = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.retry_after = retry_after

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.kind, "message": self.message}
        if self.retry_after is not None:
            payload["retryAfter"] = self.retry_after
        return payload


class Unauthorized(ChatError):
    kind = "UNAUTHORIZED"
    status_code = 401
    default_message = "Authentication required"


class AccessDenied(ChatError):
    kind = "FORBIDDEN"
    status_code = 403
    default_message = "Access denied"


class NotFound(ChatError):
    kind = "NOT_FOUND"
    status_code = 404
    default_message = "Not found"


class RateLimited(ChatError):
    kind = "RATE_LIMITED"
    status_code = 429
    default_message = "Too many requests. Please slow down."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        retry_after: int = 60,
        limit: Optional[int] = None,
        remaining: int = 0,
        reset_at_ms: Optional[int] = None,
    ) -> None:
        super().__init__(message, retry_after=retry_after)
        self.limit = limit
        self.remaining = remaining
        self.reset_at_ms = reset_at_ms


class ServiceUnavailable(ChatError):
    kind = "SERVICE_UNAVAILABLE"
    status_code = 503
    default_message = "Completion service unavailable"


class InternalError(ChatError):
    kind = "INTERNAL_ERROR"
    status_code = 500
    default_message = "Internal error"
