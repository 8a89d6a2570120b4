"""Error taxonomy for the registration funnel.

Every client-visible rejection carries a stable machine-readable ``code``.
Clients branch on the code; the message text is not a stability contract.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    DUPLICATE_EMAIL = "DUPLICATE_EMAIL"
    BLOCKED = "BLOCKED"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class RegistrationError(Exception):
    """Base class for errors that map onto a client response."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    status_code: int = 500
    default_message: str = "Registration failed"

    def __init__(self, message: Optional[str] = None, **context: Any) -> None:
        self.message = message or self.default_message
        self.context: Dict[str, Any] = context
        super().__init__(self.message)

    def client_message(self) -> str:
        return self.message

    def to_payload(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.client_message(),
            "code": self.code.value,
        }


class ValidationError(RegistrationError):
    """Malformed input; always fixable by the client."""

    code = ErrorCode.VALIDATION_ERROR
    status_code = 400
    default_message = "Invalid registration data"

    def __init__(self, message: Optional[str] = None, *, field: Optional[str] = None, **context: Any) -> None:
        super().__init__(message, **context)
        self.field = field

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        if self.field:
            payload["field"] = self.field
        return payload


class MalformedIdentifier(ValidationError):
    """An identifier could not be normalized."""

    default_message = "Malformed identifier"


class RateLimitExceeded(RegistrationError):
    code = ErrorCode.RATE_LIMIT_EXCEEDED
    status_code = 429
    default_message = "Rate limit exceeded. Please try again later."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        dimension: Optional[str] = None,
        retry_after_seconds: int = 0,
        **context: Any,
    ) -> None:
        super().__init__(message, **context)
        self.dimension = dimension
        self.retry_after_seconds = max(0, int(retry_after_seconds))

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["retry_after"] = self.retry_after_seconds
        return payload


class Blocked(RegistrationError):
    """Not retryable by the client without admin intervention."""

    code = ErrorCode.BLOCKED
    status_code = 403
    default_message = "Registration from this email or network has been blocked"

    def __init__(self, message: Optional[str] = None, *, dimension: Optional[str] = None, **context: Any) -> None:
        super().__init__(message, **context)
        self.dimension = dimension


class DuplicateEmail(RegistrationError):
    code = ErrorCode.DUPLICATE_EMAIL
    status_code = 409
    default_message = "This email is already registered"


class RegistrationNotFound(RegistrationError):
    code = ErrorCode.NOT_FOUND
    status_code = 404
    default_message = "Registration not found"


class InternalError(RegistrationError):
    """Server-side failure. Detail is logged, never sent to the client."""

    code = ErrorCode.INTERNAL_ERROR
    status_code = 500
    default_message = "An error occurred. Please try again later."

    def client_message(self) -> str:
        return InternalError.default_message


__all__ = [
    "Blocked",
    "DuplicateEmail",
    "ErrorCode",
    "InternalError",
    "MalformedIdentifier",
    "RateLimitExceeded",
    "RegistrationError",
    "RegistrationNotFound",
    "ValidationError",
]
