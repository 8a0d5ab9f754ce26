"""
Typed outcomes for identity operations.

Expected business failures (wrong OTP, duplicate phone, expired link, ...)
come back as a failed Result carrying an ErrorKind. The HTTP layer maps the
kind to a status code. Exceptions are left for faults nobody planned for.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(Enum):
    VALIDATION = ("validation_error", 400)
    VERIFICATION_FAILED = ("verification_failed", 400)
    INVALID_OR_EXPIRED_OTP = ("invalid_or_expired_otp", 401)
    CHALLENGE_EXPIRED = ("challenge_expired", 401)
    INVALID_OR_EXPIRED_LINK = ("invalid_or_expired_link", 401)
    INVALID_CREDENTIALS = ("invalid_credentials", 401)
    UNAUTHORIZED = ("unauthorized", 401)
    EXPIRED = ("expired", 401)
    REVOKED = ("revoked", 401)
    REPLAY_DETECTED = ("replay_detected", 401)
    FORBIDDEN = ("forbidden", 403)
    CREDENTIAL_NOT_FOUND = ("credential_not_found", 404)
    NOT_FOUND = ("not_found", 404)
    CONFLICT = ("conflict", 409)
    REGISTRATION_EXPIRED = ("registration_expired", 410)
    LOCKED = ("locked", 429)
    DELIVERY_FAILED = ("delivery_failed", 502)
    NOT_CONFIGURED = ("not_configured", 503)
    INTERNAL = ("internal_error", 500)

    def __init__(self, code: str, status: int):
        self.code = code
        self.status = status


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or an (ErrorKind, message) pair."""
    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None
    details: Optional[dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ) -> "Result[T]":
        return cls(error=kind, message=message, details=details)

    def to_error_dict(self) -> dict:
        body = {"error": self.message, "code": self.error.code if self.error else None}
        if self.details:
            body.update(self.details)
        return body
