"""
Verification error taxonomy.

Every failure the verification flow can produce is a VerificationError with a
stable `code` and an HTTP `status_code`. A single exception handler in
verify_service.main renders them using ERROR_MESSAGES.
"""

import math
import uuid
from datetime import datetime
from typing import Any, NamedTuple


class ErrorMessage(NamedTuple):
    user_message: str
    retry_allowed: bool
    retry_delay_minutes: int


ERROR_MESSAGES: dict[str, ErrorMessage] = {
    "missing_fields": ErrorMessage(
        "Required information is missing. Please try again.", True, 0
    ),
    "malformed_token": ErrorMessage(
        "Invalid verification code. Please check and try again.", True, 0
    ),
    "invalid_signature": ErrorMessage(
        "Invalid verification code. Please check and try again.", True, 0
    ),
    "token_not_found": ErrorMessage(
        "Invalid verification code. Please check and try again.", True, 0
    ),
    "expired_token": ErrorMessage(
        "Verification code has expired. Please request a new one.", True, 0
    ),
    "already_used": ErrorMessage(
        "This verification link has already been used.", False, 0
    ),
    "max_attempts_exceeded": ErrorMessage(
        "Too many failed attempts. Please try again later.", False, 60
    ),
    "already_verified": ErrorMessage("Your account is already verified.", False, 0),
    "rate_limited": ErrorMessage(
        "Too many requests. Please wait before trying again.", True, 0
    ),
    "delivery_failed": ErrorMessage(
        "We could not send the verification email. Please try again.", True, 1
    ),
    "database_error": ErrorMessage("System error. Please contact support.", False, 0),
    "timeout": ErrorMessage(
        "The service is taking too long to respond. Please try again.", True, 1
    ),
    "system_error": ErrorMessage("System error. Please contact support.", False, 0),
    "missing_token": ErrorMessage("Authentication required.", True, 0),
    "invalid_token": ErrorMessage("Invalid authentication token.", True, 0),
    "token_expired": ErrorMessage(
        "Your session has expired. Please sign in again.", True, 0
    ),
    "verification_required": ErrorMessage("Email verification required", True, 0),
    "access_denied": ErrorMessage(
        "You do not have permission to access this resource.", False, 0
    ),
    "upstream_unavailable": ErrorMessage(
        "An upstream service is unavailable. Please try again.", True, 1
    ),
}


def describe(code: str) -> ErrorMessage:
    return ERROR_MESSAGES.get(code, ERROR_MESSAGES["system_error"])


class VerificationError(Exception):
    code = "system_error"
    status_code = 500

    def __init__(self, message: str | None = None, **details: Any):
        self.message = message or describe(self.code).user_message
        self.details = details
        super().__init__(self.message)

    @property
    def headers(self) -> dict[str, str] | None:
        return None

    def to_dict(self) -> dict[str, Any]:
        entry = describe(self.code)
        body = {
            "success": False,
            "error": entry.user_message,
            "code": self.code,
            "can_retry": entry.retry_allowed,
            "retry_delay_minutes": entry.retry_delay_minutes,
        }
        for key, value in self.details.items():
            body[key] = value.isoformat() if isinstance(value, datetime) else value
        return body


class MissingFields(VerificationError):
    code = "missing_fields"
    status_code = 400


# token outcomes


class MalformedToken(VerificationError):
    code = "malformed_token"
    status_code = 400


class InvalidSignature(VerificationError):
    code = "invalid_signature"
    status_code = 400


class TokenExpired(VerificationError):
    code = "expired_token"
    status_code = 400

    def __init__(self, message: str | None = None, subject_id: uuid.UUID | None = None):
        # from a correctly signed token; not rendered into the response
        self.subject_id = subject_id
        super().__init__(message)


class TokenNotFound(VerificationError):
    code = "token_not_found"
    status_code = 400


class AlreadyUsed(VerificationError):
    code = "already_used"
    status_code = 409


class MaxAttemptsExceeded(VerificationError):
    code = "max_attempts_exceeded"
    status_code = 400


class AlreadyVerified(VerificationError):
    code = "already_verified"
    status_code = 409


class RateLimited(VerificationError):
    code = "rate_limited"
    status_code = 429

    def __init__(
        self,
        reset_at: datetime,
        now: datetime,
        message: str | None = None,
        **details,
    ):
        self.reset_at = reset_at
        # measured on the limiter's clock, not the wall clock
        self.retry_after_seconds = max(1, math.ceil((reset_at - now).total_seconds()))
        super().__init__(
            message, reset_at=reset_at, retry_after_seconds=self.retry_after_seconds, **details
        )

    @property
    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after_seconds)}


# infrastructure


class DeliveryFailed(VerificationError):
    code = "delivery_failed"
    status_code = 502


class UpstreamUnavailable(VerificationError):
    code = "upstream_unavailable"
    status_code = 502


class PersistenceError(VerificationError):
    code = "database_error"
    status_code = 500


class Timeout(VerificationError):
    """An external call did not answer in time. Not a definitive negative."""

    code = "timeout"
    status_code = 500


class ServerMisconfigured(VerificationError):
    code = "system_error"
    status_code = 500


# gate


class CredentialError(VerificationError):
    status_code = 401
    REASONS = ("missing_token", "invalid_token", "token_expired")

    def __init__(self, reason: str = "invalid_token", message: str | None = None):
        if reason not in self.REASONS:
            reason = "invalid_token"
        self.code = reason
        super().__init__(message)

    @property
    def headers(self) -> dict[str, str]:
        return {"WWW-Authenticate": "Bearer"}


class VerificationRequired(VerificationError):
    code = "verification_required"
    status_code = 403

    def __init__(
        self,
        has_valid_token: bool,
        token_expires_at: datetime | None,
    ):
        if has_valid_token:
            hint = "Check your inbox for the verification link we sent you."
        else:
            hint = "Request a new verification email to continue."
        super().__init__(
            hint,
            verification_required=True,
            has_valid_token=has_valid_token,
            token_expires_at=token_expires_at,
        )

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["message"] = self.message
        return body


class AccessDenied(VerificationError):
    code = "access_denied"
    status_code = 403
