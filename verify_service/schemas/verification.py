from datetime import datetime
import re
import uuid

from pydantic import BaseModel, ConfigDict, field_validator

EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")


def _clean_email(v: str) -> str:
    cleaned = v.strip().lower()
    if not EMAIL_PATTERN.match(cleaned):
        raise ValueError("Invalid email format")
    return cleaned


class IssueTokenRequest(BaseModel):
    # falls back to the identity's email when omitted
    email: str | None = None

    @field_validator("email")
    def validate_email(cls, v: str | None) -> str | None:
        return _clean_email(v) if v is not None else None


class ResendRequest(BaseModel):
    email: str

    @field_validator("email")
    def validate_email(cls, v: str) -> str:
        return _clean_email(v)


class RedeemRequest(BaseModel):
    token: str


class IssueTokenResponse(BaseModel):
    success: bool = True
    message: str = "Verification email sent"
    expires_at: datetime
    # only populated by the dev entry point
    token: str | None = None
    verify_url: str | None = None


class ResendResponse(BaseModel):
    success: bool = True
    message: str = (
        "If an unverified account exists for this address, "
        "a verification email is on its way."
    )


class RedeemResponse(BaseModel):
    success: bool = True
    message: str = "Email verified"
    subject_id: uuid.UUID
    verified_at: datetime


class VerificationStatus(BaseModel):
    is_verified: bool
    verified_at: datetime | None = None
    verification_method: str | None = None
    has_valid_pending_token: bool
    token_expires_at: datetime | None = None
    attempts_remaining: int
    can_attempt_verification: bool


class AuditEntryRead(BaseModel):
    id: uuid.UUID
    action: str
    created_at: datetime
    success: bool
    error_code: str | None = None
    error_message: str | None = None
    ip: str | None = None
    user_agent: str | None = None
    related_token_id: uuid.UUID | None = None

    model_config = ConfigDict(from_attributes=True)


class FailureList(BaseModel):
    subject_id: uuid.UUID
    count: int
    errors: list[AuditEntryRead]


class VerificationStats(BaseModel):
    total_profiles: int
    verified_profiles: int
    unverified_profiles: int
    pending_tokens: int
    # percentage with one decimal, e.g. "66.7"
    verification_rate: str
