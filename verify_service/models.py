from datetime import datetime, timezone
from enum import Enum
from typing import List
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


class Purpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"
    REAUTHENTICATION = "reauthentication"


class AuditAction(str, Enum):
    TOKEN_CREATED = "token_created"
    TOKEN_USED = "token_used"
    TOKEN_EXPIRED = "token_expired"
    VERIFICATION_FAILED = "verification_failed"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    RATE_LIMITER_UNAVAILABLE = "rate_limiter_unavailable"
    EMAIL_DELIVERY_FAILED = "email_delivery_failed"


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


JSONType = JSON().with_variant(JSONB, "postgresql")


class Profile(Base):
    """Verification fields of a user profile, keyed by the identity id."""

    __tablename__ = "verification_profiles"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    verified: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("FALSE")
    )
    verified_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    verification_method: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # plain reference: the sweep may delete token rows, profiles keep the id
    last_verification_token_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    verification_tokens: Mapped[List["VerificationToken"]] = relationship(
        back_populates="profile",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint(
            "(verified AND verified_at IS NOT NULL AND verification_method IS NOT NULL)"
            " OR (NOT verified AND verified_at IS NULL AND verification_method IS NULL)",
            name="ck_verification_profiles_verified_fields",
        ),
        Index("ix_verification_profiles_email_lower", func.lower(email)),
    )


class VerificationToken(Base):
    __tablename__ = "verification_tokens"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subject_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("verification_profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    token_hash: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    purpose: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default=Purpose.EMAIL_VERIFICATION.value,
        server_default=text("'email_verification'"),
    )
    issued_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # "redeemed" or "superseded"
    used_reason: Mapped[str | None] = mapped_column(String(32), nullable=True)
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=3, server_default=text("3")
    )
    created_by_ip: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)
    context: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    profile: Mapped["Profile"] = relationship(back_populates="verification_tokens")

    __table_args__ = (
        CheckConstraint("expires_at > issued_at", name="ck_verification_tokens_expiry"),
        CheckConstraint("attempts >= 0", name="ck_verification_tokens_attempts"),
        CheckConstraint("max_attempts > 0", name="ck_verification_tokens_max_attempts"),
        Index("ix_verification_tokens_expires_at", expires_at),
        Index(
            "ix_verification_tokens_pending",
            subject_id,
            purpose,
            expires_at,
            postgresql_where=used_at.is_(None),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<VerificationToken(id={self.id}, subject_id={self.subject_id}, "
            f"purpose={self.purpose}, expires_at={self.expires_at}, "
            f"used={self.used_at is not None})>"
        )


class AuditEntry(Base):
    """Append-only record of a security-relevant verification event."""

    __tablename__ = "verification_audit_log"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    # nullable for failures that happen before the subject is known
    subject_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )
    ip: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    related_token_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    context: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    __table_args__ = (
        Index("ix_verification_audit_subject_created", subject_id, created_at.desc()),
    )
