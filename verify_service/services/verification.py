"""
Email verification token lifecycle.

Per subject and purpose a verification moves NoToken -> Pending -> Verified,
or Pending -> Expired, and back to Pending when a new token is issued.

Every operation is a straight sequence of awaited store calls. The request
session is committed or rolled back before anything is written to the audit
log, which uses its own session.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from verify_service.errors import (
    AlreadyUsed,
    AlreadyVerified,
    DeliveryFailed,
    MaxAttemptsExceeded,
    PersistenceError,
    RateLimited,
    Timeout,
    TokenExpired,
    TokenNotFound,
    VerificationError,
)
from verify_service.models import AuditAction, AuditEntry, Purpose, VerificationToken
from verify_service.schemas.verification import VerificationStats, VerificationStatus
from verify_service.security import TokenCodec, hash_token
from verify_service.services import email as email_service
from verify_service.services.audit import AuditLog
from verify_service.services.profiles import ProfileStore
from verify_service.services.rate_limiter import (
    RateLimitDecision,
    RateLimiter,
    make_rate_limit_key,
)
from verify_service.services.token_store import TokenStore, translate_store_errors
from verify_service.settings import settings

logger = logging.getLogger(__name__)

EmailSender = Callable[[str, str, str], Awaitable[None]]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class IssuedToken:
    token: str
    verify_url: str
    expires_at: datetime
    token_id: uuid.UUID


@dataclass(frozen=True)
class Redemption:
    subject_id: uuid.UUID
    token_id: uuid.UUID
    purpose: Purpose
    verified_at: datetime


class VerificationService:
    def __init__(
        self,
        session: AsyncSession,
        *,
        codec: TokenCodec,
        rate_limiter: RateLimiter,
        audit: AuditLog,
        send_email: EmailSender = email_service.send_email,
        clock: Callable[[], datetime] = _now_utc,
        cfg=settings,
    ):
        self.session = session
        self.tokens = TokenStore(session)
        self.profiles = ProfileStore(session)
        self.codec = codec
        self.rate_limiter = rate_limiter
        self.audit = audit
        self.send_email = send_email
        self.clock = clock
        self.cfg = cfg

    async def _commit(self) -> None:
        async with translate_store_errors("commit"):
            await self.session.commit()

    async def _rollback(self) -> None:
        async with translate_store_errors("rollback"):
            await self.session.rollback()

    # rate limiting

    async def throttle(
        self,
        bucket: str,
        identity: str,
        *,
        max_count: int,
        window_seconds: int,
        subject_id: uuid.UUID | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> RateLimitDecision:
        key = make_rate_limit_key(bucket, identity)
        decision = await self.rate_limiter.check_and_record(
            key, window_seconds, max_count
        )
        if decision.degraded:
            await self.audit.record(
                AuditAction.RATE_LIMITER_UNAVAILABLE,
                success=True,
                subject_id=subject_id,
                ip=ip,
                user_agent=user_agent,
                error_code="rate_limiter_unavailable",
                context={"bucket": bucket},
            )
        if not decision.allowed:
            logger.info(f"Rate limit hit for {key}, resets at {decision.reset_at}")
            await self.audit.record(
                AuditAction.RATE_LIMIT_EXCEEDED,
                success=False,
                subject_id=subject_id,
                ip=ip,
                user_agent=user_agent,
                error_code=RateLimited.code,
                error_message=f"{bucket} limit of {max_count} per {window_seconds}s",
                context={"bucket": bucket, "reset_at": decision.reset_at.isoformat()},
            )
            raise RateLimited(decision.reset_at, now=self.clock())
        return decision

    async def throttle_ip(
        self, bucket: str, ip: str | None, user_agent: str | None = None
    ) -> RateLimitDecision:
        return await self.throttle(
            bucket,
            ip or "unknown",
            max_count=self.cfg.RATE_LIMIT_IP_MAX,
            window_seconds=self.cfg.RATE_LIMIT_IP_WINDOW_SECONDS,
            ip=ip,
            user_agent=user_agent,
        )

    # issuance

    async def issue_token(
        self,
        subject_id: uuid.UUID,
        email: str,
        ip: str | None = None,
        user_agent: str | None = None,
        purpose: Purpose = Purpose.EMAIL_VERIFICATION,
    ) -> IssuedToken:
        email = email.strip().lower()
        purpose = Purpose(purpose)
        await self.throttle(
            "resend",
            str(subject_id),
            max_count=self.cfg.RATE_LIMIT_RESEND_MAX,
            window_seconds=self.cfg.RATE_LIMIT_RESEND_WINDOW_SECONDS,
            subject_id=subject_id,
            ip=ip,
            user_agent=user_agent,
        )

        now = self.clock()
        try:
            profile = await self.profiles.get_or_create(subject_id, email)
            if purpose == Purpose.EMAIL_VERIFICATION and profile.verified:
                raise AlreadyVerified()
            superseded = await self.tokens.invalidate_prior_unused(
                subject_id, purpose, now
            )
            issued = self.codec.issue(
                subject_id, email, purpose, self.cfg.VERIFICATION_TOKEN_TTL_SECONDS
            )
            row = VerificationToken(
                id=uuid.uuid4(),
                subject_id=subject_id,
                token_hash=hash_token(issued.token),
                purpose=purpose.value,
                issued_at=issued.issued_at,
                expires_at=issued.expires_at,
                attempts=0,
                max_attempts=self.cfg.VERIFICATION_MAX_ATTEMPTS,
                created_by_ip=ip,
                user_agent=(user_agent or "")[:255] or None,
                context={"jti": issued.payload["jti"], "email": email},
            )
            token_id = await self.tokens.insert(row)
            await self._commit()
        except VerificationError as exc:
            await self._rollback()
            await self.audit.record(
                AuditAction.VERIFICATION_FAILED,
                success=False,
                subject_id=subject_id,
                ip=ip,
                user_agent=user_agent,
                error_code=exc.code,
                error_message=exc.message,
                context={"stage": "issue", "purpose": purpose.value},
            )
            raise

        logger.info(
            f"Issued {purpose.value} token {token_id} for {subject_id} "
            f"(superseded {superseded})"
        )
        await self.audit.record(
            AuditAction.TOKEN_CREATED,
            success=True,
            subject_id=subject_id,
            ip=ip,
            user_agent=user_agent,
            related_token_id=token_id,
            context={"purpose": purpose.value, "superseded": superseded},
        )

        verify_url = f"{self.cfg.EMAIL_VERIFY_BASE_URL}{issued.token}"
        await self._deliver(subject_id, email, verify_url, token_id, ip, user_agent)
        return IssuedToken(
            token=issued.token,
            verify_url=verify_url,
            expires_at=issued.expires_at,
            token_id=token_id,
        )

    async def _deliver(
        self,
        subject_id: uuid.UUID,
        email: str,
        verify_url: str,
        token_id: uuid.UUID,
        ip: str | None,
        user_agent: str | None,
    ) -> None:
        body = email_service.render_verification_email(
            verify_url, self.cfg.VERIFICATION_TOKEN_TTL_SECONDS // 60
        )
        try:
            await asyncio.wait_for(
                self.send_email(email, email_service.VERIFY_SUBJECT, body),
                timeout=self.cfg.EXTERNAL_CALL_TIMEOUT_SECONDS,
            )
            return
        except (asyncio.TimeoutError, TimeoutError) as exc:
            error: VerificationError = Timeout("Email delivery timed out")
            cause: Exception = exc
        except Exception as exc:
            error = DeliveryFailed()
            cause = exc

        logger.error(f"Verification email to {email} failed: {cause!r}")
        await self.audit.record(
            AuditAction.EMAIL_DELIVERY_FAILED,
            success=False,
            subject_id=subject_id,
            ip=ip,
            user_agent=user_agent,
            error_code=error.code,
            error_message=str(cause) or error.message,
            related_token_id=token_id,
        )
        raise error from cause

    async def resend_public(
        self, email: str, ip: str | None = None, user_agent: str | None = None
    ) -> None:
        """
        Reissue a link for an unverified account, addressed by email only.

        The outcome is the same for unknown, verified and unverified addresses
        so callers cannot probe which accounts exist.
        """
        email = email.strip().lower()
        await self.throttle_ip("resend_ip", ip, user_agent)
        await self.throttle(
            "resend_email",
            email,
            max_count=self.cfg.RATE_LIMIT_RESEND_MAX,
            window_seconds=self.cfg.RATE_LIMIT_RESEND_WINDOW_SECONDS,
            ip=ip,
            user_agent=user_agent,
        )

        profile = await self.profiles.get_by_email(email)
        if profile is None or profile.verified:
            await self._rollback()
            logger.info(f"Public resend for {email} skipped (unknown or verified)")
            return
        subject_id, known_email = profile.id, profile.email
        await self._rollback()

        try:
            await self.issue_token(subject_id, known_email, ip, user_agent)
        except (AlreadyVerified, RateLimited, DeliveryFailed, Timeout) as exc:
            logger.info(f"Public resend for {subject_id} not sent: {exc.code}")

    # redemption

    async def redeem_token(
        self,
        token: str,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> Redemption:
        now = self.clock()
        subject_id: uuid.UUID | None = None
        token_id: uuid.UUID | None = None
        try:
            payload = self.codec.verify(token)
            subject_id = uuid.UUID(payload["sub"])
            purpose = Purpose(payload["type"])

            row = await self.tokens.find_by_hash(hash_token(token))
            if row is None or row.subject_id != subject_id:
                raise TokenNotFound()
            token_id = row.id
            if row.used_at is not None:
                raise AlreadyUsed()

            attempts = await self.tokens.record_attempt(row.id)
            if attempts is None:
                raise AlreadyUsed()
            if attempts > row.max_attempts:
                raise MaxAttemptsExceeded()
            if now > row.expires_at:
                raise TokenExpired(subject_id=subject_id)

            if not await self.tokens.mark_used_atomically(row.id, at=now):
                raise AlreadyUsed()
            if purpose == Purpose.EMAIL_VERIFICATION:
                await self.profiles.mark_verified(
                    subject_id, at=now, method=purpose.value, token_id=row.id
                )
            await self._commit()
        except (PersistenceError, Timeout) as exc:
            await self._rollback()
            await self._record_redeem_failure(exc, subject_id, token_id, ip, user_agent)
            raise
        except VerificationError as exc:
            if isinstance(exc, TokenExpired) and subject_id is None:
                subject_id = exc.subject_id
            # keep the attempt counter bump
            if self.session.in_transaction():
                await self._commit()
            await self._record_redeem_failure(exc, subject_id, token_id, ip, user_agent)
            raise

        logger.info(f"Token {token_id} redeemed for {subject_id}")
        await self.audit.record(
            AuditAction.TOKEN_USED,
            success=True,
            subject_id=subject_id,
            ip=ip,
            user_agent=user_agent,
            related_token_id=token_id,
            context={"purpose": purpose.value},
        )
        return Redemption(
            subject_id=subject_id,
            token_id=token_id,
            purpose=purpose,
            verified_at=now,
        )

    async def _record_redeem_failure(
        self,
        exc: VerificationError,
        subject_id: uuid.UUID | None,
        token_id: uuid.UUID | None,
        ip: str | None,
        user_agent: str | None,
    ) -> None:
        action = (
            AuditAction.TOKEN_EXPIRED
            if isinstance(exc, TokenExpired)
            else AuditAction.VERIFICATION_FAILED
        )
        logger.info(f"Redemption failed ({exc.code}) for subject {subject_id}")
        await self.audit.record(
            action,
            success=False,
            subject_id=subject_id,
            ip=ip,
            user_agent=user_agent,
            error_code=exc.code,
            error_message=exc.message,
            related_token_id=token_id,
        )

    # reads

    async def get_status(
        self,
        subject_id: uuid.UUID,
        purpose: Purpose = Purpose.EMAIL_VERIFICATION,
    ) -> VerificationStatus:
        now = self.clock()
        profile = await self.profiles.get(subject_id)
        pending = await self.tokens.find_latest_pending(subject_id, purpose, now)

        is_verified = bool(profile and profile.verified)
        if pending is not None and not is_verified:
            attempts_remaining = max(pending.max_attempts - pending.attempts, 0)
        else:
            attempts_remaining = 0
        status = VerificationStatus(
            is_verified=is_verified,
            verified_at=profile.verified_at if profile else None,
            verification_method=profile.verification_method if profile else None,
            has_valid_pending_token=pending is not None,
            token_expires_at=pending.expires_at if pending else None,
            attempts_remaining=attempts_remaining,
            can_attempt_verification=not is_verified and attempts_remaining > 0,
        )
        # rollback expires loaded rows, so it happens after they are read
        await self._rollback()
        return status

    async def list_failures(
        self, subject_id: uuid.UUID, limit: int = 50
    ) -> list[AuditEntry]:
        return await self.audit.list_for_subject(
            subject_id, failures_only=True, limit=limit
        )

    async def get_stats(self) -> VerificationStats:
        now = self.clock()
        total = await self.profiles.count()
        verified = await self.profiles.count(verified=True)
        pending = await self.tokens.count_pending(now)
        await self._rollback()
        rate = f"{verified / total * 100:.1f}" if total else "0.0"
        return VerificationStats(
            total_profiles=total,
            verified_profiles=verified,
            unverified_profiles=total - verified,
            pending_tokens=pending,
            verification_rate=rate,
        )
