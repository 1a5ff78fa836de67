"""
FastAPI dependencies guarding verification-protected routes.

Feature routes declare `Depends(require_verified_identity)`; it resolves the
bearer credential through the Identity Provider and rejects identities whose
email is not verified in our own profile record.
"""

from datetime import datetime, timezone

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from verify_service.database import get_db, get_session_factory
from verify_service.errors import AccessDenied, CredentialError, VerificationRequired
from verify_service.redis_client import get_redis
from verify_service.security import TokenCodec
from verify_service.services import email as email_service
from verify_service.services.audit import AuditLog
from verify_service.services.identity import (
    HttpIdentityProvider,
    Identity,
    IdentityProvider,
)
from verify_service.services.rate_limiter import RateLimiter, RedisRateLimiter
from verify_service.services.verification import EmailSender, VerificationService
from verify_service.settings import settings

bearer_scheme = HTTPBearer(auto_error=False)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def get_request_meta(request: Request) -> dict:
    meta = getattr(request.state, "meta", None)
    if meta is None:
        ip = request.client.host if request.client else None
        user_agent = request.headers.get("user-agent")
        meta = {"ip": ip, "user_agent": user_agent}
    return meta


def get_app_settings(request: Request):
    return getattr(request.app.state, "settings", settings)


def get_clock(request: Request):
    return getattr(request.app.state, "clock", _now_utc)


def get_codec(request: Request) -> TokenCodec:
    return request.app.state.codec


async def get_rate_limiter(request: Request) -> RateLimiter:
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is not None:
        return limiter
    return RedisRateLimiter(await get_redis(request), clock=get_clock(request))


def get_audit_log(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    cfg=Depends(get_app_settings),
) -> AuditLog:
    return AuditLog(session_factory, timeout_seconds=cfg.AUDIT_WRITE_TIMEOUT_SECONDS)


def get_email_sender() -> EmailSender:
    return email_service.send_email


def get_verification_service(
    db: AsyncSession = Depends(get_db),
    codec: TokenCodec = Depends(get_codec),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    audit: AuditLog = Depends(get_audit_log),
    send_email: EmailSender = Depends(get_email_sender),
    clock=Depends(get_clock),
    cfg=Depends(get_app_settings),
) -> VerificationService:
    return VerificationService(
        db,
        codec=codec,
        rate_limiter=rate_limiter,
        audit=audit,
        send_email=send_email,
        clock=clock,
        cfg=cfg,
    )


def get_identity_provider(request: Request) -> IdentityProvider:
    provider = getattr(request.app.state, "identity_provider", None)
    if provider is not None:
        return provider
    cfg = get_app_settings(request)
    return HttpIdentityProvider(
        cfg.IDENTITY_PROVIDER_URL,
        api_key=cfg.IDENTITY_PROVIDER_API_KEY,
        timeout=cfg.EXTERNAL_CALL_TIMEOUT_SECONDS,
    )


async def get_current_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    provider: IdentityProvider = Depends(get_identity_provider),
) -> Identity:
    if credentials is None or not credentials.credentials:
        raise CredentialError("missing_token")
    return await provider.get_user(credentials.credentials)


async def require_verified_identity(
    identity: Identity = Depends(get_current_identity),
    service: VerificationService = Depends(get_verification_service),
) -> Identity:
    status = await service.get_status(identity.id)
    if not status.is_verified:
        raise VerificationRequired(
            has_valid_token=status.has_valid_pending_token,
            token_expires_at=status.token_expires_at,
        )
    return identity


async def require_admin(identity: Identity = Depends(get_current_identity)) -> Identity:
    if not identity.is_admin:
        raise AccessDenied()
    return identity
