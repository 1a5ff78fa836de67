import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

import jwt

from verify_service.errors import (
    InvalidSignature,
    MalformedToken,
    ServerMisconfigured,
    TokenExpired,
)
from verify_service.models import Purpose

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

Clock = Callable[[], datetime]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def resolve_signing_secret(settings) -> str:
    """
    Pick the HMAC key for verification tokens.

    An explicit VERIFICATION_TOKEN_SECRET wins. Otherwise the key is derived
    from VERIFICATION_ROOT_SECRET so restarts keep validating issued links;
    rotating the root secret then invalidates every outstanding token.
    """
    if settings.VERIFICATION_TOKEN_SECRET:
        return settings.VERIFICATION_TOKEN_SECRET
    if settings.VERIFICATION_ROOT_SECRET:
        logger.warning(
            "VERIFICATION_TOKEN_SECRET not set, deriving signing key from "
            "VERIFICATION_ROOT_SECRET; pin an explicit secret in production"
        )
        return hashlib.sha256(settings.VERIFICATION_ROOT_SECRET.encode()).hexdigest()
    raise ServerMisconfigured(
        "No verification signing secret configured "
        "(set VERIFICATION_TOKEN_SECRET)"
    )


@dataclass(frozen=True)
class IssuedPayload:
    token: str
    payload: dict

    @property
    def issued_at(self) -> datetime:
        return datetime.fromtimestamp(self.payload["iat"], tz=timezone.utc)

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.payload["exp"], tz=timezone.utc)


class TokenCodec:
    """Signs and checks HS256 verification tokens against an injected clock."""

    def __init__(self, secret: str, clock: Clock = _now_utc):
        if not secret:
            raise ServerMisconfigured("Empty verification signing secret")
        self._secret = secret
        self._clock = clock

    def issue(
        self,
        subject_id: uuid.UUID,
        email: str,
        purpose: Purpose = Purpose.EMAIL_VERIFICATION,
        ttl_seconds: int = 3600,
    ) -> IssuedPayload:
        now = self._clock()
        expire = now + timedelta(seconds=ttl_seconds)
        payload = {
            "sub": str(subject_id),
            "email": email,
            "type": Purpose(purpose).value,
            "iat": int(now.timestamp()),
            "exp": int(expire.timestamp()),
            "jti": str(uuid.uuid4()),
        }
        token = jwt.encode(payload, self._secret, algorithm=ALGORITHM)
        return IssuedPayload(token=token, payload=payload)

    def verify(self, token: str, expected_purpose: Purpose | None = None) -> dict:
        if not isinstance(token, str) or token.count(".") != 2:
            raise MalformedToken()
        try:
            # time claims are checked below against our own clock
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={
                    "require": ["sub", "exp", "iat", "jti", "type"],
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                },
            )
        except jwt.InvalidSignatureError:
            raise InvalidSignature()
        except jwt.InvalidTokenError:
            raise MalformedToken()

        try:
            purpose = Purpose(payload["type"])
            subject_id = uuid.UUID(str(payload["sub"]))
            exp = int(payload["exp"])
        except (ValueError, TypeError):
            raise MalformedToken()
        if expected_purpose is not None and purpose != expected_purpose:
            raise MalformedToken("Wrong token type")

        if self._clock().timestamp() > exp:
            raise TokenExpired(subject_id=subject_id)
        return payload
