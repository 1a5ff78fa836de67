"""
Persistence for verification token rows.

The store never commits: the verification service owns transaction
boundaries. Storage failures surface as PersistenceError and statement
timeouts as Timeout.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from verify_service.errors import PersistenceError, Timeout
from verify_service.models import Purpose, VerificationToken

logger = logging.getLogger(__name__)


def _is_timeout(exc: BaseException) -> bool:
    orig = getattr(exc, "orig", None)
    for candidate in (exc, orig, getattr(orig, "__cause__", None)):
        if isinstance(candidate, (TimeoutError, asyncio.TimeoutError)):
            return True
        if candidate is not None and "timeout" in type(candidate).__name__.lower():
            return True
    return False


@asynccontextmanager
async def translate_store_errors(operation: str):
    try:
        yield
    except (TimeoutError, asyncio.TimeoutError) as exc:
        logger.error(f"{operation} timed out")
        raise Timeout(f"{operation} timed out") from exc
    except SQLAlchemyError as exc:
        if _is_timeout(exc):
            logger.error(f"{operation} timed out: {exc}")
            raise Timeout(f"{operation} timed out") from exc
        logger.error(f"{operation} failed: {exc}")
        raise PersistenceError(f"{operation} failed") from exc


class TokenStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def insert(self, token: VerificationToken) -> uuid.UUID:
        async with translate_store_errors("token insert"):
            if token.id is None:
                token.id = uuid.uuid4()
            self.session.add(token)
            await self.session.flush()
        return token.id

    async def invalidate_prior_unused(
        self, subject_id: uuid.UUID, purpose: Purpose, now: datetime
    ) -> int:
        """Supersede every live token of subject+purpose. Returns rows touched."""
        stmt = (
            update(VerificationToken)
            .where(
                VerificationToken.subject_id == subject_id,
                VerificationToken.purpose == Purpose(purpose).value,
                VerificationToken.used_at.is_(None),
                VerificationToken.expires_at > now,
            )
            .values(used_at=now, used_reason="superseded")
            .execution_options(synchronize_session=False)
        )
        async with translate_store_errors("token invalidation"):
            result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def find_by_hash(self, token_hash: str) -> VerificationToken | None:
        stmt = (
            select(VerificationToken)
            .where(VerificationToken.token_hash == token_hash)
            .execution_options(populate_existing=True)
        )
        async with translate_store_errors("token lookup"):
            return (await self.session.execute(stmt)).scalar_one_or_none()

    async def find_latest_pending(
        self, subject_id: uuid.UUID, purpose: Purpose, now: datetime
    ) -> VerificationToken | None:
        stmt = (
            select(VerificationToken)
            .where(
                VerificationToken.subject_id == subject_id,
                VerificationToken.purpose == Purpose(purpose).value,
                VerificationToken.used_at.is_(None),
                VerificationToken.expires_at > now,
            )
            .order_by(VerificationToken.issued_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        async with translate_store_errors("pending token lookup"):
            return (await self.session.execute(stmt)).scalar_one_or_none()

    async def record_attempt(self, token_id: uuid.UUID) -> int | None:
        """
        Count one redemption attempt against an unused token.

        Returns the new attempt count, or None when the token was consumed
        (or deleted) in the meantime.
        """
        stmt = (
            update(VerificationToken)
            .where(
                VerificationToken.id == token_id,
                VerificationToken.used_at.is_(None),
            )
            .values(attempts=VerificationToken.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        async with translate_store_errors("attempt increment"):
            result = await self.session.execute(stmt)
            if result.rowcount != 1:
                return None
            attempts = await self.session.scalar(
                select(VerificationToken.attempts).where(
                    VerificationToken.id == token_id
                )
            )
        return attempts

    async def mark_used_atomically(
        self,
        token_id: uuid.UUID,
        at: datetime,
        expected_used_at: datetime | None = None,
        reason: str = "redeemed",
    ) -> bool:
        """Compare-and-set on used_at. True iff this call consumed the token."""
        if expected_used_at is None:
            guard = VerificationToken.used_at.is_(None)
        else:
            guard = VerificationToken.used_at == expected_used_at
        stmt = (
            update(VerificationToken)
            .where(VerificationToken.id == token_id, guard)
            .values(used_at=at, used_reason=reason)
            .execution_options(synchronize_session=False)
        )
        async with translate_store_errors("token consume"):
            result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def sweep_expired(self, older_than: datetime) -> int:
        stmt = (
            delete(VerificationToken)
            .where(
                VerificationToken.expires_at <= older_than,
                VerificationToken.used_at.is_(None),
            )
            .execution_options(synchronize_session=False)
        )
        async with translate_store_errors("token sweep"):
            result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def count_pending(self, now: datetime) -> int:
        stmt = select(func.count(VerificationToken.id)).where(
            VerificationToken.used_at.is_(None),
            VerificationToken.expires_at > now,
        )
        async with translate_store_errors("pending token count"):
            return (await self.session.scalar(stmt)) or 0
