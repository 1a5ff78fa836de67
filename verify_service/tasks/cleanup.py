"""
Periodic cleanup of verification tokens nobody redeemed.
"""

import asyncio
import logging
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from verify_service.celery_app import app
from verify_service.database import create_worker_session
from verify_service.services.token_store import TokenStore

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


async def sweep_expired_tokens(
    session_factory: async_sessionmaker[AsyncSession],
    now: datetime | None = None,
) -> int:
    """
    Delete tokens whose expires_at has passed and that were never used.

    Redeemed and superseded rows are kept; they carry used_at and back the
    audit trail's related_token_id references.
    """
    now = now or _now_utc()
    async with session_factory() as session:
        deleted = await TokenStore(session).sweep_expired(older_than=now)
        await session.commit()

    if deleted:
        logger.info(f"Swept {deleted} expired verification tokens")
    else:
        logger.info("No expired verification tokens found")
    return deleted


@app.task(name="verify_service.tasks.cleanup.sweep_expired_verification_tokens")
def sweep_expired_verification_tokens():
    async def _sweep():
        # Create fresh async session for this task
        WorkerSession, engine = create_worker_session()
        try:
            return await sweep_expired_tokens(WorkerSession)
        finally:
            await engine.dispose()

    return asyncio.run(_sweep())
