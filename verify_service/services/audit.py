"""
Append-only audit trail for verification events.

Each entry is written on its own session and committed immediately, so an
audit write never shares fate with the verification transaction. Writes are
bounded by AUDIT_WRITE_TIMEOUT_SECONDS; when the store fails or is slow the
entry goes to the process log instead and the caller carries on.
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from verify_service.models import AuditAction, AuditEntry
from verify_service.services.token_store import translate_store_errors

logger = logging.getLogger(__name__)


class AuditLog:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        timeout_seconds: float = 2.0,
    ):
        self._session_factory = session_factory
        self._timeout = timeout_seconds

    async def record(
        self,
        action: AuditAction,
        success: bool,
        subject_id: uuid.UUID | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
        related_token_id: uuid.UUID | None = None,
        context: dict | None = None,
    ) -> bool:
        entry = {
            "action": AuditAction(action).value,
            "success": success,
            "subject_id": str(subject_id) if subject_id else None,
            "ip": ip,
            "user_agent": (user_agent or "")[:255] or None,
            "error_code": error_code,
            "error_message": error_message,
            "related_token_id": str(related_token_id) if related_token_id else None,
            "context": context,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await asyncio.wait_for(self._write(entry), timeout=self._timeout)
        except (asyncio.TimeoutError, TimeoutError):
            logger.error(
                f"Audit write timed out after {self._timeout}s: "
                f"{json.dumps(entry, default=str)}"
            )
            return False
        except (SQLAlchemyError, OSError) as exc:
            logger.error(
                f"Audit write failed ({exc}): {json.dumps(entry, default=str)}"
            )
            return False
        return True

    async def _write(self, entry: dict) -> None:
        async with self._session_factory() as session:
            session.add(
                AuditEntry(
                    subject_id=uuid.UUID(entry["subject_id"])
                    if entry["subject_id"]
                    else None,
                    action=entry["action"],
                    success=entry["success"],
                    ip=entry["ip"],
                    user_agent=entry["user_agent"],
                    error_code=entry["error_code"],
                    error_message=entry["error_message"],
                    related_token_id=uuid.UUID(entry["related_token_id"])
                    if entry["related_token_id"]
                    else None,
                    context=entry["context"],
                )
            )
            await session.commit()

    async def list_for_subject(
        self,
        subject_id: uuid.UUID,
        failures_only: bool = True,
        limit: int = 50,
    ) -> list[AuditEntry]:
        stmt = select(AuditEntry).where(AuditEntry.subject_id == subject_id)
        if failures_only:
            stmt = stmt.where(AuditEntry.success.is_(False))
        stmt = stmt.order_by(AuditEntry.created_at.desc()).limit(limit)
        async with translate_store_errors("audit listing"):
            async with self._session_factory() as session:
                return list((await session.execute(stmt)).scalars().all())
