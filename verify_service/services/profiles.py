import uuid
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from verify_service.models import Profile
from verify_service.services.token_store import translate_store_errors


class ProfileStore:
    """Identity verification fields. Like TokenStore it never commits."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, subject_id: uuid.UUID) -> Profile | None:
        stmt = (
            select(Profile)
            .where(Profile.id == subject_id)
            .execution_options(populate_existing=True)
        )
        async with translate_store_errors("profile lookup"):
            return (await self.session.execute(stmt)).scalar_one_or_none()

    async def get_by_email(self, email: str) -> Profile | None:
        stmt = (
            select(Profile)
            .where(func.lower(Profile.email) == email.strip().lower())
            .order_by(Profile.created_at)
            .limit(1)
        )
        async with translate_store_errors("profile lookup"):
            return (await self.session.execute(stmt)).scalar_one_or_none()

    async def get_or_create(self, subject_id: uuid.UUID, email: str) -> Profile:
        profile = await self.get(subject_id)
        async with translate_store_errors("profile upsert"):
            if profile is None:
                profile = Profile(id=subject_id, email=email.lower())
                self.session.add(profile)
                await self.session.flush()
            elif profile.email != email.lower():
                profile.email = email.lower()
                await self.session.flush()
        return profile

    async def mark_verified(
        self,
        subject_id: uuid.UUID,
        at: datetime,
        method: str,
        token_id: uuid.UUID,
    ) -> bool:
        """Set verified, verified_at and verification_method in one statement."""
        stmt = (
            update(Profile)
            .where(Profile.id == subject_id, Profile.verified.is_(False))
            .values(
                verified=True,
                verified_at=at,
                verification_method=method,
                last_verification_token_id=token_id,
                updated_at=at,
            )
            .execution_options(synchronize_session=False)
        )
        async with translate_store_errors("profile verification"):
            result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def count(self, verified: bool | None = None) -> int:
        stmt = select(func.count(Profile.id))
        if verified is not None:
            stmt = stmt.where(Profile.verified.is_(verified))
        async with translate_store_errors("profile count"):
            return (await self.session.scalar(stmt)) or 0
