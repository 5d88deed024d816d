from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from checkin_sync.db.models import Profile, SessionSettings
from uuid import UUID

async def get_couple_id(db: AsyncSession, user_id: UUID) -> UUID | None:
    res = await db.execute(select(Profile.couple_id).where(Profile.id == user_id))
    return res.scalar_one_or_none()

async def list_couple_profiles(db: AsyncSession, couple_id: UUID) -> list[Profile]:
    res = await db.execute(select(Profile).where(Profile.couple_id == couple_id))
    return list(res.scalars())

async def get_session_settings(db: AsyncSession, couple_id: UUID) -> SessionSettings | None:
    res = await db.execute(select(SessionSettings).where(SessionSettings.couple_id == couple_id))
    return res.scalar_one_or_none()
