from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from checkin_sync.db.models import CheckIn
from checkin_sync.utils.time import utcnow
from datetime import datetime
from uuid import UUID

TERMINAL_STATUSES = ("completed", "abandoned")

async def fetch_active_check_in(db: AsyncSession, couple_id: UUID) -> CheckIn | None:
    q = (
        select(CheckIn)
        .where(CheckIn.couple_id == couple_id, CheckIn.status == "in-progress")
        .order_by(CheckIn.started_at.desc())
        .limit(1)
    )
    res = await db.execute(q)
    return res.scalar_one_or_none()

async def get_check_in(db: AsyncSession, check_in_id: UUID) -> CheckIn | None:
    return await db.get(CheckIn, check_in_id)

async def insert_check_in(db: AsyncSession, check_in_id: UUID, couple_id: UUID, started_at: datetime,
                          categories: list[str], mood_before: int | None = None) -> CheckIn:
    ci = CheckIn(
        id=check_in_id,
        couple_id=couple_id,
        started_at=started_at,
        status="in-progress",
        categories=list(categories),
        mood_before=mood_before,
    )
    db.add(ci)
    await db.flush(); await db.refresh(ci)
    return ci

async def update_check_in_status(db: AsyncSession, check_in_id: UUID, status: str,
                                 mood_after: int | None = None, reflection: str | None = None) -> CheckIn | None:
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"Invalid terminal status: {status}")
    values = {"status": status, "completed_at": utcnow()}
    if mood_after is not None:
        values["mood_after"] = mood_after
    if reflection is not None:
        values["reflection"] = reflection
    await db.execute(update(CheckIn).where(CheckIn.id == check_in_id).values(**values))
    return await _reload(db, check_in_id)

async def update_check_in_categories(db: AsyncSession, check_in_id: UUID, categories: list[str]) -> CheckIn | None:
    await db.execute(update(CheckIn).where(CheckIn.id == check_in_id).values(categories=list(categories)))
    return await _reload(db, check_in_id)

async def _reload(db: AsyncSession, check_in_id: UUID) -> CheckIn | None:
    ci = await db.get(CheckIn, check_in_id)
    if ci is not None:
        await db.refresh(ci)
    return ci
