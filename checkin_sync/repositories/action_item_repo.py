from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from checkin_sync.db.models import ActionItem
from checkin_sync.utils.time import utcnow
from datetime import date
from uuid import UUID

EDITABLE_FIELDS = ("title", "description", "assigned_to", "due_date")

async def insert_action_item(db: AsyncSession, *, couple_id: UUID, check_in_id: UUID | None, title: str,
                             description: str | None, assigned_to: UUID | None, due_date: date | None) -> ActionItem:
    a = ActionItem(
        couple_id=couple_id,
        check_in_id=check_in_id,
        title=title,
        description=description,
        assigned_to=assigned_to,
        due_date=due_date,
        completed=False,
    )
    db.add(a)
    await db.flush(); await db.refresh(a)
    return a

async def get_couple_action_item(db: AsyncSession, action_item_id: UUID, couple_id: UUID) -> ActionItem | None:
    q = select(ActionItem).where(ActionItem.id == action_item_id, ActionItem.couple_id == couple_id)
    res = await db.execute(q)
    return res.scalar_one_or_none()

async def update_action_item(db: AsyncSession, action_item_id: UUID, couple_id: UUID, updates: dict) -> ActionItem | None:
    a = await get_couple_action_item(db, action_item_id, couple_id)
    if a is None:
        return None
    for field in EDITABLE_FIELDS:
        if field in updates:
            setattr(a, field, updates[field])
    await db.flush(); await db.refresh(a)
    return a

async def toggle_action_item(db: AsyncSession, action_item_id: UUID, couple_id: UUID, current_completed: bool) -> ActionItem | None:
    a = await get_couple_action_item(db, action_item_id, couple_id)
    if a is None:
        return None
    a.completed = not current_completed
    a.completed_at = utcnow() if a.completed else None
    await db.flush(); await db.refresh(a)
    return a

async def delete_action_item(db: AsyncSession, action_item_id: UUID, couple_id: UUID) -> ActionItem | None:
    a = await get_couple_action_item(db, action_item_id, couple_id)
    if a is not None:
        await db.delete(a)
    return a

async def list_check_in_action_items(db: AsyncSession, check_in_id: UUID, couple_id: UUID) -> list[ActionItem]:
    q = (
        select(ActionItem)
        .where(ActionItem.check_in_id == check_in_id, ActionItem.couple_id == couple_id)
        .order_by(ActionItem.created_at.asc())
    )
    res = await db.execute(q)
    return list(res.scalars())

async def count_check_in_action_items(db: AsyncSession, check_in_id: UUID) -> int:
    res = await db.execute(select(func.count()).select_from(ActionItem).where(ActionItem.check_in_id == check_in_id))
    return int(res.scalar_one())
