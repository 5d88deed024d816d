from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from checkin_sync.db.models import Note
from uuid import UUID

EDITABLE_FIELDS = ("content", "privacy", "tags")

async def insert_note(db: AsyncSession, *, couple_id: UUID, author_id: UUID, check_in_id: UUID | None,
                      content: str, privacy: str, tags: list[str], category_id: str | None) -> Note:
    n = Note(
        couple_id=couple_id,
        author_id=author_id,
        check_in_id=check_in_id,
        content=content,
        privacy=privacy,
        tags=list(tags),
        category_id=category_id,
    )
    db.add(n)
    await db.flush(); await db.refresh(n)
    return n

async def get_couple_note(db: AsyncSession, note_id: UUID, couple_id: UUID) -> Note | None:
    q = select(Note).where(Note.id == note_id, Note.couple_id == couple_id)
    res = await db.execute(q)
    return res.scalar_one_or_none()

async def update_note(db: AsyncSession, note_id: UUID, couple_id: UUID, updates: dict) -> Note | None:
    n = await get_couple_note(db, note_id, couple_id)
    if n is None:
        return None
    for field in EDITABLE_FIELDS:
        if field in updates:
            setattr(n, field, updates[field])
    await db.flush(); await db.refresh(n)
    return n

async def delete_note(db: AsyncSession, note_id: UUID, couple_id: UUID) -> Note | None:
    n = await get_couple_note(db, note_id, couple_id)
    if n is not None:
        await db.delete(n)
    return n

async def list_check_in_notes(db: AsyncSession, check_in_id: UUID, couple_id: UUID) -> list[Note]:
    q = (
        select(Note)
        .where(Note.check_in_id == check_in_id, Note.couple_id == couple_id)
        .order_by(Note.created_at.asc())
    )
    res = await db.execute(q)
    return list(res.scalars())
