from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkin_sync.core.errors import CheckInError, PersistenceError, RecordNotFoundError
from checkin_sync.repositories import action_item_repo, checkin_repo, note_repo, profile_repo
from checkin_sync.schemas.checkin import ActionItem, CheckInRecord, Note
from checkin_sync.schemas.settings import SessionSettings
from checkin_sync.services.feed import ChangeEvent, InMemoryChangeFeed

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class GatewayResult(Generic[T]):
    data: Optional[T] = None
    error: Optional[CheckInError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class CheckInSummary:
    check_in: CheckInRecord
    recipients: list[str] = field(default_factory=list)
    partner_count: int = 0
    action_item_count: int = 0


class PersistenceGateway:
    """
    One backend operation per method, each in its own transaction.

    Returns the canonical server record (validated into a schema) or a
    PersistenceError; never raises for database failures. When a publisher is
    given, committed row changes are announced on it the way the PostgreSQL
    notify trigger would.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        publisher: Optional[InMemoryChangeFeed] = None,
        default_settings: Optional[SessionSettings] = None,
    ):
        self._session_factory = session_factory
        self._publisher = publisher
        self._default_settings = default_settings or SessionSettings()

    async def _run(self, operation: str, fn: Callable[[AsyncSession], Awaitable[T]]) -> GatewayResult[T]:
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    data = await fn(db)
        except SQLAlchemyError as exc:
            logger.error("%s failed: %s", operation, exc)
            return GatewayResult(error=PersistenceError(f"{operation} failed", cause=exc))
        return GatewayResult(data=data)

    def _publish(self, type_: str, table: str, record: Any = None, old_record: Any = None) -> None:
        if self._publisher is None:
            return
        self._publisher.publish(ChangeEvent(
            type=type_,
            table=table,
            record=record.model_dump(mode="json") if record is not None else None,
            old_record=old_record.model_dump(mode="json") if old_record is not None else None,
        ))

    # check-ins

    async def fetch_active_check_in(self, couple_id: UUID) -> GatewayResult[Optional[CheckInRecord]]:
        async def op(db: AsyncSession):
            row = await checkin_repo.fetch_active_check_in(db, couple_id)
            return CheckInRecord.model_validate(row) if row is not None else None
        return await self._run("fetch_active_check_in", op)

    async def fetch_check_in_items(self, check_in_id: UUID, couple_id: UUID) -> GatewayResult[tuple[list[Note], list[ActionItem]]]:
        async def op(db: AsyncSession):
            notes = await note_repo.list_check_in_notes(db, check_in_id, couple_id)
            items = await action_item_repo.list_check_in_action_items(db, check_in_id, couple_id)
            return (
                [Note.model_validate(n) for n in notes],
                [ActionItem.model_validate(a) for a in items],
            )
        return await self._run("fetch_check_in_items", op)

    async def insert_check_in(
        self,
        check_in_id: UUID,
        couple_id: UUID,
        started_at: datetime,
        categories: list[str],
        mood_before: Optional[int] = None,
    ) -> GatewayResult[CheckInRecord]:
        async def op(db: AsyncSession):
            row = await checkin_repo.insert_check_in(db, check_in_id, couple_id, started_at, categories, mood_before)
            return CheckInRecord.model_validate(row)
        result = await self._run("insert_check_in", op)
        if result.ok:
            self._publish("INSERT", "check_ins", result.data)
        return result

    async def update_check_in_status(
        self,
        check_in_id: UUID,
        status: str,
        *,
        mood_after: Optional[int] = None,
        reflection: Optional[str] = None,
    ) -> GatewayResult[CheckInRecord]:
        async def op(db: AsyncSession):
            row = await checkin_repo.update_check_in_status(db, check_in_id, status, mood_after, reflection)
            return CheckInRecord.model_validate(row) if row is not None else None
        result = await self._run("update_check_in_status", op)
        if result.ok and result.data is None:
            return GatewayResult(error=PersistenceError(f"Check-in {check_in_id} not found"))
        if result.ok:
            self._publish("UPDATE", "check_ins", result.data)
        return result

    async def update_check_in_categories(self, check_in_id: UUID, categories: list[str]) -> GatewayResult[CheckInRecord]:
        async def op(db: AsyncSession):
            row = await checkin_repo.update_check_in_categories(db, check_in_id, categories)
            return CheckInRecord.model_validate(row) if row is not None else None
        result = await self._run("update_check_in_categories", op)
        if result.ok and result.data is None:
            return GatewayResult(error=PersistenceError(f"Check-in {check_in_id} not found"))
        if result.ok:
            self._publish("UPDATE", "check_ins", result.data)
        return result

    # notes

    async def insert_note(
        self,
        *,
        couple_id: UUID,
        author_id: UUID,
        check_in_id: Optional[UUID],
        content: str,
        privacy: str = "draft",
        tags: Optional[list[str]] = None,
        category_id: Optional[str] = None,
    ) -> GatewayResult[Note]:
        async def op(db: AsyncSession):
            row = await note_repo.insert_note(
                db,
                couple_id=couple_id,
                author_id=author_id,
                check_in_id=check_in_id,
                content=content,
                privacy=privacy,
                tags=tags or [],
                category_id=category_id,
            )
            return Note.model_validate(row)
        result = await self._run("insert_note", op)
        if result.ok:
            self._publish("INSERT", "notes", result.data)
        return result

    async def update_note(self, note_id: UUID, couple_id: UUID, updates: dict[str, Any]) -> GatewayResult[Note]:
        async def op(db: AsyncSession):
            row = await note_repo.update_note(db, note_id, couple_id, updates)
            return Note.model_validate(row) if row is not None else None
        result = await self._run("update_note", op)
        if result.ok and result.data is None:
            return GatewayResult(error=RecordNotFoundError(f"Note {note_id} not found"))
        if result.ok:
            self._publish("UPDATE", "notes", result.data)
        return result

    async def delete_note(self, note_id: UUID, couple_id: UUID) -> GatewayResult[None]:
        async def op(db: AsyncSession):
            row = await note_repo.delete_note(db, note_id, couple_id)
            return Note.model_validate(row) if row is not None else None
        result = await self._run("delete_note", op)
        if not result.ok:
            return result
        if result.data is not None:
            self._publish("DELETE", "notes", old_record=result.data)
        return GatewayResult()

    # action items

    async def insert_action_item(
        self,
        *,
        couple_id: UUID,
        check_in_id: Optional[UUID],
        title: str,
        description: Optional[str] = None,
        assigned_to: Optional[UUID] = None,
        due_date: Optional[date] = None,
    ) -> GatewayResult[ActionItem]:
        async def op(db: AsyncSession):
            row = await action_item_repo.insert_action_item(
                db,
                couple_id=couple_id,
                check_in_id=check_in_id,
                title=title,
                description=description,
                assigned_to=assigned_to,
                due_date=due_date,
            )
            return ActionItem.model_validate(row)
        result = await self._run("insert_action_item", op)
        if result.ok:
            self._publish("INSERT", "action_items", result.data)
        return result

    async def update_action_item(self, action_item_id: UUID, couple_id: UUID, updates: dict[str, Any]) -> GatewayResult[ActionItem]:
        async def op(db: AsyncSession):
            row = await action_item_repo.update_action_item(db, action_item_id, couple_id, updates)
            return ActionItem.model_validate(row) if row is not None else None
        result = await self._run("update_action_item", op)
        if result.ok and result.data is None:
            return GatewayResult(error=RecordNotFoundError(f"Action item {action_item_id} not found"))
        if result.ok:
            self._publish("UPDATE", "action_items", result.data)
        return result

    async def toggle_action_item(self, action_item_id: UUID, couple_id: UUID, current_completed: bool) -> GatewayResult[ActionItem]:
        async def op(db: AsyncSession):
            row = await action_item_repo.toggle_action_item(db, action_item_id, couple_id, current_completed)
            return ActionItem.model_validate(row) if row is not None else None
        result = await self._run("toggle_action_item", op)
        if result.ok and result.data is None:
            return GatewayResult(error=RecordNotFoundError(f"Action item {action_item_id} not found"))
        if result.ok:
            self._publish("UPDATE", "action_items", result.data)
        return result

    async def delete_action_item(self, action_item_id: UUID, couple_id: UUID) -> GatewayResult[None]:
        async def op(db: AsyncSession):
            row = await action_item_repo.delete_action_item(db, action_item_id, couple_id)
            return ActionItem.model_validate(row) if row is not None else None
        result = await self._run("delete_action_item", op)
        if not result.ok:
            return result
        if result.data is not None:
            self._publish("DELETE", "action_items", old_record=result.data)
        return GatewayResult()

    # couple lookups

    async def fetch_session_settings(self, couple_id: UUID) -> SessionSettings:
        """
        Couple settings, or the configured defaults when absent or unreadable.
        """
        async def op(db: AsyncSession):
            row = await profile_repo.get_session_settings(db, couple_id)
            return SessionSettings.model_validate(row) if row is not None else None
        result = await self._run("fetch_session_settings", op)
        if not result.ok:
            logger.error("Failed to load session settings for couple %s, using defaults", couple_id)
        return result.data or self._default_settings

    async def fetch_couple_id(self, user_id: UUID) -> GatewayResult[Optional[UUID]]:
        return await self._run("fetch_couple_id", lambda db: profile_repo.get_couple_id(db, user_id))

    async def fetch_summary(self, check_in_id: UUID) -> GatewayResult[Optional[CheckInSummary]]:
        async def op(db: AsyncSession):
            row = await checkin_repo.get_check_in(db, check_in_id)
            if row is None:
                return None
            profiles = await profile_repo.list_couple_profiles(db, row.couple_id)
            return CheckInSummary(
                check_in=CheckInRecord.model_validate(row),
                recipients=[p.email for p in profiles if p.email],
                partner_count=len(profiles),
                action_item_count=await action_item_repo.count_check_in_action_items(db, check_in_id),
            )
        return await self._run("fetch_summary", op)
