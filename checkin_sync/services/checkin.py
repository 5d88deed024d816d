"""
Collaborative check-in session store.

Local state only ever mirrors what the backend has acknowledged: every
mutation of a server row goes through the gateway first and the canonical
record it returns is what lands in `session` (write-through, never
optimistic). Partner activity arrives through the change feed and is applied
by the same reconciliation helpers, idempotently by row id, so a client that
also sees its own writes echoed back converges to the same state.

Step position and category progress are per client and never persisted.
"""
from __future__ import annotations

import logging
import uuid
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar
from uuid import UUID

from pydantic import BaseModel, ValidationError

from checkin_sync.core.errors import (
    CheckInError,
    CheckInValidationError,
    NoActiveCheckInError,
    PersistenceError,
    RecordNotFoundError,
    SessionConflictError,
)
from checkin_sync.schemas.checkin import (
    ActionItem,
    CategoryProgress,
    CheckInRecord,
    CheckInSession,
    CheckInStep,
    Note,
)
from checkin_sync.services.feed import ChangeFeed, ChangeFeedBridge
from checkin_sync.services.gateway import GatewayResult, PersistenceGateway
from checkin_sync.utils.time import utcnow

logger = logging.getLogger(__name__)

STEPS: tuple[CheckInStep, ...] = (
    "warm-up",
    "category-selection",
    "category-discussion",
    "reflection",
    "action-items",
    "completion",
)
DISCUSSION_STEP: CheckInStep = "category-discussion"
TERMINAL_STATUSES = ("completed", "abandoned")
MOOD_RANGE = range(1, 6)
NOTE_REQUIRED_FIELDS = ("content", "privacy", "tags")

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)
StateListener = Callable[[Optional[CheckInSession]], None]


def step_index(step: str) -> int:
    """Position of a step in the fixed sequence, -1 when unknown."""
    try:
        return STEPS.index(step)  # type: ignore[arg-type]
    except ValueError:
        return -1


def _valid_mood(value: Optional[int]) -> bool:
    return value is None or value in MOOD_RANGE


def _dedupe(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))


class CheckInStore:
    def __init__(
        self,
        *,
        couple_id: UUID | str,
        user_id: UUID | str,
        gateway: PersistenceGateway,
        feed: Optional[ChangeFeed] = None,
        notifier: Optional[Any] = None,
        id_factory: Callable[[], UUID] = uuid.uuid4,
        now: Callable[[], datetime] = utcnow,
    ):
        self.couple_id = UUID(str(couple_id))
        self.user_id = UUID(str(user_id))
        self.session: Optional[CheckInSession] = None
        self.is_loading = False
        self.error: Optional[CheckInError] = None
        self._gateway = gateway
        self._notifier = notifier
        self._id_factory = id_factory
        self._now = now
        self._listeners: list[StateListener] = []
        self._bridges: dict[str, ChangeFeedBridge] = {}
        if feed is not None:
            self._bridges = {
                "check_ins": ChangeFeedBridge(
                    feed,
                    on_insert=self._on_remote_check_in_insert,
                    on_update=self._on_remote_check_in_update,
                ),
                "notes": ChangeFeedBridge(
                    feed,
                    on_insert=self._on_remote_note_upsert,
                    on_update=self._on_remote_note_upsert,
                    on_delete=self._on_remote_note_delete,
                ),
                "action_items": ChangeFeedBridge(
                    feed,
                    on_insert=self._on_remote_action_item_upsert,
                    on_update=self._on_remote_action_item_upsert,
                    on_delete=self._on_remote_action_item_delete,
                ),
            }

    # lifecycle

    async def open(self) -> None:
        """Subscribe to the couple's change feed, then restore any active check-in."""
        for table, bridge in self._bridges.items():
            await bridge.bind(table, self.couple_id)
        await self.restore()

    async def close(self) -> None:
        for bridge in self._bridges.values():
            await bridge.close()

    async def resubscribe(self) -> None:
        """Tear down and re-establish every change-feed subscription, then resync."""
        for table, bridge in self._bridges.items():
            await bridge.close()
            await bridge.bind(table, self.couple_id)
        await self.resync()

    @property
    def is_subscribed(self) -> bool:
        return all(bridge.is_subscribed for bridge in self._bridges.values())

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def restore(self) -> GatewayResult[Optional[CheckInSession]]:
        """
        Rebuild the local session from the couple's in-progress check-in.
        A restored session resumes at the discussion step.
        """
        self.is_loading = True
        result = await self._call("fetch_active_check_in", self._gateway.fetch_active_check_in, self.couple_id)
        if not result.ok:
            self.error = result.error
            self.is_loading = False
            self._set_session(None)
            return GatewayResult(error=result.error)

        record = result.data
        if record is None:
            self.is_loading = False
            self._set_session(None)
            return GatewayResult()

        items = await self._call("fetch_check_in_items", self._gateway.fetch_check_in_items, record.id, self.couple_id)
        notes, action_items = items.data if items.ok and items.data else ([], [])
        if not items.ok:
            logger.warning("Restored check-in %s without its notes and action items: %s", record.id, items.error)

        session = self._new_session(
            record,
            current_step=DISCUSSION_STEP,
            completed_steps=list(STEPS[:step_index(DISCUSSION_STEP)]),
            notes=notes,
            action_items=action_items,
        )
        self.error = None
        self.is_loading = False
        self._set_session(session)
        return GatewayResult(data=session)

    async def resync(self) -> None:
        """
        Catch up on row changes missed while the change feed was down. Local
        step position survives when the same check-in is still in progress.
        """
        session = self.session
        if session is None:
            await self.restore()
            return
        result = await self._call("fetch_active_check_in", self._gateway.fetch_active_check_in, self.couple_id)
        if not result.ok:
            self.error = result.error
            logger.warning("Could not resync check-in %s: %s", session.id, result.error)
            return
        record = result.data
        if record is None or record.id != session.id:
            logger.info("Check-in %s ended while the change feed was down", session.id)
            self._set_session(None)
            if record is not None:
                await self.restore()
            return
        self._apply_record(record)
        items = await self._call("fetch_check_in_items", self._gateway.fetch_check_in_items, record.id, self.couple_id)
        if items.ok and items.data and self.session is not None:
            notes, action_items = items.data
            self.session.draft_notes = list(notes)
            self.session.action_items = list(action_items)
            self._touch()

    # session lifecycle

    async def start_check_in(self, category_ids: list[str], mood_before: Optional[int] = None) -> GatewayResult[CheckInSession]:
        if not category_ids:
            return self._reject(CheckInValidationError("At least one category is required"))
        if not _valid_mood(mood_before):
            return self._reject(CheckInValidationError("Mood must be between 1 and 5"))
        if self.session is not None:
            return self._reject(SessionConflictError("A check-in is already in progress"))

        categories = _dedupe(list(category_ids))
        result = await self._call(
            "insert_check_in",
            self._gateway.insert_check_in,
            self._id_factory(),
            self.couple_id,
            self._now(),
            categories,
            mood_before,
        )
        if not result.ok:
            self.error = result.error
            logger.error("Could not start check-in for couple %s: %s", self.couple_id, result.error)
            return GatewayResult(error=result.error)

        session = self._new_session(result.data, current_step=STEPS[0])
        self.error = None
        self._set_session(session)
        logger.info("Check-in %s started with %d categories", session.id, len(categories))
        return GatewayResult(data=session)

    async def complete_check_in(self, mood_after: Optional[int] = None, reflection: Optional[str] = None) -> GatewayResult[CheckInRecord]:
        """
        Mark the check-in completed. The local session is cleared even when the
        status update fails.
        """
        if self.session is None:
            return GatewayResult()
        if not _valid_mood(mood_after):
            return self._reject(CheckInValidationError("Mood must be between 1 and 5"))
        check_in_id = self.session.id
        result = await self._call(
            "update_check_in_status",
            self._gateway.update_check_in_status,
            check_in_id,
            "completed",
            mood_after=mood_after,
            reflection=reflection,
        )
        self._finish(check_in_id, result)
        if result.ok and self._notifier is not None:
            self._notifier.dispatch(check_in_id)
        return result

    async def abandon_check_in(self) -> GatewayResult[CheckInRecord]:
        if self.session is None:
            return GatewayResult()
        check_in_id = self.session.id
        result = await self._call("update_check_in_status", self._gateway.update_check_in_status, check_in_id, "abandoned")
        self._finish(check_in_id, result)
        return result

    def _finish(self, check_in_id: UUID, result: GatewayResult) -> None:
        if not result.ok:
            self.error = result.error
            logger.error("Status update for check-in %s failed, clearing local session anyway: %s", check_in_id, result.error)
        self._set_session(None)

    # steps

    def complete_step(self, step: CheckInStep) -> bool:
        session = self.session
        index = step_index(step)
        if session is None or index < 0:
            return False
        if step not in session.completed_steps:
            session.completed_steps.append(step)
        if index + 1 < len(STEPS):
            session.current_step = STEPS[index + 1]
        self._touch()
        return True

    def go_to_step(self, step: CheckInStep) -> bool:
        if self.session is None or step_index(step) < 0:
            return False
        self.session.current_step = step
        self._touch()
        return True

    def can_go_to_step(self, step: CheckInStep) -> bool:
        if self.session is None or step_index(step) < 0:
            return False
        return step_index(step) <= step_index(self.session.current_step) + 1

    def is_step_completed(self, step: CheckInStep) -> bool:
        return self.session is not None and step in self.session.completed_steps

    @property
    def progress_percentage(self) -> int:
        if self.session is None:
            return 0
        return round(len(self.session.completed_steps) / len(STEPS) * 100)

    # categories

    async def select_categories(self, category_ids: list[str]) -> GatewayResult[CheckInSession]:
        session = self.session
        if session is None:
            return self._reject(NoActiveCheckInError("No active check-in"))
        if not category_ids:
            return self._reject(CheckInValidationError("At least one category is required"))
        if step_index(session.current_step) >= step_index(DISCUSSION_STEP):
            return self._reject(CheckInValidationError("Categories are locked once discussion begins"))

        result = await self._call(
            "update_check_in_categories",
            self._gateway.update_check_in_categories,
            session.id,
            _dedupe(list(category_ids)),
        )
        if not result.ok:
            return GatewayResult(error=result.error)
        self._apply_record(result.data)
        return GatewayResult(data=self.session)

    def update_category_progress(self, category_id: str, **patch: Any) -> bool:
        session = self.session
        if session is None:
            return False
        if category_id not in session.selected_categories:
            logger.warning("Ignoring progress for unselected category %s", category_id)
            return False
        current = session.category_progress.get(category_id) or CategoryProgress(category_id=category_id)
        updates = {k: v for k, v in patch.items() if v is not None and k in CategoryProgress.model_fields}
        updates["last_updated"] = self._now()
        session.category_progress[category_id] = current.model_copy(update=updates)
        self._touch()
        return True

    def current_category_progress(self) -> Optional[CategoryProgress]:
        if self.session is None:
            return None
        for category_id in self.session.selected_categories:
            progress = self.session.category_progress.get(category_id)
            if progress is None or not progress.is_completed:
                return progress or CategoryProgress(category_id=category_id)
        return None

    # draft notes

    async def add_draft_note(
        self,
        content: str,
        *,
        privacy: str = "draft",
        tags: Optional[list[str]] = None,
        category_id: Optional[str] = None,
    ) -> GatewayResult[Note]:
        if self.session is None:
            return self._reject(NoActiveCheckInError("No active check-in"))
        result = await self._call(
            "insert_note",
            self._gateway.insert_note,
            couple_id=self.couple_id,
            author_id=self.user_id,
            check_in_id=self.session.id,
            content=content,
            privacy=privacy,
            tags=list(tags or []),
            category_id=category_id,
        )
        if result.ok:
            self._upsert_note(result.data)
        return result

    async def update_draft_note(self, note_id: UUID, **updates: Any) -> GatewayResult[Note]:
        if self.session is None:
            return self._reject(NoActiveCheckInError("No active check-in"))
        if self._find_note(note_id) is None:
            return self._reject(RecordNotFoundError(f"Unknown note {note_id}"))
        missing = [f for f in NOTE_REQUIRED_FIELDS if f in updates and updates[f] is None]
        if missing:
            return self._reject(CheckInValidationError(f"Note {', '.join(missing)} cannot be cleared"))
        result = await self._call("update_note", self._gateway.update_note, note_id, self.couple_id, updates)
        if result.ok:
            self._upsert_note(result.data)
        return result

    async def remove_draft_note(self, note_id: UUID) -> GatewayResult[None]:
        if self.session is None:
            return self._reject(NoActiveCheckInError("No active check-in"))
        if self._find_note(note_id) is None:
            return self._reject(RecordNotFoundError(f"Unknown note {note_id}"))
        result = await self._call("delete_note", self._gateway.delete_note, note_id, self.couple_id)
        if result.ok:
            self._drop_note(note_id)
        return result

    # action items

    async def add_action_item(
        self,
        title: str,
        *,
        description: Optional[str] = None,
        assigned_to: Optional[UUID] = None,
        due_date: Optional[date] = None,
    ) -> GatewayResult[ActionItem]:
        if self.session is None:
            return self._reject(NoActiveCheckInError("No active check-in"))
        if not title or not title.strip():
            return self._reject(CheckInValidationError("Action item title is required"))
        result = await self._call(
            "insert_action_item",
            self._gateway.insert_action_item,
            couple_id=self.couple_id,
            check_in_id=self.session.id,
            title=title.strip(),
            description=description,
            assigned_to=assigned_to,
            due_date=due_date,
        )
        if result.ok:
            self._upsert_action_item(result.data)
        return result

    async def update_action_item(self, action_item_id: UUID, **updates: Any) -> GatewayResult[ActionItem]:
        if self.session is None:
            return self._reject(NoActiveCheckInError("No active check-in"))
        if self._find_action_item(action_item_id) is None:
            return self._reject(RecordNotFoundError(f"Unknown action item {action_item_id}"))
        if "title" in updates:
            title = updates["title"]
            if not title or not title.strip():
                return self._reject(CheckInValidationError("Action item title is required"))
            updates["title"] = title.strip()
        result = await self._call(
            "update_action_item", self._gateway.update_action_item, action_item_id, self.couple_id, updates,
        )
        if result.ok:
            self._upsert_action_item(result.data)
        return result

    async def remove_action_item(self, action_item_id: UUID) -> GatewayResult[None]:
        if self.session is None:
            return self._reject(NoActiveCheckInError("No active check-in"))
        if self._find_action_item(action_item_id) is None:
            return self._reject(RecordNotFoundError(f"Unknown action item {action_item_id}"))
        result = await self._call("delete_action_item", self._gateway.delete_action_item, action_item_id, self.couple_id)
        if result.ok:
            self._drop_action_item(action_item_id)
        return result

    async def toggle_action_item(self, action_item_id: UUID) -> GatewayResult[ActionItem]:
        if self.session is None:
            return self._reject(NoActiveCheckInError("No active check-in"))
        item = self._find_action_item(action_item_id)
        if item is None:
            return self._reject(RecordNotFoundError(f"Unknown action item {action_item_id}"))
        result = await self._call(
            "toggle_action_item", self._gateway.toggle_action_item, action_item_id, self.couple_id, item.completed,
        )
        if result.ok:
            self._upsert_action_item(result.data)
        return result

    # change feed reconciliation

    def _on_remote_check_in_insert(self, row: dict) -> None:
        record = self._parse(CheckInRecord, row)
        if record is None or self.session is not None:
            return
        if record.status == "in-progress" and record.couple_id == self.couple_id:
            logger.info("Joining check-in %s started by partner", record.id)
            self._set_session(self._new_session(record, current_step=STEPS[0]))

    def _on_remote_check_in_update(self, row: dict) -> None:
        record = self._parse(CheckInRecord, row)
        if record is None or self.session is None or record.id != self.session.id:
            return
        if record.status in TERMINAL_STATUSES:
            logger.info("Check-in %s is now %s", record.id, record.status)
            self._set_session(None)
            return
        self._apply_record(record)

    def _on_remote_note_upsert(self, row: dict) -> None:
        note = self._parse(Note, row)
        if note is not None:
            self._upsert_note(note)

    def _on_remote_note_delete(self, row: dict) -> None:
        note_id = self._row_id(row)
        if note_id is not None:
            self._drop_note(note_id)

    def _on_remote_action_item_upsert(self, row: dict) -> None:
        item = self._parse(ActionItem, row)
        if item is not None:
            self._upsert_action_item(item)

    def _on_remote_action_item_delete(self, row: dict) -> None:
        item_id = self._row_id(row)
        if item_id is not None:
            self._drop_action_item(item_id)

    # state helpers

    def _apply_record(self, record: CheckInRecord) -> None:
        """Last write wins: row-level fields are replaced wholesale."""
        session = self.session
        if session is None or record.id != session.id:
            return
        session.status = record.status
        session.started_at = record.started_at
        session.completed_at = record.completed_at
        session.mood_before = record.mood_before
        session.mood_after = record.mood_after
        session.reflection = record.reflection
        if record.categories != session.selected_categories:
            session.selected_categories = list(record.categories)
            session.category_progress = {
                c: session.category_progress.get(c) or CategoryProgress(category_id=c, last_updated=self._now())
                for c in record.categories
            }
        self._touch()

    def _find_note(self, note_id: UUID) -> Optional[Note]:
        return next((n for n in self.session.draft_notes if n.id == note_id), None)

    def _find_action_item(self, item_id: UUID) -> Optional[ActionItem]:
        return next((a for a in self.session.action_items if a.id == item_id), None)

    def _upsert_note(self, note: Note) -> None:
        session = self.session
        if session is None or note.check_in_id != session.id:
            return
        for i, existing in enumerate(session.draft_notes):
            if existing.id == note.id:
                session.draft_notes[i] = note
                break
        else:
            session.draft_notes.append(note)
        self._touch()

    def _drop_note(self, note_id: UUID) -> None:
        session = self.session
        if session is None:
            return
        remaining = [n for n in session.draft_notes if n.id != note_id]
        if len(remaining) != len(session.draft_notes):
            session.draft_notes = remaining
            self._touch()

    def _upsert_action_item(self, item: ActionItem) -> None:
        session = self.session
        if session is None or item.check_in_id != session.id:
            return
        for i, existing in enumerate(session.action_items):
            if existing.id == item.id:
                session.action_items[i] = item
                break
        else:
            session.action_items.append(item)
        self._touch()

    def _drop_action_item(self, item_id: UUID) -> None:
        session = self.session
        if session is None:
            return
        remaining = [a for a in session.action_items if a.id != item_id]
        if len(remaining) != len(session.action_items):
            session.action_items = remaining
            self._touch()

    def _new_session(
        self,
        record: CheckInRecord,
        *,
        current_step: CheckInStep,
        completed_steps: Optional[list[CheckInStep]] = None,
        notes: Optional[list[Note]] = None,
        action_items: Optional[list[ActionItem]] = None,
    ) -> CheckInSession:
        return CheckInSession(
            id=record.id,
            couple_id=record.couple_id,
            status=record.status,
            started_at=record.started_at,
            completed_at=record.completed_at,
            selected_categories=list(record.categories),
            category_progress={
                c: CategoryProgress(category_id=c, last_updated=record.started_at) for c in record.categories
            },
            current_step=current_step,
            completed_steps=list(completed_steps or []),
            draft_notes=list(notes or []),
            action_items=list(action_items or []),
            mood_before=record.mood_before,
            mood_after=record.mood_after,
            reflection=record.reflection,
            last_saved_at=self._now(),
        )

    def _set_session(self, session: Optional[CheckInSession]) -> None:
        self.session = session
        self._notify()

    def _touch(self) -> None:
        if self.session is not None:
            self.session.last_saved_at = self._now()
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.session)
            except Exception:
                logger.exception("Check-in state listener failed")

    def _reject(self, error: CheckInError) -> GatewayResult:
        logger.info("Rejected check-in operation: %s", error)
        return GatewayResult(error=error)

    async def _call(self, operation: str, fn: Callable[..., Awaitable[GatewayResult[T]]], *args: Any, **kwargs: Any) -> GatewayResult[T]:
        try:
            return await fn(*args, **kwargs)
        except Exception as exc:
            logger.exception("%s raised", operation)
            return GatewayResult(error=PersistenceError(f"{operation} failed", cause=exc))

    @staticmethod
    def _parse(model: type[M], row: dict) -> Optional[M]:
        try:
            return model.model_validate(row)
        except ValidationError as exc:
            logger.warning("Ignoring malformed %s change: %s", model.__name__, exc)
            return None

    @staticmethod
    def _row_id(row: dict) -> Optional[UUID]:
        try:
            return UUID(str(row["id"]))
        except (KeyError, ValueError):
            return None
