from __future__ import annotations

import json
from datetime import date, datetime
from typing import Annotated, Literal, Optional
from uuid import UUID

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator

CheckInStatus = Literal["in-progress", "completed", "abandoned"]
CheckInStep = Literal[
    "warm-up",
    "category-selection",
    "category-discussion",
    "reflection",
    "action-items",
    "completion",
]
NotePrivacy = Literal["private", "shared", "draft"]


class Record(BaseModel):
    """Server row image; validates both ORM objects and change-feed dicts."""
    model_config = ConfigDict(from_attributes=True)


class CheckInRecord(Record):
    id: UUID
    couple_id: UUID
    status: CheckInStatus = "in-progress"
    categories: list[str] = Field(default_factory=list)
    started_at: datetime
    completed_at: Optional[datetime] = None
    mood_before: Optional[int] = None
    mood_after: Optional[int] = None
    reflection: Optional[str] = None


class Note(Record):
    id: UUID
    couple_id: UUID
    author_id: UUID
    check_in_id: Optional[UUID] = None
    content: str
    privacy: NotePrivacy = "draft"
    tags: list[str] = Field(default_factory=list)
    category_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ActionItem(Record):
    id: UUID
    couple_id: UUID
    check_in_id: Optional[UUID] = None
    title: str
    description: Optional[str] = None
    assigned_to: Optional[UUID] = None
    due_date: Optional[date] = None
    completed: bool = False
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class CategoryProgress(BaseModel):
    category_id: str
    is_completed: bool = False
    time_spent: int = 0
    last_updated: Optional[datetime] = None


class CheckInSession(BaseModel):
    """
    Local mirror of one in-progress check-in.
    Row-level fields come from the server; step and category progress are per client.
    """
    id: UUID
    couple_id: UUID
    status: CheckInStatus = "in-progress"
    started_at: datetime
    completed_at: Optional[datetime] = None
    selected_categories: list[str]
    category_progress: dict[str, CategoryProgress] = Field(default_factory=dict)
    current_step: CheckInStep
    completed_steps: list[CheckInStep] = Field(default_factory=list)
    draft_notes: list[Note] = Field(default_factory=list)
    action_items: list[ActionItem] = Field(default_factory=list)
    mood_before: Optional[int] = None
    mood_after: Optional[int] = None
    reflection: Optional[str] = None
    last_saved_at: Optional[datetime] = None


# Request bodies
#
# Rows are published through pg_notify, whose payload is capped at
# NOTIFY_PAYLOAD_LIMIT bytes, so free text is bounded by its JSON-encoded
# UTF-8 size and lists by length. The largest row stays under the cap.

NOTIFY_PAYLOAD_LIMIT = 8000
NOTE_CONTENT_MAX_BYTES = 4000
REFLECTION_MAX_BYTES = 3000
DESCRIPTION_MAX_BYTES = 2000


def _max_json_bytes(limit: int) -> AfterValidator:
    def check(value: str) -> str:
        if len(json.dumps(value, ensure_ascii=False).encode("utf-8")) > limit:
            raise ValueError(f"must be at most {limit} bytes")
        return value
    return AfterValidator(check)


CategoryId = Annotated[str, Field(min_length=1, max_length=40)]
Tag = Annotated[str, Field(min_length=1, max_length=32)]
NoteContent = Annotated[str, _max_json_bytes(NOTE_CONTENT_MAX_BYTES)]
Reflection = Annotated[str, _max_json_bytes(REFLECTION_MAX_BYTES)]
Description = Annotated[str, _max_json_bytes(DESCRIPTION_MAX_BYTES)]
Title = Annotated[str, Field(min_length=1, max_length=200)]
Categories = Annotated[list[CategoryId], Field(max_length=12)]
Tags = Annotated[list[Tag], Field(max_length=10)]


class StartCheckInIn(BaseModel):
    categories: Categories
    mood_before: Optional[int] = Field(default=None, ge=1, le=5)


class SelectCategoriesIn(BaseModel):
    categories: Categories


class StepIn(BaseModel):
    step: CheckInStep


class CategoryProgressPatch(BaseModel):
    is_completed: Optional[bool] = None
    time_spent: Optional[int] = Field(default=None, ge=0)


class NoteDraft(BaseModel):
    content: NoteContent
    privacy: NotePrivacy = "draft"
    tags: Tags = Field(default_factory=list)
    category_id: Optional[CategoryId] = None


class NotePatch(BaseModel):
    """Omitted fields are left alone; these columns cannot be cleared."""
    content: Optional[NoteContent] = None
    privacy: Optional[NotePrivacy] = None
    tags: Optional[Tags] = None

    @field_validator("content", "privacy", "tags")
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("cannot be null")
        return value


class ActionItemDraft(BaseModel):
    title: Title
    description: Optional[Description] = None
    assigned_to: Optional[UUID] = None
    due_date: Optional[date] = None


class ActionItemPatch(BaseModel):
    """An explicit null clears description, assignee or due date; title is required."""
    title: Optional[Title] = None
    description: Optional[Description] = None
    assigned_to: Optional[UUID] = None
    due_date: Optional[date] = None

    @field_validator("title")
    @classmethod
    def title_not_null(cls, value):
        if value is None:
            raise ValueError("title cannot be null")
        return value


class CompleteCheckInIn(BaseModel):
    mood_after: Optional[int] = Field(default=None, ge=1, le=5)
    reflection: Optional[Reflection] = None


# Responses

class ClockOut(BaseModel):
    time_remaining: int
    is_running: bool
    is_paused: bool
    formatted_time: str


class TurnOut(BaseModel):
    is_active: bool
    current_turn: Literal["user", "partner"]
    turn_time_remaining: int
    formatted_turn_time: str
    extensions_used: int
    max_extensions: int


class CheckInStateOut(BaseModel):
    session: Optional[CheckInSession] = None
    progress_percentage: int = 0
    timer: ClockOut
    turn: TurnOut
