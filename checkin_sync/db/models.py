from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import ForeignKey, String, JSON, Uuid, DateTime, Date
import uuid
from datetime import date, datetime
from typing import Optional, List

from checkin_sync.utils.time import utcnow



class Base(DeclarativeBase):
    type_annotation_map = {
        datetime: DateTime(timezone=True),
        uuid.UUID: Uuid,
    }


class Profile(Base):
    __tablename__ = "profiles"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    couple_id: Mapped[Optional[uuid.UUID]] = mapped_column(index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    display_name: Mapped[Optional[str]]


class CheckIn(Base):
    __tablename__ = "check_ins"
    # id is generated by the client and sent with the insert
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True)
    couple_id: Mapped[uuid.UUID] = mapped_column(index=True)
    status: Mapped[str] = mapped_column(String(20), default="in-progress")
    categories: Mapped[List[str]] = mapped_column(JSON, default=list)
    started_at: Mapped[datetime] = mapped_column(default=utcnow)
    completed_at: Mapped[Optional[datetime]]
    mood_before: Mapped[Optional[int]]
    mood_after: Mapped[Optional[int]]
    reflection: Mapped[Optional[str]]


class Note(Base):
    __tablename__ = "notes"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    couple_id: Mapped[uuid.UUID] = mapped_column(index=True)
    author_id: Mapped[uuid.UUID]
    check_in_id: Mapped[Optional[uuid.UUID]] = mapped_column(ForeignKey("check_ins.id", ondelete="SET NULL"))
    content: Mapped[str]
    privacy: Mapped[str] = mapped_column(String(10), default="draft")
    tags: Mapped[List[str]] = mapped_column(JSON, default=list)
    category_id: Mapped[Optional[str]]
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)


class ActionItem(Base):
    __tablename__ = "action_items"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    couple_id: Mapped[uuid.UUID] = mapped_column(index=True)
    check_in_id: Mapped[Optional[uuid.UUID]] = mapped_column(ForeignKey("check_ins.id", ondelete="SET NULL"))
    title: Mapped[str]
    description: Mapped[Optional[str]]
    assigned_to: Mapped[Optional[uuid.UUID]]
    due_date: Mapped[Optional[date]] = mapped_column(Date)
    completed: Mapped[bool] = mapped_column(default=False)
    completed_at: Mapped[Optional[datetime]]
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


class SessionSettings(Base):
    __tablename__ = "session_settings"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    couple_id: Mapped[uuid.UUID] = mapped_column(unique=True)
    session_duration: Mapped[int] = mapped_column(default=10)
    timeouts_per_partner: Mapped[int] = mapped_column(default=1)
    timeout_duration: Mapped[int] = mapped_column(default=2)
    turn_based_mode: Mapped[bool] = mapped_column(default=True)
    turn_duration: Mapped[int] = mapped_column(default=90)
    allow_extensions: Mapped[bool] = mapped_column(default=True)
    max_extensions: Mapped[int] = mapped_column(default=2)
    warm_up_questions: Mapped[bool] = mapped_column(default=False)
    cool_down_time: Mapped[int] = mapped_column(default=2)
