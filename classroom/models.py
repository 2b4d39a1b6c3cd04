from __future__ import annotations
from datetime import datetime
from typing import Any
from sqlalchemy import String, Integer, Text, Boolean, DateTime, JSON, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from classroom.db import Base
from classroom.timeutil import now_utc_naive

ROLES = ("student", "professor", "admin")
APPROVAL_STATUSES = ("pending", "approved", "rejected")
CHAPTER_STATUSES = ("draft", "scheduled", "published", "archived")
BOOKING_STATUSES = ("confirmed", "cancelled", "completed")
ANNOUNCEMENT_TYPES = ("announcement", "event", "deadline", "update")
IMPORTANCE_LEVELS = ("low", "normal", "high", "urgent")
FEEDBACK_TYPES = ("course_content", "technical_issue", "suggestion", "general")
FEEDBACK_STATUSES = ("pending", "reviewed", "resolved", "rejected")


class AuthUser(Base):
    """Identity record owned by the auth side. Pages never read this table."""
    __tablename__ = "auth_users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    email: Mapped[str] = mapped_column(String, unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String)
    user_metadata: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc_naive)

class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(ForeignKey("auth_users.id"), primary_key=True)
    email: Mapped[str] = mapped_column(String, index=True)
    full_name: Mapped[str | None] = mapped_column(String, nullable=True)
    role: Mapped[str] = mapped_column(String, default="student")
    # null in the older schema variant, treated as approved
    approval_status: Mapped[str | None] = mapped_column(String, nullable=True, default="pending")
    student_id: Mapped[str | None] = mapped_column(String, nullable=True)
    department: Mapped[str | None] = mapped_column(String, nullable=True)
    bio: Mapped[str | None] = mapped_column(Text, nullable=True)
    avatar_url: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc_naive, onupdate=now_utc_naive)

class Chapter(Base):
    __tablename__ = "chapters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    order_index: Mapped[int] = mapped_column(Integer, index=True)
    status: Mapped[str] = mapped_column(String, default="draft")
    release_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_by: Mapped[str | None] = mapped_column(ForeignKey("auth_users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc_naive, onupdate=now_utc_naive)

class AvailabilitySlot(Base):
    __tablename__ = "availability_slots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    professor_id: Mapped[str | None] = mapped_column(ForeignKey("auth_users.id"), nullable=True, index=True)
    title: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    slot_type: Mapped[str | None] = mapped_column(String, nullable=True, default="office_hours")
    start_time: Mapped[datetime] = mapped_column(DateTime, index=True)
    end_time: Mapped[datetime] = mapped_column(DateTime)
    location: Mapped[str | None] = mapped_column(String, nullable=True)
    virtual_link: Mapped[str | None] = mapped_column(String, nullable=True)
    max_bookings: Mapped[int] = mapped_column(Integer, default=1)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False)
    recurrence_pattern: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc_naive)

class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    availability_slot_id: Mapped[int] = mapped_column(ForeignKey("availability_slots.id"), index=True)
    student_id: Mapped[str] = mapped_column(ForeignKey("auth_users.id"), index=True)
    booking_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, default="confirmed")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc_naive, onupdate=now_utc_naive)

class Announcement(Base):
    __tablename__ = "announcements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String)
    content: Mapped[str] = mapped_column(Text)
    author_id: Mapped[str | None] = mapped_column(ForeignKey("auth_users.id"), nullable=True, index=True)
    is_pinned: Mapped[bool] = mapped_column(Boolean, default=False)
    is_published: Mapped[bool] = mapped_column(Boolean, default=True)
    published_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    event_date: Mapped[str | None] = mapped_column(String, nullable=True)
    event_time: Mapped[str | None] = mapped_column(String, nullable=True)
    location: Mapped[str | None] = mapped_column(String, nullable=True)
    importance_level: Mapped[str] = mapped_column(String, default="normal")
    announcement_type: Mapped[str] = mapped_column(String, default="announcement")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc_naive, onupdate=now_utc_naive)

class Feedback(Base):
    __tablename__ = "feedback"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str | None] = mapped_column(ForeignKey("auth_users.id"), nullable=True, index=True)
    type: Mapped[str] = mapped_column(String, default="general")
    subject: Mapped[str] = mapped_column(String)
    message: Mapped[str] = mapped_column(Text)
    rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_anonymous: Mapped[bool] = mapped_column(Boolean, default=True)
    status: Mapped[str] = mapped_column(String, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc_naive, onupdate=now_utc_naive)


# table name -> model, the backend resolves `table` arguments through this
TABLES: dict[str, type[Base]] = {
    "profiles": Profile,
    "chapters": Chapter,
    "availability_slots": AvailabilitySlot,
    "bookings": Booking,
    "announcements": Announcement,
    "feedback": Feedback,
}
