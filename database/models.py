"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, SQLite.

Key design decisions:
  - String primary keys (uuid hex) — no database-specific sequences.
  - Both subscription uniqueness rules are table constraints, so a racing
    duplicate insert fails in the database even if application checks pass.
  - users/meetups mirror the CRUD service's tables; this service only reads them.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, DateTime, Text, ForeignKey, Index, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Users
# ──────────────────────────────────────────────────────────────

class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    email: Mapped[str] = mapped_column(String(256), default="")
    locale: Mapped[str] = mapped_column(String(16), default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    meetups: Mapped[list["MeetupRow"]] = relationship(back_populates="organizer")

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "email": self.email, "locale": self.locale}


# ──────────────────────────────────────────────────────────────
#  Meetups
# ──────────────────────────────────────────────────────────────

class MeetupRow(Base):
    __tablename__ = "meetups"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organizer_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    location: Mapped[str] = mapped_column(String(256), default="")
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    organizer: Mapped["UserRow"] = relationship(back_populates="meetups", lazy="selectin")

    __table_args__ = (
        Index("ix_meetups_organizer", "organizer_id"),
        Index("ix_meetups_scheduled_at", "scheduled_at"),
    )


# ──────────────────────────────────────────────────────────────
#  Subscriptions
# ──────────────────────────────────────────────────────────────

class SubscriptionRow(Base):
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), nullable=False)
    meetup_id: Mapped[str] = mapped_column(String(64), ForeignKey("meetups.id"), nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    meetup: Mapped["MeetupRow"] = relationship(lazy="selectin")

    __table_args__ = (
        UniqueConstraint("user_id", "meetup_id", name="uq_subscriptions_user_meetup"),
        UniqueConstraint("user_id", "scheduled_at", name="uq_subscriptions_user_instant"),
        Index("ix_subscriptions_meetup", "meetup_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Admission locks
# ──────────────────────────────────────────────────────────────

class AdmissionLockRow(Base):
    """One row per user; SELECT ... FOR UPDATE on it serializes that user's admissions."""
    __tablename__ = "admission_locks"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
