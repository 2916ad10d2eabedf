"""
SqlSubscriptionStore — Portable SQL queries for PostgreSQL and SQLite.

Admission serialization:
  - an in-process asyncio.Lock per user (covers SQLite, which has no row locks)
  - SELECT ... FOR UPDATE on the user's admission_locks row (covers several
    worker processes against PostgreSQL)
  - unique constraints on subscriptions as the last line of defence
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import AdmissionLockRow, MeetupRow, SubscriptionRow, UserRow
from database.session import get_session
from database.store_base import (
    BaseSubscriptionStore, DuplicateSubscriptionError, SubscriptionScope, UserLocks,
)
from models.schemas import Meetup, Subscription, User

logger = structlog.get_logger()


def _to_utc(value: datetime) -> datetime:
    """Normalize to aware UTC; SQLite hands back naive values."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Constraint names (PostgreSQL) or column lists (SQLite) in the driver message
_SAME_MEETUP = ("uq_subscriptions_user_meetup", "subscriptions.user_id, subscriptions.meetup_id")
_SAME_INSTANT = ("uq_subscriptions_user_instant", "subscriptions.user_id, subscriptions.scheduled_at")


def _duplicate_kind(message: str) -> Optional[bool]:
    """True for a repeated meetup, False for a same-instant clash, None for any other violation."""
    if any(marker in message for marker in _SAME_MEETUP):
        return True
    if any(marker in message for marker in _SAME_INSTANT):
        return False
    return None


class _SqlScope(SubscriptionScope):

    def __init__(self, db: AsyncSession, user_id: str):
        self._db = db
        self._user_id = user_id

    async def exists(self, meetup_id: str) -> bool:
        stmt = select(SubscriptionRow.id).where(
            SubscriptionRow.user_id == self._user_id,
            SubscriptionRow.meetup_id == meetup_id,
        ).limit(1)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def has_conflict(self, scheduled_at: datetime) -> bool:
        stmt = select(SubscriptionRow.id).where(
            SubscriptionRow.user_id == self._user_id,
            SubscriptionRow.scheduled_at == _to_utc(scheduled_at),
        ).limit(1)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def add(self, meetup_id: str, scheduled_at: datetime) -> Subscription:
        row = SubscriptionRow(
            user_id=self._user_id,
            meetup_id=meetup_id,
            scheduled_at=_to_utc(scheduled_at),
        )
        self._db.add(row)
        try:
            await self._db.flush()
        except IntegrityError as e:
            same_meetup = _duplicate_kind(str(e.orig))
            if same_meetup is None:
                raise
            raise DuplicateSubscriptionError(self._user_id, meetup_id, same_meetup) from e
        return SqlSubscriptionStore._row_to_subscription(row)


class SqlSubscriptionStore(BaseSubscriptionStore):
    """
    Persistent subscription store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL and SQLite.
    """

    def __init__(self):
        self._user_locks = UserLocks()

    # ── Users & meetups ────────────────────────────────────

    async def get_meetup(self, meetup_id: str) -> Optional[Meetup]:
        async with get_session() as db:
            row = await db.get(MeetupRow, meetup_id)
            return self._row_to_meetup(row) if row else None

    async def get_user(self, user_id: str) -> Optional[User]:
        async with get_session() as db:
            row = await db.get(UserRow, user_id)
            return User(**row.to_dict()) if row else None

    async def upsert_user(self, user: User) -> User:
        async with get_session() as db:
            existing = await db.get(UserRow, user.id)
            if existing:
                existing.name = user.name
                existing.email = user.email
                existing.locale = user.locale
            else:
                db.add(UserRow(id=user.id, name=user.name, email=user.email, locale=user.locale))
            return user

    async def upsert_meetup(self, meetup: Meetup) -> Meetup:
        async with get_session() as db:
            existing = await db.get(MeetupRow, meetup.id)
            fields = {
                "organizer_id": meetup.organizer_id,
                "title": meetup.title,
                "description": meetup.description,
                "location": meetup.location,
                "scheduled_at": _to_utc(meetup.scheduled_at),
            }
            if existing:
                for key, value in fields.items():
                    setattr(existing, key, value)
            else:
                db.add(MeetupRow(id=meetup.id, **fields))
            return meetup

    # ── Subscriptions ──────────────────────────────────────

    @asynccontextmanager
    async def subscription_scope(self, user_id: str) -> AsyncIterator[SubscriptionScope]:
        async with self._user_locks.hold(user_id):
            async with get_session() as db:
                await self._lock_user(db, user_id)
                yield _SqlScope(db, user_id)

    async def _lock_user(self, db: AsyncSession, user_id: str) -> None:
        """Take the row lock for user_id, creating the lock row on first use."""
        if db.bind.dialect.name == "sqlite":
            return  # single writer; the in-process lock is enough
        stmt = (
            select(AdmissionLockRow)
            .where(AdmissionLockRow.user_id == user_id)
            .with_for_update()
        )
        row = (await db.execute(stmt)).scalar_one_or_none()
        if row is None:
            try:
                async with db.begin_nested():
                    db.add(AdmissionLockRow(user_id=user_id))
            except IntegrityError:
                logger.debug("admission_lock_row_raced", user_id=user_id)
            row = (await db.execute(stmt)).scalar_one()
        row.locked_at = datetime.now(timezone.utc)

    async def count_subscriptions(self, user_id: str, meetup_id: str = "") -> int:
        async with get_session() as db:
            stmt = select(func.count(SubscriptionRow.id)).where(SubscriptionRow.user_id == user_id)
            if meetup_id:
                stmt = stmt.where(SubscriptionRow.meetup_id == meetup_id)
            result = await db.execute(stmt)
            return result.scalar_one()

    async def list_upcoming(self, user_id: str) -> list[tuple[Subscription, Meetup]]:
        async with get_session() as db:
            stmt = (
                select(SubscriptionRow, MeetupRow)
                .join(MeetupRow, MeetupRow.id == SubscriptionRow.meetup_id)
                .where(
                    SubscriptionRow.user_id == user_id,
                    MeetupRow.scheduled_at > datetime.now(timezone.utc),
                )
                .order_by(MeetupRow.scheduled_at.asc())
            )
            result = await db.execute(stmt)
            return [
                (self._row_to_subscription(sub), self._row_to_meetup(meetup))
                for sub, meetup in result.all()
            ]

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    def _row_to_subscription(row: SubscriptionRow) -> Subscription:
        return Subscription(
            id=row.id,
            user_id=row.user_id,
            meetup_id=row.meetup_id,
            scheduled_at=_to_utc(row.scheduled_at),
            created_at=_to_utc(row.created_at or datetime.now(timezone.utc)),
        )

    @staticmethod
    def _row_to_meetup(row: MeetupRow) -> Meetup:
        organizer = User(**row.organizer.to_dict()) if row.organizer else None
        return Meetup(
            id=row.id,
            organizer_id=row.organizer_id,
            organizer=organizer,
            title=row.title,
            description=row.description or "",
            location=row.location or "",
            scheduled_at=_to_utc(row.scheduled_at),
        )

    async def close(self) -> None:
        from database.session import close_db
        await close_db()
