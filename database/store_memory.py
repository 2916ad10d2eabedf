"""
InMemorySubscriptionStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlSubscriptionStore
  - Per-user asyncio.Lock for the admission section (single event loop)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional

from database.store_base import (
    BaseSubscriptionStore, DuplicateSubscriptionError, SubscriptionScope, UserLocks,
)
from models.schemas import Meetup, Subscription, User

logger = structlog.get_logger()


class _MemoryScope(SubscriptionScope):
    """Buffers inserts until the owning scope exits cleanly."""

    def __init__(self, store: InMemorySubscriptionStore, user_id: str):
        self._store = store
        self._user_id = user_id
        self.pending: list[Subscription] = []

    async def exists(self, meetup_id: str) -> bool:
        if (self._user_id, meetup_id) in self._store._by_pair:
            return True
        return any(s.meetup_id == meetup_id for s in self.pending)

    async def has_conflict(self, scheduled_at: datetime) -> bool:
        if (self._user_id, scheduled_at) in self._store._by_instant:
            return True
        return any(s.scheduled_at == scheduled_at for s in self.pending)

    async def add(self, meetup_id: str, scheduled_at: datetime) -> Subscription:
        if await self.exists(meetup_id):
            raise DuplicateSubscriptionError(self._user_id, meetup_id, same_meetup=True)
        if await self.has_conflict(scheduled_at):
            raise DuplicateSubscriptionError(self._user_id, meetup_id, same_meetup=False)
        sub = Subscription(user_id=self._user_id, meetup_id=meetup_id, scheduled_at=scheduled_at)
        self.pending.append(sub)
        return sub


class InMemorySubscriptionStore(BaseSubscriptionStore):
    """
    Full-featured in-memory store with the same interface as SqlSubscriptionStore.
    """

    def __init__(self):
        self._users: dict[str, User] = {}
        self._meetups: dict[str, Meetup] = {}
        self._subscriptions: dict[str, Subscription] = {}     # id → subscription

        # Unique indexes
        self._by_pair: dict[tuple[str, str], str] = {}         # (user_id, meetup_id) → sub id
        self._by_instant: dict[tuple[str, datetime], str] = {}  # (user_id, scheduled_at) → sub id

        self._user_locks = UserLocks()
        logger.info("inmemory_store_initialized")

    # ── Users & meetups ───────────────────────────────────

    async def get_meetup(self, meetup_id: str) -> Optional[Meetup]:
        meetup = self._meetups.get(meetup_id)
        if meetup and meetup.organizer is None:
            organizer = self._users.get(meetup.organizer_id)
            meetup = meetup.model_copy(update={"organizer": organizer})
        return meetup

    async def get_user(self, user_id: str) -> Optional[User]:
        return self._users.get(user_id)

    async def upsert_user(self, user: User) -> User:
        self._users[user.id] = user
        return user

    async def upsert_meetup(self, meetup: Meetup) -> Meetup:
        self._meetups[meetup.id] = meetup
        return meetup

    # ── Subscriptions ─────────────────────────────────────

    @asynccontextmanager
    async def subscription_scope(self, user_id: str) -> AsyncIterator[SubscriptionScope]:
        async with self._user_locks.hold(user_id):
            scope = _MemoryScope(self, user_id)
            yield scope
            for sub in scope.pending:
                self._commit(sub)

    def _commit(self, sub: Subscription) -> None:
        self._subscriptions[sub.id] = sub
        self._by_pair[(sub.user_id, sub.meetup_id)] = sub.id
        self._by_instant[(sub.user_id, sub.scheduled_at)] = sub.id
        logger.debug("subscription_stored", subscription_id=sub.id,
                     user_id=sub.user_id, meetup_id=sub.meetup_id)

    async def count_subscriptions(self, user_id: str, meetup_id: str = "") -> int:
        return sum(
            1 for s in self._subscriptions.values()
            if s.user_id == user_id and (not meetup_id or s.meetup_id == meetup_id)
        )

    async def list_upcoming(self, user_id: str) -> list[tuple[Subscription, Meetup]]:
        rows = []
        for sub in self._subscriptions.values():
            if sub.user_id != user_id:
                continue
            meetup = await self.get_meetup(sub.meetup_id)
            if meetup and not meetup.is_past:
                rows.append((sub, meetup))
        rows.sort(key=lambda r: r[1].scheduled_at)
        return rows
