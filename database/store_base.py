"""
Abstract Subscription Store — Interface for all storage backends.

Implementations:
  - SqlSubscriptionStore      (PostgreSQL / SQLite via SQLAlchemy)
  - InMemorySubscriptionStore (dict-based, single-process, no persistence)

Subscriptions are append-only. Both uniqueness rules
  (user_id, meetup_id) and (user_id, scheduled_at)
are enforced by the backend itself, and every duplicate-check-then-insert
sequence runs inside subscription_scope(user_id), which serializes all
admissions for the same user.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncContextManager, AsyncIterator, Optional

from models.schemas import Meetup, Subscription, User


class DuplicateSubscriptionError(Exception):
    """Raised when an insert would break one of the subscription uniqueness rules."""

    def __init__(self, user_id: str, meetup_id: str, same_meetup: bool = True):
        self.user_id = user_id
        self.meetup_id = meetup_id
        self.same_meetup = same_meetup
        kind = "meetup" if same_meetup else "scheduled instant"
        super().__init__(f"User {user_id} already holds a subscription for this {kind} ({meetup_id})")


class UserLocks:
    """Per-user asyncio locks, dropped once nobody holds or waits on them."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._holders[user_id] = self._holders.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[user_id] -= 1
            if not self._holders[user_id]:
                del self._holders[user_id]
                del self._locks[user_id]


class SubscriptionScope(ABC):
    """Operations available while holding a user's exclusive admission section."""

    @abstractmethod
    async def exists(self, meetup_id: str) -> bool:
        """True if the user already subscribed to meetup_id."""
        ...

    @abstractmethod
    async def has_conflict(self, scheduled_at: datetime) -> bool:
        """True if the user holds a subscription to any meetup starting at scheduled_at."""
        ...

    @abstractmethod
    async def add(self, meetup_id: str, scheduled_at: datetime) -> Subscription:
        """Insert a subscription. Raises DuplicateSubscriptionError on a uniqueness clash."""
        ...


class BaseSubscriptionStore(ABC):
    """Interface that all subscription store backends must implement."""

    # ── Meetups & users (read-only for the core) ──────────────

    @abstractmethod
    async def get_meetup(self, meetup_id: str) -> Optional[Meetup]:
        ...

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]:
        ...

    @abstractmethod
    async def upsert_user(self, user: User) -> User:
        ...

    @abstractmethod
    async def upsert_meetup(self, meetup: Meetup) -> Meetup:
        """Used by the CRUD layer and by tests; the admission core never writes meetups."""
        ...

    # ── Subscriptions ─────────────────────────────────────────

    @abstractmethod
    def subscription_scope(self, user_id: str) -> AsyncContextManager[SubscriptionScope]:
        """
        Exclusive section for one user. Changes made through the scope are
        committed when the block exits cleanly and discarded if it raises.
        """
        ...

    @abstractmethod
    async def count_subscriptions(self, user_id: str, meetup_id: str = "") -> int:
        ...

    @abstractmethod
    async def list_upcoming(self, user_id: str) -> list[tuple[Subscription, Meetup]]:
        """Subscriptions of user_id whose meetup is still in the future, ordered by date."""
        ...

    async def close(self) -> None:
        pass
