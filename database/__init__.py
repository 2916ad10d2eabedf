"""
Database layer — Subscription persistence.

Backends:
  - SQL (PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  async with store.subscription_scope("u1") as scope:
      await scope.add("m1", scheduled_at)
"""
from database.models import (
    Base, UserRow, MeetupRow, SubscriptionRow, AdmissionLockRow,
)
from database.session import get_engine, get_session, init_db, close_db, missing_tables
from database.store_base import (
    BaseSubscriptionStore, SubscriptionScope, DuplicateSubscriptionError,
)
from database.store import SqlSubscriptionStore
from database.store_memory import InMemorySubscriptionStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "UserRow", "MeetupRow", "SubscriptionRow", "AdmissionLockRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db", "missing_tables",
    # Store interface
    "BaseSubscriptionStore", "SubscriptionScope", "DuplicateSubscriptionError",
    # Store backends
    "SqlSubscriptionStore", "InMemorySubscriptionStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
