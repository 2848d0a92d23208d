"""
Database layer — Queue, calendar, user and event persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  batch = await store.claim_ready_batch(now)
"""
from database.models import (
    Base, MessageQueueRow, TimeWindowRow, UserRow, UserInterestRow, EventRow,
)
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseQueueStore
from database.store import SqlQueueStore
from database.store_memory import InMemoryQueueStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "MessageQueueRow", "TimeWindowRow", "UserRow", "UserInterestRow", "EventRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseQueueStore",
    # Store backends
    "SqlQueueStore", "InMemoryQueueStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
