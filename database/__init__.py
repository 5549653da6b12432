"""
Database layer — Multi-backend contact persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_store
  store = create_store(settings.database)
  contact = await store.get_contact("923001234567")
"""
from database.models import Base, ContactRow, InteractionRow, MessageRow
from database.session import close_db, configure_database, get_engine, get_session, init_db
from database.store_base import (
    BaseContactStore, ContactNotFoundError, ReferralCodeConflictError,
    StoreError, VersionConflictError,
)
from database.store import SqlContactStore
from database.store_memory import InMemoryContactStore
from database.store_file import FileContactStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "ContactRow", "InteractionRow", "MessageRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db", "configure_database",
    # Store interface and errors
    "BaseContactStore", "StoreError", "ContactNotFoundError",
    "VersionConflictError", "ReferralCodeConflictError",
    # Store backends
    "SqlContactStore", "InMemoryContactStore", "FileContactStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
