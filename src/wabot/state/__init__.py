"""SQLite persistence layer.

All functions are async using aiosqlite. Module-level connection,
initialized by init_database(). The registry and settings broadcaster keep
the authoritative copy in memory and write through to these tables.

  schema       — DDL and column migrations
  connection   — connection lifecycle, write utilities
  sessions     — session records
  kv           — keyed JSON documents (bot settings)
  credentials  — CredentialStore implementation
"""

from wabot.state.connection import (
    _get_db,
    _init_test_database,
    atomic_write,
    close_database,
    init_database,
)
from wabot.state.credentials import SqliteCredentialStore
from wabot.state.kv import get_document, load_bot_settings, save_bot_settings, set_document
from wabot.state.sessions import (
    delete_session,
    get_all_sessions,
    get_session,
    purge_session,
    upsert_session,
)

__all__ = [
    "SqliteCredentialStore",
    "_get_db",
    "_init_test_database",
    "atomic_write",
    "close_database",
    "delete_session",
    "get_all_sessions",
    "get_document",
    "get_session",
    "init_database",
    "load_bot_settings",
    "purge_session",
    "save_bot_settings",
    "set_document",
    "upsert_session",
]
